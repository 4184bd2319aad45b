"""
Admin Coupon Routes - coupon definitions CMS

GET    /api/admin/coupons            - List coupons (filters + pagination)
POST   /api/admin/coupons            - Create coupon
GET    /api/admin/coupons/{id}       - Get coupon
PATCH  /api/admin/coupons/{id}       - Update coupon
DELETE /api/admin/coupons/{id}       - Delete coupon
POST   /api/admin/coupons/{id}/test  - Evaluate coupon against a sample cart

When ADMIN_API_KEY is set every request must carry it in `x-api-key`.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.orm import Session

from app.coupon_engine import get_config, get_coupon_service
from app.coupon_engine.models import DiscountType
from app.coupon_engine.repository import CouponNotFoundError, CouponRepository, DuplicateCouponError
from app.coupon_engine.time_service import to_naive_utc

from .coupons import CartItemPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/coupons", tags=["admin-coupons"])


# --- Pydantic Models ---

class CouponFields(BaseModel):
    """Writable coupon columns. camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name_en: Optional[str] = Field(default=None, alias="nameEn")
    name_he: Optional[str] = Field(default=None, alias="nameHe")
    description_en: Optional[str] = Field(default=None, alias="descriptionEn")
    description_he: Optional[str] = Field(default=None, alias="descriptionHe")
    discount_type: Optional[DiscountType] = Field(default=None, alias="discountType")
    discount_value: Optional[float] = Field(default=None, alias="discountValue", ge=0)
    min_cart_value: Optional[float] = Field(default=None, alias="minCartValue", ge=0)
    starts_at: Optional[datetime] = Field(default=None, alias="startsAt")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    usage_limit: Optional[int] = Field(default=None, alias="usageLimit", ge=0)
    usage_limit_per_user: Optional[int] = Field(default=None, alias="usageLimitPerUser", ge=0)
    per_user_only: Optional[bool] = Field(default=None, alias="perUserOnly")
    stackable: Optional[bool] = None
    auto_apply: Optional[bool] = Field(default=None, alias="autoApply")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    priority: Optional[int] = None
    eligible_products: Optional[List[str]] = Field(default=None, alias="eligibleProducts")
    bogo_buy_quantity: Optional[int] = Field(default=None, alias="bogoBuyQuantity", ge=1)
    bogo_get_quantity: Optional[int] = Field(default=None, alias="bogoGetQuantity", ge=1)
    bogo_eligible_skus: Optional[List[str]] = Field(default=None, alias="bogoEligibleSkus")

    def to_values(self) -> Dict[str, Any]:
        values = self.model_dump(exclude_unset=True)
        if values.get("discount_type") is not None:
            values["discount_type"] = values["discount_type"].value
        for key in ("starts_at", "expires_at"):
            if key in values:
                values[key] = to_naive_utc(values[key])
        return values


class CreateCouponRequest(CouponFields):
    code: str = Field(min_length=1, max_length=64)
    discount_type: DiscountType = Field(alias="discountType")

    @model_validator(mode="after")
    def check_discount_shape(self):
        if self.discount_type == DiscountType.BOGO:
            if not self.bogo_buy_quantity or not self.bogo_get_quantity:
                raise ValueError("bogo coupons need bogoBuyQuantity and bogoGetQuantity")
        elif self.discount_value is None:
            raise ValueError(f"{self.discount_type.value} coupons need discountValue")
        if self.discount_type in (DiscountType.PERCENT_ALL, DiscountType.PERCENT_SPECIFIC):
            if self.discount_value is not None and self.discount_value > 100:
                raise ValueError("percentage discountValue must be between 0 and 100")
        if self.discount_type == DiscountType.PERCENT_SPECIFIC and not self.eligible_products:
            raise ValueError("percent_specific coupons need eligibleProducts")
        return self


class SampleCartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_items: List[CartItemPayload] = Field(alias="cartItems")
    currency: Optional[str] = None
    locale: Optional[str] = None
    user_identifier: Optional[str] = Field(default=None, alias="userIdentifier")


# --- Dependencies (imported from main) ---

_db_dependency = None


def set_dependencies(db_dependency):
    """Set the actual dependencies from main module."""
    global _db_dependency
    _db_dependency = db_dependency


def db_dep():
    """DB dependency wrapper that defers to the injected dependency at runtime."""
    if _db_dependency is None:
        raise RuntimeError("DB dependency not configured. Did you call set_dependencies()?")
    yield from _db_dependency()


def admin_key_dep(x_api_key: Optional[str] = Header(None)) -> None:
    """Reject requests without the admin key when one is configured."""
    expected = get_config().admin_api_key
    if expected and x_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin API key",
        )


# --- Routes ---

@router.get("", dependencies=[Depends(admin_key_dep)])
async def list_coupons(
    status_filter: Optional[str] = Query(None, alias="status", pattern="^(active|inactive)$"),
    discount_type: Optional[DiscountType] = Query(None, alias="type"),
    auto_apply: Optional[bool] = Query(None, alias="autoApply"),
    search: Optional[str] = Query(None),
    expires_before: Optional[datetime] = Query(None, alias="expiresBefore"),
    expires_after: Optional[datetime] = Query(None, alias="expiresAfter"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(db_dep),
) -> JSONResponse:
    """List coupon definitions, newest first."""
    try:
        coupons, total = CouponRepository(db).list(
            status=status_filter,
            discount_type=discount_type.value if discount_type else None,
            auto_apply=auto_apply,
            search=search,
            expires_before=to_naive_utc(expires_before),
            expires_after=to_naive_utc(expires_after),
            page=page,
            limit=limit,
        )
        return JSONResponse({
            "coupons": [coupon.to_dict() for coupon in coupons],
            "total": total,
            "page": page,
            "limit": limit,
        })
    except Exception as e:
        logger.exception(f"Failed to list coupons: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list coupons",
        )


@router.post("", dependencies=[Depends(admin_key_dep)], status_code=status.HTTP_201_CREATED)
async def create_coupon(request: CreateCouponRequest, db: Session = Depends(db_dep)) -> JSONResponse:
    """Create a coupon definition. Codes are stored upper-cased and must be unique."""
    try:
        coupon = CouponRepository(db).create(request.to_values())
        return JSONResponse({"coupon": coupon.to_dict()}, status_code=status.HTTP_201_CREATED)
    except DuplicateCouponError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Coupon code {request.code.strip().upper()} already exists",
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to create coupon {request.code}: {e}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create coupon",
        )


@router.get("/{coupon_id}", dependencies=[Depends(admin_key_dep)])
async def get_coupon(coupon_id: str, db: Session = Depends(db_dep)) -> JSONResponse:
    try:
        coupon = CouponRepository(db).get(coupon_id)
    except CouponNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    return JSONResponse({"coupon": coupon.to_dict()})


@router.patch("/{coupon_id}", dependencies=[Depends(admin_key_dep)])
async def update_coupon(coupon_id: str, request: CouponFields, db: Session = Depends(db_dep)) -> JSONResponse:
    """Partial update; only fields present in the body change."""
    try:
        coupon = CouponRepository(db).update(coupon_id, request.to_values())
        return JSONResponse({"coupon": coupon.to_dict()})
    except CouponNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    except DuplicateCouponError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Coupon code already exists")
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to update coupon {coupon_id}: {e}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update coupon",
        )


@router.delete("/{coupon_id}", dependencies=[Depends(admin_key_dep)])
async def delete_coupon(coupon_id: str, db: Session = Depends(db_dep)) -> JSONResponse:
    try:
        CouponRepository(db).delete(coupon_id)
        return JSONResponse({"success": True, "id": coupon_id})
    except CouponNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")
    except Exception as e:
        logger.exception(f"Failed to delete coupon {coupon_id}: {e}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete coupon",
        )


@router.post("/{coupon_id}/test", dependencies=[Depends(admin_key_dep)])
async def test_coupon(coupon_id: str, request: SampleCartRequest, db: Session = Depends(db_dep)) -> JSONResponse:
    """
    Evaluate a stored definition against a sample cart, ignoring other coupons.
    Returns the same payload the storefront apply endpoint would.
    """
    try:
        coupon = CouponRepository(db).get(coupon_id)
    except CouponNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")

    outcome = get_coupon_service(db).test_coupon(
        coupon,
        [item.model_dump() for item in request.cart_items],
        currency=request.currency,
        locale=request.locale,
        user_identifier=request.user_identifier,
    )
    return JSONResponse(outcome.to_dict())
