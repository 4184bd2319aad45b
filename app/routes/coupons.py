"""
Coupon Routes for the storefront cart

POST /api/coupons/apply       - Validate and price one code on top of applied codes
POST /api/coupons/auto-apply  - Best automatic coupon for a cart with nothing applied
POST /api/coupons/revalidate  - Replay stored codes against the current cart

Business failures return HTTP 200 with {success: false, code, messages}.
Malformed payloads return 400 INVALID_REQUEST, anything unexpected 500
UNKNOWN_ERROR.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from app.coupon_engine import get_config, get_coupon_service
from app.coupon_engine import messages as msg
from app.coupon_engine.models import ErrorKind
from app.coupon_engine.money import ZERO, money_float
from app.coupon_engine.snapshot import build_snapshot, calculate_subtotal
from app.limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/coupons", tags=["coupons"])

RATE_LIMIT = get_config().rate_limit


# --- Pydantic Models ---

class CartItemPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sku: str = Field(min_length=1)
    quantity: int = Field(ge=0)
    price: float = Field(ge=0)
    sale_price: Optional[float] = Field(default=None, alias="salePrice", ge=0)
    color: Optional[str] = None
    size: Optional[str] = None


class CouponCartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cart_items: List[CartItemPayload] = Field(alias="cartItems")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    locale: Optional[str] = None
    user_identifier: Optional[str] = Field(default=None, alias="userIdentifier")

    def line_items(self) -> List[Dict[str, Any]]:
        return [item.model_dump() for item in self.cart_items]


class ApplyCouponRequest(CouponCartRequest):
    code: str
    existing_coupon_codes: List[str] = Field(default_factory=list, alias="existingCouponCodes")


class RevalidateRequest(CouponCartRequest):
    codes: List[str] = Field(default_factory=list)


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


# --- Helper Functions ---

def error_response(kind: ErrorKind, status_code: int = status.HTTP_200_OK, messages=None) -> JSONResponse:
    return JSONResponse(
        {"success": False, "code": kind.value, "messages": messages or msg.error_messages(kind)},
        status_code=status_code,
    )


async def parse_body(request: Request, model):
    """Parse the JSON body into `model`, or None when it is malformed."""
    try:
        data = await request.json()
    except ValueError:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.info(f"Rejected coupon payload: {e.error_count()} validation error(s)")
        return None


# --- Routes ---

@router.post("/apply")
@limiter.limit(RATE_LIMIT)
async def apply_coupon(request: Request, db: Session = Depends(db_dep)) -> JSONResponse:
    """
    Validate a code against the cart and the client's already-applied codes.
    Returns the priced coupon plus the resulting applied code list.
    """
    body = await parse_body(request, ApplyCouponRequest)
    if body is None:
        return error_response(ErrorKind.INVALID_REQUEST, status.HTTP_400_BAD_REQUEST)

    try:
        outcome = get_coupon_service(db).apply(
            body.code,
            body.line_items(),
            currency=body.currency,
            locale=body.locale,
            user_identifier=body.user_identifier,
            existing_codes=body.existing_coupon_codes,
        )
        return JSONResponse(outcome.to_dict(), status_code=200)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Coupon apply failed for code '{body.code}': {e}")
        db.rollback()
        return error_response(ErrorKind.UNKNOWN_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.post("/auto-apply")
@limiter.limit(RATE_LIMIT)
async def auto_apply_coupon(request: Request, db: Session = Depends(db_dep)) -> JSONResponse:
    """Pick the single best automatic coupon for the cart, if any qualifies."""
    body = await parse_body(request, CouponCartRequest)
    if body is None:
        return error_response(ErrorKind.INVALID_REQUEST, status.HTTP_400_BAD_REQUEST)

    try:
        outcome = get_coupon_service(db).auto_apply(
            body.line_items(),
            currency=body.currency,
            locale=body.locale,
            user_identifier=body.user_identifier,
        )
        if outcome is None:
            return error_response(ErrorKind.NO_AUTO_COUPON_AVAILABLE)
        return JSONResponse(outcome.to_dict(), status_code=200)

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Auto-apply failed: {e}")
        db.rollback()
        return error_response(ErrorKind.UNKNOWN_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.post("/revalidate")
@limiter.limit(RATE_LIMIT)
async def revalidate_coupons(request: Request, db: Session = Depends(db_dep)) -> JSONResponse:
    """
    Replay stored codes in order against the current cart.
    Codes that no longer qualify are listed in droppedCodes.
    """
    body = await parse_body(request, RevalidateRequest)
    if body is None:
        return error_response(ErrorKind.INVALID_REQUEST, status.HTTP_400_BAD_REQUEST)

    try:
        applied = get_coupon_service(db).revalidate(
            body.codes,
            body.line_items(),
            currency=body.currency,
            user_identifier=body.user_identifier,
        )
        subtotal = calculate_subtotal(build_snapshot(body.line_items()))
        discount_total = min(applied.discount_total, subtotal)
        return JSONResponse(
            {
                "success": True,
                "coupons": [entry.to_dict() for entry in applied.entries],
                "codes": applied.codes,
                "droppedCodes": applied.dropped_codes,
                "discountTotal": money_float(discount_total),
                "subtotal": money_float(subtotal),
                "newSubtotal": money_float(max(subtotal - discount_total, ZERO)),
            },
            status_code=200,
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Coupon revalidation failed for {body.codes}: {e}")
        db.rollback()
        return error_response(ErrorKind.UNKNOWN_ERROR, status.HTTP_500_INTERNAL_SERVER_ERROR)
