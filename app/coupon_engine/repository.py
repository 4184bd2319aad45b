"""
Coupon Repository

Reads coupon definitions for the engine and backs the admin CMS endpoints.
Definitions are fetched fresh on every evaluation; there is no engine-side
cache, so activation and expiry changes apply on the next request.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Coupon, normalize_code
from .schema import coupon_redemptions, coupons
from .time_service import utcnow

logger = logging.getLogger(__name__)

LIST_FIELDS = ("eligible_products", "bogo_eligible_skus")


class DuplicateCouponError(ValueError):
    """A coupon with this code already exists."""


class CouponNotFoundError(LookupError):
    """No coupon with this id."""


def _to_row_values(data: Dict[str, Any]) -> Dict[str, Any]:
    """Admin payload -> column values (codes normalized, lists joined)."""
    values = {key: value for key, value in data.items() if key in coupons.c}
    if "code" in values and values["code"] is not None:
        values["code"] = normalize_code(values["code"])
    for key in LIST_FIELDS:
        if key in values and values[key] is not None and not isinstance(values[key], str):
            cleaned = [str(v).strip() for v in values[key] if str(v).strip()]
            values[key] = ",".join(cleaned)
    return values


class CouponRepository:
    """SQLAlchemy-backed coupon store."""

    def __init__(self, db: Session):
        self.db = db

    # --- engine reads ---

    def get_by_code(self, code: str) -> Optional[Coupon]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        row = self.db.execute(
            select(coupons).where(coupons.c.code == normalized)
        ).mappings().fetchone()
        return Coupon.from_row(row) if row else None

    def get_by_codes(self, codes: Iterable[str]) -> Dict[str, Coupon]:
        normalized = sorted({normalize_code(c) for c in codes if normalize_code(c)})
        if not normalized:
            return {}
        rows = self.db.execute(
            select(coupons).where(coupons.c.code.in_(normalized))
        ).mappings().fetchall()
        return {row["code"]: Coupon.from_row(row) for row in rows}

    def list_auto_apply(self) -> List[Coupon]:
        rows = self.db.execute(
            select(coupons)
            .where(and_(coupons.c.auto_apply.is_(True), coupons.c.is_active.is_(True)))
            .order_by(coupons.c.code)
        ).mappings().fetchall()
        return [Coupon.from_row(row) for row in rows]

    def get_redemption_count(self, coupon: Coupon, user_identifier: str) -> int:
        if not coupon.id:
            return 0
        count = self.db.execute(
            select(coupon_redemptions.c.usage_count).where(
                and_(
                    coupon_redemptions.c.coupon_id == coupon.id,
                    coupon_redemptions.c.user_identifier == user_identifier,
                )
            )
        ).scalar()
        return int(count or 0)

    def record_redemption(self, code: str, user_identifier: Optional[str] = None) -> Optional[Coupon]:
        """Bump global and per-user usage after a successful checkout."""
        coupon = self.get_by_code(code)
        if coupon is None:
            return None

        now = utcnow()
        self.db.execute(
            coupons.update()
            .where(coupons.c.id == coupon.id)
            .values(usage_count=coupons.c.usage_count + 1, updated_at=now)
        )

        if user_identifier:
            updated = self.db.execute(
                coupon_redemptions.update()
                .where(
                    and_(
                        coupon_redemptions.c.coupon_id == coupon.id,
                        coupon_redemptions.c.user_identifier == user_identifier,
                    )
                )
                .values(usage_count=coupon_redemptions.c.usage_count + 1, last_used_at=now)
            )
            if updated.rowcount == 0:
                self.db.execute(
                    coupon_redemptions.insert().values(
                        coupon_id=coupon.id,
                        user_identifier=user_identifier,
                        usage_count=1,
                        last_used_at=now,
                    )
                )

        self.db.commit()
        logger.info(f"Recorded redemption of {coupon.code}" + (f" by {user_identifier}" if user_identifier else ""))
        return self.get_by_code(code)

    # --- admin CMS ---

    def get(self, coupon_id: str) -> Coupon:
        row = self.db.execute(
            select(coupons).where(coupons.c.id == coupon_id)
        ).mappings().fetchone()
        if not row:
            raise CouponNotFoundError(coupon_id)
        return Coupon.from_row(row)

    def create(self, data: Dict[str, Any]) -> Coupon:
        values = _to_row_values(data)
        values.setdefault("id", str(uuid.uuid4()))
        values.setdefault("usage_count", 0)
        values["created_at"] = values["updated_at"] = utcnow()
        try:
            self.db.execute(coupons.insert().values(**values))
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateCouponError(values.get("code")) from e

        logger.info(f"Created coupon {values['code']} ({values['discount_type']})")
        return self.get(values["id"])

    def update(self, coupon_id: str, data: Dict[str, Any]) -> Coupon:
        self.get(coupon_id)
        values = _to_row_values(data)
        values.pop("id", None)
        if not values:
            return self.get(coupon_id)
        values["updated_at"] = utcnow()
        try:
            self.db.execute(coupons.update().where(coupons.c.id == coupon_id).values(**values))
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateCouponError(values.get("code")) from e

        logger.info(f"Updated coupon {coupon_id}: {sorted(values)}")
        return self.get(coupon_id)

    def delete(self, coupon_id: str) -> None:
        coupon = self.get(coupon_id)
        self.db.execute(coupon_redemptions.delete().where(coupon_redemptions.c.coupon_id == coupon_id))
        self.db.execute(coupons.delete().where(coupons.c.id == coupon_id))
        self.db.commit()
        logger.info(f"Deleted coupon {coupon.code}")

    def list(
        self,
        *,
        status: Optional[str] = None,
        discount_type: Optional[str] = None,
        auto_apply: Optional[bool] = None,
        search: Optional[str] = None,
        expires_before: Optional[datetime] = None,
        expires_after: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Coupon], int]:
        """Filtered, paginated admin listing. Returns (coupons, total)."""
        conditions = []
        if status == "active":
            conditions.append(coupons.c.is_active.is_(True))
        elif status == "inactive":
            conditions.append(coupons.c.is_active.is_(False))
        if discount_type:
            conditions.append(coupons.c.discount_type == discount_type)
        if auto_apply is not None:
            conditions.append(coupons.c.auto_apply.is_(auto_apply))
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    func.lower(coupons.c.code).like(pattern),
                    func.lower(coupons.c.name_en).like(pattern),
                    func.lower(coupons.c.name_he).like(pattern),
                )
            )
        if expires_before:
            conditions.append(coupons.c.expires_at <= expires_before)
        if expires_after:
            conditions.append(coupons.c.expires_at >= expires_after)

        where = and_(*conditions) if conditions else None

        count_query = select(func.count()).select_from(coupons)
        query = select(coupons).order_by(coupons.c.created_at.desc(), coupons.c.code)
        if where is not None:
            count_query = count_query.where(where)
            query = query.where(where)

        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        total = self.db.execute(count_query).scalar() or 0
        rows = self.db.execute(query.offset((page - 1) * limit).limit(limit)).mappings().fetchall()
        return [Coupon.from_row(row) for row in rows], int(total)
