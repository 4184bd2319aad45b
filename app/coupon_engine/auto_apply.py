"""
Auto-Apply Selector

Picks the single best automatic coupon for a cart that has no coupon yet.
"Best" is the largest discount, then highest priority, then highest
discount value, then the alphabetically first code.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence, Tuple

from .calculator import compute_discount
from .eligibility import RedemptionCounter, evaluate_rules
from .models import CartLineItem, Coupon
from .money import ZERO

logger = logging.getLogger(__name__)


def _rank(coupon: Coupon, discount: Decimal) -> Tuple:
    # min() over this key: larger discount/priority/value first, then code A-Z
    return (-discount, -coupon.priority, -(coupon.discount_value or ZERO), coupon.code)


def select_auto_apply(
    candidates: Iterable[Coupon],
    snapshot: Sequence[CartLineItem],
    *,
    now: datetime,
    user_identifier: Optional[str] = None,
    currency: Optional[str] = None,
    redemptions: Optional[RedemptionCounter] = None,
) -> Optional[Coupon]:
    """Best eligible auto-apply coupon, or None."""
    if not snapshot:
        return None

    best: Optional[Tuple] = None
    best_coupon: Optional[Coupon] = None

    for coupon in candidates:
        if not coupon.auto_apply:
            continue

        failure = evaluate_rules(
            coupon,
            snapshot,
            now=now,
            currency=currency,
            user_identifier=user_identifier,
            redemptions=redemptions,
        )
        if failure is not None:
            continue

        discount = compute_discount(coupon, snapshot).discount_amount
        if discount <= 0:
            continue

        rank = _rank(coupon, discount)
        if best is None or rank < best:
            best = rank
            best_coupon = coupon

    if best_coupon is not None:
        logger.info(f"Auto-apply selected {best_coupon.code} (discount {-best[0]})")
    return best_coupon
