"""
Discount Calculator

Pure pricing of one coupon against one cart snapshot. No I/O and no clock:
eligibility (including time windows) is resolved before we get here.

Discounts are computed at full precision and rounded half-up to cents only
when the result is produced. Per-line shares are rounded individually and the
residual cent goes to the largest line, so the breakdown always sums to the
total.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .models import CartLineItem, Coupon, DiscountComputation, DiscountedItem, DiscountType
from .money import ZERO, clamp, round_money
from .snapshot import calculate_subtotal, line_total, unit_price

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass
class _RawDiscount:
    """Unrounded per-line shares plus the model's own total."""

    shares: List[Decimal]
    total: Decimal
    quantities: Optional[Dict[int, int]] = field(default=None)


def compute_discount(coupon: Coupon, snapshot: Sequence[CartLineItem]) -> DiscountComputation:
    """Discount amount plus per-line breakdown for a coupon on a cart."""
    if not snapshot:
        return DiscountComputation(discount_amount=ZERO, discounted_items=[])

    calculate = _MODELS.get(coupon.discount_type)
    raw = calculate(coupon, snapshot) if calculate else None
    if raw is None:
        return DiscountComputation(discount_amount=ZERO, discounted_items=[])

    total = round_money(raw.total)
    subtotal = round_money(calculate_subtotal(snapshot))
    bounded = clamp(total, ZERO, subtotal)
    if bounded != total:
        logger.warning(f"Clamped discount for {coupon.code}: {total} -> {bounded}")

    items = _allocate(snapshot, raw.shares, bounded, raw.quantities)
    return DiscountComputation(discount_amount=bounded, discounted_items=items)


def _percentage(coupon: Coupon) -> Decimal:
    value = coupon.discount_value or ZERO
    return clamp(value, ZERO, HUNDRED) / HUNDRED


def _percent_all(coupon: Coupon, snapshot: Sequence[CartLineItem]) -> _RawDiscount:
    pct = _percentage(coupon)
    shares = [line_total(item) * pct for item in snapshot]
    return _RawDiscount(shares=shares, total=calculate_subtotal(snapshot) * pct)


def _percent_specific(coupon: Coupon, snapshot: Sequence[CartLineItem]) -> Optional[_RawDiscount]:
    eligible = {sku.lower() for sku in coupon.eligible_products}
    if not eligible:
        return None

    pct = _percentage(coupon)
    shares = [
        line_total(item) * pct if item.sku.lower() in eligible else ZERO
        for item in snapshot
    ]
    return _RawDiscount(shares=shares, total=sum(shares, ZERO))


def _fixed(coupon: Coupon, snapshot: Sequence[CartLineItem]) -> Optional[_RawDiscount]:
    subtotal = calculate_subtotal(snapshot)
    if subtotal <= 0:
        return None

    amount = clamp(coupon.discount_value or ZERO, ZERO, subtotal)
    # Proportional to each line's share of the subtotal
    shares = [amount * line_total(item) / subtotal for item in snapshot]
    return _RawDiscount(shares=shares, total=amount)


def _bogo(coupon: Coupon, snapshot: Sequence[CartLineItem]) -> _RawDiscount:
    """
    Buy X get Y at N% off.

    Units are grouped by sku+color+size and sorted by descending unit price.
    Each full chunk of X+Y units discounts its Y cheapest units; a trailing
    partial chunk is not discounted.
    """
    buy_qty = max(coupon.bogo_buy_quantity or 1, 1)
    get_qty = max(coupon.bogo_get_quantity or 1, 1)
    group_size = buy_qty + get_qty
    pct = _percentage(coupon)
    eligible = {sku.lower() for sku in coupon.bogo_eligible_skus}

    groups: "OrderedDict[tuple, List[Tuple[Decimal, int]]]" = OrderedDict()
    for index, item in enumerate(snapshot):
        if eligible and item.sku.lower() not in eligible:
            continue
        price = unit_price(item)
        groups.setdefault(item.group_key, []).extend([(price, index)] * item.quantity)

    shares = [ZERO] * len(snapshot)
    units_discounted: Dict[int, int] = {}

    for units in groups.values():
        # Stable sort keeps cart order among equal prices
        units.sort(key=lambda unit: unit[0], reverse=True)
        for start in range(0, len(units) - group_size + 1, group_size):
            for price, index in units[start + buy_qty:start + group_size]:
                shares[index] += price * pct
                units_discounted[index] = units_discounted.get(index, 0) + 1

    return _RawDiscount(shares=shares, total=sum(shares, ZERO), quantities=units_discounted)


_MODELS = {
    DiscountType.PERCENT_ALL: _percent_all,
    DiscountType.PERCENT_SPECIFIC: _percent_specific,
    DiscountType.FIXED: _fixed,
    DiscountType.BOGO: _bogo,
}


def _allocate(
    snapshot: Sequence[CartLineItem],
    shares: Sequence[Decimal],
    total: Decimal,
    quantities: Optional[Dict[int, int]] = None,
) -> List[DiscountedItem]:
    """
    Round each line's share and hand the residual cent(s) to the largest line.

    Shares are scaled down first if they exceed the total (clamping), so the
    breakdown never discounts more than the coupon does.
    """
    raw_sum = sum(shares, ZERO)
    if total <= 0 or raw_sum <= 0:
        return []

    if raw_sum > total:
        shares = [share * total / raw_sum for share in shares]

    rounded = [round_money(share) for share in shares]
    residual = total - sum(rounded, ZERO)
    if residual != 0:
        largest = max(range(len(rounded)), key=lambda i: (rounded[i], -i))
        rounded[largest] += residual

    items = []
    for index, (item, amount) in enumerate(zip(snapshot, rounded)):
        if amount <= 0:
            continue
        quantity = item.quantity
        if quantities is not None and quantities.get(index):
            quantity = quantities[index]
        items.append(
            DiscountedItem(
                sku=item.sku,
                color=item.color,
                size=item.size,
                quantity=quantity,
                unit_price=unit_price(item),
                discount_amount=amount,
            )
        )
    return items
