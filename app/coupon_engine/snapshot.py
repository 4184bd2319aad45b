"""
Cart Snapshot Builder

Normalizes live cart lines into CartLineItem records and derives the
subtotal and cart signature used by the rest of the engine.
"""

import hashlib
import json
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Union

from .models import CartLineItem
from .money import ZERO, to_decimal

CartInput = Union[CartLineItem, Mapping[str, Any]]


def _field(item: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in item and item[key] is not None:
            return item[key]
    return None


def _line_from_mapping(item: Mapping[str, Any]) -> CartLineItem:
    color = _field(item, "color")
    size = _field(item, "size")
    return CartLineItem(
        sku=str(_field(item, "sku") or "").strip(),
        quantity=int(_field(item, "quantity") or 0),
        price=to_decimal(_field(item, "price")),
        sale_price=to_decimal(_field(item, "salePrice", "sale_price"), default=None),
        color=str(color) if color is not None else None,
        size=str(size) if size is not None else None,
    )


def build_snapshot(items: Iterable[CartInput]) -> List[CartLineItem]:
    """Cart lines in cart order. Lines with no quantity are skipped."""
    snapshot = []
    for item in items or []:
        line = item if isinstance(item, CartLineItem) else _line_from_mapping(item)
        if line.quantity <= 0 or not line.sku:
            continue
        snapshot.append(line)
    return snapshot


def unit_price(item: CartLineItem) -> Decimal:
    """Sale price wins only when it is a real markdown."""
    sale = item.sale_price
    if sale is not None and ZERO < sale < item.price:
        return sale
    return item.price


def line_total(item: CartLineItem) -> Decimal:
    return unit_price(item) * item.quantity


def calculate_subtotal(snapshot: Iterable[CartLineItem]) -> Decimal:
    return sum((line_total(item) for item in snapshot), ZERO)


def _canonical(value: Decimal) -> str:
    # 300, 300.0 and "300.00" must hash the same
    return format(value.quantize(Decimal("0.0001")), "f")


def cart_signature(snapshot: Iterable[CartLineItem]) -> str:
    """Deterministic hash of the cart contents; changes on any priced edit."""
    payload = [
        [
            item.sku,
            item.quantity,
            _canonical(item.price),
            _canonical(item.sale_price) if item.sale_price is not None else None,
            item.color,
            item.size,
        ]
        for item in snapshot
    ]
    serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
