"""
Coupon engine data model.

Cart snapshot lines, coupon definitions and the results the engine produces.
Amounts are Decimal throughout; rendering to JSON floats happens in to_dict().
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .money import ZERO, money_float, round_money, to_decimal

Messages = Dict[str, str]


class DiscountType(str, Enum):
    PERCENT_ALL = "percent_all"
    PERCENT_SPECIFIC = "percent_specific"
    FIXED = "fixed"
    BOGO = "bogo"


class ErrorKind(str, Enum):
    """Failure codes returned to the cart UI."""

    EMPTY_CODE = "EMPTY_CODE"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    COUPON_INACTIVE = "COUPON_INACTIVE"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_USAGE_EXCEEDED = "COUPON_USAGE_EXCEEDED"
    COUPON_USAGE_PER_USER_EXCEEDED = "COUPON_USAGE_PER_USER_EXCEEDED"
    MISSING_USER_IDENTIFIER = "MISSING_USER_IDENTIFIER"
    MIN_CART_NOT_MET = "MIN_CART_NOT_MET"
    INCOMPATIBLE_WITH_EXISTING = "INCOMPATIBLE_WITH_EXISTING"
    COUPON_NOT_APPLICABLE = "COUPON_NOT_APPLICABLE"
    NO_AUTO_COUPON_AVAILABLE = "NO_AUTO_COUPON_AVAILABLE"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class StackAction(str, Enum):
    ADD = "ADD"
    REJECT = "REJECT"
    REPLACE_ALL = "REPLACE_ALL"


@dataclass(frozen=True)
class CartLineItem:
    """One cart line, reduced to what discount calculation needs."""

    sku: str
    quantity: int
    price: Decimal
    sale_price: Optional[Decimal] = None
    color: Optional[str] = None
    size: Optional[str] = None

    @property
    def group_key(self) -> tuple:
        return (self.sku, self.color or "", self.size or "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sku": self.sku,
            "quantity": self.quantity,
            "price": str(self.price),
            "salePrice": str(self.sale_price) if self.sale_price is not None else None,
            "color": self.color,
            "size": self.size,
        }


@dataclass
class Coupon:
    """Coupon definition as owned by the admin CMS. Read-only to the engine."""

    code: str
    discount_type: DiscountType
    discount_value: Optional[Decimal] = None
    id: Optional[str] = None
    name: Messages = field(default_factory=dict)
    description: Dict[str, Optional[str]] = field(default_factory=dict)
    bogo_buy_quantity: Optional[int] = None
    bogo_get_quantity: Optional[int] = None
    bogo_eligible_skus: List[str] = field(default_factory=list)
    eligible_products: List[str] = field(default_factory=list)
    stackable: bool = False
    min_cart_value: Optional[Decimal] = None
    auto_apply: bool = False
    is_active: bool = True
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    per_user_only: bool = False
    usage_limit: Optional[int] = None
    usage_count: int = 0
    usage_limit_per_user: Optional[int] = None
    priority: int = 0

    def __post_init__(self):
        self.code = normalize_code(self.code)
        self.discount_type = DiscountType(self.discount_type)
        self.discount_value = to_decimal(self.discount_value, default=None)
        self.min_cart_value = to_decimal(self.min_cart_value, default=None)

    @property
    def requires_user(self) -> bool:
        return self.per_user_only or self.usage_limit_per_user is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Coupon":
        """Build from a `coupons` table row mapping."""
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            code=row["code"],
            name={"en": row.get("name_en") or "", "he": row.get("name_he") or ""},
            description={"en": row.get("description_en"), "he": row.get("description_he")},
            discount_type=row["discount_type"],
            discount_value=row.get("discount_value"),
            bogo_buy_quantity=row.get("bogo_buy_quantity"),
            bogo_get_quantity=row.get("bogo_get_quantity"),
            bogo_eligible_skus=_split_list(row.get("bogo_eligible_skus")),
            eligible_products=_split_list(row.get("eligible_products")),
            stackable=bool(row.get("stackable")),
            min_cart_value=row.get("min_cart_value"),
            auto_apply=bool(row.get("auto_apply")),
            is_active=bool(row.get("is_active")),
            starts_at=row.get("starts_at"),
            expires_at=row.get("expires_at"),
            per_user_only=bool(row.get("per_user_only")),
            usage_limit=row.get("usage_limit"),
            usage_count=row.get("usage_count") or 0,
            usage_limit_per_user=row.get("usage_limit_per_user"),
            priority=row.get("priority") or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "discountType": self.discount_type.value,
            "discountValue": float(self.discount_value) if self.discount_value is not None else None,
            "bogoBuyQuantity": self.bogo_buy_quantity,
            "bogoGetQuantity": self.bogo_get_quantity,
            "bogoEligibleSkus": list(self.bogo_eligible_skus),
            "eligibleProducts": list(self.eligible_products),
            "stackable": self.stackable,
            "minCartValue": float(self.min_cart_value) if self.min_cart_value is not None else None,
            "autoApply": self.auto_apply,
            "isActive": self.is_active,
            "startsAt": self.starts_at.isoformat() if self.starts_at else None,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "perUserOnly": self.per_user_only,
            "usageLimit": self.usage_limit,
            "usageCount": self.usage_count,
            "usageLimitPerUser": self.usage_limit_per_user,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class DiscountedItem:
    """Per-line share of a coupon discount, kept for receipts."""

    sku: str
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    color: Optional[str] = None
    size: Optional[str] = None

    @property
    def discount_per_unit(self) -> Decimal:
        if self.quantity <= 0:
            return ZERO
        return round_money(self.discount_amount / self.quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sku": self.sku,
            "color": self.color,
            "size": self.size,
            "quantity": self.quantity,
            "unitPrice": money_float(self.unit_price),
            "discountAmount": money_float(self.discount_amount),
            "discountPerUnit": money_float(self.discount_per_unit),
        }


@dataclass(frozen=True)
class DiscountComputation:
    discount_amount: Decimal
    discounted_items: List[DiscountedItem]


@dataclass
class CouponValidationResult:
    """One applied coupon, priced against the current snapshot."""

    coupon: Coupon
    discount_amount: Decimal
    discounted_items: List[DiscountedItem]
    messages: Messages
    discount_label: Messages = field(default_factory=dict)

    @property
    def code(self) -> str:
        return self.coupon.code

    def to_dict(self) -> Dict[str, Any]:
        coupon = self.coupon.to_dict()
        coupon["discountAmount"] = money_float(self.discount_amount)
        coupon["discountLabel"] = self.discount_label
        return {
            "coupon": coupon,
            "discountAmount": money_float(self.discount_amount),
            "discountedItems": [item.to_dict() for item in self.discounted_items],
            "messages": self.messages,
        }


@dataclass(frozen=True)
class StackDecision:
    action: StackAction
    reason: Optional[ErrorKind] = None
    replaced_codes: List[str] = field(default_factory=list)


@dataclass
class AppliedCouponSet:
    """Ordered coupons in application order. Codes are unique."""

    entries: List[CouponValidationResult] = field(default_factory=list)
    dropped_codes: List[str] = field(default_factory=list)

    @property
    def codes(self) -> List[str]:
        return [entry.code for entry in self.entries]

    @property
    def discount_total(self) -> Decimal:
        return sum((entry.discount_amount for entry in self.entries), ZERO)

    def is_consistent(self) -> bool:
        """Either all stackable, or one non-stackable entry alone."""
        if len(set(self.codes)) != len(self.codes):
            return False
        if any(not entry.coupon.stackable for entry in self.entries):
            return len(self.entries) == 1
        return True

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _split_list(value: Any) -> List[str]:
    """Stored as comma separated text; accept lists too."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(v).strip() for v in value if str(v).strip()]
