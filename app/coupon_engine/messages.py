"""
Locale message tables for coupon outcomes.

Messages are data, keyed by error kind and locale. The UI shows them verbatim.
"""

from decimal import Decimal
from typing import Dict, Iterable, Optional

from .models import Coupon, DiscountType, ErrorKind, Messages

SUPPORTED_LOCALES = ("en", "he")

CURRENCY_SYMBOLS = {
    "ILS": "₪",
    "USD": "$",
    "EUR": "€",
}

GENERIC_INVALID: Messages = {
    "en": "Invalid or expired coupon.",
    "he": "קופון זה אינו תקף או שפג תוקפו.",
}

ERROR_MESSAGES: Dict[ErrorKind, Messages] = {
    ErrorKind.EMPTY_CODE: {
        "en": "Please enter a coupon code.",
        "he": "אנא הזן קוד קופון.",
    },
    ErrorKind.COUPON_NOT_FOUND: GENERIC_INVALID,
    ErrorKind.COUPON_INACTIVE: {
        "en": "This coupon is not active at the moment.",
        "he": "קופון זה אינו פעיל כעת.",
    },
    ErrorKind.COUPON_EXPIRED: {
        "en": "This coupon has expired.",
        "he": "תוקף הקופון פג.",
    },
    ErrorKind.COUPON_USAGE_EXCEEDED: {
        "en": "This coupon has reached its usage limit.",
        "he": "קופון זה מיצה את כמות השימושים המותרת.",
    },
    ErrorKind.COUPON_USAGE_PER_USER_EXCEEDED: {
        "en": "You have already used this coupon the maximum number of times.",
        "he": "הגעת לכמות השימושים המותרת בקופון זה.",
    },
    ErrorKind.MISSING_USER_IDENTIFIER: {
        "en": "Please sign in to use this coupon.",
        "he": "אנא התחבר כדי להשתמש בקופון זה.",
    },
    ErrorKind.COUPON_NOT_APPLICABLE: {
        "en": "This coupon does not apply to the items in your cart.",
        "he": "קופון זה אינו חל על הפריטים בעגלה.",
    },
    ErrorKind.NO_AUTO_COUPON_AVAILABLE: {
        "en": "No automatic coupons available for this cart.",
        "he": "לא נמצאו קופונים אוטומטיים עבור עגלה זו.",
    },
    ErrorKind.INVALID_REQUEST: {
        "en": "Invalid coupon request payload.",
        "he": "נתוני בקשת הקופון שגויים.",
    },
    ErrorKind.UNKNOWN_ERROR: {
        "en": "Unable to apply coupon at the moment.",
        "he": "לא ניתן להחיל את הקופון כעת.",
    },
}

EMPTY_CART: Messages = {
    "en": "Your cart is empty – add items before applying a coupon.",
    "he": "העגלה שלך ריקה – הוסף פריטים לפני החלת קופון.",
}

APPLIED: Messages = {
    "en": "Coupon applied successfully.",
    "he": "הקופון הופעל בהצלחה.",
}

ALREADY_APPLIED: Messages = {
    "en": "This coupon is already applied.",
    "he": "קופון זה כבר הופעל.",
}

STARTS_LATER: Messages = {
    "en": "This coupon will be active soon. Please try again later.",
    "he": "קופון זה יופעל בקרוב. אנא נסה במועד מאוחר יותר.",
}


def currency_symbol(currency: Optional[str]) -> str:
    return CURRENCY_SYMBOLS.get((currency or "").upper(), CURRENCY_SYMBOLS["ILS"])


def format_amount(amount: Decimal, currency: Optional[str]) -> str:
    normalized = amount.normalize()
    text = f"{normalized:f}" if normalized == normalized.to_integral() else f"{amount:.2f}"
    return f"{currency_symbol(currency)}{text}"


def error_messages(kind: Optional[ErrorKind]) -> Messages:
    """Locale table for an error kind, falling back to the generic message."""
    return dict(ERROR_MESSAGES.get(kind, GENERIC_INVALID))


def min_cart_messages(min_cart_value: Decimal, currency: Optional[str]) -> Messages:
    value = format_amount(min_cart_value, currency)
    return {
        "en": f"Add more items to reach {value} and unlock this coupon.",
        "he": f"הוסף פריטים נוספים כדי להגיע לסך {value} ולהפעיל את הקופון.",
    }


def incompatible_messages(code: str, existing_codes: Iterable[str]) -> Messages:
    joined = ", ".join(existing_codes)
    return {
        "en": f"Coupon {code} cannot be stacked with current coupons ({joined}).",
        "he": f"קופון {code} אינו ניתן לשילוב עם קופונים קיימים ({joined}).",
    }


def override_warning(code: str, replaced_codes: Iterable[str]) -> Messages:
    joined = ", ".join(replaced_codes)
    return {
        "en": f"Coupon {code} overrides your current discount ({joined}).",
        "he": f"קופון {code} מחליף את ההנחה הנוכחית שלך ({joined}).",
    }


def discount_label(coupon: Coupon, currency: Optional[str]) -> Messages:
    """Short badge text shown next to an applied coupon."""
    value = coupon.discount_value or Decimal("0")
    if coupon.discount_type in (DiscountType.PERCENT_ALL, DiscountType.PERCENT_SPECIFIC):
        pct = f"{value.normalize():f}"
        return {"en": f"{pct}% OFF", "he": f"{pct}% הנחה"}
    if coupon.discount_type == DiscountType.FIXED:
        amount = format_amount(value, currency)
        return {"en": f"{amount} off", "he": f"{amount} הנחה"}
    if coupon.discount_type == DiscountType.BOGO:
        buy = coupon.bogo_buy_quantity or 1
        get = coupon.bogo_get_quantity or 1
        if value >= 100:
            return {"en": f"Buy {buy}, get {get} free", "he": f"קנה {buy}, קבל {get} חינם"}
        pct = f"{value.normalize():f}"
        return {
            "en": f"Buy {buy}, get {get} at {pct}% off",
            "he": f"קנה {buy}, קבל {get} ב-{pct}% הנחה",
        }
    return {"en": "Coupon applied", "he": "קופון הופעל"}


def pick(messages: Messages, locale: str) -> str:
    """Single string for a locale, used for inline status text."""
    return messages.get(locale) or messages.get("en") or GENERIC_INVALID["en"]
