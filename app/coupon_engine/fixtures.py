"""
Demo coupon definitions and cart, used by `app.cli init-db --seed` and tests.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .time_service import utcnow

DEMO_CART: List[Dict[str, Any]] = [
    {"sku": "1234-5678", "quantity": 2, "price": 300, "salePrice": 250, "color": "black", "size": "41"},
    {"sku": "2345-6789", "quantity": 1, "price": 150, "color": "red", "size": "M"},
]


def demo_coupons(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Coupon rows with expiry windows relative to `now`."""
    now = now or utcnow()
    next_month = now + timedelta(days=30)
    yesterday = now - timedelta(days=1)
    return [
        {
            "id": "coupon-1",
            "code": "SAVE20",
            "name_en": "20% Off",
            "name_he": "20% הנחה",
            "description_en": "Get 20% off your order",
            "description_he": "קבלו 20% הנחה על ההזמנה",
            "discount_type": "percent_all",
            "discount_value": 20,
            "stackable": False,
            "min_cart_value": 100,
            "expires_at": next_month,
        },
        {
            "id": "coupon-2",
            "code": "FIXED50",
            "name_en": "50 ILS Off",
            "name_he": 'הנחה 50 ש"ח',
            "description_en": "Get 50 ILS off",
            "description_he": 'קבלו 50 ש"ח הנחה',
            "discount_type": "fixed",
            "discount_value": 50,
            "stackable": True,
            "min_cart_value": 200,
            "expires_at": next_month,
        },
        {
            "id": "coupon-3",
            "code": "BOGO50",
            "name_en": "Buy 1 Get 1 50%",
            "name_he": "קנה 1 קבל 1 ב-50%",
            "description_en": "Buy 1 Get 1 at 50% off",
            "description_he": "קנה 1 קבל 1 ב-50% הנחה",
            "discount_type": "bogo",
            "discount_value": 50,
            "bogo_buy_quantity": 1,
            "bogo_get_quantity": 1,
            "stackable": False,
            "expires_at": next_month,
        },
        {
            "id": "coupon-4",
            "code": "EXPIRED",
            "name_en": "Expired Coupon",
            "name_he": "קופון פג תוקף",
            "discount_type": "percent_all",
            "discount_value": 10,
            "expires_at": yesterday,
        },
        {
            "id": "coupon-5",
            "code": "INACTIVE",
            "name_en": "Inactive Coupon",
            "name_he": "קופון לא פעיל",
            "discount_type": "percent_all",
            "discount_value": 10,
            "is_active": False,
            "expires_at": next_month,
        },
    ]
