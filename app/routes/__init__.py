"""
Route modules for the storefront coupon service.
"""

from .coupons import router as coupons_router
from .admin_coupons import router as admin_coupons_router

__all__ = ["coupons_router", "admin_coupons_router"]
