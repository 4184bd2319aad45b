"""
Coupon Engine Module - coupon evaluation, pricing and stacking for the cart.

Stateless on the server: every request recomputes discounts from the
current cart and the coupon definitions in the database.
"""

from .config import CouponEngineConfig
from .time_service import TimeService
from .models import (
    AppliedCouponSet,
    CartLineItem,
    Coupon,
    CouponValidationResult,
    DiscountType,
    ErrorKind,
    StackAction,
)
from .repository import CouponRepository
from .service import ApplyFailure, ApplySuccess, CouponService

# Singleton instances
_config: CouponEngineConfig = None
_time_service: TimeService = None


def get_config() -> CouponEngineConfig:
    """Get or create the coupon engine config."""
    global _config
    if _config is None:
        _config = CouponEngineConfig.from_env()
    return _config


def get_time_service() -> TimeService:
    """Get or create the time service."""
    global _time_service
    if _time_service is None:
        _time_service = TimeService()
    return _time_service


def get_coupon_service(db) -> CouponService:
    """Build a service bound to a request's DB session."""
    return CouponService(CouponRepository(db), get_config(), get_time_service())


__all__ = [
    'CouponEngineConfig',
    'TimeService',
    'AppliedCouponSet',
    'CartLineItem',
    'Coupon',
    'CouponValidationResult',
    'DiscountType',
    'ErrorKind',
    'StackAction',
    'CouponRepository',
    'CouponService',
    'ApplySuccess',
    'ApplyFailure',
    'get_config',
    'get_time_service',
    'get_coupon_service',
]
