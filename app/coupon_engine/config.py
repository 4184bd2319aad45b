"""
Coupon Engine Configuration

Configuration dataclass with environment variable loading.
"""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class CouponEngineConfig:
    """Configuration for the coupon engine."""

    # Localisation
    default_currency: str = "ILS"
    default_locale: str = "en"

    # Stacking
    replace_exclusive: bool = False  # stackable coupon may evict a non-stackable one

    # Auto-apply
    auto_apply_enabled: bool = True

    # Client orchestration
    request_timeout_seconds: float = 8.0
    storage_key: str = "applied_coupons"
    api_base_url: str = "http://localhost:8000"

    # HTTP surface
    rate_limit: str = "30/minute"
    admin_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "CouponEngineConfig":
        """Create config from environment variables."""
        return cls(
            default_currency=os.getenv("DEFAULT_CURRENCY", "ILS").upper(),
            default_locale=os.getenv("DEFAULT_LOCALE", "en").lower(),
            replace_exclusive=os.getenv("COUPON_REPLACE_EXCLUSIVE", "false").lower() == "true",
            auto_apply_enabled=os.getenv("AUTO_APPLY_ENABLED", "true").lower() == "true",
            request_timeout_seconds=float(os.getenv("COUPON_REQUEST_TIMEOUT", "8")),
            storage_key=os.getenv("COUPON_STORAGE_KEY", "applied_coupons"),
            api_base_url=os.getenv("COUPON_API_BASE_URL", "http://localhost:8000"),
            rate_limit=os.getenv("COUPON_RATE_LIMIT", "30/minute"),
            admin_api_key=os.getenv("ADMIN_API_KEY") or None,
        )

    def resolve_locale(self, locale: Optional[str]) -> str:
        """Fall back to the default locale for anything we have no strings for."""
        if locale and locale.lower() in ("en", "he"):
            return locale.lower()
        return self.default_locale
