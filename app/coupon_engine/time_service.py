"""
Time Service

Evaluation clock for coupon eligibility. Expiry and start windows are
compared against this clock, never against the time a cart was built.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how coupon windows are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize aware datetimes to naive UTC so comparisons never mix kinds."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class TimeService:
    """Clock abstraction: real time, or a frozen instant for replays and tests."""

    def __init__(self):
        self._frozen_at: Optional[datetime] = None

    def now(self) -> datetime:
        """Returns current evaluation time (real or frozen)."""
        if self._frozen_at is not None:
            return self._frozen_at
        return utcnow()

    def freeze(self, at: datetime) -> None:
        """Pin the clock to a fixed instant."""
        self._frozen_at = to_naive_utc(at)
        logger.info(f"Coupon clock frozen at {self._frozen_at.isoformat()}")

    def unfreeze(self) -> None:
        """Return to wall-clock time."""
        self._frozen_at = None

    def is_frozen(self) -> bool:
        return self._frozen_at is not None

    def get_status(self) -> dict:
        """Get current clock status."""
        return {
            "frozen": self.is_frozen(),
            "now": self.now().isoformat(),
        }
