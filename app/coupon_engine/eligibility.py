"""
Coupon Lookup & Eligibility Check

Resolves a code to a coupon definition and runs the eligibility rules in a
fixed order. The first failing rule wins so the message shown to the
shopper is never ambiguous.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from . import messages as msg
from .models import (
    CartLineItem,
    Coupon,
    CouponValidationResult,
    ErrorKind,
    Messages,
    StackAction,
    StackDecision,
    normalize_code,
)
from .snapshot import calculate_subtotal
from .stacking import resolve_stack
from .time_service import to_naive_utc

logger = logging.getLogger(__name__)

CouponLookup = Callable[[str], Optional[Coupon]]
RedemptionCounter = Callable[[Coupon, str], int]


@dataclass
class EligibilityOutcome:
    """Result of an eligibility check: a coupon, or an error kind."""

    code: str
    coupon: Optional[Coupon] = None
    error: Optional[ErrorKind] = None
    messages: Messages = field(default_factory=dict)
    already_applied: bool = False
    decision: Optional[StackDecision] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, code: str, error: ErrorKind, messages: Optional[Messages] = None,
                coupon: Optional[Coupon] = None) -> "EligibilityOutcome":
        return cls(
            code=code,
            coupon=coupon,
            error=error,
            messages=messages or msg.error_messages(error),
        )


def evaluate_rules(
    coupon: Coupon,
    snapshot: Sequence[CartLineItem],
    *,
    now: datetime,
    currency: Optional[str] = None,
    user_identifier: Optional[str] = None,
    redemptions: Optional[RedemptionCounter] = None,
) -> Optional[EligibilityOutcome]:
    """
    Definition-level rules: active window, usage limits, user requirement,
    minimum cart value. Returns the failure, or None when the coupon is eligible.
    """
    code = coupon.code

    if not coupon.is_active:
        return EligibilityOutcome.failure(code, ErrorKind.COUPON_INACTIVE, coupon=coupon)

    starts_at = to_naive_utc(coupon.starts_at)
    if starts_at and starts_at > now:
        return EligibilityOutcome.failure(code, ErrorKind.COUPON_INACTIVE, dict(msg.STARTS_LATER), coupon)

    expires_at = to_naive_utc(coupon.expires_at)
    if expires_at and expires_at < now:
        return EligibilityOutcome.failure(code, ErrorKind.COUPON_EXPIRED, coupon=coupon)

    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        return EligibilityOutcome.failure(code, ErrorKind.COUPON_USAGE_EXCEEDED, coupon=coupon)

    user = (user_identifier or "").strip()
    if coupon.requires_user:
        if not user:
            return EligibilityOutcome.failure(code, ErrorKind.MISSING_USER_IDENTIFIER, coupon=coupon)
        if coupon.usage_limit_per_user is not None and redemptions is not None:
            if redemptions(coupon, user) >= coupon.usage_limit_per_user:
                return EligibilityOutcome.failure(
                    code, ErrorKind.COUPON_USAGE_PER_USER_EXCEEDED, coupon=coupon
                )

    if coupon.min_cart_value is not None:
        subtotal = calculate_subtotal(snapshot)
        if subtotal < coupon.min_cart_value:
            return EligibilityOutcome.failure(
                code,
                ErrorKind.MIN_CART_NOT_MET,
                msg.min_cart_messages(coupon.min_cart_value, currency),
                coupon,
            )

    return None


def check_eligibility(
    code: Optional[str],
    snapshot: Sequence[CartLineItem],
    *,
    lookup: CouponLookup,
    now: datetime,
    currency: Optional[str] = None,
    user_identifier: Optional[str] = None,
    existing: Sequence[CouponValidationResult] = (),
    redemptions: Optional[RedemptionCounter] = None,
    replace_exclusive: bool = False,
) -> EligibilityOutcome:
    """Full eligibility check for a code against a cart and the applied set."""
    normalized = normalize_code(code)
    if not normalized:
        return EligibilityOutcome.failure(normalized, ErrorKind.EMPTY_CODE)

    coupon = lookup(normalized)
    if coupon is None:
        return EligibilityOutcome.failure(normalized, ErrorKind.COUPON_NOT_FOUND)

    failure = evaluate_rules(
        coupon,
        snapshot,
        now=now,
        currency=currency,
        user_identifier=user_identifier,
        redemptions=redemptions,
    )
    if failure is not None:
        logger.debug(f"Coupon {normalized} ineligible: {failure.error.value}")
        return failure

    existing_codes: List[str] = [entry.code for entry in existing]
    if normalized in existing_codes:
        return EligibilityOutcome(
            code=normalized,
            coupon=coupon,
            messages=dict(msg.ALREADY_APPLIED),
            already_applied=True,
        )

    decision = resolve_stack(coupon, existing, replace_exclusive=replace_exclusive)
    if decision.action == StackAction.REJECT:
        return EligibilityOutcome(
            code=normalized,
            coupon=coupon,
            error=decision.reason,
            messages=msg.incompatible_messages(normalized, existing_codes),
            decision=decision,
        )

    return EligibilityOutcome(code=normalized, coupon=coupon, decision=decision)
