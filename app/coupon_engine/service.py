"""
Coupon Service

Server-side entry points behind /api/coupons/*: apply a code, pick an
automatic coupon, and replay a stored code list against the current cart.
The server holds no applied-coupon state; the client sends its codes and
every discount is recomputed from the current cart and definitions.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from . import messages as msg
from .auto_apply import select_auto_apply
from .calculator import compute_discount
from .config import CouponEngineConfig
from .eligibility import CouponLookup, check_eligibility
from .models import (
    AppliedCouponSet,
    CartLineItem,
    Coupon,
    CouponValidationResult,
    ErrorKind,
    Messages,
    StackAction,
    normalize_code,
)
from .money import ZERO, money_float
from .repository import CouponRepository
from .snapshot import CartInput, build_snapshot, calculate_subtotal
from .stacking import apply_decision
from .time_service import TimeService

logger = logging.getLogger(__name__)


@dataclass
class ApplySuccess:
    """Successful apply: the priced coupon plus the resulting applied set."""

    result: CouponValidationResult
    subtotal: Decimal
    action: str
    applied: List[CouponValidationResult] = field(default_factory=list)
    replaced_codes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    success = True

    @property
    def new_subtotal(self) -> Decimal:
        return max(self.subtotal - self.result.discount_amount, ZERO)

    @property
    def already_applied(self) -> bool:
        return self.action == "already_applied"

    def to_dict(self) -> Dict[str, Any]:
        payload = self.result.to_dict()
        payload.update(
            {
                "success": True,
                "subtotal": money_float(self.subtotal),
                "newSubtotal": money_float(self.new_subtotal),
                "warnings": list(self.warnings),
                "action": self.action,
                "alreadyApplied": self.already_applied,
                "replacedCodes": list(self.replaced_codes),
                "appliedCodes": [entry.code for entry in self.applied],
            }
        )
        return payload


@dataclass
class ApplyFailure:
    code: ErrorKind
    messages: Messages
    details: Optional[Dict[str, Any]] = None

    success = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "code": self.code.value,
            "messages": self.messages,
        }
        if self.details:
            payload["details"] = self.details
        return payload


ApplyOutcome = Union[ApplySuccess, ApplyFailure]


class CouponService:
    """Validates, prices and stacks coupons for a cart snapshot."""

    def __init__(
        self,
        repository: CouponRepository,
        config: CouponEngineConfig,
        time_service: TimeService,
    ):
        self.repository = repository
        self.config = config
        self.time_service = time_service

    def apply(
        self,
        code: str,
        cart_items: Iterable[CartInput],
        *,
        currency: Optional[str] = None,
        locale: Optional[str] = None,
        user_identifier: Optional[str] = None,
        existing_codes: Sequence[str] = (),
    ) -> ApplyOutcome:
        """User-initiated apply of one code on top of the client's applied codes."""
        snapshot = build_snapshot(cart_items)
        currency = currency or self.config.default_currency
        existing = self.revalidate(
            existing_codes,
            snapshot,
            currency=currency,
            user_identifier=user_identifier,
        )
        return self._apply(
            code,
            snapshot,
            lookup=self.repository.get_by_code,
            currency=currency,
            locale=self.config.resolve_locale(locale),
            user_identifier=user_identifier,
            existing=existing.entries,
        )

    def test_coupon(
        self,
        coupon: Coupon,
        cart_items: Iterable[CartInput],
        *,
        currency: Optional[str] = None,
        locale: Optional[str] = None,
        user_identifier: Optional[str] = None,
    ) -> ApplyOutcome:
        """Admin preview: evaluate a definition against a sample cart."""
        return self._apply(
            coupon.code,
            build_snapshot(cart_items),
            lookup=lambda code: coupon if code == coupon.code else None,
            currency=currency or self.config.default_currency,
            locale=self.config.resolve_locale(locale),
            user_identifier=user_identifier,
            existing=[],
        )

    def auto_apply(
        self,
        cart_items: Iterable[CartInput],
        *,
        currency: Optional[str] = None,
        locale: Optional[str] = None,
        user_identifier: Optional[str] = None,
    ) -> Optional[ApplySuccess]:
        """Best automatic coupon for a cart with nothing applied, if any."""
        if not self.config.auto_apply_enabled:
            return None

        snapshot = build_snapshot(cart_items)
        if not snapshot:
            return None

        currency = currency or self.config.default_currency
        best = select_auto_apply(
            self.repository.list_auto_apply(),
            snapshot,
            now=self.time_service.now(),
            user_identifier=user_identifier,
            currency=currency,
            redemptions=self.repository.get_redemption_count,
        )
        if best is None:
            return None

        result = self._price(best, snapshot, currency, msg.APPLIED)
        return ApplySuccess(
            result=result,
            subtotal=calculate_subtotal(snapshot),
            action="added",
            applied=[result],
        )

    def revalidate(
        self,
        codes: Sequence[str],
        cart_items: Iterable[Union[CartInput, CartLineItem]],
        *,
        currency: Optional[str] = None,
        user_identifier: Optional[str] = None,
    ) -> AppliedCouponSet:
        """
        Replay stored codes in their original order against the current cart.

        Each code sees the coupons kept before it, so stacking decisions are
        the same as when the codes were first applied. Codes that no longer
        qualify are dropped quietly.
        """
        ordered = _dedupe(codes)
        snapshot = build_snapshot(cart_items)
        if not ordered:
            return AppliedCouponSet()
        if not snapshot:
            return AppliedCouponSet(dropped_codes=ordered)

        currency = currency or self.config.default_currency
        definitions = self.repository.get_by_codes(ordered)
        now = self.time_service.now()
        entries: List[CouponValidationResult] = []

        for code in ordered:
            outcome = check_eligibility(
                code,
                snapshot,
                lookup=definitions.get,
                now=now,
                currency=currency,
                user_identifier=user_identifier,
                existing=entries,
                redemptions=self.repository.get_redemption_count,
                replace_exclusive=self.config.replace_exclusive,
            )
            if not outcome.ok or outcome.already_applied:
                continue

            result = self._price(outcome.coupon, snapshot, currency, msg.APPLIED)
            if result.discount_amount <= 0:
                continue
            entries = apply_decision(entries, result, outcome.decision)

        kept = {entry.code for entry in entries}
        dropped = [code for code in ordered if code not in kept]
        if dropped:
            logger.info(f"Revalidation dropped {dropped}, kept {[e.code for e in entries]}")
        return AppliedCouponSet(entries=entries, dropped_codes=dropped)

    def record_redemption(self, codes: Sequence[str], user_identifier: Optional[str] = None) -> List[str]:
        """Count a completed order against each coupon's usage limits."""
        recorded = []
        for code in _dedupe(codes):
            if self.repository.record_redemption(code, user_identifier) is not None:
                recorded.append(code)
        return recorded

    def _apply(
        self,
        code: str,
        snapshot: List[CartLineItem],
        *,
        lookup: CouponLookup,
        currency: str,
        locale: str,
        user_identifier: Optional[str],
        existing: List[CouponValidationResult],
    ) -> ApplyOutcome:
        outcome = check_eligibility(
            code,
            snapshot,
            lookup=lookup,
            now=self.time_service.now(),
            currency=currency,
            user_identifier=user_identifier,
            existing=existing,
            redemptions=self.repository.get_redemption_count,
            replace_exclusive=self.config.replace_exclusive,
        )
        if not outcome.ok:
            logger.info(f"Coupon {outcome.code or '<empty>'} rejected: {outcome.error.value}")
            return ApplyFailure(code=outcome.error, messages=outcome.messages)

        subtotal = calculate_subtotal(snapshot)

        if outcome.already_applied:
            result = next(entry for entry in existing if entry.code == outcome.code)
            result = CouponValidationResult(
                coupon=result.coupon,
                discount_amount=result.discount_amount,
                discounted_items=result.discounted_items,
                messages=dict(msg.ALREADY_APPLIED),
                discount_label=result.discount_label,
            )
            return ApplySuccess(
                result=result,
                subtotal=subtotal,
                action="already_applied",
                applied=list(existing),
            )

        if not snapshot:
            return ApplyFailure(code=ErrorKind.COUPON_NOT_APPLICABLE, messages=dict(msg.EMPTY_CART))

        result = self._price(outcome.coupon, snapshot, currency, msg.APPLIED)
        if result.discount_amount <= 0:
            return ApplyFailure(
                code=ErrorKind.COUPON_NOT_APPLICABLE,
                messages=msg.error_messages(ErrorKind.COUPON_NOT_APPLICABLE),
            )

        decision = outcome.decision
        applied = apply_decision(existing, result, decision)
        warnings = []
        action = "added"
        if decision.action == StackAction.REPLACE_ALL and decision.replaced_codes:
            action = "replaced"
            warnings.append(msg.pick(msg.override_warning(result.code, decision.replaced_codes), locale))

        logger.info(
            f"Coupon {result.code} {action}: discount={result.discount_amount} "
            f"subtotal={subtotal} applied={[e.code for e in applied]}"
        )
        return ApplySuccess(
            result=result,
            subtotal=subtotal,
            action=action,
            applied=applied,
            replaced_codes=list(decision.replaced_codes),
            warnings=warnings,
        )

    def _price(
        self,
        coupon: Coupon,
        snapshot: List[CartLineItem],
        currency: str,
        messages: Messages,
    ) -> CouponValidationResult:
        computation = compute_discount(coupon, snapshot)
        return CouponValidationResult(
            coupon=coupon,
            discount_amount=computation.discount_amount,
            discounted_items=computation.discounted_items,
            messages=dict(messages),
            discount_label=msg.discount_label(coupon, currency),
        )


def _dedupe(codes: Iterable[str]) -> List[str]:
    """Normalized codes, first occurrence wins, empties removed."""
    seen = []
    for code in codes or []:
        normalized = normalize_code(code) if isinstance(code, str) else ""
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen
