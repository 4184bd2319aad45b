"""
Stacking / Override Resolver

Decides how a candidate coupon joins the coupons already applied to a cart.

Rules:
- Nothing applied yet: ADD
- Candidate stackable and everything applied is stackable: ADD (append)
- Candidate not stackable: REPLACE_ALL (it evicts every applied coupon)
- Candidate stackable but a non-stackable coupon is applied: REJECT with
  INCOMPATIBLE_WITH_EXISTING, unless replace_exclusive is set, in which case
  the newer coupon evicts the exclusive one

Each coupon is priced independently against the same pre-discount snapshot;
discounts never compound on each other's reduced price.
"""

from typing import List, Sequence

from .models import (
    Coupon,
    CouponValidationResult,
    ErrorKind,
    StackAction,
    StackDecision,
)


def resolve_stack(
    candidate: Coupon,
    existing: Sequence[CouponValidationResult],
    replace_exclusive: bool = False,
) -> StackDecision:
    """ADD, REJECT or REPLACE_ALL for a candidate against the applied set."""
    existing_codes = [entry.code for entry in existing if entry.code != candidate.code]
    others = [entry for entry in existing if entry.code != candidate.code]

    if not others:
        return StackDecision(action=StackAction.ADD)

    if not candidate.stackable:
        return StackDecision(action=StackAction.REPLACE_ALL, replaced_codes=existing_codes)

    if all(entry.coupon.stackable for entry in others):
        return StackDecision(action=StackAction.ADD)

    if replace_exclusive:
        return StackDecision(action=StackAction.REPLACE_ALL, replaced_codes=existing_codes)

    return StackDecision(
        action=StackAction.REJECT,
        reason=ErrorKind.INCOMPATIBLE_WITH_EXISTING,
    )


def apply_decision(
    existing: Sequence[CouponValidationResult],
    result: CouponValidationResult,
    decision: StackDecision,
) -> List[CouponValidationResult]:
    """New ordered entries after committing a decision."""
    if decision.action == StackAction.REJECT:
        return list(existing)
    if decision.action == StackAction.REPLACE_ALL:
        return [result]

    entries = list(existing)
    for index, entry in enumerate(entries):
        if entry.code == result.code:
            entries[index] = result
            return entries
    entries.append(result)
    return entries
