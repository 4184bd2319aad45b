"""Unit tests for coupon lookup and eligibility rules."""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.coupon_engine.eligibility import check_eligibility
from app.coupon_engine.models import (
    Coupon,
    CouponValidationResult,
    ErrorKind,
    StackAction,
)
from app.coupon_engine.snapshot import build_snapshot

from conftest import FROZEN_NOW


def catalog(*coupons):
    by_code = {coupon.code: coupon for coupon in coupons}
    return by_code.get


def applied(coupon):
    return CouponValidationResult(
        coupon=coupon,
        discount_amount=Decimal("10"),
        discounted_items=[],
        messages={},
    )


@pytest.fixture
def save20():
    return Coupon(code="SAVE20", discount_type="percent_all", discount_value=20, min_cart_value=100)


@pytest.fixture
def snapshot(cart_500):
    return build_snapshot(cart_500)


class TestLookup:
    """Tests for code normalization and lookup."""

    def test_empty_code(self, snapshot):
        outcome = check_eligibility("   ", snapshot, lookup=catalog(), now=FROZEN_NOW)
        assert outcome.error == ErrorKind.EMPTY_CODE
        assert outcome.messages["en"] == "Please enter a coupon code."

    def test_unknown_code(self, snapshot):
        outcome = check_eligibility("NOPE", snapshot, lookup=catalog(), now=FROZEN_NOW)
        assert outcome.error == ErrorKind.COUPON_NOT_FOUND
        assert set(outcome.messages) == {"en", "he"}

    def test_code_is_trimmed_and_uppercased(self, snapshot, save20):
        outcome = check_eligibility(" save20 ", snapshot, lookup=catalog(save20), now=FROZEN_NOW)
        assert outcome.ok
        assert outcome.code == "SAVE20"
        assert outcome.decision.action == StackAction.ADD


class TestRules:
    """Tests for definition rules, first failure wins."""

    def test_inactive(self, snapshot):
        coupon = Coupon(code="OFF", discount_type="fixed", discount_value=5, is_active=False)
        outcome = check_eligibility("OFF", snapshot, lookup=catalog(coupon), now=FROZEN_NOW)
        assert outcome.error == ErrorKind.COUPON_INACTIVE

    def test_not_started_yet(self, snapshot):
        coupon = Coupon(
            code="SOON",
            discount_type="fixed",
            discount_value=5,
            starts_at=FROZEN_NOW + timedelta(hours=1),
        )
        outcome = check_eligibility("SOON", snapshot, lookup=catalog(coupon), now=FROZEN_NOW)
        assert outcome.error == ErrorKind.COUPON_INACTIVE
        assert "active soon" in outcome.messages["en"]

    def test_scenario_e_expired_regardless_of_cart(self):
        """Test an expired coupon fails with COUPON_EXPIRED even on an empty cart."""
        coupon = Coupon(
            code="EXPIRED",
            discount_type="percent_all",
            discount_value=10,
            expires_at=FROZEN_NOW - timedelta(days=1),
        )
        for snapshot in ([], build_snapshot([{"sku": "A", "quantity": 9, "price": 999}])):
            outcome = check_eligibility("EXPIRED", snapshot, lookup=catalog(coupon), now=FROZEN_NOW)
            assert outcome.error == ErrorKind.COUPON_EXPIRED

    def test_inactive_checked_before_expiry(self, snapshot):
        coupon = Coupon(
            code="BOTH",
            discount_type="fixed",
            discount_value=5,
            is_active=False,
            expires_at=FROZEN_NOW - timedelta(days=1),
        )
        outcome = check_eligibility("BOTH", snapshot, lookup=catalog(coupon), now=FROZEN_NOW)
        assert outcome.error == ErrorKind.COUPON_INACTIVE

    def test_usage_limit_reached(self, snapshot):
        coupon = Coupon(code="ONCE", discount_type="fixed", discount_value=5, usage_limit=10, usage_count=10)
        outcome = check_eligibility("ONCE", snapshot, lookup=catalog(coupon), now=FROZEN_NOW)
        assert outcome.error == ErrorKind.COUPON_USAGE_EXCEEDED

    def test_per_user_requires_identifier(self, snapshot):
        coupon = Coupon(code="VIP", discount_type="fixed", discount_value=5, per_user_only=True)
        outcome = check_eligibility("VIP", snapshot, lookup=catalog(coupon), now=FROZEN_NOW)
        assert outcome.error == ErrorKind.MISSING_USER_IDENTIFIER

        outcome = check_eligibility(
            "VIP", snapshot, lookup=catalog(coupon), now=FROZEN_NOW, user_identifier="user-1"
        )
        assert outcome.ok

    def test_per_user_limit(self, snapshot):
        coupon = Coupon(code="WELCOME", discount_type="fixed", discount_value=5, usage_limit_per_user=1)
        counts = {"user-1": 1, "user-2": 0}

        def redemptions(c, user):
            return counts[user]

        used = check_eligibility(
            "WELCOME", snapshot, lookup=catalog(coupon), now=FROZEN_NOW,
            user_identifier="user-1", redemptions=redemptions,
        )
        fresh = check_eligibility(
            "WELCOME", snapshot, lookup=catalog(coupon), now=FROZEN_NOW,
            user_identifier="user-2", redemptions=redemptions,
        )
        assert used.error == ErrorKind.COUPON_USAGE_PER_USER_EXCEEDED
        assert fresh.ok

    def test_scenario_b_min_cart_not_met(self, cart_150):
        """Test FIXED50 with min 200 fails on a 150 cart, message names the amount."""
        coupon = Coupon(code="FIXED50", discount_type="fixed", discount_value=50, stackable=True, min_cart_value=200)
        outcome = check_eligibility(
            "FIXED50", build_snapshot(cart_150), lookup=catalog(coupon), now=FROZEN_NOW, currency="ILS"
        )
        assert outcome.error == ErrorKind.MIN_CART_NOT_MET
        assert "₪200" in outcome.messages["en"]
        assert "₪200" in outcome.messages["he"]

    def test_min_cart_boundary_is_inclusive(self, save20):
        snapshot = build_snapshot([{"sku": "A", "quantity": 1, "price": 100}])
        assert check_eligibility("SAVE20", snapshot, lookup=catalog(save20), now=FROZEN_NOW).ok


class TestStackingCheck:
    """Tests for the stacking step against applied coupons."""

    def test_already_applied(self, snapshot, save20):
        outcome = check_eligibility(
            "SAVE20", snapshot, lookup=catalog(save20), now=FROZEN_NOW, existing=[applied(save20)]
        )
        assert outcome.ok
        assert outcome.already_applied

    def test_stackable_rejected_by_exclusive(self, snapshot, save20):
        fixed = Coupon(code="FIXED50", discount_type="fixed", discount_value=50, stackable=True)
        outcome = check_eligibility(
            "FIXED50", snapshot, lookup=catalog(save20, fixed), now=FROZEN_NOW, existing=[applied(save20)]
        )
        assert outcome.error == ErrorKind.INCOMPATIBLE_WITH_EXISTING
        assert "SAVE20" in outcome.messages["en"]

    def test_exclusive_replaces_existing(self, snapshot, save20):
        fixed = Coupon(code="FIXED50", discount_type="fixed", discount_value=50, stackable=True)
        outcome = check_eligibility(
            "SAVE20", snapshot, lookup=catalog(save20, fixed), now=FROZEN_NOW, existing=[applied(fixed)]
        )
        assert outcome.ok
        assert outcome.decision.action == StackAction.REPLACE_ALL
        assert outcome.decision.replaced_codes == ["FIXED50"]

    def test_rules_checked_before_stacking(self, snapshot, save20):
        """Test an expired candidate reports expiry, not incompatibility."""
        stale = Coupon(
            code="OLD",
            discount_type="fixed",
            discount_value=5,
            stackable=True,
            expires_at=FROZEN_NOW - timedelta(seconds=1),
        )
        outcome = check_eligibility(
            "OLD", snapshot, lookup=catalog(stale), now=FROZEN_NOW, existing=[applied(save20)]
        )
        assert outcome.error == ErrorKind.COUPON_EXPIRED
