"""Tests for the client-side revalidation orchestrator."""

import asyncio
import json

import httpx
import pytest

from app.coupon_engine.orchestrator import (
    AUTO_APPLY_MEMORY,
    CartCouponOrchestrator,
    CouponGatewayError,
    HttpCouponGateway,
    LocalCouponGateway,
    Phase,
)
from app.coupon_engine.snapshot import build_snapshot, cart_signature
from app.coupon_engine.storage import CouponCodeStore


class RecordingGateway(LocalCouponGateway):
    """Local gateway that records calls and can hold them until released."""

    def __init__(self, service):
        super().__init__(service)
        self.calls = []
        self.gate = None
        self.started = asyncio.Event()
        self.fail_codes = set()

    async def apply(self, code, snapshot, existing_codes, **kwargs):
        self.calls.append(("apply", code, list(existing_codes), cart_signature(snapshot)))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if code in self.fail_codes:
            raise CouponGatewayError("timeout")
        return await super().apply(code, snapshot, existing_codes, **kwargs)

    async def auto_apply(self, snapshot, **kwargs):
        self.calls.append(("auto", None, [], cart_signature(snapshot)))
        return await super().auto_apply(snapshot, **kwargs)


class BrokenGateway:
    async def apply(self, *args, **kwargs):
        raise CouponGatewayError("connection refused")

    async def auto_apply(self, *args, **kwargs):
        raise CouponGatewayError("connection refused")


@pytest.fixture
def take10(repository):
    return repository.create({"code": "TAKE10", "discount_type": "fixed", "discount_value": 10, "stackable": True})


@pytest.fixture
def gateway(service):
    return RecordingGateway(service)


@pytest.fixture
def store():
    return CouponCodeStore()


@pytest.fixture
def orchestrator(gateway, store, config):
    return CartCouponOrchestrator(gateway, store, config, currency="ILS", locale="en")


@pytest.fixture
def demo_snapshot(demo_cart):
    return build_snapshot(demo_cart)


class TestApplyCode:
    """Tests for user-initiated applies."""

    @pytest.mark.asyncio
    async def test_success_persists_code(self, orchestrator, store, demo_snapshot):
        status = await orchestrator.apply_code("save20", demo_snapshot)
        assert status.type == "success"
        assert store.load() == ["SAVE20"]
        assert orchestrator.discount_total == 130.0
        assert orchestrator.totals(demo_snapshot) == {"subtotal": 650.0, "discountTotal": 130.0, "total": 520.0}
        assert orchestrator.state.phase == Phase.IDLE

    @pytest.mark.asyncio
    async def test_failure_surfaces_message(self, orchestrator, store, cart_150):
        status = await orchestrator.apply_code("FIXED50", build_snapshot(cart_150))
        assert status.type == "error"
        assert "₪200" in status.message
        assert store.load() == []

    @pytest.mark.asyncio
    async def test_silent_failure_sets_no_status(self, orchestrator, cart_150):
        status = await orchestrator.apply_code("FIXED50", build_snapshot(cart_150), silent=True)
        assert status is None
        assert orchestrator.state.status is None

    @pytest.mark.asyncio
    async def test_hebrew_messages(self, gateway, store, config, demo_snapshot):
        orchestrator = CartCouponOrchestrator(gateway, store, config, locale="he")
        status = await orchestrator.apply_code("NOSUCH", demo_snapshot)
        assert status.message == "קופון זה אינו תקף או שפג תוקפו."

    @pytest.mark.asyncio
    async def test_transport_error_degrades_to_generic(self, store, config, demo_snapshot):
        orchestrator = CartCouponOrchestrator(BrokenGateway(), store, config)
        status = await orchestrator.apply_code("SAVE20", demo_snapshot)
        assert status.type == "error"
        assert status.message == "Invalid or expired coupon."
        assert store.load() == []
        assert orchestrator.state.phase == Phase.IDLE

    @pytest.mark.asyncio
    async def test_already_applied_is_info(self, orchestrator, store, demo_snapshot):
        await orchestrator.apply_code("SAVE20", demo_snapshot)
        status = await orchestrator.apply_code("SAVE20", demo_snapshot)
        assert status.type == "info"
        assert store.load() == ["SAVE20"]
        assert len(orchestrator.applied) == 1

    @pytest.mark.asyncio
    async def test_stacking_and_override(self, orchestrator, store, take10, demo_snapshot):
        await orchestrator.apply_code("FIXED50", demo_snapshot)
        await orchestrator.apply_code("TAKE10", demo_snapshot)
        assert store.load() == ["FIXED50", "TAKE10"]
        assert orchestrator.discount_total == 60.0

        status = await orchestrator.apply_code("SAVE20", demo_snapshot)
        assert "overrides your current discount" in status.message
        assert store.load() == ["SAVE20"]
        assert [p["coupon"]["code"] for p in orchestrator.applied] == ["SAVE20"]


class TestRevalidation:
    """Tests for replaying codes on cart changes."""

    @pytest.mark.asyncio
    async def test_prunes_silently(self, orchestrator, store, take10, demo_snapshot, cart_150):
        await orchestrator.apply_code("FIXED50", demo_snapshot)
        await orchestrator.apply_code("TAKE10", demo_snapshot)
        status_before = orchestrator.state.status

        await orchestrator.on_cart_changed(build_snapshot(cart_150))
        assert store.load() == ["TAKE10"]
        assert orchestrator.discount_total == 10.0
        assert orchestrator.state.status is status_before

    @pytest.mark.asyncio
    async def test_replays_in_order(self, orchestrator, gateway, store, take10, demo_snapshot):
        store.save(["TAKE10", "FIXED50"])
        result = await orchestrator.revalidate_all(demo_snapshot)
        assert [p["coupon"]["code"] for p in result] == ["TAKE10", "FIXED50"]
        assert [(c[1], c[2]) for c in gateway.calls] == [("TAKE10", []), ("FIXED50", ["TAKE10"])]

    @pytest.mark.asyncio
    async def test_empty_cart_clears_codes(self, orchestrator, store, demo_snapshot):
        await orchestrator.apply_code("SAVE20", demo_snapshot)
        assert await orchestrator.on_cart_changed([]) == []
        assert store.load() == []
        assert orchestrator.applied == []

    @pytest.mark.asyncio
    async def test_unchanged_signature_skips_replay(self, orchestrator, gateway, demo_snapshot):
        await orchestrator.apply_code("SAVE20", demo_snapshot)
        calls = len(gateway.calls)
        await orchestrator.on_cart_changed(list(demo_snapshot))
        assert len(gateway.calls) == calls

    @pytest.mark.asyncio
    async def test_transport_failure_keeps_code(self, orchestrator, gateway, store, take10, demo_snapshot):
        store.save(["FIXED50", "TAKE10"])
        gateway.fail_codes = {"FIXED50"}
        result = await orchestrator.revalidate_all(demo_snapshot)
        assert [p["coupon"]["code"] for p in result] == ["TAKE10"]
        assert store.load() == ["FIXED50", "TAKE10"]

    @pytest.mark.asyncio
    async def test_single_flight(self, orchestrator, gateway, store, demo_snapshot):
        """Test overlapping revalidations of one cart share a single run."""
        store.save(["SAVE20"])
        gateway.gate = asyncio.Event()

        first = asyncio.ensure_future(orchestrator.revalidate_all(demo_snapshot))
        second = asyncio.ensure_future(orchestrator.revalidate_all(list(demo_snapshot)))
        await gateway.started.wait()
        assert orchestrator.state.phase == Phase.REVALIDATING
        gateway.gate.set()

        results = await asyncio.gather(first, second)
        assert results[0] == results[1]
        assert len(gateway.calls) == 1
        assert orchestrator.state.phase == Phase.IDLE

    @pytest.mark.asyncio
    async def test_stale_result_discarded(self, orchestrator, gateway, store, take10, demo_snapshot, cart_150):
        """Test a run for an outdated cart never overwrites the newer result."""
        store.save(["FIXED50", "TAKE10"])
        gateway.gate = asyncio.Event()
        old_signature = cart_signature(demo_snapshot)

        old = asyncio.ensure_future(orchestrator.revalidate_all(demo_snapshot))
        await gateway.started.wait()
        new = asyncio.ensure_future(orchestrator.revalidate_all(build_snapshot(cart_150)))
        await asyncio.sleep(0)
        gateway.gate.set()

        assert await old is None
        assert [p["coupon"]["code"] for p in await new] == ["TAKE10"]
        assert store.load() == ["TAKE10"]
        assert any(call[3] == old_signature for call in gateway.calls)
        assert orchestrator.state.applied_signature == cart_signature(build_snapshot(cart_150))


class TestAutoApply:
    """Tests for maybe_auto_apply guards."""

    @pytest.fixture
    def auto40(self, repository):
        return repository.create({"code": "AUTO40", "discount_type": "fixed", "discount_value": 40, "auto_apply": True})

    @pytest.mark.asyncio
    async def test_applies_on_first_cart(self, orchestrator, store, auto40, demo_snapshot):
        await orchestrator.on_cart_changed(demo_snapshot)
        assert store.load() == ["AUTO40"]
        assert orchestrator.discount_total == 40.0

    @pytest.mark.asyncio
    async def test_once_per_signature(self, orchestrator, gateway, store, auto40, demo_snapshot):
        await orchestrator.maybe_auto_apply(demo_snapshot)
        orchestrator.remove_code("AUTO40")
        assert await orchestrator.maybe_auto_apply(demo_snapshot) is None
        assert [c[0] for c in gateway.calls] == ["auto"]
        assert store.load() == []

    @pytest.mark.asyncio
    async def test_not_when_codes_applied(self, orchestrator, gateway, auto40, demo_snapshot):
        await orchestrator.apply_code("SAVE20", demo_snapshot)
        assert await orchestrator.maybe_auto_apply(demo_snapshot) is None
        assert all(c[0] != "auto" for c in gateway.calls)

    @pytest.mark.asyncio
    async def test_not_while_busy(self, orchestrator, gateway, store, auto40, demo_snapshot):
        store.save(["SAVE20"])
        gateway.gate = asyncio.Event()
        running = asyncio.ensure_future(orchestrator.revalidate_all(demo_snapshot))
        await gateway.started.wait()

        store.clear()
        assert await orchestrator.maybe_auto_apply(demo_snapshot) is None
        gateway.gate.set()
        await running
        assert all(c[0] != "auto" for c in gateway.calls)

    @pytest.mark.asyncio
    async def test_signature_memory_is_bounded(self, orchestrator):
        carts = [
            build_snapshot([{"sku": f"SKU-{n}", "quantity": 1, "price": 100}])
            for n in range(AUTO_APPLY_MEMORY + 5)
        ]
        for snapshot in carts:
            await orchestrator.maybe_auto_apply(snapshot)

        remembered = orchestrator.state.auto_applied_signatures
        assert len(remembered) == AUTO_APPLY_MEMORY
        assert cart_signature(carts[-1]) in remembered
        assert cart_signature(carts[0]) not in remembered

    @pytest.mark.asyncio
    async def test_disabled(self, gateway, store, auto40, demo_snapshot, config):
        config.auto_apply_enabled = False
        orchestrator = CartCouponOrchestrator(gateway, store, config)
        assert await orchestrator.maybe_auto_apply(demo_snapshot) is None

    @pytest.mark.asyncio
    async def test_transport_error_is_silent(self, store, config, demo_snapshot):
        orchestrator = CartCouponOrchestrator(BrokenGateway(), store, config)
        assert await orchestrator.maybe_auto_apply(demo_snapshot) is None
        assert orchestrator.state.status is None


class TestRemoveCode:
    """Tests for client-only removal."""

    @pytest.mark.asyncio
    async def test_remove(self, orchestrator, store, take10, demo_snapshot):
        await orchestrator.apply_code("FIXED50", demo_snapshot)
        await orchestrator.apply_code("TAKE10", demo_snapshot)
        assert orchestrator.remove_code("fixed50") == ["TAKE10"]
        assert store.load() == ["TAKE10"]
        assert [p["coupon"]["code"] for p in orchestrator.applied] == ["TAKE10"]


class TestHttpCouponGateway:
    """Tests for the httpx gateway."""

    @pytest.mark.asyncio
    async def test_apply_request_shape(self, demo_snapshot):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": False, "code": "COUPON_NOT_FOUND", "messages": {}})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://shop.test")
        gateway = HttpCouponGateway("http://shop.test", client=client)
        payload = await gateway.apply("SAVE20", demo_snapshot, ["FIXED50"], currency="ILS", locale="he")
        await gateway.aclose()

        assert payload["code"] == "COUPON_NOT_FOUND"
        assert seen["path"] == "/api/coupons/apply"
        assert seen["body"]["existingCouponCodes"] == ["FIXED50"]
        assert seen["body"]["cartItems"][0] == {
            "sku": "1234-5678",
            "quantity": 2,
            "price": 300.0,
            "salePrice": 250.0,
            "color": "black",
            "size": "41",
        }
        assert "userIdentifier" not in seen["body"]

    @pytest.mark.asyncio
    async def test_server_error_raises(self, demo_snapshot):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="down")),
            base_url="http://shop.test",
        )
        gateway = HttpCouponGateway("http://shop.test", client=client)
        with pytest.raises(CouponGatewayError):
            await gateway.auto_apply(demo_snapshot, currency="ILS", locale="en")
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_timeout_raises(self, demo_snapshot):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://shop.test")
        gateway = HttpCouponGateway("http://shop.test", client=client)
        with pytest.raises(CouponGatewayError):
            await gateway.apply("SAVE20", demo_snapshot, [], currency="ILS", locale="en")
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_bad_request_payload_returned(self, demo_snapshot):
        """Test 400 INVALID_REQUEST is a business failure, not a transport error."""
        body = {"success": False, "code": "INVALID_REQUEST", "messages": {"en": "x", "he": "y"}}
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(400, json=body)),
            base_url="http://shop.test",
        )
        gateway = HttpCouponGateway("http://shop.test", client=client)
        assert await gateway.apply("X", demo_snapshot, [], currency="ILS", locale="en") == body
        await gateway.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,body",
        [
            (429, {"error": "Rate limit exceeded: 30 per 1 minute"}),
            (404, {"detail": "Not Found"}),
            (502, {"error": "bad gateway"}),
            (200, {"detail": "no success flag"}),
            (400, {"detail": "proxy rejected"}),
        ],
    )
    async def test_non_coupon_response_raises(self, demo_snapshot, status_code, body):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(status_code, json=body)),
            base_url="http://shop.test",
        )
        gateway = HttpCouponGateway("http://shop.test", client=client)
        with pytest.raises(CouponGatewayError):
            await gateway.apply("SAVE20", demo_snapshot, [], currency="ILS", locale="en")
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_rate_limited_revalidation_keeps_codes(self, store, config, demo_snapshot):
        """Test a 429 during background replay leaves the stored codes alone."""
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(429, json={"error": "Rate limit exceeded: 30 per 1 minute"})
            ),
            base_url="http://shop.test",
        )
        gateway = HttpCouponGateway("http://shop.test", client=client)
        store.save(["SAVE20"])
        orchestrator = CartCouponOrchestrator(gateway, store, config)

        assert await orchestrator.revalidate_all(demo_snapshot) == []
        assert store.load() == ["SAVE20"]
        assert orchestrator.state.status is None
        await gateway.aclose()

    @pytest.mark.asyncio
    async def test_rate_limited_apply_shows_generic_message(self, store, config, demo_snapshot):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(429, json={"error": "slow down"})),
            base_url="http://shop.test",
        )
        orchestrator = CartCouponOrchestrator(HttpCouponGateway("http://shop.test", client=client), store, config)
        status = await orchestrator.apply_code("SAVE20", demo_snapshot)
        assert status.message == "Invalid or expired coupon."
        assert store.load() == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_from_config(self, config):
        config.api_base_url = "http://coupons.internal:9000/"
        config.request_timeout_seconds = 2.5
        gateway = HttpCouponGateway.from_config(config)
        assert gateway.base_url == "http://coupons.internal:9000"
        assert gateway.timeout == 2.5
        assert gateway.client.timeout == httpx.Timeout(2.5)
        assert str(gateway.client.base_url).startswith("http://coupons.internal:9000")
        await gateway.aclose()


class TestDisplayTotals:
    """Tests for discount_total and totals rendering."""

    def test_discount_total_has_no_float_drift(self, orchestrator):
        orchestrator.state.applied = [
            {"coupon": {"code": "A"}, "discountAmount": 0.1},
            {"coupon": {"code": "B"}, "discountAmount": 0.2},
        ]
        assert orchestrator.discount_total == 0.3

    def test_totals_clamped_to_subtotal(self, orchestrator, cart_150):
        orchestrator.state.applied = [
            {"coupon": {"code": "A"}, "discountAmount": 100.1},
            {"coupon": {"code": "B"}, "discountAmount": 60.2},
        ]
        assert orchestrator.totals(build_snapshot(cart_150)) == {
            "subtotal": 150.0,
            "discountTotal": 150.0,
            "total": 0.0,
        }

    def test_totals_empty_cart(self, orchestrator):
        assert orchestrator.totals([]) == {"subtotal": 0.0, "discountTotal": 0.0, "total": 0.0}
