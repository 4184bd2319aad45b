"""
Revalidation Orchestrator - client side

Keeps a cart's applied coupons in sync with the cart contents. Stored codes
are replayed in their original order whenever the cart signature changes,
codes that stop qualifying are pruned quietly, and user-initiated applies
report their outcome.

Concurrency rules:
- One revalidation/apply runs at a time per cart (asyncio.Lock).
- Overlapping revalidations for the same signature share one run.
- A run whose signature has been superseded by a newer cart change is
  discarded on completion instead of being committed.
- Auto-apply never runs while another operation is in flight or when a
  coupon is already applied, and runs at most once per signature.
- Codes within one replay are sent sequentially because each stacking
  decision depends on the codes kept before it.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol, Sequence

import httpx

from . import messages as msg
from .config import CouponEngineConfig
from .models import CartLineItem, normalize_code
from .money import ZERO, money_float, to_decimal
from .service import CouponService
from .snapshot import calculate_subtotal, cart_signature
from .storage import CouponCodeStore

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]

# Cart signatures remembered for the once-per-cart auto-apply rule
AUTO_APPLY_MEMORY = 32


class CouponGatewayError(Exception):
    """Transport failure talking to the coupon API (timeout, non-2xx status, bad JSON)."""


class CouponGateway(Protocol):
    async def apply(
        self,
        code: str,
        snapshot: Sequence[CartLineItem],
        existing_codes: Sequence[str],
        *,
        currency: str,
        locale: str,
        user_identifier: Optional[str],
    ) -> Payload:
        ...

    async def auto_apply(
        self,
        snapshot: Sequence[CartLineItem],
        *,
        currency: str,
        locale: str,
        user_identifier: Optional[str],
    ) -> Payload:
        ...


def cart_payload(snapshot: Sequence[CartLineItem]) -> List[Dict[str, Any]]:
    """JSON body lines for /api/coupons/*."""
    return [
        {
            "sku": item.sku,
            "quantity": item.quantity,
            "price": float(item.price),
            "salePrice": float(item.sale_price) if item.sale_price is not None else None,
            "color": item.color,
            "size": item.size,
        }
        for item in snapshot
    ]


class HttpCouponGateway:
    """Talks to the coupon endpoints over HTTP with a per-call timeout."""

    def __init__(self, base_url: str, timeout: float = 8.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @classmethod
    def from_config(cls, config: CouponEngineConfig, client: Optional[httpx.AsyncClient] = None) -> "HttpCouponGateway":
        """Gateway for COUPON_API_BASE_URL with COUPON_REQUEST_TIMEOUT per call."""
        return cls(config.api_base_url, timeout=config.request_timeout_seconds, client=client)

    async def _post(self, path: str, body: Dict[str, Any]) -> Payload:
        try:
            response = await self.client.post(path, json=body)
        except httpx.HTTPError as e:
            raise CouponGatewayError(f"POST {path} failed: {e}") from e

        # 2xx and 400 INVALID_REQUEST carry coupon payloads; 429, proxy errors etc. do not
        if not (response.is_success or response.status_code == 400):
            raise CouponGatewayError(f"POST {path} returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise CouponGatewayError(f"POST {path} returned invalid JSON") from e
        if not isinstance(payload, dict) or not isinstance(payload.get("success"), bool):
            raise CouponGatewayError(f"POST {path} returned unexpected payload")
        return payload

    async def apply(self, code, snapshot, existing_codes, *, currency, locale, user_identifier=None) -> Payload:
        body = {
            "code": code,
            "cartItems": cart_payload(snapshot),
            "currency": currency,
            "locale": locale,
            "existingCouponCodes": list(existing_codes),
        }
        if user_identifier:
            body["userIdentifier"] = user_identifier
        return await self._post("/api/coupons/apply", body)

    async def auto_apply(self, snapshot, *, currency, locale, user_identifier=None) -> Payload:
        body = {"cartItems": cart_payload(snapshot), "currency": currency, "locale": locale}
        if user_identifier:
            body["userIdentifier"] = user_identifier
        return await self._post("/api/coupons/auto-apply", body)

    async def aclose(self) -> None:
        await self.client.aclose()


class LocalCouponGateway:
    """In-process gateway over a CouponService (same payloads as the API)."""

    def __init__(self, service: CouponService):
        self.service = service

    async def apply(self, code, snapshot, existing_codes, *, currency, locale, user_identifier=None) -> Payload:
        outcome = self.service.apply(
            code,
            snapshot,
            currency=currency,
            locale=locale,
            user_identifier=user_identifier,
            existing_codes=existing_codes,
        )
        return outcome.to_dict()

    async def auto_apply(self, snapshot, *, currency, locale, user_identifier=None) -> Payload:
        outcome = self.service.auto_apply(
            snapshot, currency=currency, locale=locale, user_identifier=user_identifier
        )
        if outcome is None:
            return {"success": False}
        return outcome.to_dict()


class Phase(str, Enum):
    IDLE = "idle"
    REVALIDATING = "revalidating"
    APPLYING = "applying"


@dataclass
class CouponStatus:
    """Inline status text for the coupon box."""

    type: str  # 'success', 'error', 'info'
    message: str


@dataclass
class OrchestratorState:
    """Everything the orchestrator mutates, in one place."""

    phase: Phase = Phase.IDLE
    signature: Optional[str] = None  # signature of the running revalidation
    code: Optional[str] = None  # code being applied
    latest_signature: Optional[str] = None  # newest cart seen
    applied_signature: Optional[str] = None  # cart the applied set was priced for
    auto_applied_signatures: Deque[str] = field(default_factory=lambda: deque(maxlen=AUTO_APPLY_MEMORY))
    applied: List[Payload] = field(default_factory=list)
    status: Optional[CouponStatus] = None

    @property
    def is_idle(self) -> bool:
        return self.phase == Phase.IDLE

    def begin_revalidation(self, signature: str) -> None:
        if not self.is_idle:
            raise RuntimeError(f"Cannot revalidate while {self.phase.value}")
        self.phase = Phase.REVALIDATING
        self.signature = signature

    def begin_apply(self, code: str) -> None:
        if not self.is_idle:
            raise RuntimeError(f"Cannot apply while {self.phase.value}")
        self.phase = Phase.APPLYING
        self.code = code

    def finish(self) -> None:
        self.phase = Phase.IDLE
        self.signature = None
        self.code = None

    def is_stale(self, signature: str) -> bool:
        return self.latest_signature is not None and self.latest_signature != signature


class CartCouponOrchestrator:
    """Client-side owner of a cart's applied coupon codes."""

    def __init__(
        self,
        gateway: CouponGateway,
        store: Optional[CouponCodeStore] = None,
        config: Optional[CouponEngineConfig] = None,
        *,
        currency: Optional[str] = None,
        locale: Optional[str] = None,
        user_identifier: Optional[str] = None,
    ):
        self.config = config or CouponEngineConfig()
        self.gateway = gateway
        self.store = store or CouponCodeStore(key=self.config.storage_key)
        self.currency = currency or self.config.default_currency
        self.locale = self.config.resolve_locale(locale)
        self.user_identifier = user_identifier
        self.state = OrchestratorState()
        self._lock = asyncio.Lock()
        self._inflight: Dict[str, "asyncio.Future[Optional[List[Payload]]]"] = {}
        self._latest_snapshot: List[CartLineItem] = []

    # --- read side ---

    @property
    def codes(self) -> List[str]:
        return self.store.load()

    @property
    def applied(self) -> List[Payload]:
        return list(self.state.applied)

    def _discount_sum(self) -> Decimal:
        return sum((to_decimal(p.get("discountAmount")) for p in self.state.applied), ZERO)

    @property
    def discount_total(self) -> float:
        return money_float(self._discount_sum())

    def totals(self, snapshot: Sequence[CartLineItem]) -> Dict[str, float]:
        """Subtotal/discount/total for display."""
        subtotal = calculate_subtotal(snapshot) if snapshot else ZERO
        discount = min(self._discount_sum(), subtotal)
        return {
            "subtotal": money_float(subtotal),
            "discountTotal": money_float(discount),
            "total": money_float(max(subtotal - discount, ZERO)),
        }

    # --- triggers ---

    async def on_cart_changed(self, snapshot: Sequence[CartLineItem]) -> List[Payload]:
        """Cart mutated or page (re)loaded: reconcile coupons with the cart."""
        snapshot = list(snapshot)
        self._latest_snapshot = snapshot
        signature = cart_signature(snapshot)
        self.state.latest_signature = signature

        if not snapshot:
            self.store.clear()
            self.state.applied = []
            self.state.applied_signature = signature
            return []

        if signature == self.state.applied_signature and not self._inflight:
            return self.applied

        if self.store.load():
            result = await self.revalidate_all(snapshot)
            return result if result is not None else self.applied

        await self.maybe_auto_apply(snapshot)
        return self.applied

    async def revalidate_all(
        self,
        snapshot: Sequence[CartLineItem],
        codes: Optional[Sequence[str]] = None,
        silent: bool = True,
    ) -> Optional[List[Payload]]:
        """
        Replay codes against the cart. Returns the committed coupon list, or
        None when the run was superseded by a newer cart.
        """
        snapshot = list(snapshot)
        signature = cart_signature(snapshot)
        self.state.latest_signature = signature
        self._latest_snapshot = snapshot

        pending = self._inflight.get(signature)
        if pending is not None:
            return await pending

        replay = list(codes) if codes is not None else None
        task = asyncio.ensure_future(self._run_revalidation(signature, snapshot, replay, silent))
        self._inflight[signature] = task
        try:
            return await task
        finally:
            if self._inflight.get(signature) is task:
                del self._inflight[signature]

    async def apply_code(
        self,
        code: str,
        snapshot: Sequence[CartLineItem],
        silent: bool = False,
    ) -> Optional[CouponStatus]:
        """User-initiated apply. Failures surface unless silent."""
        normalized = normalize_code(code)
        snapshot = list(snapshot)
        signature = cart_signature(snapshot)
        self.state.latest_signature = signature
        self._latest_snapshot = snapshot

        async with self._lock:
            self.state.begin_apply(normalized)
            try:
                payload = await self.gateway.apply(
                    normalized,
                    snapshot,
                    self.store.load(),
                    currency=self.currency,
                    locale=self.locale,
                    user_identifier=self.user_identifier,
                )
            except CouponGatewayError as e:
                logger.error(f"Coupon apply failed for {normalized}: {e}")
                return self._set_status("error", msg.pick(msg.GENERIC_INVALID, self.locale), silent)
            finally:
                self.state.finish()

            if not payload.get("success"):
                messages = payload.get("messages") or msg.error_messages(None)
                return self._set_status("error", msg.pick(messages, self.locale), silent)

            self._commit_apply(payload, signature)
            status_type = "info" if payload.get("alreadyApplied") else "success"
            text = msg.pick(payload.get("messages") or msg.APPLIED, self.locale)
            warnings = payload.get("warnings") or []
            if warnings:
                text = " ".join([text] + list(warnings))
            status = self._set_status(status_type, text, silent)

        if self.state.is_stale(signature) and self._latest_snapshot:
            await self.revalidate_all(self._latest_snapshot)
        return status

    async def maybe_auto_apply(self, snapshot: Sequence[CartLineItem]) -> Optional[Payload]:
        """Try the automatic coupon once per cart signature, only on an empty coupon list."""
        if not self.config.auto_apply_enabled:
            return None

        snapshot = list(snapshot)
        signature = cart_signature(snapshot)
        if not snapshot or self._lock.locked() or self._inflight:
            return None
        if self.store.load() or signature in self.state.auto_applied_signatures:
            return None

        self.state.auto_applied_signatures.append(signature)
        async with self._lock:
            if self.store.load():
                return None
            self.state.begin_apply("<auto>")
            try:
                payload = await self.gateway.auto_apply(
                    snapshot,
                    currency=self.currency,
                    locale=self.locale,
                    user_identifier=self.user_identifier,
                )
            except CouponGatewayError as e:
                logger.debug(f"Auto-apply unavailable: {e}")
                return None
            finally:
                self.state.finish()

            if not payload.get("success") or self.store.load() or self.state.is_stale(signature):
                return None

            self._commit_apply(payload, signature)
            logger.info(f"Auto-applied {payload['coupon']['code']}")
            return payload

    def remove_code(self, code: str) -> List[str]:
        """Client-only removal; the server keeps no coupon state."""
        normalized = normalize_code(code)
        codes = [c for c in self.store.load() if c != normalized]
        self.store.save(codes)
        self.state.applied = [p for p in self.state.applied if _payload_code(p) != normalized]
        return codes

    # --- internals ---

    async def _run_revalidation(
        self,
        signature: str,
        snapshot: List[CartLineItem],
        codes: Optional[List[str]],
        silent: bool,
    ) -> Optional[List[Payload]]:
        async with self._lock:
            if self.state.is_stale(signature):
                logger.debug(f"Skipping superseded revalidation {signature[:8]}")
                return None

            self.state.begin_revalidation(signature)
            try:
                if codes is None:
                    codes = self.store.load()
                kept_codes, entries, failures = await self._replay(snapshot, codes)
            finally:
                self.state.finish()

            if self.state.is_stale(signature):
                logger.debug(f"Discarding stale revalidation result {signature[:8]}")
                return None

            self.store.save(kept_codes)
            self.state.applied = entries
            self.state.applied_signature = signature
            if failures and not silent:
                self._set_status("error", failures[-1], silent)
            return list(entries)

    async def _replay(self, snapshot: List[CartLineItem], codes: List[str]):
        """Sequential replay. Transport failures keep the code for the next run."""
        kept_codes: List[str] = []
        entries: List[Payload] = []
        failures: List[str] = []

        if not snapshot:
            return kept_codes, entries, failures

        for raw in codes:
            code = normalize_code(raw)
            if not code or code in kept_codes:
                continue
            confirmed = [c for c in kept_codes if any(_payload_code(p) == c for p in entries)]
            try:
                payload = await self.gateway.apply(
                    code,
                    snapshot,
                    confirmed,
                    currency=self.currency,
                    locale=self.locale,
                    user_identifier=self.user_identifier,
                )
            except CouponGatewayError as e:
                logger.warning(f"Revalidation of {code} deferred: {e}")
                kept_codes.append(code)
                continue

            if not payload.get("success"):
                logger.info(f"Revalidation pruned {code}: {payload.get('code')}")
                failures.append(msg.pick(payload.get("messages") or msg.GENERIC_INVALID, self.locale))
                continue

            applied_codes = payload.get("appliedCodes") or confirmed + [code]
            entries = [p for p in entries if _payload_code(p) in applied_codes]
            if not payload.get("alreadyApplied"):
                entries.append(payload)
            unconfirmed = [c for c in kept_codes if c not in confirmed]
            kept_codes = [c for c in applied_codes if c != code] + unconfirmed + [code]

        order = {code: index for index, code in enumerate(kept_codes)}
        entries.sort(key=lambda p: order.get(_payload_code(p), len(order)))
        return kept_codes, entries, failures

    def _commit_apply(self, payload: Payload, signature: str) -> None:
        code = _payload_code(payload)
        applied_codes = [normalize_code(c) for c in payload.get("appliedCodes") or []]
        if not applied_codes:
            applied_codes = [c for c in self.store.load() if c != code] + [code]
        self.store.save(applied_codes)

        if payload.get("alreadyApplied"):
            return
        entries = [p for p in self.state.applied if _payload_code(p) in applied_codes and _payload_code(p) != code]
        entries.append(payload)
        self.state.applied = entries
        self.state.applied_signature = signature

    def _set_status(self, status_type: str, message: str, silent: bool) -> Optional[CouponStatus]:
        if silent:
            return None
        self.state.status = CouponStatus(type=status_type, message=message)
        return self.state.status


def _payload_code(payload: Payload) -> str:
    coupon = payload.get("coupon") or {}
    return normalize_code(coupon.get("code"))
