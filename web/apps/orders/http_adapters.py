"""HTTP provider clients with retries, circuit breakers, and context headers.

This module implements the real payment and courier clients using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
  by the gateway middleware.
- A circuit breaker per downstream provider (payments, each courier) to
  avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
  timeout.
- A retry policy with exponential backoff for transport errors and 5xx.
  4xx answers are permanent rejections and are never retried.

Every failure leaves this module as ``UpstreamProviderError`` with its
``transient`` flag set, so the engine never sees ``httpx`` exceptions.
"""

import logging
import threading
import time
from typing import Dict, List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .adapters import signature_matches
from .domain import (
    ChargeVerification,
    Quote,
    RefundResult,
    SessionInit,
    Shipment,
    ShipmentRequest,
    TrackingEvent,
    TransferResult,
)
from .errors import UpstreamProviderError

logger = logging.getLogger(__name__)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe re-opens the circuit.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current state, applying the OPEN → HALF_OPEN timeout."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            UpstreamProviderError: Transient, when the circuit is OPEN or a
                HALF_OPEN probe is already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise UpstreamProviderError(self.name, "circuit open", transient=True)
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise UpstreamProviderError(self.name, "circuit half-open probe busy", transient=True)
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            reopen = self._state == "HALF_OPEN"
            if (reopen or self._failures >= self.fail_threshold) and self._state != "OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False
                logger.warning("circuit opened", extra={"provider": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_breaker(name: str) -> CircuitBreaker:
    """Per-provider breaker, created on first use from settings."""
    with _breakers_lock:
        cb = _breakers.get(name)
        if cb is None:
            cb = CircuitBreaker(
                name,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
            _breakers[name] = cb
        return cb


def reset_breakers() -> None:
    with _breakers_lock:
        _breakers.clear()


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers: ``X-Request-ID`` from the current request, plus extras."""
    headers: Dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _send(
    provider: str,
    method: str,
    url: str,
    *,
    timeout: float,
    json: Optional[dict] = None,
    headers: Optional[dict] = None,
) -> httpx.Response:
    """Send one request with the breaker precheck and the retry loop.

    Returns:
        httpx.Response: A 2xx response.

    Raises:
        UpstreamProviderError: ``transient=False`` for 4xx, ``transient=True``
            when retries are exhausted or the circuit is open.
    """
    breaker = get_breaker(provider)
    max_retries, backoff = _retry_policy()
    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
    tries = 0

    state = breaker.before_call()
    hdrs = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0", **(headers or {})})
    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=json, headers=hdrs)
                    if 200 <= resp.status_code < 300:
                        breaker.on_success()
                        return resp
                    if 400 <= resp.status_code < 500:
                        # business rejection, not a circuit failure
                        breaker.on_success()
                        raise UpstreamProviderError(
                            provider, f"{method} {url} rejected", transient=False, status_code=resp.status_code
                        )
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                hdrs["X-Retry-Count"] = str(tries)
                if tries > max_retries or not _should_retry(resp, exc):
                    breaker.on_failure()
                    status_code = resp.status_code if resp is not None else None
                    logger.warning(
                        "provider call failed",
                        extra={"provider": provider, "url": url, "tries": tries, "status": status_code},
                    )
                    raise UpstreamProviderError(
                        provider, f"{method} {url} failed after {tries} attempts", transient=True, status_code=status_code
                    ) from exc

                sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                time.sleep(min(sleep_s, cap))
    finally:
        breaker.on_finish()


def _json(resp: httpx.Response, provider: str) -> dict:
    try:
        body = resp.json()
    except ValueError:
        raise UpstreamProviderError(provider, "invalid JSON response", transient=True, status_code=resp.status_code)
    return body if isinstance(body, dict) else {}


# ---------------- Payments Adapter ---------------- #

class HttpPaymentClient:
    """Client for the hosted-payment gateway (bearer secret key auth).

    Responses follow the ``{"status": bool, "message": str, "data": {...}}``
    envelope; a 2xx with ``status: false`` is a permanent rejection.
    """

    name = "payments"

    def __init__(self, base_url: Optional[str] = None, secret_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.PAYMENTS_BASE_URL).rstrip("/")
        self.secret_key = secret_key or settings.PAYMENTS_SECRET_KEY
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _call(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        resp = _send(
            self.name,
            method,
            f"{self.base_url}{path}",
            timeout=self.timeout,
            json=payload,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )
        body = _json(resp, self.name)
        if body.get("status") is False:
            raise UpstreamProviderError(self.name, body.get("message") or "request refused", transient=False)
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    def initialize_session(self, *, amount_cents, currency, email, reference, callback_url, metadata) -> SessionInit:
        """Open a hosted payment page for ``amount_cents``.

        Returns:
            SessionInit: Authorization URL for the buyer and the session reference.
        """
        data = self._call(
            "POST",
            "/transaction/initialize",
            {
                "email": email,
                "amount": amount_cents,
                "currency": currency,
                "reference": reference,
                "callback_url": callback_url,
                "metadata": metadata,
            },
        )
        return SessionInit(authorization_url=data.get("authorization_url", ""), reference=data.get("reference", reference))

    def verify(self, reference: str) -> ChargeVerification:
        """Ask the gateway whether ``reference`` was charged.

        A 404 means the gateway never saw the reference; it is reported as
        status ``"not_found"`` rather than raised.
        """
        try:
            data = self._call("GET", f"/transaction/verify/{reference}")
        except UpstreamProviderError as exc:
            if exc.status_code == 404:
                return ChargeVerification(status="not_found", raw={})
            raise
        amount = data.get("amount")
        return ChargeVerification(
            status=str(data.get("status", "")),
            amount_cents=int(amount) if amount is not None else None,
            raw=data,
        )

    def transfer(self, *, recipient, amount_cents, reference, reason) -> TransferResult:
        data = self._call(
            "POST",
            "/transfer",
            {"source": "balance", "amount": amount_cents, "recipient": recipient, "reference": reference, "reason": reason},
        )
        return TransferResult(status=str(data.get("status", "pending")), provider_reference=data.get("transfer_code", ""), raw=data)

    def refund(self, *, reference, amount_cents) -> RefundResult:
        data = self._call("POST", "/refund", {"transaction": reference, "amount": amount_cents})
        return RefundResult(status=str(data.get("status", "pending")), raw=data)

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        return signature_matches(self.secret_key, raw_body, signature)


# ---------------- Courier Adapter ---------------- #

class HttpCourierClient:
    """Client for one courier's quote / shipment / tracking API."""

    def __init__(self, name: str, base_url: str, api_key: str = "", timeout: Optional[float] = None):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _call(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        resp = _send(self.name, method, f"{self.base_url}{path}", timeout=self.timeout, json=payload, headers=headers)
        return _json(resp, self.name)

    def quote(self, origin: dict, destination: dict, weight_kg: float) -> List[Quote]:
        body = self._call("POST", "/quotes", {"origin": origin, "destination": destination, "weight_kg": weight_kg})
        return [
            Quote(
                courier=self.name,
                service=q.get("service", ""),
                price_cents=int(q.get("price_cents", 0)),
                eta_days=int(q.get("eta_days", 0)),
            )
            for q in body.get("quotes", [])
        ]

    def create_shipment(self, request: ShipmentRequest) -> Shipment:
        body = self._call(
            "POST",
            "/shipments",
            {
                "reference": request.order_id,
                "origin": request.origin,
                "destination": request.destination,
                "weight_kg": request.weight_kg,
            },
        )
        if not body.get("tracking_number"):
            raise UpstreamProviderError(self.name, "shipment response without tracking number", transient=False)
        price = body.get("price_cents")
        return Shipment(
            courier=self.name,
            tracking_number=body["tracking_number"],
            label_url=body.get("label_url", ""),
            eta=body.get("eta", ""),
            pickup_window=body.get("pickup_window", ""),
            price_cents=int(price) if price is not None else None,
        )

    def track(self, tracking_number: str, courier: str = "") -> List[TrackingEvent]:
        body = self._call("GET", f"/track/{tracking_number}")
        return [
            TrackingEvent(
                tracking_number=tracking_number,
                status_code=e.get("status_code", ""),
                timestamp=e.get("timestamp", ""),
                location=e.get("location", ""),
                event_id=e.get("event_id", ""),
            )
            for e in body.get("events", [])
        ]
