"""In-process adapters for the provider ports.

``SimulatedPaymentProvider`` and ``SimulatedDeliveryProvider`` implement
the provider ports without network calls. They are selected by
``providers`` when ``settings.USE_HTTP_ADAPTERS`` is off (local
development, tests) and behave deterministically. ``CourierRouter`` fans
a delivery request out over several couriers, real or simulated, and
``DjangoMailGateway`` sends notifications through Django's e-mail backend.
"""

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from django.conf import settings
from django.core.mail import send_mail

from .domain import (
    ChargeVerification,
    DeliveryProvider,
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

PICKUP_WINDOW = "09:00 - 17:00"


def hmac_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA512 of ``raw_body``, the provider's webhook signature."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def signature_matches(secret: str, raw_body: bytes, signature: str) -> bool:
    return hmac.compare_digest(hmac_signature(secret, raw_body), (signature or "").strip().lower())


class SimulatedPaymentProvider:
    """Payment provider that approves everything unless told otherwise.

    Args:
        secret: Shared webhook secret used for signatures.
        charge_status: Status reported by ``verify`` (``"success"`` or
            ``"failed"``...).
        fail_transfers: When True, transfers are rejected permanently.
    """

    name = "payments-sim"

    def __init__(self, secret: str, charge_status: str = "success", fail_transfers: bool = False):
        self.secret = secret
        self.charge_status = charge_status
        self.fail_transfers = fail_transfers

    def initialize_session(self, *, amount_cents, currency, email, reference, callback_url, metadata) -> SessionInit:
        return SessionInit(authorization_url=f"https://checkout.sandbox.local/pay/{reference}", reference=reference)

    def verify(self, reference: str) -> ChargeVerification:
        return ChargeVerification(
            status=self.charge_status, amount_cents=None, raw={"reference": reference, "simulated": True}
        )

    def transfer(self, *, recipient, amount_cents, reference, reason) -> TransferResult:
        if self.fail_transfers:
            raise UpstreamProviderError(self.name, "transfer rejected", transient=False, status_code=400)
        return TransferResult(
            status="pending",
            provider_reference=f"TRF_{uuid.uuid4().hex[:12]}",
            raw={"reference": reference, "amount": amount_cents, "recipient": recipient, "simulated": True},
        )

    def refund(self, *, reference, amount_cents) -> RefundResult:
        return RefundResult(status="processed", raw={"transaction": reference, "amount": amount_cents, "simulated": True})

    def verify_signature(self, raw_body: bytes, signature: str) -> bool:
        return signature_matches(self.secret, raw_body, signature)


class SimulatedDeliveryProvider:
    """Courier that books instantly with a flat rate.

    Args:
        name: Courier name reported on quotes and shipments.
        base_price_cents: Price for the first kilogram.
        fail: When True every call raises a transient ``UpstreamProviderError``.
    """

    def __init__(self, name: str = "courier-sim", base_price_cents: int = 9500, fail: bool = False):
        self.name = name
        self.base_price_cents = base_price_cents
        self.fail = fail
        self.shipments: dict = {}

    def _check(self):
        if self.fail:
            raise UpstreamProviderError(self.name, "courier unavailable", transient=True, status_code=503)

    def _price(self, weight_kg: float) -> int:
        extra_kg = max(0, int(weight_kg + 0.999) - 1)
        return self.base_price_cents + extra_kg * 1500

    def quote(self, origin: dict, destination: dict, weight_kg: float) -> List[Quote]:
        self._check()
        price = self._price(weight_kg)
        return [
            Quote(courier=self.name, service="economy", price_cents=price, eta_days=4),
            Quote(courier=self.name, service="express", price_cents=price + 5000, eta_days=1),
        ]

    def create_shipment(self, request: ShipmentRequest) -> Shipment:
        self._check()
        tracking = f"SIM{uuid.uuid4().hex[:10].upper()}"
        pickup_day = (datetime.now(timezone.utc) + timedelta(days=1)).date().isoformat()
        shipment = Shipment(
            courier=self.name,
            tracking_number=tracking,
            label_url=f"https://labels.sandbox.local/{tracking}.pdf",
            eta=(datetime.now(timezone.utc) + timedelta(days=4)).date().isoformat(),
            pickup_window=f"{pickup_day} {PICKUP_WINDOW}",
            price_cents=self._price(request.weight_kg),
        )
        self.shipments[tracking] = request.order_id
        return shipment

    def track(self, tracking_number: str, courier: str = "") -> List[TrackingEvent]:
        self._check()
        return []


class CourierRouter:
    """Delivery provider spanning several couriers, tried in configured order.

    Quotes are collected from every courier that answers and sorted by
    price. Shipments are booked with the first courier that accepts; a
    courier that fails is skipped. Tracking goes to the courier that booked
    the shipment.
    """

    def __init__(self, couriers: Sequence[DeliveryProvider]):
        if not couriers:
            raise ValueError("CourierRouter needs at least one courier")
        self.couriers = list(couriers)

    def _by_name(self, name: str) -> Optional[DeliveryProvider]:
        for courier in self.couriers:
            if getattr(courier, "name", None) == name:
                return courier
        return None

    def quote(self, origin: dict, destination: dict, weight_kg: float) -> List[Quote]:
        quotes: List[Quote] = []
        last_error: Optional[UpstreamProviderError] = None
        for courier in self.couriers:
            try:
                quotes.extend(courier.quote(origin, destination, weight_kg))
            except UpstreamProviderError as exc:
                logger.warning("courier quote failed", extra={"provider": exc.provider, "transient": exc.transient})
                last_error = exc
        if not quotes and last_error is not None:
            raise last_error
        return sorted(quotes, key=lambda q: (q.price_cents, q.eta_days))

    def create_shipment(self, request: ShipmentRequest) -> Shipment:
        last_error: Optional[UpstreamProviderError] = None
        for courier in self.couriers:
            try:
                return courier.create_shipment(request)
            except UpstreamProviderError as exc:
                logger.warning(
                    "courier booking failed, trying next",
                    extra={"provider": exc.provider, "order_id": request.order_id, "transient": exc.transient},
                )
                last_error = exc
        raise last_error

    def track(self, tracking_number: str, courier: str = "") -> List[TrackingEvent]:
        target = self._by_name(courier) if courier else None
        if target is not None:
            return target.track(tracking_number, courier)
        return self.couriers[0].track(tracking_number, courier)


class DjangoMailGateway:
    """Notification gateway backed by ``django.core.mail``."""

    def __init__(self, from_email: Optional[str] = None):
        self.from_email = from_email or settings.DEFAULT_FROM_EMAIL

    def send(self, recipient: str, subject: str, body: str) -> None:
        send_mail(subject, body, self.from_email, [recipient], fail_silently=False)
