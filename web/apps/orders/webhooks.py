"""Payment provider webhook reconciliation.

``WebhookReconciler.handle`` is the whole inbound pipeline: authenticate the
raw body, parse it, drop replays, dispatch. The signature check runs before
the body is parsed. Every handler is idempotent on its own (conditional
updates, unique constraints), and the event log turns a provider retry of
an already-processed event into a cheap no-op.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .domain import (
    EventLog,
    InventoryPort,
    Order,
    OrderStatus,
    PaymentLedger,
    PaymentProvider,
    PaymentStatus,
)
from .errors import AuthenticityError, NotFoundError
from .lifecycle import OrderLifecycle, utcnow
from .payouts import PayoutService
from .splitter import CartSplitter

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"
CHARGE_FAILED = "charge.failed"
TRANSFER_SUCCESS = "transfer.success"
TRANSFER_FAILED = "transfer.failed"


@dataclass(frozen=True)
class WebhookEvent:
    type: str
    reference: str
    data: dict


@dataclass(frozen=True)
class WebhookOutcome:
    """What happened to an authentic event.

    ``action`` is one of ``processed``, ``duplicate``, ``ignored``, ``rejected``
    (authentic but charged a different amount than the checkout).
    """

    event: str
    reference: str
    action: str


def parse_event(raw_body: bytes) -> Optional[WebhookEvent]:
    """Extract event type and reference; None for malformed payloads."""
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    event_type = payload.get("event")
    reference = data.get("reference")
    if not event_type or not reference:
        return None
    return WebhookEvent(type=str(event_type), reference=str(reference), data=data)


def _amount_matches(charged, expected: int) -> bool:
    """True when the event carries no amount or charged exactly ``expected`` minor units."""
    if charged is None:
        return True
    try:
        return int(charged) == expected
    except (TypeError, ValueError):
        return False


class WebhookReconciler:
    """Turns provider events into idempotent engine transitions."""

    def __init__(
        self,
        *,
        payments: PaymentProvider,
        ledger: PaymentLedger,
        inventory: InventoryPort,
        lifecycle: OrderLifecycle,
        splitter: CartSplitter,
        payouts: PayoutService,
        events: EventLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.payments = payments
        self.ledger = ledger
        self.inventory = inventory
        self.lifecycle = lifecycle
        self.splitter = splitter
        self.payouts = payouts
        self.events = events
        self.clock = clock
        self._handlers = {
            CHARGE_SUCCESS: self._on_charge_success,
            CHARGE_FAILED: self._on_charge_failed,
            TRANSFER_SUCCESS: lambda e: self._on_transfer(e, succeeded=True),
            TRANSFER_FAILED: lambda e: self._on_transfer(e, succeeded=False),
        }

    def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Authenticate and apply one webhook delivery.

        Args:
            raw_body: Request body exactly as received.
            signature: Value of the signature header.

        Returns:
            WebhookOutcome: For any authentic delivery, including malformed,
            unknown and replayed events.

        Raises:
            AuthenticityError: Missing or mismatched signature.
            Exception: Infrastructure failures propagate so the provider retries;
                the event is not remembered in that case.
        """
        if not signature or not self.payments.verify_signature(raw_body, signature):
            raise AuthenticityError("webhook signature mismatch")

        event = parse_event(raw_body)
        if event is None:
            logger.warning("malformed webhook ignored")
            return WebhookOutcome(event="", reference="", action="ignored")

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("unhandled webhook event", extra={"event": event.type, "reference": event.reference})
            return WebhookOutcome(event=event.type, reference=event.reference, action="ignored")

        key = f"{event.type}:{event.reference}"
        if not self.events.remember("webhook", key, self.clock()):
            logger.info("duplicate webhook", extra={"event": event.type, "reference": event.reference})
            return WebhookOutcome(event=event.type, reference=event.reference, action="duplicate")
        try:
            action = handler(event)
        except Exception:
            self.events.forget("webhook", key)
            raise
        logger.info("webhook processed", extra={"event": event.type, "reference": event.reference, "action": action})
        return WebhookOutcome(event=event.type, reference=event.reference, action=action)

    def confirm_payment(self, reference: str) -> List[Order]:
        """Synchronous counterpart of ``charge.success`` for the payment callback.

        Raises:
            NotFoundError: No checkout session for ``reference``.
            PaymentNotCapturedError: The provider does not report the charge captured.
            CheckoutFailedError: No order could be created.
        """
        if self.ledger.find(reference) is None:
            raise NotFoundError(f"no checkout for payment {reference}")
        self.lifecycle.ensure_captured(reference)
        self._create_orders(reference)
        return self.lifecycle.store.find_by_payment_reference(reference)

    # ---- handlers ----

    def _create_orders(self, reference: str) -> str:
        if self.lifecycle.store.find_by_payment_reference(reference):
            return "ignored"
        session = self.ledger.find(reference)
        self.splitter.split(
            buyer_id=session.buyer_id,
            lines=session.lines,
            payment_reference=reference,
            shipping_address=session.shipping_address,
            buyer_email=session.buyer_email,
            currency=session.currency,
        )
        return "processed"

    def _on_charge_success(self, event: WebhookEvent) -> str:
        session = self.ledger.find(event.reference)
        if session is None:
            logger.warning("charge for unknown checkout", extra={"reference": event.reference})
            return "ignored"
        if session.status == PaymentStatus.FAILED:
            logger.error("charge.success after charge.failed", extra={"reference": event.reference})
            return "ignored"
        if not _amount_matches(event.data.get("amount"), session.amount_cents):
            logger.error(
                "charged amount mismatch",
                extra={"reference": event.reference, "expected": session.amount_cents, "charged": event.data.get("amount")},
            )
            return "rejected"
        if session.status == PaymentStatus.PENDING:
            self.ledger.mark_captured(event.reference, event.data)
        return self._create_orders(event.reference)

    def _on_charge_failed(self, event: WebhookEvent) -> str:
        session = self.ledger.find(event.reference)
        if session is None:
            return "ignored"
        if self.ledger.mark_failed(event.reference, event.data):
            self.inventory.release([l.book_id for l in session.lines], session.buyer_id)
        for order in self.lifecycle.store.find_by_payment_reference(event.reference):
            if order.status == OrderStatus.PENDING_COMMIT:
                self.lifecycle.void(order.id, "payment failed")
        return "processed"

    def _on_transfer(self, event: WebhookEvent, succeeded: bool) -> str:
        changed = self.payouts.apply_transfer_result(event.reference, succeeded=succeeded, raw=event.data)
        return "processed" if changed else "ignored"
