"""Seller payouts for delivered orders.

Each delivered order gets at most one non-failed payout. The payout record
is written (``pending``) and the order's ``payout_initiated_at`` claimed
before the transfer is requested, so a crash between the two leaves a
visible pending record rather than a second transfer. References are
``payout_<order id>_<attempt>``; ``release_due`` resends an unacknowledged
pending transfer under its original reference, which the provider
deduplicates. Transfer outcomes arriving by webhook only move a payout
forward from ``pending``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from . import notifications as templates
from .domain import (
    AccountDirectory,
    OrderStatus,
    PaymentProvider,
    PayoutRecord,
    PayoutStatus,
    PayoutStore,
)
from .errors import DomainError, InvalidTransitionError, NotFoundError, UpstreamProviderError, ValidationError
from .lifecycle import utcnow
from .notifications import Notifier
from .settlement import calculate

logger = logging.getLogger(__name__)


def payout_reference(order_id: str, attempt: int) -> str:
    """Transfer reference for the ``attempt``-th payout of an order (1-based)."""
    return f"payout_{order_id}_{attempt}"


@dataclass
class PayoutReport:
    initiated: int = 0
    resent: int = 0
    failed: int = 0


class PayoutService:
    def __init__(
        self,
        *,
        store,
        payouts: PayoutStore,
        payments: PaymentProvider,
        directory: AccountDirectory,
        notifier: Notifier,
        clock: Callable[[], datetime] = utcnow,
        resend_after: timedelta = timedelta(hours=1),
    ):
        self.store = store
        self.payouts = payouts
        self.payments = payments
        self.directory = directory
        self.notifier = notifier
        self.clock = clock
        self.resend_after = resend_after

    def initiate(self, order_id: str) -> PayoutRecord:
        """Authorize the seller transfer for a delivered order.

        Returns:
            PayoutRecord: The payout as stored after the transfer request.

        Raises:
            NotFoundError: Unknown order.
            InvalidTransitionError: Order is not delivered, or a payout is
                already in flight.
            ValidationError: Seller has no payout recipient on file.
            DuplicatePayoutError: A non-failed payout exists for the order.
            UpstreamProviderError: Transient transfer failure; the record
                stays ``pending`` for the transfer webhook to settle.
        """
        order = self.store.find(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        if order.status != OrderStatus.DELIVERED:
            raise InvalidTransitionError(order.status, OrderStatus.DELIVERED, message="order is not delivered")
        profile = self.directory.profile(order.seller_id)
        if profile is None or not profile.recipient_code:
            raise ValidationError("seller has no payout recipient", code="MISSING_RECIPIENT")

        settlement = calculate(order)
        now = self.clock()
        attempt = len(self.payouts.for_order(order.id)) + 1
        record = PayoutRecord(
            reference=payout_reference(order.id, attempt),
            order_id=order.id,
            seller_id=order.seller_id,
            amount_cents=settlement.seller_net_cents,
            platform_fee_cents=settlement.platform_commission_cents,
            created_at=now,
        )

        with self.store.atomic():
            claimed = self.store.conditional_update(
                order.id, OrderStatus.DELIVERED, {"payout_initiated_at": now}, require_null=("payout_initiated_at",)
            )
            if claimed == 0:
                raise InvalidTransitionError(order.status, OrderStatus.DELIVERED, message="payout already initiated")
            self.payouts.create(record)

        stored = self._send(record, profile.recipient_code)
        logger.info(
            "payout initiated",
            extra={"order_id": order.id, "reference": record.reference, "amount_cents": record.amount_cents},
        )
        if stored.status != PayoutStatus.FAILED:
            self.notifier.send(order.seller_email or profile.email, templates.payout_initiated(order, stored))
        return stored

    def resend(self, reference: str) -> PayoutRecord:
        """Repeat the transfer request of a payout still ``pending``.

        The provider deduplicates transfers by reference, so a payout whose
        first request was lost is sent at most once.

        Raises:
            NotFoundError: Unknown payout.
            InvalidTransitionError: The payout already left ``pending``.
            ValidationError: Seller has no payout recipient on file.
            UpstreamProviderError: Transient transfer failure.
        """
        record = self.payouts.find(reference)
        if record is None:
            raise NotFoundError(f"payout {reference} not found")
        if record.status != PayoutStatus.PENDING:
            raise InvalidTransitionError(message=f"payout {reference} is {record.status.value}")
        profile = self.directory.profile(record.seller_id)
        if profile is None or not profile.recipient_code:
            raise ValidationError("seller has no payout recipient", code="MISSING_RECIPIENT")
        logger.info("payout transfer resent", extra={"order_id": record.order_id, "reference": reference})
        return self._send(record, profile.recipient_code)

    def _send(self, record: PayoutRecord, recipient: str) -> PayoutRecord:
        try:
            result = self.payments.transfer(
                recipient=recipient,
                amount_cents=record.amount_cents,
                reference=record.reference,
                reason=f"Payout for order {record.order_id[:8]}",
            )
        except UpstreamProviderError as exc:
            if exc.transient:
                logger.warning("payout transfer outcome unknown", extra={"reference": record.reference})
                raise
            logger.error("payout transfer rejected", extra={"reference": record.reference, "error": str(exc)})
            self.apply_transfer_result(record.reference, succeeded=False, raw={"error": str(exc)})
            return self.payouts.find(record.reference)

        self.payouts.attach_response(record.reference, result.raw)
        if result.status == "success":
            self.apply_transfer_result(record.reference, succeeded=True, raw=result.raw)
        elif result.status == "failed":
            self.apply_transfer_result(record.reference, succeeded=False, raw=result.raw)
        return self.payouts.find(record.reference)

    def apply_transfer_result(self, reference: str, succeeded: bool, raw: dict) -> bool:
        """Move a payout forward from ``pending``.

        A failed transfer makes the order payout-eligible again. A result for
        a payout that already left ``pending`` is ignored, so a late
        ``transfer.failed`` cannot regress a ``completed`` payout.

        Returns:
            bool: True when the payout status changed.
        """
        status = PayoutStatus.COMPLETED if succeeded else PayoutStatus.FAILED
        if self.payouts.mark(reference, status, raw) == 0:
            logger.info("transfer result ignored", extra={"reference": reference, "status": status.value})
            return False
        if not succeeded:
            record = self.payouts.find(reference)
            if record is not None:
                self.store.conditional_update(record.order_id, OrderStatus.DELIVERED, {"payout_initiated_at": None})
        logger.info("payout settled", extra={"reference": reference, "status": status.value})
        return True

    def release_due(self) -> PayoutReport:
        """Initiate payouts for every delivered order without one.

        Pending payouts older than ``resend_after`` whose transfer request was
        never acknowledged (no provider response) are sent again under the
        same reference.
        """
        report = PayoutReport()
        for order in self.store.find_payout_due():
            try:
                self.initiate(order.id)
                report.initiated += 1
            except (DomainError, UpstreamProviderError):
                logger.exception("payout release failed", extra={"order_id": order.id})
                report.failed += 1
        for record in self.payouts.find_stale_pending(self.clock() - self.resend_after):
            if record.provider_response:
                continue
            try:
                self.resend(record.reference)
                report.resent += 1
            except (DomainError, UpstreamProviderError):
                logger.exception("payout resend failed", extra={"reference": record.reference})
                report.failed += 1
        return report

