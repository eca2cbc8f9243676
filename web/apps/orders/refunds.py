"""Executes pending refund obligations against the payment provider.

Obligations are created by the lifecycle (decline, expire, refund) in the
same unit of work as the status change; this module is the separate,
retryable step that actually moves money back to the buyer.
"""

import logging
from dataclasses import dataclass

from .domain import PaymentProvider, RefundLedger, RefundStatus
from .errors import UpstreamProviderError

logger = logging.getLogger(__name__)


@dataclass
class RefundReport:
    processed: int = 0
    failed: int = 0
    deferred: int = 0


class RefundDesk:
    def __init__(self, *, refunds: RefundLedger, payments: PaymentProvider):
        self.refunds = refunds
        self.payments = payments

    def process_pending(self) -> RefundReport:
        """Refund every pending obligation.

        Transient provider failures leave the obligation ``pending`` for the
        next run; permanent rejections mark it ``failed`` for manual follow-up.
        """
        report = RefundReport()
        for obligation in self.refunds.pending():
            try:
                result = self.payments.refund(
                    reference=obligation.payment_reference, amount_cents=obligation.amount_cents
                )
            except UpstreamProviderError as exc:
                if exc.transient:
                    logger.warning("refund deferred", extra={"order_id": obligation.order_id, "error": str(exc)})
                    report.deferred += 1
                    continue
                logger.error("refund rejected", extra={"order_id": obligation.order_id, "error": str(exc)})
                self.refunds.mark(obligation.order_id, RefundStatus.FAILED, {"error": str(exc)})
                report.failed += 1
                continue

            if result.status == "failed":
                self.refunds.mark(obligation.order_id, RefundStatus.FAILED, result.raw)
                report.failed += 1
                continue
            self.refunds.mark(obligation.order_id, RefundStatus.PROCESSED, result.raw)
            logger.info(
                "refund processed",
                extra={"order_id": obligation.order_id, "amount_cents": obligation.amount_cents},
            )
            report.processed += 1
        return report
