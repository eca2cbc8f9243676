"""Scheduled sweeps: expiry, commit reminders and tracking polls.

Each sweep is a stateless run meant to be invoked from cron through a
management command. Sweeps re-read their candidates on every run and rely
on the lifecycle's conditional updates, so overlapping runs (or a seller
acting mid-sweep) are safe: the loser of a race is counted as skipped.
One order's failure never aborts the rest of the batch.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from . import notifications as templates
from .domain import DeliveryProvider, EventLog, OrderStatus
from .lifecycle import OrderLifecycle, utcnow
from .notifications import Notifier

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    purged_events: int = 0


class ExpirySweeper:
    """Force-expires ``pending_commit`` orders past their deadline.

    Args:
        lifecycle: Engine that performs ``expire``.
        events: Event log purged of keys older than ``dedup_window``.
        notifier: Used for the admin summary when ``admin_email`` is set.
    """

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        *,
        events: Optional[EventLog] = None,
        notifier: Optional[Notifier] = None,
        admin_email: str = "",
        dedup_window: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lifecycle = lifecycle
        self.events = events
        self.notifier = notifier
        self.admin_email = admin_email
        self.dedup_window = dedup_window
        self.clock = clock

    def run(self) -> SweepReport:
        now = self.clock()
        report = SweepReport()
        for order in self.lifecycle.store.find_expired_commitable(now):
            try:
                if self.lifecycle.expire(order.id):
                    report.expired += 1
                else:
                    report.skipped += 1
            except Exception:
                logger.exception("expiry failed", extra={"order_id": order.id})
                report.failed += 1

        if self.events is not None:
            report.purged_events = self.events.purge(now - self.dedup_window)
        if self.notifier is not None and self.admin_email and (report.expired or report.failed):
            self.notifier.send(self.admin_email, templates.sweep_summary(report.expired, report.skipped, report.failed))
        logger.info(
            "expiry sweep finished",
            extra={"expired": report.expired, "skipped": report.skipped, "failed": report.failed},
        )
        return report


@dataclass
class ReminderReport:
    sent: int = 0
    skipped: int = 0


class CommitReminder:
    """Sends one reminder to sellers who have not acted after ``remind_after``.

    The reminder slot is claimed with a conditional update on
    ``reminder_sent_at`` before the message goes out, so concurrent runs
    send at most one reminder per order.
    """

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        notifier: Notifier,
        *,
        remind_after: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lifecycle = lifecycle
        self.notifier = notifier
        self.remind_after = remind_after
        self.clock = clock

    def run(self) -> ReminderReport:
        now = self.clock()
        report = ReminderReport()
        store = self.lifecycle.store
        for order in store.find_reminder_due(now - self.remind_after, now):
            claimed = store.conditional_update(
                order.id, OrderStatus.PENDING_COMMIT, {"reminder_sent_at": now}, require_null=("reminder_sent_at",)
            )
            if not claimed:
                report.skipped += 1
                continue
            hours_left = (order.expires_at - now).total_seconds() / 3600 if order.expires_at else 0
            recipient = self.lifecycle.seller_email_for(order)
            self.notifier.send(recipient, templates.commit_reminder(order, hours_left))
            report.sent += 1
        logger.info("commit reminders sent", extra={"sent": report.sent, "skipped": report.skipped})
        return report


@dataclass
class PollReport:
    polled: int = 0
    applied: int = 0
    failed: int = 0


class TrackingPoller:
    """Polls couriers for orders in transit and applies new events oldest first."""

    def __init__(self, lifecycle: OrderLifecycle, delivery: DeliveryProvider):
        self.lifecycle = lifecycle
        self.delivery = delivery

    def run(self) -> PollReport:
        report = PollReport()
        orders = self.lifecycle.store.find_in_status([OrderStatus.COMMITTED, OrderStatus.SHIPPED])
        for order in orders:
            if not order.tracking_number:
                continue
            report.polled += 1
            try:
                events = self.delivery.track(order.tracking_number, courier=order.courier)
                for event in sorted(events, key=lambda e: e.timestamp):
                    if self.lifecycle.apply_tracking_event(event) is not None:
                        report.applied += 1
            except Exception:
                logger.exception("tracking poll failed", extra={"order_id": order.id})
                report.failed += 1
        return report
