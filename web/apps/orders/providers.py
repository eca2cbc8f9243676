"""Wiring: build the order engine from settings.

``get_engine()`` returns an ``Engine`` whose components share one set of
ports. Provider implementations are chosen once here from
``settings.USE_HTTP_ADAPTERS``: the HTTP clients in ``http_adapters`` when
it is truthy, the simulated ones in ``adapters`` otherwise. Nothing else in
the app branches on that flag.
"""

from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings

from .adapters import CourierRouter, DjangoMailGateway, SimulatedDeliveryProvider, SimulatedPaymentProvider
from .checkout import Checkout
from .http_adapters import HttpCourierClient, HttpPaymentClient
from .lifecycle import OrderLifecycle, utcnow
from .notifications import Notifier
from .payouts import PayoutService
from .ratelimit import CacheRateLimiter
from .refunds import RefundDesk
from .repository import (
    DjangoAccountDirectory,
    DjangoEventLog,
    DjangoInventory,
    DjangoOrderStore,
    DjangoPaymentLedger,
    DjangoPayoutStore,
    DjangoRefundLedger,
)
from .splitter import CartSplitter
from .sweeper import CommitReminder, ExpirySweeper, TrackingPoller
from .webhooks import WebhookReconciler


@dataclass
class Engine:
    lifecycle: OrderLifecycle
    splitter: CartSplitter
    checkout: Checkout
    reconciler: WebhookReconciler
    payouts: PayoutService
    refunds: RefundDesk
    sweeper: ExpirySweeper
    reminder: CommitReminder
    poller: TrackingPoller
    delivery: object


def get_payment_provider():
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return HttpPaymentClient()
    return SimulatedPaymentProvider(secret=settings.PAYMENTS_SECRET_KEY)


def get_delivery_provider():
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        couriers = [
            HttpCourierClient(name=c["name"], base_url=c["base_url"], api_key=c.get("api_key", ""))
            for c in settings.DELIVERY_PROVIDERS
        ]
    else:
        couriers = [SimulatedDeliveryProvider(name=c["name"]) for c in settings.DELIVERY_PROVIDERS]
    return CourierRouter(couriers or [SimulatedDeliveryProvider()])


def get_notifier() -> Notifier:
    return Notifier(
        DjangoMailGateway(),
        CacheRateLimiter(limit=settings.NOTIFY_RATE_LIMIT, window_secs=settings.NOTIFY_RATE_WINDOW_SECS),
    )


def assemble_engine(
    *,
    store,
    inventory,
    ledger,
    payouts,
    refunds,
    events,
    directory,
    payments,
    delivery,
    notifier,
    clock=utcnow,
    commit_window=timedelta(hours=48),
    reminder_after=timedelta(hours=24),
    reservation=timedelta(minutes=15),
    payout_resend_after=timedelta(hours=1),
    dedup_window=timedelta(days=7),
    policy_version="v1",
    currency="ZAR",
    admin_email="",
) -> Engine:
    """Build every engine component over the given ports."""
    lifecycle = OrderLifecycle(
        store=store,
        inventory=inventory,
        refunds=refunds,
        ledger=ledger,
        payments=payments,
        delivery=delivery,
        notifier=notifier,
        directory=directory,
        events=events,
        clock=clock,
        commit_window=commit_window,
        policy_version=policy_version,
    )
    splitter = CartSplitter(lifecycle)
    payout_service = PayoutService(
        store=store,
        payouts=payouts,
        payments=payments,
        directory=directory,
        notifier=notifier,
        clock=clock,
        resend_after=payout_resend_after,
    )
    return Engine(
        lifecycle=lifecycle,
        splitter=splitter,
        checkout=Checkout(
            inventory=inventory, payments=payments, ledger=ledger, clock=clock, reservation=reservation, currency=currency
        ),
        reconciler=WebhookReconciler(
            payments=payments,
            ledger=ledger,
            inventory=inventory,
            lifecycle=lifecycle,
            splitter=splitter,
            payouts=payout_service,
            events=events,
            clock=clock,
        ),
        payouts=payout_service,
        refunds=RefundDesk(refunds=refunds, payments=payments),
        sweeper=ExpirySweeper(
            lifecycle, events=events, notifier=notifier, admin_email=admin_email, dedup_window=dedup_window, clock=clock
        ),
        reminder=CommitReminder(lifecycle, notifier, remind_after=reminder_after, clock=clock),
        poller=TrackingPoller(lifecycle, delivery),
        delivery=delivery,
    )


def get_engine() -> Engine:
    """Return an engine wired to the Django repositories and configured providers."""
    return assemble_engine(
        store=DjangoOrderStore(),
        inventory=DjangoInventory(),
        ledger=DjangoPaymentLedger(),
        payouts=DjangoPayoutStore(),
        refunds=DjangoRefundLedger(),
        events=DjangoEventLog(),
        directory=DjangoAccountDirectory(),
        payments=get_payment_provider(),
        delivery=get_delivery_provider(),
        notifier=get_notifier(),
        commit_window=timedelta(hours=settings.ORDER_COMMIT_WINDOW_HOURS),
        reminder_after=timedelta(hours=settings.ORDER_REMINDER_AFTER_HOURS),
        reservation=timedelta(minutes=settings.CHECKOUT_RESERVATION_MINUTES),
        payout_resend_after=timedelta(minutes=settings.PAYOUT_RESEND_AFTER_MINUTES),
        dedup_window=timedelta(days=settings.WEBHOOK_DEDUP_DAYS),
        policy_version=settings.COMMISSION_POLICY,
        currency=settings.ORDER_CURRENCY,
        admin_email=settings.ADMIN_REPORT_EMAIL,
    )
