"""Order lifecycle state machine.

``OrderLifecycle`` is the only component allowed to change an order's
status. Every transition:

1. loads the order and evaluates its guards (ownership, status graph,
   deadline), raising a typed ``DomainError`` on violation;
2. writes through ``OrderStore.conditional_update`` qualified by the status
   it just observed, so concurrent writers (seller action, sweeper, webhook)
   converge: exactly one update affects a row, the others see zero rows;
3. runs side effects. Inventory release and refund obligations share the
   status write's unit of work; provider calls (courier booking,
   notifications) run only after the transition is stored and can never
   revert it.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from . import notifications as templates
from .domain import (
    AccountDirectory,
    DeliveryProvider,
    EventLog,
    InventoryPort,
    Order,
    OrderDraft,
    OrderStatus,
    PaymentLedger,
    PaymentProvider,
    PaymentStatus,
    RefundLedger,
    RefundObligation,
    ShipmentRequest,
    TrackingEvent,
    can_transition,
)
from .errors import (
    BookUnavailableError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PaymentNotCapturedError,
    UpstreamProviderError,
    ValidationError,
)
from .notifications import Notifier
from .settlement import calculate, get_policy

logger = logging.getLogger(__name__)

EXPIRY_REASON = "commitment window elapsed"
UNAVAILABLE_REASON = "books sold to another buyer"
PARCEL_WEIGHT_KG = 0.5

# courier status codes -> target order status
TRACKING_STATUS_MAP = {
    "collected": OrderStatus.SHIPPED,
    "picked_up": OrderStatus.SHIPPED,
    "in_transit": OrderStatus.SHIPPED,
    "out_for_delivery": OrderStatus.SHIPPED,
    "delivered": OrderStatus.DELIVERED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderLifecycle:
    """Owns every order transition and its side effects.

    Args:
        store: Order persistence with conditional updates.
        inventory: Book listings (sold flag, reservations).
        refunds: Ledger of refund obligations.
        ledger: Payment sessions recorded at checkout.
        payments: Payment provider, used for synchronous verification.
        delivery: Courier booking.
        notifier: Best-effort notifications.
        directory: Seller / buyer profiles (e-mail, pickup address).
        events: Processed tracking-event keys.
        clock: Returns the current aware datetime.
        commit_window: Time a seller has to commit (48h).
        policy_version: Commission policy recorded on new orders.
    """

    def __init__(
        self,
        *,
        store,
        inventory: InventoryPort,
        refunds: RefundLedger,
        ledger: PaymentLedger,
        payments: PaymentProvider,
        delivery: DeliveryProvider,
        notifier: Notifier,
        directory: AccountDirectory,
        events: EventLog,
        clock: Callable[[], datetime] = utcnow,
        commit_window: timedelta = timedelta(hours=48),
        policy_version: str = "v1",
    ):
        self.store = store
        self.inventory = inventory
        self.refunds = refunds
        self.ledger = ledger
        self.payments = payments
        self.delivery = delivery
        self.notifier = notifier
        self.directory = directory
        self.events = events
        self.clock = clock
        self.commit_window = commit_window
        self.policy_version = get_policy(policy_version).version

    # ---- helpers ----

    def _load(self, order_id: str) -> Order:
        order = self.store.find(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    def _guard(self, order: Order, target: OrderStatus) -> None:
        if not can_transition(order.status, target):
            raise InvalidTransitionError(order.status, target)

    def _lost_race(self, order_id: str, target: OrderStatus) -> InvalidTransitionError:
        latest = self.store.find(order_id)
        current = latest.status if latest else None
        logger.info(
            "conditional update lost",
            extra={"order_id": order_id, "target": target.value, "current": getattr(current, "value", None)},
        )
        return InvalidTransitionError(current, target)

    def seller_email_for(self, order: Order) -> str:
        if order.seller_email:
            return order.seller_email
        profile = self.directory.profile(order.seller_id)
        return profile.email if profile else ""

    def _release_and_oblige(self, order: Order, reason: str) -> None:
        self.inventory.release(order.book_ids, order.buyer_id)
        self._oblige(order, reason)

    def _oblige(self, order: Order, reason: str) -> None:
        created = self.refunds.create_obligation(
            RefundObligation(
                order_id=order.id,
                payment_reference=order.payment_reference,
                amount_cents=order.total_cents,
                reason=reason,
                created_at=self.clock(),
            )
        )
        if not created:
            logger.warning("refund obligation already exists", extra={"order_id": order.id})

    def _record_unavailable(self, order: Order) -> None:
        """Store a declined order owing the buyer a refund; no book changes hands."""
        now = self.clock()
        order.status = OrderStatus.DECLINED
        order.declined_at = now
        order.decline_reason = UNAVAILABLE_REASON
        order.expires_at = None
        with self.store.atomic():
            self.store.insert(order)
            self._oblige(order, UNAVAILABLE_REASON)
        logger.warning(
            "order declined: books unavailable",
            extra={"order_id": order.id, "seller_id": order.seller_id, "reference": order.payment_reference},
        )
        self.notifier.send(order.buyer_email, templates.books_unavailable(order))

    # ---- payment guard ----

    def ensure_captured(self, reference: str) -> None:
        """Make sure ``reference`` is a captured payment.

        A payment already marked captured by the webhook reconciler passes
        immediately. Otherwise the provider is asked synchronously and the
        ledger is updated on success.

        Raises:
            PaymentNotCapturedError: When the provider does not report the
                charge as successful, or the captured amount does not match
                the checkout session.
        """
        session = self.ledger.find(reference)
        if session is not None and session.status == PaymentStatus.CAPTURED:
            return
        verification = self.payments.verify(reference)
        if not verification.captured:
            raise PaymentNotCapturedError(f"payment {reference} is {verification.status}")
        if (
            session is not None
            and verification.amount_cents is not None
            and verification.amount_cents != session.amount_cents
        ):
            logger.error(
                "captured amount mismatch",
                extra={"reference": reference, "expected": session.amount_cents, "captured": verification.amount_cents},
            )
            raise PaymentNotCapturedError("captured amount does not match checkout", code="AMOUNT_MISMATCH")
        if session is not None:
            self.ledger.mark_captured(reference, verification.raw)

    # ---- transitions ----

    def create(self, draft: OrderDraft) -> Order:
        """Create one seller's order in ``pending_commit``.

        Args:
            draft: Buyer, seller, items and the captured payment reference.

        Returns:
            Order: The stored order.

        Raises:
            ValidationError: Empty item list or non-positive prices.
            PaymentNotCapturedError: The payment is not captured; nothing is stored.
            DuplicateOrderError: An order already exists for this payment and seller.
            BookUnavailableError: Another buyer holds or bought one of the books.
                The order is stored as declined with a refund obligation instead.
        """
        if not draft.items:
            raise ValidationError("order has no items", code="EMPTY_ORDER")
        if any(i.price_cents <= 0 for i in draft.items):
            raise ValidationError("item prices must be positive", code="INVALID_PRICE")
        self.ensure_captured(draft.payment_reference)

        now = self.clock()
        order = Order(
            id=str(uuid.uuid4()),
            buyer_id=draft.buyer_id,
            seller_id=draft.seller_id,
            payment_reference=draft.payment_reference,
            items=list(draft.items),
            total_cents=draft.total_cents,
            status=OrderStatus.PENDING_COMMIT,
            created_at=now,
            expires_at=now + self.commit_window,
            currency=draft.currency,
            buyer_email=draft.buyer_email,
            seller_email=draft.seller_email,
            shipping_address=dict(draft.shipping_address),
            commission_policy=self.policy_version,
        )
        if not order.seller_email:
            order.seller_email = self.seller_email_for(order)

        try:
            with self.store.atomic():
                self.store.insert(order)
                sold = self.inventory.mark_sold(order.book_ids, order.buyer_id, now)
                if sold != len(set(order.book_ids)):
                    raise BookUnavailableError(f"books in order for seller {order.seller_id} were sold to another buyer")
        except BookUnavailableError:
            self._record_unavailable(order)
            raise

        logger.info(
            "order created",
            extra={"order_id": order.id, "seller_id": order.seller_id, "reference": order.payment_reference},
        )
        self.notifier.send(order.buyer_email, templates.order_pending(order))
        self.notifier.send(order.seller_email, templates.action_required(order))
        return order

    def commit(self, order_id: str, seller_id: str) -> Order:
        """Seller accepts the order; a courier is then booked.

        Delivery booking happens after the commit is stored. When booking
        fails the order stays ``committed`` and the seller is told pickup
        details will follow.

        Raises:
            NotFoundError: Unknown order.
            ForbiddenError: ``seller_id`` is not the order's seller.
            InvalidTransitionError: Not ``pending_commit``, past the deadline,
                or another writer won the race.
        """
        order = self._load(order_id)
        if order.seller_id != seller_id:
            raise ForbiddenError("order belongs to another seller")
        self._guard(order, OrderStatus.COMMITTED)
        now = self.clock()
        if order.expires_at is not None and order.expires_at <= now:
            raise InvalidTransitionError(order.status, OrderStatus.COMMITTED, message=EXPIRY_REASON)

        rows = self.store.conditional_update(
            order.id,
            OrderStatus.PENDING_COMMIT,
            {"status": OrderStatus.COMMITTED, "committed_at": now, "expires_at": None},
        )
        if rows == 0:
            raise self._lost_race(order.id, OrderStatus.COMMITTED)
        logger.info("order committed", extra={"order_id": order.id, "seller_id": seller_id})

        self._book_delivery(self._load(order.id))
        return self._load(order.id)

    def _book_delivery(self, order: Order) -> None:
        profile = self.directory.profile(order.seller_id)
        request = ShipmentRequest(
            order_id=order.id,
            origin=profile.pickup_address if profile else {},
            destination=order.shipping_address,
            weight_kg=PARCEL_WEIGHT_KG * max(1, len(order.items)),
        )
        try:
            shipment = self.delivery.create_shipment(request)
        except UpstreamProviderError as exc:
            logger.warning(
                "delivery booking failed; commit stands",
                extra={"order_id": order.id, "provider": exc.provider, "transient": exc.transient},
            )
            self.notifier.send(order.seller_email, templates.delivery_pending(order))
            self.notifier.send(order.buyer_email, templates.order_confirmed(order))
            return

        patch = {
            "courier": shipment.courier,
            "tracking_number": shipment.tracking_number,
            "label_url": shipment.label_url,
            "pickup_window": shipment.pickup_window,
        }
        if shipment.price_cents is not None:
            patch["delivery_fee_cents"] = shipment.price_cents
        if self.store.conditional_update(order.id, OrderStatus.COMMITTED, patch) == 0:
            logger.warning("order moved before shipment was stored", extra={"order_id": order.id})
        booked = self._load(order.id)
        logger.info(
            "delivery booked",
            extra={"order_id": order.id, "courier": shipment.courier, "tracking_number": shipment.tracking_number},
        )
        self.notifier.send(booked.seller_email, templates.pickup_scheduled(booked))
        self.notifier.send(booked.buyer_email, templates.order_confirmed(booked))

    def decline(self, order_id: str, seller_id: str, reason: str = "") -> Order:
        """Seller refuses the order; books are released and the buyer refunded.

        Raises:
            NotFoundError, ForbiddenError, InvalidTransitionError
        """
        order = self._load(order_id)
        if order.seller_id != seller_id:
            raise ForbiddenError("order belongs to another seller")
        self._guard(order, OrderStatus.DECLINED)
        reason = (reason or "").strip() or "declined by seller"
        now = self.clock()

        with self.store.atomic():
            rows = self.store.conditional_update(
                order.id,
                OrderStatus.PENDING_COMMIT,
                {"status": OrderStatus.DECLINED, "declined_at": now, "decline_reason": reason, "expires_at": None},
            )
            if rows == 0:
                raise self._lost_race(order.id, OrderStatus.DECLINED)
            self._release_and_oblige(order, reason)

        declined = self._load(order.id)
        logger.info("order declined", extra={"order_id": order.id, "reason": reason})
        self.notifier.send(declined.buyer_email, templates.order_declined(declined))
        self.notifier.send(declined.seller_email, templates.decline_confirmed(declined))
        return declined

    def expire(self, order_id: str) -> bool:
        """Force-expire an overdue ``pending_commit`` order (sweeper only).

        Returns:
            bool: True if this call performed the transition; False when the
            order is not due, or another writer already moved it.

        Raises:
            NotFoundError: Unknown order.
        """
        order = self._load(order_id)
        now = self.clock()
        if order.status != OrderStatus.PENDING_COMMIT or order.expires_at is None or order.expires_at > now:
            return False

        with self.store.atomic():
            rows = self.store.conditional_update(
                order.id,
                OrderStatus.PENDING_COMMIT,
                {"status": OrderStatus.EXPIRED, "expired_at": now, "decline_reason": EXPIRY_REASON, "expires_at": None},
            )
            if rows == 0:
                return False
            self._release_and_oblige(order, EXPIRY_REASON)

        expired = self._load(order.id)
        logger.info("order expired", extra={"order_id": order.id})
        self.notifier.send(expired.buyer_email, templates.order_expired_buyer(expired))
        self.notifier.send(expired.seller_email, templates.order_expired_seller(expired))
        return True

    def void(self, order_id: str, reason: str) -> bool:
        """Decline a ``pending_commit`` order whose charge failed, without a refund.

        Returns:
            bool: True if the order was moved.
        """
        order = self._load(order_id)
        if order.status != OrderStatus.PENDING_COMMIT:
            return False
        with self.store.atomic():
            rows = self.store.conditional_update(
                order.id,
                OrderStatus.PENDING_COMMIT,
                {"status": OrderStatus.DECLINED, "declined_at": self.clock(), "decline_reason": reason, "expires_at": None},
            )
            if rows == 0:
                return False
            self.inventory.release(order.book_ids, order.buyer_id)
        logger.info("order voided", extra={"order_id": order.id, "reason": reason})
        return True

    def refund(self, order_id: str, reason: str = "") -> Order:
        """Refund an order that has not been delivered yet.

        Raises:
            NotFoundError: Unknown order.
            InvalidTransitionError: Delivered, declined, expired or already refunded.
        """
        order = self._load(order_id)
        self._guard(order, OrderStatus.REFUNDED)
        reason = (reason or "").strip() or "refunded"
        now = self.clock()

        with self.store.atomic():
            rows = self.store.conditional_update(
                order.id,
                order.status,
                {"status": OrderStatus.REFUNDED, "refunded_at": now, "decline_reason": reason, "expires_at": None},
            )
            if rows == 0:
                raise self._lost_race(order.id, OrderStatus.REFUNDED)
            self._release_and_oblige(order, reason)

        refunded = self._load(order.id)
        logger.info("order refunded", extra={"order_id": order.id, "reason": reason})
        self.notifier.send(refunded.buyer_email, templates.order_refunded(refunded))
        return refunded

    def mark_shipped(self, order_id: str) -> Order:
        """``committed -> shipped`` on the first "collected" event."""
        order = self._load(order_id)
        self._guard(order, OrderStatus.SHIPPED)
        rows = self.store.conditional_update(
            order.id, OrderStatus.COMMITTED, {"status": OrderStatus.SHIPPED, "shipped_at": self.clock()}
        )
        if rows == 0:
            raise self._lost_race(order.id, OrderStatus.SHIPPED)
        shipped = self._load(order.id)
        logger.info("order shipped", extra={"order_id": order.id})
        self.notifier.send(shipped.buyer_email, templates.order_shipped(shipped))
        return shipped

    def mark_delivered(self, order_id: str) -> Order:
        """Record delivery and store the settlement figures.

        Accepted from ``shipped`` and, for out-of-order courier events, from
        ``committed``. The order becomes payout-eligible.
        """
        order = self._load(order_id)
        self._guard(order, OrderStatus.DELIVERED)
        settlement = calculate(order)
        rows = self.store.conditional_update(
            order.id,
            order.status,
            {
                "status": OrderStatus.DELIVERED,
                "delivered_at": self.clock(),
                "platform_commission_cents": settlement.platform_commission_cents,
                "seller_net_cents": settlement.seller_net_cents,
                "commission_policy": settlement.policy_version,
            },
        )
        if rows == 0:
            raise self._lost_race(order.id, OrderStatus.DELIVERED)
        delivered = self._load(order.id)
        logger.info(
            "order delivered",
            extra={
                "order_id": order.id,
                "seller_net_cents": settlement.seller_net_cents,
                "platform_margin_cents": settlement.platform_margin_cents,
            },
        )
        self.notifier.send(delivered.buyer_email, templates.order_delivered_buyer(delivered))
        self.notifier.send(delivered.seller_email, templates.order_delivered_seller(delivered))
        return delivered

    def apply_tracking_event(self, event: TrackingEvent) -> Optional[Order]:
        """Feed a courier tracking event into the state machine.

        Events are deduplicated by key. Unknown tracking numbers, informational
        codes, and events that would move the order backwards are no-ops.

        Returns:
            Order | None: The order after the event, or None when ignored.
        """
        if not self.events.remember("tracking", event.key, self.clock()):
            logger.debug("tracking event already applied", extra={"event_key": event.key})
            return None
        try:
            return self._apply_tracking(event)
        except Exception:
            self.events.forget("tracking", event.key)
            raise

    def _apply_tracking(self, event: TrackingEvent) -> Optional[Order]:
        order = self.store.find_by_tracking_number(event.tracking_number)
        if order is None:
            logger.warning("tracking event for unknown shipment", extra={"tracking_number": event.tracking_number})
            return None
        target = TRACKING_STATUS_MAP.get(event.status_code.strip().lower())
        if target is None or order.status == target or not can_transition(order.status, target):
            return order
        try:
            if target == OrderStatus.SHIPPED:
                return self.mark_shipped(order.id)
            return self.mark_delivered(order.id)
        except InvalidTransitionError:
            return self.store.find(order.id)
