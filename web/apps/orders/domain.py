"""Domain entities, the status graph, and the ports the engine depends on.

Everything in this module is plain Python: dataclasses for orders and the
records that hang off them, the allowed status transitions, and
``typing.Protocol`` ports for storage and external providers. Django ORM
implementations live in ``repository``; provider implementations live in
``adapters`` (simulated) and ``http_adapters`` (real).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import ContextManager, Dict, FrozenSet, Iterable, List, Optional, Protocol


# ---- Enums ----
class OrderStatus(str, Enum):
    """Persisted order statuses (wire-level values)."""

    PENDING_COMMIT = "pending_commit"
    COMMITTED = "committed"
    DECLINED = "declined"
    EXPIRED = "expired"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    REFUNDED = "refunded"


TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_COMMIT: frozenset(
        {OrderStatus.COMMITTED, OrderStatus.DECLINED, OrderStatus.EXPIRED, OrderStatus.REFUNDED}
    ),
    # committed -> delivered covers a "delivered" tracking event with no prior "collected"
    OrderStatus.COMMITTED: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.DECLINED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Return True when ``current -> target`` is an edge of the status graph."""
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class OrderItem:
    """A single book in an order.

    Attributes:
        book_id: Listing identifier.
        price_cents: Unit price in minor units.
        title: Display title, used in notifications.
    """

    book_id: str
    price_cents: int
    title: str = ""


@dataclass(frozen=True)
class CartLine:
    """A book in a multi-seller cart, before it is assigned to an order."""

    book_id: str
    seller_id: str
    price_cents: int
    title: str = ""


@dataclass
class OrderDraft:
    """Input to ``OrderLifecycle.create`` for one seller's share of a cart."""

    buyer_id: str
    seller_id: str
    items: List[OrderItem]
    payment_reference: str
    shipping_address: dict = field(default_factory=dict)
    buyer_email: str = ""
    seller_email: str = ""
    currency: str = "ZAR"

    @property
    def total_cents(self) -> int:
        return sum(i.price_cents for i in self.items)


@dataclass
class Order:
    """One seller's portion of a purchase.

    Money fields are integer minor units. ``expires_at`` is only set while
    the order is ``pending_commit``. Settlement fields stay ``None`` until
    the order is delivered.
    """

    id: str
    buyer_id: str
    seller_id: str
    payment_reference: str
    items: List[OrderItem]
    total_cents: int
    status: OrderStatus
    created_at: datetime
    expires_at: Optional[datetime] = None
    currency: str = "ZAR"
    buyer_email: str = ""
    seller_email: str = ""
    shipping_address: dict = field(default_factory=dict)
    commission_policy: str = ""
    platform_commission_cents: Optional[int] = None
    seller_net_cents: Optional[int] = None
    delivery_fee_cents: Optional[int] = None
    committed_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: str = ""
    expired_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    payout_initiated_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None
    courier: str = ""
    tracking_number: str = ""
    label_url: str = ""
    pickup_window: str = ""

    @property
    def book_ids(self) -> List[str]:
        return [i.book_id for i in self.items]


@dataclass
class Listing:
    """A book as seen by checkout: who sells it and whether it can be bought."""

    book_id: str
    seller_id: str
    title: str
    price_cents: int
    sold: bool = False
    reserved_by: Optional[str] = None
    reserved_until: Optional[datetime] = None

    def available_to(self, buyer_id: str, now: datetime) -> bool:
        if self.sold:
            return False
        if self.reserved_by and self.reserved_by != buyer_id and self.reserved_until and self.reserved_until > now:
            return False
        return True


@dataclass
class PaymentSession:
    """A hosted payment session opened at checkout, keyed by reference."""

    reference: str
    buyer_id: str
    buyer_email: str
    amount_cents: int
    currency: str
    lines: List[CartLine]
    shipping_address: dict = field(default_factory=dict)
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: Optional[datetime] = None


@dataclass
class PayoutRecord:
    reference: str
    order_id: str
    seller_id: str
    amount_cents: int
    platform_fee_cents: int
    status: PayoutStatus = PayoutStatus.PENDING
    provider_response: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class RefundObligation:
    order_id: str
    payment_reference: str
    amount_cents: int
    reason: str
    status: RefundStatus = RefundStatus.PENDING
    provider_response: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class Profile:
    user_id: str
    name: str = ""
    email: str = ""
    pickup_address: dict = field(default_factory=dict)
    recipient_code: str = ""


# ---- Provider value objects ----
@dataclass(frozen=True)
class SessionInit:
    authorization_url: str
    reference: str


@dataclass(frozen=True)
class ChargeVerification:
    """Result of ``verify(reference)``; ``status`` is ``"success"`` when captured."""

    status: str
    amount_cents: Optional[int] = None
    raw: dict = field(default_factory=dict)

    @property
    def captured(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class TransferResult:
    status: str
    provider_reference: str = ""
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    status: str
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Quote:
    courier: str
    service: str
    price_cents: int
    eta_days: int


@dataclass(frozen=True)
class ShipmentRequest:
    order_id: str
    origin: dict
    destination: dict
    weight_kg: float


@dataclass(frozen=True)
class Shipment:
    courier: str
    tracking_number: str
    label_url: str = ""
    eta: str = ""
    pickup_window: str = ""
    price_cents: Optional[int] = None


@dataclass(frozen=True)
class TrackingEvent:
    """A courier tracking event, from polling or push.

    ``event_id`` is the deduplication key; couriers that do not send one get
    a key derived from tracking number, status code and timestamp.
    """

    tracking_number: str
    status_code: str
    timestamp: str = ""
    location: str = ""
    event_id: str = ""

    @property
    def key(self) -> str:
        return self.event_id or f"{self.tracking_number}:{self.status_code}:{self.timestamp}"


# ---- Ports (DIP) ----
class OrderStore(Protocol):
    """Durable orders with status-guarded writes."""

    def insert(self, order: Order) -> None:
        """Persist a new order.

        Raises:
            DuplicateOrderError: If an order already exists for the same
                payment reference and seller.
        """
        ...

    def conditional_update(
        self, order_id: str, expected_status: OrderStatus, patch: dict, require_null: Iterable[str] = ()
    ) -> int:
        """Apply ``patch`` only if the stored status equals ``expected_status``.

        Args:
            order_id: Order to update.
            expected_status: Status the row must currently have.
            patch: Field values to write.
            require_null: Field names that must currently be NULL as well.

        Returns:
            int: Rows affected; 0 means the guard did not hold (lost race).
        """
        ...

    def find(self, order_id: str) -> Optional[Order]: ...

    def find_expired_commitable(self, now: datetime) -> List[Order]: ...

    def find_by_payment_reference(self, reference: str) -> List[Order]: ...

    def find_by_tracking_number(self, tracking_number: str) -> Optional[Order]: ...

    def find_reminder_due(self, created_before: datetime, now: datetime) -> List[Order]: ...

    def find_in_status(self, statuses: Iterable[OrderStatus]) -> List[Order]: ...

    def find_payout_due(self) -> List[Order]: ...

    def atomic(self) -> ContextManager:
        """Unit of work spanning the order, inventory and ledger writes."""
        ...


class InventoryPort(Protocol):
    def lookup(self, book_ids: Iterable[str]) -> List[Listing]: ...

    def reserve(self, book_ids: List[str], buyer_id: str, now: datetime, until: datetime) -> bool:
        """Reserve every book for ``buyer_id`` or none of them."""
        ...

    def mark_sold(self, book_ids: List[str], buyer_id: str, now: datetime) -> int:
        """Sell the unsold books that are free or held by ``buyer_id``.

        Returns the number of books marked; a count below ``len(set(book_ids))``
        means another buyer got there first.
        """
        ...

    def release(self, book_ids: List[str], buyer_id: str) -> None:
        """Make the books purchasable again, touching only those sold to or held by ``buyer_id``."""
        ...


class PaymentLedger(Protocol):
    def record_session(self, session: PaymentSession) -> None: ...

    def find(self, reference: str) -> Optional[PaymentSession]: ...

    def mark_captured(self, reference: str, raw: dict) -> int:
        """``pending -> captured``; returns rows affected."""
        ...

    def mark_failed(self, reference: str, raw: dict) -> int:
        """``pending -> failed``; returns rows affected."""
        ...


class PayoutStore(Protocol):
    def create(self, record: PayoutRecord) -> None:
        """Raises DuplicatePayoutError if a non-failed payout exists for the order."""
        ...

    def find(self, reference: str) -> Optional[PayoutRecord]: ...

    def for_order(self, order_id: str) -> List[PayoutRecord]: ...

    def find_stale_pending(self, before: datetime) -> List[PayoutRecord]:
        """Payouts still ``pending`` that were created at or before ``before``."""
        ...

    def mark(self, reference: str, status: PayoutStatus, raw: dict) -> int:
        """Move a payout forward from ``pending`` only; returns rows affected."""
        ...

    def attach_response(self, reference: str, raw: dict) -> None: ...


class RefundLedger(Protocol):
    def create_obligation(self, obligation: RefundObligation) -> bool:
        """Returns False when an obligation already exists for the order."""
        ...

    def find(self, order_id: str) -> Optional[RefundObligation]: ...

    def pending(self) -> List[RefundObligation]: ...

    def mark(self, order_id: str, status: RefundStatus, raw: dict) -> int: ...


class EventLog(Protocol):
    def remember(self, scope: str, key: str, now: datetime) -> bool:
        """Record an event key; False when it was already recorded."""
        ...

    def forget(self, scope: str, key: str) -> None: ...

    def purge(self, before: datetime) -> int: ...


class AccountDirectory(Protocol):
    def profile(self, user_id: str) -> Optional[Profile]: ...


class PaymentProvider(Protocol):
    def initialize_session(
        self, *, amount_cents: int, currency: str, email: str, reference: str, callback_url: str, metadata: dict
    ) -> SessionInit: ...

    def verify(self, reference: str) -> ChargeVerification: ...

    def transfer(self, *, recipient: str, amount_cents: int, reference: str, reason: str) -> TransferResult: ...

    def refund(self, *, reference: str, amount_cents: int) -> RefundResult: ...

    def verify_signature(self, raw_body: bytes, signature: str) -> bool: ...


class DeliveryProvider(Protocol):
    def quote(self, origin: dict, destination: dict, weight_kg: float) -> List[Quote]: ...

    def create_shipment(self, request: ShipmentRequest) -> Shipment: ...

    def track(self, tracking_number: str, courier: str = "") -> List[TrackingEvent]: ...


class NotificationGateway(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None: ...


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool: ...
