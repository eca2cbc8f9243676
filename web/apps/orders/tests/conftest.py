"""In-memory ports and a fully wired engine for fast domain tests.

The fakes honour the same contracts as the Django repositories (conditional
updates return affected rows, duplicate orders raise, ledgers only move
forward from ``pending``) so the engine behaves exactly as in production,
minus the database.
"""

import contextlib
import dataclasses
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from apps.orders.adapters import SimulatedDeliveryProvider, SimulatedPaymentProvider, hmac_signature
from apps.orders.domain import (
    CartLine,
    Listing,
    OrderStatus,
    PaymentSession,
    PaymentStatus,
    PayoutStatus,
    Profile,
    RefundStatus,
)
from apps.orders.errors import DuplicateOrderError, DuplicatePayoutError
from apps.orders.notifications import Notifier
from apps.orders.providers import assemble_engine

SECRET = "sk_test_sandbox"
START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now += timedelta(**kw)


class InMemoryOrderStore:
    def __init__(self):
        self.rows = {}
        # callables run once, just before the next conditional update
        self.interleave = []

    @contextlib.contextmanager
    def atomic(self):
        # undoes inserts only; interleaved writers stand for other transactions
        before = set(self.rows)
        try:
            yield
        except Exception:
            for order_id in set(self.rows) - before:
                del self.rows[order_id]
            raise

    def insert(self, order):
        for row in self.rows.values():
            if row.payment_reference == order.payment_reference and row.seller_id == order.seller_id:
                raise DuplicateOrderError("duplicate")
        self.rows[order.id] = dataclasses.replace(order)

    def conditional_update(self, order_id, expected_status, patch, require_null=()):
        while self.interleave:
            self.interleave.pop(0)()
        row = self.rows.get(order_id)
        if row is None or row.status != OrderStatus(expected_status):
            return 0
        if any(getattr(row, f) is not None for f in require_null):
            return 0
        self.rows[order_id] = dataclasses.replace(row, **patch)
        return 1

    def find(self, order_id):
        row = self.rows.get(order_id)
        return dataclasses.replace(row) if row else None

    def _all(self, pred):
        return [dataclasses.replace(r) for r in sorted(self.rows.values(), key=lambda r: r.created_at) if pred(r)]

    def find_expired_commitable(self, now):
        return self._all(lambda r: r.status == OrderStatus.PENDING_COMMIT and r.expires_at and r.expires_at <= now)

    def find_by_payment_reference(self, reference):
        return self._all(lambda r: r.payment_reference == reference)

    def find_by_tracking_number(self, tracking_number):
        found = self._all(lambda r: r.tracking_number and r.tracking_number == tracking_number)
        return found[0] if found else None

    def find_reminder_due(self, created_before, now):
        return self._all(
            lambda r: r.status == OrderStatus.PENDING_COMMIT
            and r.created_at <= created_before
            and r.expires_at is not None
            and r.expires_at > now
            and r.reminder_sent_at is None
        )

    def find_in_status(self, statuses):
        wanted = {OrderStatus(s) for s in statuses}
        return self._all(lambda r: r.status in wanted)

    def find_payout_due(self):
        return self._all(lambda r: r.status == OrderStatus.DELIVERED and r.payout_initiated_at is None)


class InMemoryInventory:
    def __init__(self):
        self.books = {}
        self.buyers = {}

    def add(self, listing):
        self.books[listing.book_id] = listing

    def lookup(self, book_ids):
        return [dataclasses.replace(self.books[b]) for b in book_ids if b in self.books]

    def reserve(self, book_ids, buyer_id, now, until):
        for b in book_ids:
            book = self.books.get(b)
            if book is None or not book.available_to(buyer_id, now):
                return False
        for b in book_ids:
            self.books[b] = dataclasses.replace(self.books[b], reserved_by=buyer_id, reserved_until=until)
        return True

    def mark_sold(self, book_ids, buyer_id, now):
        # all or nothing: the store's rollback does not reach the inventory
        free = [b for b in set(book_ids) if b in self.books and self.books[b].available_to(buyer_id, now)]
        if len(free) != len(set(book_ids)):
            return len(free)
        for b in free:
            self.books[b] = dataclasses.replace(self.books[b], sold=True, reserved_by=None, reserved_until=None)
            self.buyers[b] = buyer_id
        return len(free)

    def release(self, book_ids, buyer_id):
        for b in book_ids:
            book = self.books.get(b)
            if book is None or buyer_id not in (self.buyers.get(b), book.reserved_by):
                continue
            self.books[b] = dataclasses.replace(book, sold=False, reserved_by=None, reserved_until=None)
            self.buyers.pop(b, None)


class InMemoryLedger:
    def __init__(self):
        self.sessions = {}

    def record_session(self, session):
        self.sessions[session.reference] = dataclasses.replace(session)

    def find(self, reference):
        s = self.sessions.get(reference)
        return dataclasses.replace(s) if s else None

    def _move(self, reference, status):
        s = self.sessions.get(reference)
        if s is None or s.status != PaymentStatus.PENDING:
            return 0
        self.sessions[reference] = dataclasses.replace(s, status=status)
        return 1

    def mark_captured(self, reference, raw):
        return self._move(reference, PaymentStatus.CAPTURED)

    def mark_failed(self, reference, raw):
        return self._move(reference, PaymentStatus.FAILED)


class InMemoryPayoutStore:
    def __init__(self):
        self.records = {}

    def create(self, record):
        if any(r.order_id == record.order_id and r.status != PayoutStatus.FAILED for r in self.records.values()):
            raise DuplicatePayoutError("payout exists")
        self.records[record.reference] = dataclasses.replace(record)

    def find(self, reference):
        r = self.records.get(reference)
        return dataclasses.replace(r) if r else None

    def for_order(self, order_id):
        return [dataclasses.replace(r) for r in self.records.values() if r.order_id == order_id]

    def find_stale_pending(self, before):
        return [
            dataclasses.replace(r)
            for r in self.records.values()
            if r.status == PayoutStatus.PENDING and r.created_at <= before
        ]

    def mark(self, reference, status, raw):
        r = self.records.get(reference)
        if r is None or r.status != PayoutStatus.PENDING:
            return 0
        self.records[reference] = dataclasses.replace(r, status=PayoutStatus(status), provider_response=raw)
        return 1

    def attach_response(self, reference, raw):
        if reference in self.records:
            self.records[reference] = dataclasses.replace(self.records[reference], provider_response=raw)


class InMemoryRefundLedger:
    def __init__(self):
        self.obligations = {}

    def create_obligation(self, obligation):
        if obligation.order_id in self.obligations:
            return False
        self.obligations[obligation.order_id] = dataclasses.replace(obligation)
        return True

    def find(self, order_id):
        o = self.obligations.get(order_id)
        return dataclasses.replace(o) if o else None

    def pending(self):
        return [dataclasses.replace(o) for o in self.obligations.values() if o.status == RefundStatus.PENDING]

    def mark(self, order_id, status, raw):
        o = self.obligations.get(order_id)
        if o is None or o.status != RefundStatus.PENDING:
            return 0
        self.obligations[order_id] = dataclasses.replace(o, status=RefundStatus(status), provider_response=raw)
        return 1


class InMemoryEventLog:
    def __init__(self):
        self.seen = {}

    def remember(self, scope, key, now):
        if (scope, key) in self.seen:
            return False
        self.seen[(scope, key)] = now
        return True

    def forget(self, scope, key):
        self.seen.pop((scope, key), None)

    def purge(self, before):
        old = [k for k, at in self.seen.items() if at < before]
        for k in old:
            del self.seen[k]
        return len(old)


class InMemoryDirectory:
    def __init__(self):
        self.profiles = {}

    def profile(self, user_id):
        return self.profiles.get(user_id)


class RecordingGateway:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, recipient, subject, body):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((recipient, subject, body))

    def subjects_for(self, recipient):
        return [s for r, s, _ in self.sent if r == recipient]


class AllowAll:
    def allow(self, key):
        return True


class World:
    """Engine over in-memory ports, a movable clock and recorded e-mail."""

    def __init__(self, payments=None, delivery=None):
        self.clock = Clock()
        self.store = InMemoryOrderStore()
        self.inventory = InMemoryInventory()
        self.ledger = InMemoryLedger()
        self.payouts = InMemoryPayoutStore()
        self.refunds = InMemoryRefundLedger()
        self.events = InMemoryEventLog()
        self.directory = InMemoryDirectory()
        self.payments = payments or SimulatedPaymentProvider(secret=SECRET)
        self.delivery = delivery or SimulatedDeliveryProvider()
        self.mail = RecordingGateway()
        self.notifier = Notifier(self.mail, AllowAll())
        self.engine = assemble_engine(
            store=self.store,
            inventory=self.inventory,
            ledger=self.ledger,
            payouts=self.payouts,
            refunds=self.refunds,
            events=self.events,
            directory=self.directory,
            payments=self.payments,
            delivery=self.delivery,
            notifier=self.notifier,
            clock=self.clock,
            admin_email="ops@example.com",
        )

    @property
    def lifecycle(self):
        return self.engine.lifecycle

    def add_seller(self, seller_id, recipient_code="RCP_default"):
        self.directory.profiles[seller_id] = Profile(
            user_id=seller_id,
            name=seller_id.title(),
            email=f"{seller_id}@example.com",
            pickup_address={"street": "1 Main Rd", "city": "Cape Town", "postal_code": "8001"},
            recipient_code=recipient_code,
        )

    def add_book(self, book_id, seller_id, price_cents, title=""):
        if seller_id not in self.directory.profiles:
            self.add_seller(seller_id)
        self.inventory.add(Listing(book_id=book_id, seller_id=seller_id, title=title or book_id, price_cents=price_cents))

    def open_session(self, buyer_id, book_ids, reference=None, status=PaymentStatus.PENDING):
        """Record a checkout session for ``book_ids`` and return its reference."""
        reference = reference or f"ord_{uuid.uuid4().hex}"
        lines = [
            CartLine(
                book_id=b,
                seller_id=self.inventory.books[b].seller_id,
                price_cents=self.inventory.books[b].price_cents,
                title=self.inventory.books[b].title,
            )
            for b in book_ids
        ]
        self.ledger.record_session(
            PaymentSession(
                reference=reference,
                buyer_id=buyer_id,
                buyer_email=f"{buyer_id}@example.com",
                amount_cents=sum(l.price_cents for l in lines),
                currency="ZAR",
                lines=lines,
                shipping_address={"street": "5 Long St", "city": "Durban", "postal_code": "4001"},
                status=status,
                created_at=self.clock(),
            )
        )
        return reference

    def buy(self, buyer_id, book_ids):
        """Open a session and split it as a captured payment; returns the orders."""
        reference = self.open_session(buyer_id, book_ids)
        session = self.ledger.find(reference)
        result = self.engine.splitter.split(
            buyer_id=buyer_id,
            lines=session.lines,
            payment_reference=reference,
            shipping_address=session.shipping_address,
            buyer_email=session.buyer_email,
        )
        return result.created

    def signed(self, payload):
        import json

        raw = json.dumps(payload).encode("utf-8")
        return raw, hmac_signature(SECRET, raw)


@pytest.fixture
def world():
    return World()


@pytest.fixture
def make_world():
    return World


@pytest.fixture
def order(world):
    """One ``pending_commit`` order from seller ``alice`` for buyer ``bob``."""
    world.add_book("b1", "alice", 15000, "Dune")
    return world.buy("bob", ["b1"])[0]
