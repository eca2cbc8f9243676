"""Django repositories against a real database: guarded updates and uniqueness."""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from apps.orders.domain import (
    CartLine,
    Order,
    OrderItem,
    OrderStatus,
    PaymentSession,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
    RefundObligation,
)
from apps.orders.errors import DuplicateOrderError, DuplicatePayoutError
from apps.orders.models import Book, OrderModel
from apps.orders.repository import (
    DjangoEventLog,
    DjangoInventory,
    DjangoOrderStore,
    DjangoPaymentLedger,
    DjangoPayoutStore,
    DjangoRefundLedger,
)

pytestmark = pytest.mark.django_db

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _order(reference="ord_1", seller_id="alice", **kw):
    fields = dict(
        id=str(uuid.uuid4()),
        buyer_id="bob",
        seller_id=seller_id,
        payment_reference=reference,
        items=[OrderItem(book_id="b1", price_cents=15000, title="Dune")],
        total_cents=15000,
        status=OrderStatus.PENDING_COMMIT,
        created_at=NOW,
        expires_at=NOW + timedelta(hours=48),
    )
    fields.update(kw)
    return Order(**fields)


@pytest.fixture
def store():
    return DjangoOrderStore()


def test_insert_and_find_round_trips_items(store):
    order = _order()
    store.insert(order)

    found = store.find(order.id)
    assert found.status is OrderStatus.PENDING_COMMIT
    assert found.items == order.items
    assert found.expires_at == order.expires_at


def test_second_order_for_same_reference_and_seller_is_rejected(store):
    store.insert(_order())
    with pytest.raises(DuplicateOrderError):
        store.insert(_order())
    store.insert(_order(seller_id="carol"))
    assert OrderModel.objects.count() == 2


def test_find_with_malformed_id_returns_none(store):
    assert store.find("not-a-uuid") is None
    assert store.find(str(uuid.uuid4())) is None


def test_conditional_update_only_from_expected_status(store):
    order = _order()
    store.insert(order)

    patch = {"status": OrderStatus.COMMITTED, "committed_at": NOW, "expires_at": None}
    assert store.conditional_update(order.id, OrderStatus.PENDING_COMMIT, patch) == 1
    assert store.conditional_update(order.id, OrderStatus.PENDING_COMMIT, {"status": OrderStatus.DECLINED}) == 0
    assert store.find(order.id).status is OrderStatus.COMMITTED


def test_require_null_claims_a_field_once(store):
    order = _order()
    store.insert(order)

    claim = {"reminder_sent_at": NOW}
    assert store.conditional_update(order.id, OrderStatus.PENDING_COMMIT, claim, require_null=["reminder_sent_at"]) == 1
    assert store.conditional_update(order.id, OrderStatus.PENDING_COMMIT, claim, require_null=["reminder_sent_at"]) == 0


def test_expired_and_reminder_queries(store):
    stale = _order(reference="ord_old", created_at=NOW - timedelta(hours=50), expires_at=NOW - timedelta(hours=2))
    fresh = _order(reference="ord_new", created_at=NOW - timedelta(hours=30), expires_at=NOW + timedelta(hours=18))
    store.insert(stale)
    store.insert(fresh)

    assert [o.id for o in store.find_expired_commitable(NOW)] == [stale.id]
    assert [o.id for o in store.find_reminder_due(NOW - timedelta(hours=24), NOW)] == [fresh.id]


def test_tracking_lookup_ignores_blank_numbers(store):
    store.insert(_order(reference="ord_a"))
    shipped = _order(reference="ord_b", status=OrderStatus.SHIPPED, tracking_number="TRK1")
    store.insert(shipped)

    assert store.find_by_tracking_number("TRK1").id == shipped.id
    assert store.find_by_tracking_number("") is None


def _books(*ids, seller="alice"):
    for b in ids:
        Book.objects.create(id=b, seller_id=seller, title=b, price_cents=1000)


def test_reserve_is_all_or_nothing():
    _books("b1", "b2")
    Book.objects.filter(id="b2").update(sold=True)
    inventory = DjangoInventory()

    assert inventory.reserve(["b1", "b2"], "bob", NOW, NOW + timedelta(minutes=15)) is False
    assert Book.objects.get(id="b1").reserved_by is None


def test_reservation_blocks_other_buyers_until_it_lapses():
    _books("b1")
    inventory = DjangoInventory()
    until = NOW + timedelta(minutes=15)

    assert inventory.reserve(["b1"], "bob", NOW, until) is True
    assert inventory.reserve(["b1"], "dave", NOW + timedelta(minutes=5), until) is False
    assert inventory.reserve(["b1"], "bob", NOW + timedelta(minutes=5), until) is True
    assert inventory.reserve(["b1"], "dave", until, until + timedelta(minutes=15)) is True


def test_mark_sold_and_release():
    _books("b1")
    inventory = DjangoInventory()

    assert inventory.mark_sold(["b1"], "bob", NOW) == 1
    [listing] = inventory.lookup(["b1"])
    assert listing.sold is True

    inventory.release(["b1"], "bob")
    book = Book.objects.get(id="b1")
    assert (book.sold, book.buyer_id) == (False, None)


def test_mark_sold_skips_books_held_or_bought_by_someone_else():
    _books("b1", "b2")
    inventory = DjangoInventory()
    inventory.reserve(["b1"], "dave", NOW, NOW + timedelta(minutes=15))

    assert inventory.mark_sold(["b1"], "bob", NOW) == 0
    assert inventory.mark_sold(["b2"], "bob", NOW) == 1
    assert inventory.mark_sold(["b2"], "carol", NOW) == 0
    assert Book.objects.get(id="b2").buyer_id == "bob"
    # a lapsed hold no longer protects the book
    assert inventory.mark_sold(["b1"], "bob", NOW + timedelta(minutes=15)) == 1


def test_release_leaves_other_buyers_books_alone():
    _books("b1")
    inventory = DjangoInventory()
    inventory.mark_sold(["b1"], "carol", NOW)

    inventory.release(["b1"], "bob")

    book = Book.objects.get(id="b1")
    assert (book.sold, book.buyer_id) == (True, "carol")


def test_payment_ledger_moves_forward_once():
    ledger = DjangoPaymentLedger()
    ledger.record_session(
        PaymentSession(
            reference="ord_1",
            buyer_id="bob",
            buyer_email="bob@example.com",
            amount_cents=15000,
            currency="ZAR",
            lines=[CartLine(book_id="b1", seller_id="alice", price_cents=15000, title="Dune")],
            created_at=NOW,
        )
    )

    assert ledger.mark_captured("ord_1", {"status": "success"}) == 1
    assert ledger.mark_failed("ord_1", {}) == 0
    session = ledger.find("ord_1")
    assert session.status is PaymentStatus.CAPTURED
    assert session.lines[0].seller_id == "alice"
    assert ledger.find("ord_missing") is None


def test_one_live_payout_per_order(store):
    order = _order(status=OrderStatus.DELIVERED)
    store.insert(order)
    payouts = DjangoPayoutStore()

    def record(ref, minutes):
        return PayoutRecord(
            reference=ref, order_id=order.id, seller_id="alice", amount_cents=13500,
            platform_fee_cents=1500, created_at=NOW + timedelta(minutes=minutes),
        )

    payouts.create(record("payout_1", 0))
    with pytest.raises(DuplicatePayoutError):
        payouts.create(record("payout_2", 1))

    assert payouts.mark("payout_1", PayoutStatus.FAILED, {"reason": "x"}) == 1
    payouts.create(record("payout_3", 2))
    assert [p.reference for p in payouts.for_order(order.id)] == ["payout_1", "payout_3"]
    assert [p.reference for p in payouts.find_stale_pending(NOW + timedelta(minutes=2))] == ["payout_3"]
    assert payouts.find_stale_pending(NOW + timedelta(minutes=1)) == []


def test_refund_obligation_created_once(store):
    order = _order(status=OrderStatus.REFUNDED)
    store.insert(order)
    ledger = DjangoRefundLedger()
    obligation = RefundObligation(
        order_id=order.id, payment_reference="ord_1", amount_cents=15000, reason="damaged", created_at=NOW
    )

    assert ledger.create_obligation(obligation) is True
    assert ledger.create_obligation(obligation) is False
    assert [o.order_id for o in ledger.pending()] == [order.id]

    assert ledger.mark(order.id, "processed", {}) == 1
    assert ledger.pending() == []


def test_event_log_dedup_and_purge():
    log = DjangoEventLog()

    assert log.remember("payments", "evt_1", NOW) is True
    assert log.remember("payments", "evt_1", NOW) is False
    assert log.remember("tracking", "evt_1", NOW) is True

    log.forget("payments", "evt_1")
    assert log.remember("payments", "evt_1", NOW + timedelta(days=8)) is True

    assert log.purge(NOW + timedelta(days=1)) == 1
