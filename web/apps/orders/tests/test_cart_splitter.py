"""Splitting a paid multi-seller cart into per-seller orders."""
import logging

import pytest

from apps.orders.domain import CartLine, OrderStatus
from apps.orders.errors import CheckoutFailedError, ForbiddenError, PaymentNotCapturedError, ValidationError
from apps.orders.splitter import partition_by_seller, validate_cart


def _line(book, seller, price=1000):
    return CartLine(book_id=book, seller_id=seller, price_cents=price)


def test_partition_is_stable():
    lines = [_line("b1", "A"), _line("b2", "B"), _line("b3", "A")]
    groups = partition_by_seller(lines)
    assert list(groups) == ["A", "B"]
    assert [l.book_id for l in groups["A"]] == ["b1", "b3"]


def test_validate_cart_rules():
    with pytest.raises(ValidationError) as e:
        validate_cart("bob", [])
    assert e.value.code == "EMPTY_CART"
    with pytest.raises(ValidationError) as e:
        validate_cart("bob", [_line("b1", "A"), _line("b1", "A")])
    assert e.value.code == "DUPLICATE_ITEM"
    with pytest.raises(ForbiddenError) as e:
        validate_cart("bob", [_line("b1", "bob")])
    assert e.value.code == "OWN_BOOK"


def test_cart_of_two_sellers_makes_two_orders(world):
    """Cart [A, A, B] becomes one order of 2 items for A and one of 1 for B."""
    world.add_book("a1", "alice", 10000)
    world.add_book("a2", "alice", 5000)
    world.add_book("c1", "carol", 7000)

    orders = world.buy("bob", ["a1", "a2", "c1"])

    assert [(o.seller_id, o.total_cents, len(o.items)) for o in orders] == [("alice", 15000, 2), ("carol", 7000, 1)]
    assert {o.payment_reference for o in orders} == {orders[0].payment_reference}
    assert all(o.status == OrderStatus.PENDING_COMMIT for o in orders)
    assert all(o.expires_at == orders[0].expires_at for o in orders)


def test_split_twice_reports_existing(world):
    world.add_book("a1", "alice", 10000)
    reference = world.open_session("bob", ["a1"])
    session = world.ledger.find(reference)
    kwargs = dict(buyer_id="bob", lines=session.lines, payment_reference=reference, shipping_address={})

    first = world.engine.splitter.split(**kwargs)
    second = world.engine.splitter.split(**kwargs)

    assert first.created_count == 1
    assert second.created_count == 0
    assert second.existing == ["alice"]
    assert len(world.store.rows) == 1


def test_one_seller_failing_does_not_block_the_other(world, monkeypatch):
    world.add_book("a1", "alice", 10000)
    world.add_book("c1", "carol", 7000)
    original = world.lifecycle.create

    def flaky_create(draft):
        if draft.seller_id == "alice":
            raise RuntimeError("db hiccup")
        return original(draft)

    monkeypatch.setattr(world.lifecycle, "create", flaky_create)
    reference = world.open_session("bob", ["a1", "c1"])
    session = world.ledger.find(reference)
    result = world.engine.splitter.split(
        buyer_id="bob", lines=session.lines, payment_reference=reference, shipping_address={}
    )

    assert [o.seller_id for o in result.created] == ["carol"]
    assert result.failed == [("alice", "RuntimeError")]


def test_all_sellers_failing_raises(world, monkeypatch):
    world.add_book("a1", "alice", 10000)
    def broken_create(draft):
        raise RuntimeError("down")

    monkeypatch.setattr(world.lifecycle, "create", broken_create)
    reference = world.open_session("bob", ["a1"])
    session = world.ledger.find(reference)
    with pytest.raises(CheckoutFailedError):
        world.engine.splitter.split(buyer_id="bob", lines=session.lines, payment_reference=reference, shipping_address={})


def test_uncaptured_payment_creates_nothing(world):
    world.payments.charge_status = "abandoned"
    world.add_book("a1", "alice", 10000)
    world.add_book("c1", "carol", 7000)
    reference = world.open_session("bob", ["a1", "c1"])
    session = world.ledger.find(reference)
    with pytest.raises(PaymentNotCapturedError):
        world.engine.splitter.split(buyer_id="bob", lines=session.lines, payment_reference=reference, shipping_address={})
    assert world.store.rows == {}


def test_split_summary_is_logged_at_info(world, caplog, monkeypatch):
    world.add_book("a1", "alice", 10000)
    world.add_book("c1", "carol", 7000)
    world.buy("dave", ["c1"])
    monkeypatch.setattr(logging.getLogger("apps.orders"), "propagate", True)
    caplog.clear()

    with caplog.at_level(logging.INFO, logger="apps.orders.splitter"):
        world.buy("bob", ["a1", "c1"])

    [record] = [r for r in caplog.records if r.getMessage() == "cart split"]
    assert (record.created_count, record.existing, record.unavailable, record.failed) == (1, 0, 1, 0)
