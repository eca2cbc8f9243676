"""Order lifecycle: creation, seller actions, expiry, delivery and refunds.

All tests run on the in-memory world from ``conftest.py`` with a fixed
clock starting 2024-03-01 09:00 UTC.
"""
import dataclasses
from datetime import timedelta

import pytest

from apps.orders.adapters import SimulatedDeliveryProvider
from apps.orders.domain import OrderDraft, OrderItem, OrderStatus, PaymentStatus, RefundStatus, TrackingEvent
from apps.orders.errors import (
    BookUnavailableError,
    DuplicateOrderError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PaymentNotCapturedError,
    ValidationError,
)
from apps.orders.lifecycle import EXPIRY_REASON, UNAVAILABLE_REASON


def test_create_starts_pending_with_48h_deadline(world, order):
    assert order.status == OrderStatus.PENDING_COMMIT
    assert order.created_at == world.clock.now
    assert order.expires_at == order.created_at + timedelta(hours=48)
    assert order.commission_policy == "v1"
    assert order.seller_email == "alice@example.com"
    assert world.inventory.books["b1"].sold is True
    assert world.mail.subjects_for("bob@example.com") == ["Order Confirmed - Awaiting Seller Commitment"]
    assert world.mail.subjects_for("alice@example.com") == ["New Order - Action Required (48 hours)"]


def test_create_requires_captured_payment(make_world):
    world = make_world()
    world.payments.charge_status = "failed"
    world.add_book("b1", "alice", 1000)
    reference = world.open_session("bob", ["b1"])
    draft = OrderDraft(
        buyer_id="bob", seller_id="alice", items=[OrderItem("b1", 1000)], payment_reference=reference
    )
    with pytest.raises(PaymentNotCapturedError):
        world.lifecycle.create(draft)
    assert world.store.rows == {}
    assert world.ledger.find(reference).status == PaymentStatus.PENDING


def test_create_for_a_book_sold_elsewhere_records_a_declined_order(world):
    world.add_book("b1", "alice", 15000)
    [sold] = world.buy("dave", ["b1"])
    reference = world.open_session("bob", ["b1"])
    draft = OrderDraft(buyer_id="bob", seller_id="alice", items=[OrderItem("b1", 15000)], payment_reference=reference)

    with pytest.raises(BookUnavailableError):
        world.lifecycle.create(draft)

    [declined] = world.store.find_by_payment_reference(reference)
    assert (declined.status, declined.decline_reason) == (OrderStatus.DECLINED, UNAVAILABLE_REASON)
    assert declined.expires_at is None
    assert world.refunds.find(declined.id).amount_cents == 15000
    assert world.inventory.buyers["b1"] == "dave"
    assert world.store.find(sold.id).status == OrderStatus.PENDING_COMMIT

    # a replayed payment finds the declined record instead of retrying the sale
    with pytest.raises(DuplicateOrderError):
        world.lifecycle.create(draft)
    assert len(world.refunds.obligations) == 1


@pytest.mark.parametrize("items,code", [([], "EMPTY_ORDER"), ([OrderItem("b1", 0)], "INVALID_PRICE")])
def test_create_rejects_bad_drafts(world, items, code):
    draft = OrderDraft(buyer_id="bob", seller_id="alice", items=items, payment_reference="ord_x")
    with pytest.raises(ValidationError) as e:
        world.lifecycle.create(draft)
    assert e.value.code == code


def test_commit_books_courier(world, order):
    world.clock.advance(hours=3)
    committed = world.lifecycle.commit(order.id, "alice")

    assert committed.status == OrderStatus.COMMITTED
    assert committed.committed_at == order.created_at + timedelta(hours=3)
    assert committed.expires_at is None
    assert committed.tracking_number.startswith("SIM")
    assert committed.courier == "courier-sim"
    assert committed.delivery_fee_cents == 9500
    assert committed.pickup_window.endswith("09:00 - 17:00")
    assert "Courier Pickup Scheduled" in world.mail.subjects_for("alice@example.com")[-1]
    assert world.mail.subjects_for("bob@example.com")[-1] == "Your order has been confirmed!"


def test_commit_stands_when_booking_fails(make_world):
    """A courier outage after commit keeps the order committed, without tracking."""
    world = make_world(delivery=SimulatedDeliveryProvider(fail=True))
    world.add_book("b1", "alice", 15000)
    order = world.buy("bob", ["b1"])[0]

    committed = world.lifecycle.commit(order.id, "alice")

    assert committed.status == OrderStatus.COMMITTED
    assert committed.tracking_number == ""
    assert world.mail.subjects_for("alice@example.com")[-1] == "Order Commitment Confirmed - Next Steps"
    assert world.mail.subjects_for("bob@example.com")[-1] == "Your order has been confirmed!"


def test_commit_by_other_seller_is_forbidden(world, order):
    with pytest.raises(ForbiddenError):
        world.lifecycle.commit(order.id, "mallory")
    assert world.store.find(order.id).status == OrderStatus.PENDING_COMMIT


def test_commit_unknown_order(world):
    with pytest.raises(NotFoundError):
        world.lifecycle.commit("missing", "alice")


def test_commit_after_deadline_is_rejected(world, order):
    world.clock.advance(hours=48)
    with pytest.raises(InvalidTransitionError) as e:
        world.lifecycle.commit(order.id, "alice")
    assert str(e.value) == EXPIRY_REASON
    assert world.store.find(order.id).status == OrderStatus.PENDING_COMMIT


def test_commit_twice_is_rejected(world, order):
    world.lifecycle.commit(order.id, "alice")
    with pytest.raises(InvalidTransitionError):
        world.lifecycle.commit(order.id, "alice")


def test_commit_loses_race_to_sweeper(world, order):
    """The sweeper expires the order between the seller's read and write."""
    world.clock.advance(hours=47, minutes=59)

    def sweeper_wins():
        row = world.store.rows[order.id]
        world.store.rows[order.id] = dataclasses.replace(row, status=OrderStatus.EXPIRED)

    world.store.interleave.append(sweeper_wins)
    with pytest.raises(InvalidTransitionError) as e:
        world.lifecycle.commit(order.id, "alice")
    assert e.value.current == OrderStatus.EXPIRED
    assert world.store.find(order.id).status == OrderStatus.EXPIRED
    assert world.store.find(order.id).tracking_number == ""


def test_expire_loses_race_to_commit(world, order):
    """A commit that lands first makes the expiry a no-op."""
    world.clock.advance(hours=49)

    def seller_wins():
        row = world.store.rows[order.id]
        world.store.rows[order.id] = dataclasses.replace(row, status=OrderStatus.COMMITTED)

    world.store.interleave.append(seller_wins)
    assert world.lifecycle.expire(order.id) is False
    assert world.store.find(order.id).status == OrderStatus.COMMITTED
    assert world.refunds.find(order.id) is None
    assert world.inventory.books["b1"].sold is True


def test_decline_releases_books_and_obliges_refund(world, order):
    declined = world.lifecycle.decline(order.id, "alice", "  damaged copy ")

    assert declined.status == OrderStatus.DECLINED
    assert declined.decline_reason == "damaged copy"
    assert declined.expires_at is None
    assert world.inventory.books["b1"].sold is False
    obligation = world.refunds.find(order.id)
    assert obligation.amount_cents == 15000
    assert obligation.status == RefundStatus.PENDING
    assert world.mail.subjects_for("bob@example.com")[-1] == "Order Declined - Full Refund Processed"


def test_decline_without_reason_gets_default(world, order):
    assert world.lifecycle.decline(order.id, "alice").decline_reason == "declined by seller"


def test_decline_after_commit_is_rejected(world, order):
    world.lifecycle.commit(order.id, "alice")
    with pytest.raises(InvalidTransitionError):
        world.lifecycle.decline(order.id, "alice")
    assert world.refunds.find(order.id) is None


def test_expire_only_when_due(world, order):
    world.clock.advance(hours=47)
    assert world.lifecycle.expire(order.id) is False

    world.clock.advance(hours=1)
    assert world.lifecycle.expire(order.id) is True
    expired = world.store.find(order.id)
    assert expired.status == OrderStatus.EXPIRED
    assert expired.expired_at == order.created_at + timedelta(hours=48)
    assert expired.decline_reason == EXPIRY_REASON
    assert world.refunds.find(order.id).reason == EXPIRY_REASON
    assert world.inventory.books["b1"].sold is False


def test_expire_is_idempotent(world, order):
    world.clock.advance(hours=50)
    assert world.lifecycle.expire(order.id) is True
    assert world.lifecycle.expire(order.id) is False
    assert len(world.refunds.obligations) == 1


def test_void_declines_without_refund(world, order):
    assert world.lifecycle.void(order.id, "payment failed") is True
    voided = world.store.find(order.id)
    assert voided.status == OrderStatus.DECLINED
    assert voided.decline_reason == "payment failed"
    assert world.refunds.find(order.id) is None
    assert world.lifecycle.void(order.id, "payment failed") is False


@pytest.mark.parametrize("steps", [[], ["commit"], ["commit", "ship"]])
def test_refund_from_open_statuses(world, order, steps):
    if "commit" in steps:
        world.lifecycle.commit(order.id, "alice")
    if "ship" in steps:
        world.lifecycle.mark_shipped(order.id)

    refunded = world.lifecycle.refund(order.id, "buyer request")

    assert refunded.status == OrderStatus.REFUNDED
    assert world.refunds.find(order.id).reason == "buyer request"
    assert world.inventory.books["b1"].sold is False


def test_refund_after_delivery_is_rejected(world, order):
    world.lifecycle.commit(order.id, "alice")
    world.lifecycle.mark_delivered(order.id)
    with pytest.raises(InvalidTransitionError):
        world.lifecycle.refund(order.id)


def test_delivery_records_settlement(world, order):
    world.lifecycle.commit(order.id, "alice")
    world.lifecycle.mark_shipped(order.id)
    delivered = world.lifecycle.mark_delivered(order.id)

    assert delivered.status == OrderStatus.DELIVERED
    assert delivered.platform_commission_cents == 1500
    assert delivered.seller_net_cents == 13500
    assert delivered.commission_policy == "v1"
    assert world.mail.subjects_for("alice@example.com")[-1] == "Order delivered"


def test_mark_shipped_requires_commit(world, order):
    with pytest.raises(InvalidTransitionError):
        world.lifecycle.mark_shipped(order.id)


def _track(order, code, event_id="", ts="2024-03-02T10:00:00Z"):
    return TrackingEvent(tracking_number=order.tracking_number, status_code=code, timestamp=ts, event_id=event_id)


def test_tracking_events_drive_shipping_and_delivery(world, order):
    committed = world.lifecycle.commit(order.id, "alice")

    assert world.lifecycle.apply_tracking_event(_track(committed, "collected", "e1")).status == OrderStatus.SHIPPED
    assert world.lifecycle.apply_tracking_event(_track(committed, "in_transit", "e2")).status == OrderStatus.SHIPPED
    assert world.lifecycle.apply_tracking_event(_track(committed, "DELIVERED", "e3")).status == OrderStatus.DELIVERED


def test_tracking_event_replay_is_ignored(world, order):
    committed = world.lifecycle.commit(order.id, "alice")
    event = _track(committed, "collected", "e1")
    assert world.lifecycle.apply_tracking_event(event) is not None
    assert world.lifecycle.apply_tracking_event(event) is None


def test_delivered_before_collected_is_accepted(world, order):
    committed = world.lifecycle.commit(order.id, "alice")
    assert world.lifecycle.apply_tracking_event(_track(committed, "delivered")).status == OrderStatus.DELIVERED


def test_stale_and_unknown_tracking_events_are_noops(world, order):
    committed = world.lifecycle.commit(order.id, "alice")
    world.lifecycle.apply_tracking_event(_track(committed, "delivered", "d"))

    stale = world.lifecycle.apply_tracking_event(_track(committed, "collected", "late"))
    assert stale.status == OrderStatus.DELIVERED
    info = world.lifecycle.apply_tracking_event(_track(committed, "label_printed", "info"))
    assert info.status == OrderStatus.DELIVERED

    unknown = TrackingEvent(tracking_number="NOPE", status_code="delivered", event_id="x")
    assert world.lifecycle.apply_tracking_event(unknown) is None


def test_tracking_key_falls_back_to_fields():
    e = TrackingEvent(tracking_number="T1", status_code="collected", timestamp="2024-03-02T10:00:00Z")
    assert e.key == "T1:collected:2024-03-02T10:00:00Z"
