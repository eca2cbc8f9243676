"""Seller payouts for delivered orders."""
import pytest

from apps.orders.adapters import SimulatedPaymentProvider
from apps.orders.domain import PayoutStatus
from apps.orders.errors import InvalidTransitionError, UpstreamProviderError, ValidationError


def _delivered(world, book="a1", seller="alice", price=10000):
    world.add_book(book, seller, price)
    order = world.buy("bob", [book])[0]
    world.lifecycle.commit(order.id, seller)
    return world.lifecycle.mark_delivered(order.id)


def test_initiate_pays_seller_net(world):
    order = _delivered(world)
    payout = world.engine.payouts.initiate(order.id)

    assert payout.status == PayoutStatus.PENDING
    assert payout.amount_cents == 9000
    assert payout.platform_fee_cents == 1000
    assert payout.reference == f"payout_{order.id}_1"
    assert world.store.find(order.id).payout_initiated_at == world.clock.now
    assert world.mail.subjects_for("alice@example.com")[-1] == "Your payment is on the way!"


def test_second_initiate_is_rejected(world):
    order = _delivered(world)
    world.engine.payouts.initiate(order.id)
    with pytest.raises(InvalidTransitionError):
        world.engine.payouts.initiate(order.id)
    assert len(world.payouts.for_order(order.id)) == 1


def test_only_delivered_orders_are_paid(world, order):
    with pytest.raises(InvalidTransitionError):
        world.engine.payouts.initiate(order.id)


def test_seller_without_recipient(world):
    order = _delivered(world)
    world.directory.profiles["alice"].recipient_code = ""
    with pytest.raises(ValidationError) as e:
        world.engine.payouts.initiate(order.id)
    assert e.value.code == "MISSING_RECIPIENT"
    assert world.store.find(order.id).payout_initiated_at is None


def test_rejected_transfer_fails_payout_and_allows_retry(make_world):
    world = make_world(payments=SimulatedPaymentProvider(secret="sk_test_sandbox", fail_transfers=True))
    order = _delivered(world)

    payout = world.engine.payouts.initiate(order.id)
    assert payout.status == PayoutStatus.FAILED
    assert world.store.find(order.id).payout_initiated_at is None
    assert "Your payment is on the way!" not in world.mail.subjects_for("alice@example.com")

    world.payments.fail_transfers = False
    world.clock.advance(minutes=5)
    retry = world.engine.payouts.initiate(order.id)
    assert retry.status == PayoutStatus.PENDING
    assert retry.reference == f"payout_{order.id}_2"


def test_transient_transfer_error_leaves_payout_pending(world, monkeypatch):
    order = _delivered(world)

    def timeout(**kw):
        raise UpstreamProviderError("payments", "timeout", transient=True)

    monkeypatch.setattr(world.payments, "transfer", timeout)
    with pytest.raises(UpstreamProviderError):
        world.engine.payouts.initiate(order.id)

    [record] = world.payouts.for_order(order.id)
    assert record.status == PayoutStatus.PENDING
    assert world.store.find(order.id).payout_initiated_at is not None


def test_immediate_transfer_success(world, monkeypatch):
    from apps.orders.domain import TransferResult

    order = _delivered(world)
    monkeypatch.setattr(world.payments, "transfer", lambda **kw: TransferResult(status="success"))
    assert world.engine.payouts.initiate(order.id).status == PayoutStatus.COMPLETED


def test_transfer_results_only_move_forward(world):
    order = _delivered(world)
    payout = world.engine.payouts.initiate(order.id)
    service = world.engine.payouts

    assert service.apply_transfer_result(payout.reference, succeeded=True, raw={}) is True
    assert service.apply_transfer_result(payout.reference, succeeded=False, raw={}) is False
    assert service.apply_transfer_result("payout_unknown", succeeded=True, raw={}) is False
    assert world.payouts.find(payout.reference).status == PayoutStatus.COMPLETED


def test_release_due_pays_each_delivered_order_once(world):
    _delivered(world, "a1", "alice")
    _delivered(world, "c1", "carol")

    first = world.engine.payouts.release_due()
    second = world.engine.payouts.release_due()

    assert (first.initiated, first.failed) == (2, 0)
    assert (second.initiated, second.failed) == (0, 0)


def test_unacknowledged_pending_payout_is_resent_under_its_reference(world, monkeypatch):
    order = _delivered(world)
    sent = []
    transfer = world.payments.transfer

    def timeout(**kw):
        sent.append(kw["reference"])
        raise UpstreamProviderError("payments", "timeout", transient=True)

    monkeypatch.setattr(world.payments, "transfer", timeout)
    with pytest.raises(UpstreamProviderError):
        world.engine.payouts.initiate(order.id)

    def recording(**kw):
        sent.append(kw["reference"])
        return transfer(**kw)

    monkeypatch.setattr(world.payments, "transfer", recording)
    assert world.engine.payouts.release_due().resent == 0

    world.clock.advance(minutes=61)
    report = world.engine.payouts.release_due()

    assert (report.initiated, report.resent, report.failed) == (0, 1, 0)
    assert sent == [f"payout_{order.id}_1", f"payout_{order.id}_1"]
    [record] = world.payouts.for_order(order.id)
    assert record.status == PayoutStatus.PENDING
    assert record.provider_response["reference"] == record.reference


def test_acknowledged_pending_payout_waits_for_its_webhook(world):
    order = _delivered(world)
    world.engine.payouts.initiate(order.id)
    world.clock.advance(hours=3)

    assert world.engine.payouts.release_due().resent == 0


def test_resend_rejects_settled_payouts(world):
    order = _delivered(world)
    payout = world.engine.payouts.initiate(order.id)
    world.engine.payouts.apply_transfer_result(payout.reference, succeeded=True, raw={})

    with pytest.raises(InvalidTransitionError):
        world.engine.payouts.resend(payout.reference)
