"""Plain-text notification templates and the best-effort ``Notifier``.

Templates are small functions returning a ``Message``. ``Notifier`` is what
the engine talks to: it consults the injected rate limiter, hands the
message to the gateway, and logs (never raises) when either refuses. A lost
e-mail must not undo an order transition that has already been stored.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .domain import NotificationGateway, Order, PayoutRecord, RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    subject: str
    body: str


def money(cents: Optional[int], currency: str = "ZAR") -> str:
    cents = cents or 0
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{currency} {cents // 100}.{cents % 100:02d}"


def _short(order: Order) -> str:
    return order.id[:8]


def _titles(order: Order) -> str:
    return "\n".join(f"  - {i.title or i.book_id} ({money(i.price_cents, order.currency)})" for i in order.items)


def _deadline(order: Order) -> str:
    if not order.expires_at:
        return "-"
    return order.expires_at.strftime("%Y-%m-%d %H:%M UTC")


# ---- templates ----

def order_pending(order: Order) -> Message:
    return Message(
        "Order Confirmed - Awaiting Seller Commitment",
        f"Thank you for your purchase.\n\nOrder {_short(order)}:\n{_titles(order)}\n"
        f"Total: {money(order.total_cents, order.currency)}\n\n"
        f"The seller has until {_deadline(order)} to commit. If they do not, you will be refunded in full.",
    )


def action_required(order: Order) -> Message:
    return Message(
        "New Order - Action Required (48 hours)",
        f"You have a new order {_short(order)}:\n{_titles(order)}\n"
        f"Total: {money(order.total_cents, order.currency)}\n\n"
        f"Please commit or decline before {_deadline(order)}. Uncommitted orders are cancelled and refunded.",
    )


def pickup_scheduled(order: Order) -> Message:
    return Message(
        f"Order #{_short(order)} - Courier Pickup Scheduled",
        f"Thank you for committing to order {_short(order)}.\n\n"
        f"Courier: {order.courier}\nTracking number: {order.tracking_number}\n"
        f"Pickup window: {order.pickup_window or '-'}\nShipping label: {order.label_url or '-'}\n\n"
        "Please have the books packaged and ready for collection.",
    )


def delivery_pending(order: Order) -> Message:
    return Message(
        "Order Commitment Confirmed - Next Steps",
        f"Your commitment to order {_short(order)} has been recorded.\n\n"
        "We could not book the courier automatically. Pickup details will follow once delivery is arranged.",
    )


def order_confirmed(order: Order) -> Message:
    tracking = f"\nTracking number: {order.tracking_number}" if order.tracking_number else ""
    return Message(
        "Your order has been confirmed!",
        f"The seller has committed to order {_short(order)}:\n{_titles(order)}{tracking}\n\n"
        "We will let you know when it is on the way.",
    )


def order_declined(order: Order) -> Message:
    return Message(
        "Order Declined - Full Refund Processed",
        f"Unfortunately the seller declined order {_short(order)}.\n"
        f"Reason: {order.decline_reason or '-'}\n\n"
        f"A refund of {money(order.total_cents, order.currency)} has been requested to your original payment method.",
    )


def books_unavailable(order: Order) -> Message:
    return Message(
        "Order Cancelled - Books No Longer Available",
        f"Some books in order {_short(order)} were bought by another buyer before your payment cleared:\n{_titles(order)}\n\n"
        f"A refund of {money(order.total_cents, order.currency)} has been requested to your original payment method.",
    )


def decline_confirmed(order: Order) -> Message:
    return Message(
        "Order Decline Confirmed",
        f"You declined order {_short(order)}. The books are listed for sale again and the buyer will be refunded.",
    )


def order_expired_buyer(order: Order) -> Message:
    return Message(
        "Order Cancelled - Seller Did Not Respond",
        f"The seller did not commit to order {_short(order)} in time.\n\n"
        f"A refund of {money(order.total_cents, order.currency)} has been requested to your original payment method.",
    )


def order_expired_seller(order: Order) -> Message:
    return Message(
        "Order Expired",
        f"Order {_short(order)} expired because it was not committed within 48 hours. The books are listed again.",
    )


def order_shipped(order: Order) -> Message:
    return Message(
        "Your order is on the way!",
        f"Order {_short(order)} was collected by {order.courier or 'the courier'}.\n"
        f"Tracking number: {order.tracking_number or '-'}",
    )


def order_delivered_buyer(order: Order) -> Message:
    return Message("Your order has been delivered", f"Order {_short(order)} has been delivered. Enjoy your books!")


def order_delivered_seller(order: Order) -> Message:
    return Message(
        "Order delivered",
        f"Order {_short(order)} has been delivered. "
        f"Your payout of {money(order.seller_net_cents, order.currency)} will be released shortly.",
    )


def payout_initiated(order: Order, payout: PayoutRecord) -> Message:
    return Message(
        "Your payment is on the way!",
        f"We have sent {money(payout.amount_cents, order.currency)} for order {_short(order)}.\n"
        f"Platform fee: {money(payout.platform_fee_cents, order.currency)}\nReference: {payout.reference}",
    )


def commit_reminder(order: Order, hours_left: float) -> Message:
    urgent = hours_left <= 12
    subject = (
        f"URGENT: Order {_short(order)} expires in {int(hours_left)} hours"
        if urgent
        else f"Reminder: Order {_short(order)} is waiting for your commitment"
    )
    return Message(
        subject,
        f"Order {_short(order)} is still waiting for you:\n{_titles(order)}\n\n"
        f"Please commit or decline before {_deadline(order)}.",
    )


def order_refunded(order: Order) -> Message:
    return Message(
        "Refund Processed",
        f"Order {_short(order)} has been refunded. "
        f"{money(order.total_cents, order.currency)} will be returned to your original payment method.",
    )


def sweep_summary(expired: int, skipped: int, failed: int) -> Message:
    return Message(
        f"Auto-Expire Report: {expired} orders expired",
        f"Expired: {expired}\nSkipped: {skipped}\nFailed: {failed}",
    )


class Notifier:
    """Best-effort delivery of engine messages.

    Args:
        gateway: Transport that actually sends the message.
        limiter: Per-recipient rate limiter; a refused message is dropped
            and logged.
    """

    def __init__(self, gateway: NotificationGateway, limiter: RateLimiter):
        self.gateway = gateway
        self.limiter = limiter

    def send(self, recipient: str, message: Message) -> bool:
        """Send ``message`` to ``recipient``.

        Returns:
            bool: True when the gateway accepted the message.
        """
        if not recipient:
            logger.warning("notification skipped: no recipient", extra={"subject": message.subject})
            return False
        if not self.limiter.allow(f"notify:{recipient.lower()}"):
            logger.warning("notification rate limited", extra={"recipient": recipient, "subject": message.subject})
            return False
        try:
            self.gateway.send(recipient, message.subject, message.body)
        except Exception:
            logger.exception("notification failed", extra={"recipient": recipient, "subject": message.subject})
            return False
        return True
