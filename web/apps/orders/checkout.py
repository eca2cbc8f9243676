"""Checkout: validate a cart, reserve the books, open a payment session.

No order exists yet at this point. The cart travels with the payment
session (recorded in the ``PaymentLedger``) until the provider reports the
charge as captured, at which point the webhook reconciler splits it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List

from .domain import CartLine, InventoryPort, PaymentLedger, PaymentProvider, PaymentSession
from .errors import UpstreamProviderError, ValidationError
from .lifecycle import utcnow
from .splitter import partition_by_seller, validate_cart

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SellerBreakdown:
    seller_id: str
    item_count: int
    total_cents: int


@dataclass
class CheckoutSession:
    reference: str
    authorization_url: str
    amount_cents: int
    currency: str
    reserved_until: datetime
    sellers: List[SellerBreakdown] = field(default_factory=list)


class Checkout:
    """Starts hosted-payment checkouts for multi-seller carts."""

    def __init__(
        self,
        *,
        inventory: InventoryPort,
        payments: PaymentProvider,
        ledger: PaymentLedger,
        clock: Callable[[], datetime] = utcnow,
        reservation: timedelta = timedelta(minutes=15),
        currency: str = "ZAR",
    ):
        self.inventory = inventory
        self.payments = payments
        self.ledger = ledger
        self.clock = clock
        self.reservation = reservation
        self.currency = currency

    def start(
        self,
        *,
        buyer_id: str,
        email: str,
        book_ids: List[str],
        shipping_address: dict,
        callback_url: str = "",
    ) -> CheckoutSession:
        """Reserve the cart and open a payment session for its total.

        Args:
            buyer_id: Purchasing user.
            email: Buyer e-mail, used by the provider and for notifications.
            book_ids: Listings in the cart, in display order.
            shipping_address: Delivery destination.
            callback_url: Where the provider sends the buyer after paying.

        Returns:
            CheckoutSession: Provider authorization URL, reference and a
            per-seller breakdown.

        Raises:
            ValidationError: Empty cart, unknown or unavailable books.
            ForbiddenError: Buyer owns one of the books.
            UpstreamProviderError: The provider could not open a session;
                the reservation is released.
        """
        if not book_ids:
            raise ValidationError("cart is empty", code="EMPTY_CART")
        now = self.clock()
        listings = {l.book_id: l for l in self.inventory.lookup(book_ids)}
        missing = [b for b in book_ids if b not in listings]
        if missing:
            raise ValidationError(f"unknown books: {', '.join(missing)}", code="BOOK_NOT_FOUND")

        lines = [
            CartLine(
                book_id=b,
                seller_id=listings[b].seller_id,
                price_cents=listings[b].price_cents,
                title=listings[b].title,
            )
            for b in book_ids
        ]
        validate_cart(buyer_id, lines)
        unavailable = [b for b in book_ids if not listings[b].available_to(buyer_id, now)]
        if unavailable:
            raise ValidationError(f"books no longer available: {', '.join(unavailable)}", code="BOOK_UNAVAILABLE")

        until = now + self.reservation
        if not self.inventory.reserve(list(book_ids), buyer_id, now, until):
            raise ValidationError("books were reserved by another buyer", code="BOOK_UNAVAILABLE")

        amount = sum(l.price_cents for l in lines)
        reference = f"ord_{uuid.uuid4().hex}"
        try:
            init = self.payments.initialize_session(
                amount_cents=amount,
                currency=self.currency,
                email=email,
                reference=reference,
                callback_url=callback_url,
                metadata={"buyer_id": buyer_id, "book_ids": list(book_ids)},
            )
        except UpstreamProviderError:
            self.inventory.release(list(book_ids), buyer_id)
            raise

        self.ledger.record_session(
            PaymentSession(
                reference=init.reference,
                buyer_id=buyer_id,
                buyer_email=email,
                amount_cents=amount,
                currency=self.currency,
                lines=lines,
                shipping_address=dict(shipping_address),
                created_at=now,
            )
        )
        sellers = [
            SellerBreakdown(seller_id=s, item_count=len(g), total_cents=sum(l.price_cents for l in g))
            for s, g in partition_by_seller(lines).items()
        ]
        logger.info(
            "checkout started",
            extra={"reference": init.reference, "buyer_id": buyer_id, "amount_cents": amount, "sellers": len(sellers)},
        )
        return CheckoutSession(
            reference=init.reference,
            authorization_url=init.authorization_url,
            amount_cents=amount,
            currency=self.currency,
            reserved_until=until,
            sellers=sellers,
        )
