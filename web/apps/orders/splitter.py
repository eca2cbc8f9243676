"""Multi-seller cart splitting.

A paid cart becomes one order per seller. Items are partitioned by seller
id in first-seen order, each partition becomes an ``OrderDraft``, and each
draft goes through ``OrderLifecycle.create`` on its own: one seller's
failure does not stop the others.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .domain import CartLine, Order, OrderDraft, OrderItem
from .errors import BookUnavailableError, CheckoutFailedError, DuplicateOrderError, ForbiddenError, ValidationError

logger = logging.getLogger(__name__)


def partition_by_seller(lines: List[CartLine]) -> Dict[str, List[CartLine]]:
    """Stable partition of cart lines by seller id.

    Sellers appear in the order their first item appears in the cart, and
    items keep their relative order inside each partition.
    """
    groups: Dict[str, List[CartLine]] = {}
    for line in lines:
        groups.setdefault(line.seller_id, []).append(line)
    return groups


def validate_cart(buyer_id: str, lines: List[CartLine]) -> None:
    """Reject carts that must never be split.

    Raises:
        ValidationError: Empty cart, or a book listed twice.
        ForbiddenError: The buyer is the seller of one of the books.
    """
    if not lines:
        raise ValidationError("cart is empty", code="EMPTY_CART")
    seen = set()
    for line in lines:
        if line.book_id in seen:
            raise ValidationError(f"book {line.book_id} appears twice", code="DUPLICATE_ITEM")
        seen.add(line.book_id)
        if line.seller_id == buyer_id:
            raise ForbiddenError("buyers cannot purchase their own books", code="OWN_BOOK")


@dataclass
class SplitResult:
    """Outcome of splitting one paid cart.

    Attributes:
        created: Orders created by this call.
        existing: Seller ids whose order already existed (replayed checkout).
        unavailable: Seller ids whose books went to another buyer; their order
            was stored declined with a refund owed.
        failed: ``(seller_id, error code)`` for partitions that could not be created.
    """

    created: List[Order] = field(default_factory=list)
    existing: List[str] = field(default_factory=list)
    unavailable: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)


class CartSplitter:
    """Creates one order per seller from a captured payment's cart.

    Args:
        lifecycle: ``OrderLifecycle`` that performs each ``create``.
    """

    def __init__(self, lifecycle):
        self.lifecycle = lifecycle

    def split(
        self,
        *,
        buyer_id: str,
        lines: List[CartLine],
        payment_reference: str,
        shipping_address: dict,
        buyer_email: str = "",
        currency: str = "ZAR",
    ) -> SplitResult:
        """Split the cart and create the sub-orders.

        The payment is checked once up front; a payment that is not captured
        fails the whole split before any order is written.

        Returns:
            SplitResult: Per-seller outcome.

        Raises:
            ValidationError, ForbiddenError: Invalid cart, before splitting.
            PaymentNotCapturedError: The payment reference is not captured.
            CheckoutFailedError: No order was created or recorded and none existed.
        """
        validate_cart(buyer_id, lines)
        self.lifecycle.ensure_captured(payment_reference)

        result = SplitResult()
        for seller_id, group in partition_by_seller(lines).items():
            draft = OrderDraft(
                buyer_id=buyer_id,
                seller_id=seller_id,
                items=[OrderItem(book_id=l.book_id, price_cents=l.price_cents, title=l.title) for l in group],
                payment_reference=payment_reference,
                shipping_address=shipping_address,
                buyer_email=buyer_email,
                currency=currency,
            )
            try:
                result.created.append(self.lifecycle.create(draft))
            except DuplicateOrderError:
                result.existing.append(seller_id)
            except BookUnavailableError:
                result.unavailable.append(seller_id)
            except Exception as exc:
                logger.exception(
                    "sub-order creation failed",
                    extra={"seller_id": seller_id, "reference": payment_reference},
                )
                result.failed.append((seller_id, getattr(exc, "code", type(exc).__name__)))

        logger.info(
            "cart split",
            extra={
                "reference": payment_reference,
                "created_count": result.created_count,
                "existing": len(result.existing),
                "unavailable": len(result.unavailable),
                "failed": len(result.failed),
            },
        )
        if not (result.created or result.existing or result.unavailable):
            raise CheckoutFailedError(f"no orders could be created for {payment_reference}")
        return result
