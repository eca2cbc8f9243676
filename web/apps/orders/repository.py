"""Django ORM implementations of the storage ports.

Repositories translate between ORM rows and the domain dataclasses so the
engine never sees model instances. Status-guarded writes use
``QuerySet.filter(...).update(...)``, which compiles to a single
``UPDATE ... WHERE id = %s AND status = %s`` and returns the number of rows
affected; zero means another writer changed the row first.
"""

from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import Q

from .domain import (
    CartLine,
    Listing,
    Order,
    OrderItem,
    OrderStatus,
    PaymentSession,
    PaymentStatus,
    PayoutRecord,
    PayoutStatus,
    Profile,
    RefundObligation,
    RefundStatus,
)
from .errors import DuplicateOrderError, DuplicatePayoutError
from .models import (
    Book,
    OrderModel,
    PaymentRecord,
    ProcessedEvent,
    Profile as ProfileModel,
    RefundObligation as RefundObligationModel,
)
from .models import PayoutRecord as PayoutRecordModel


def _prepare(patch: dict) -> dict:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in patch.items()}


# ---- orders ----

ORDER_FIELDS = (
    "buyer_id",
    "seller_id",
    "payment_reference",
    "buyer_email",
    "seller_email",
    "currency",
    "total_cents",
    "commission_policy",
    "platform_commission_cents",
    "seller_net_cents",
    "delivery_fee_cents",
    "created_at",
    "expires_at",
    "committed_at",
    "declined_at",
    "decline_reason",
    "expired_at",
    "shipped_at",
    "delivered_at",
    "refunded_at",
    "payout_initiated_at",
    "reminder_sent_at",
    "courier",
    "tracking_number",
    "label_url",
    "pickup_window",
    "shipping_address",
)


def order_from_model(obj: OrderModel) -> Order:
    return Order(
        id=str(obj.id),
        items=[OrderItem(book_id=i["book_id"], price_cents=i["price_cents"], title=i.get("title", "")) for i in obj.items],
        status=OrderStatus(obj.status),
        **{f: getattr(obj, f) for f in ORDER_FIELDS},
    )


class DjangoOrderStore:
    """``OrderStore`` on the ``orders`` table."""

    def atomic(self):
        return transaction.atomic()

    def insert(self, order: Order) -> None:
        """Insert a new order row.

        Raises:
            DuplicateOrderError: ``(payment_reference, seller_id)`` already exists.
        """
        try:
            with transaction.atomic():
                OrderModel.objects.create(
                    id=order.id,
                    status=order.status.value,
                    items=[{"book_id": i.book_id, "title": i.title, "price_cents": i.price_cents} for i in order.items],
                    **{f: getattr(order, f) for f in ORDER_FIELDS},
                )
        except IntegrityError:
            raise DuplicateOrderError(f"order exists for {order.payment_reference}/{order.seller_id}")

    def conditional_update(
        self, order_id: str, expected_status: OrderStatus, patch: dict, require_null: Iterable[str] = ()
    ) -> int:
        qs = OrderModel.objects.filter(id=order_id, status=OrderStatus(expected_status).value)
        for field in require_null:
            qs = qs.filter(**{f"{field}__isnull": True})
        return qs.update(**_prepare(patch))

    def find(self, order_id: str) -> Optional[Order]:
        try:
            return order_from_model(OrderModel.objects.get(id=order_id))
        except (OrderModel.DoesNotExist, DjangoValidationError, ValueError):
            return None

    def find_expired_commitable(self, now: datetime) -> List[Order]:
        qs = OrderModel.objects.filter(status=OrderStatus.PENDING_COMMIT.value, expires_at__lte=now).order_by("expires_at")
        return [order_from_model(o) for o in qs]

    def find_by_payment_reference(self, reference: str) -> List[Order]:
        qs = OrderModel.objects.filter(payment_reference=reference).order_by("created_at")
        return [order_from_model(o) for o in qs]

    def find_by_tracking_number(self, tracking_number: str) -> Optional[Order]:
        obj = OrderModel.objects.filter(tracking_number=tracking_number).exclude(tracking_number="").first()
        return order_from_model(obj) if obj else None

    def find_reminder_due(self, created_before: datetime, now: datetime) -> List[Order]:
        qs = OrderModel.objects.filter(
            status=OrderStatus.PENDING_COMMIT.value,
            created_at__lte=created_before,
            expires_at__gt=now,
            reminder_sent_at__isnull=True,
        )
        return [order_from_model(o) for o in qs]

    def find_in_status(self, statuses: Iterable[OrderStatus]) -> List[Order]:
        qs = OrderModel.objects.filter(status__in=[OrderStatus(s).value for s in statuses])
        return [order_from_model(o) for o in qs]

    def find_payout_due(self) -> List[Order]:
        qs = OrderModel.objects.filter(status=OrderStatus.DELIVERED.value, payout_initiated_at__isnull=True)
        return [order_from_model(o) for o in qs.order_by("delivered_at")]


# ---- inventory ----

def _listing(book: Book) -> Listing:
    return Listing(
        book_id=book.id,
        seller_id=book.seller_id,
        title=book.title,
        price_cents=book.price_cents,
        sold=book.sold,
        reserved_by=book.reserved_by,
        reserved_until=book.reserved_until,
    )


class DjangoInventory:
    def lookup(self, book_ids: Iterable[str]) -> List[Listing]:
        return [_listing(b) for b in Book.objects.filter(id__in=list(book_ids))]

    def reserve(self, book_ids: List[str], buyer_id: str, now: datetime, until: datetime) -> bool:
        """Reserve all books or none, inside one transaction."""
        with transaction.atomic():
            free = Q(reserved_by__isnull=True) | Q(reserved_by=buyer_id) | Q(reserved_until__lte=now)
            n = (
                Book.objects.filter(id__in=book_ids, sold=False)
                .filter(free)
                .update(reserved_by=buyer_id, reserved_until=until)
            )
            if n != len(set(book_ids)):
                transaction.set_rollback(True)
                return False
        return True

    def mark_sold(self, book_ids: List[str], buyer_id: str, now: datetime) -> int:
        free = Q(reserved_by__isnull=True) | Q(reserved_by=buyer_id) | Q(reserved_until__lte=now)
        return (
            Book.objects.filter(id__in=book_ids, sold=False)
            .filter(free)
            .update(sold=True, buyer_id=buyer_id, reserved_by=None, reserved_until=None)
        )

    def release(self, book_ids: List[str], buyer_id: str) -> None:
        mine = Q(buyer_id=buyer_id) | Q(reserved_by=buyer_id)
        Book.objects.filter(mine, id__in=book_ids).update(sold=False, buyer_id=None, reserved_by=None, reserved_until=None)


# ---- payments ledger ----

class DjangoPaymentLedger:
    def record_session(self, session: PaymentSession) -> None:
        PaymentRecord.objects.create(
            reference=session.reference,
            buyer_id=session.buyer_id,
            buyer_email=session.buyer_email,
            amount_cents=session.amount_cents,
            currency=session.currency,
            lines=[
                {"book_id": l.book_id, "seller_id": l.seller_id, "price_cents": l.price_cents, "title": l.title}
                for l in session.lines
            ],
            shipping_address=session.shipping_address,
            status=session.status.value,
            created_at=session.created_at,
        )

    def find(self, reference: str) -> Optional[PaymentSession]:
        rec = PaymentRecord.objects.filter(reference=reference).first()
        if rec is None:
            return None
        return PaymentSession(
            reference=rec.reference,
            buyer_id=rec.buyer_id,
            buyer_email=rec.buyer_email,
            amount_cents=rec.amount_cents,
            currency=rec.currency,
            lines=[
                CartLine(book_id=l["book_id"], seller_id=l["seller_id"], price_cents=l["price_cents"], title=l.get("title", ""))
                for l in rec.lines
            ],
            shipping_address=rec.shipping_address,
            status=PaymentStatus(rec.status),
            created_at=rec.created_at,
        )

    def mark_captured(self, reference: str, raw: dict) -> int:
        return PaymentRecord.objects.filter(reference=reference, status=PaymentStatus.PENDING.value).update(
            status=PaymentStatus.CAPTURED.value, provider_response=raw
        )

    def mark_failed(self, reference: str, raw: dict) -> int:
        return PaymentRecord.objects.filter(reference=reference, status=PaymentStatus.PENDING.value).update(
            status=PaymentStatus.FAILED.value, provider_response=raw
        )


# ---- payouts ----

def _payout(rec: PayoutRecordModel) -> PayoutRecord:
    return PayoutRecord(
        reference=rec.reference,
        order_id=str(rec.order_id),
        seller_id=rec.seller_id,
        amount_cents=rec.amount_cents,
        platform_fee_cents=rec.platform_fee_cents,
        status=PayoutStatus(rec.status),
        provider_response=rec.provider_response,
        created_at=rec.created_at,
    )


class DjangoPayoutStore:
    def create(self, record: PayoutRecord) -> None:
        try:
            with transaction.atomic():
                PayoutRecordModel.objects.create(
                    reference=record.reference,
                    order_id=record.order_id,
                    seller_id=record.seller_id,
                    amount_cents=record.amount_cents,
                    platform_fee_cents=record.platform_fee_cents,
                    status=record.status.value,
                    provider_response=record.provider_response,
                    created_at=record.created_at,
                )
        except IntegrityError:
            raise DuplicatePayoutError(f"payout already exists for order {record.order_id}")

    def find(self, reference: str) -> Optional[PayoutRecord]:
        rec = PayoutRecordModel.objects.filter(reference=reference).first()
        return _payout(rec) if rec else None

    def for_order(self, order_id: str) -> List[PayoutRecord]:
        return [_payout(r) for r in PayoutRecordModel.objects.filter(order_id=order_id).order_by("created_at")]

    def find_stale_pending(self, before: datetime) -> List[PayoutRecord]:
        qs = PayoutRecordModel.objects.filter(status=PayoutStatus.PENDING.value, created_at__lte=before)
        return [_payout(r) for r in qs.order_by("created_at")]

    def mark(self, reference: str, status: PayoutStatus, raw: dict) -> int:
        return PayoutRecordModel.objects.filter(reference=reference, status=PayoutStatus.PENDING.value).update(
            status=PayoutStatus(status).value, provider_response=raw
        )

    def attach_response(self, reference: str, raw: dict) -> None:
        PayoutRecordModel.objects.filter(reference=reference).update(provider_response=raw)


# ---- refunds ----

def _obligation(rec: RefundObligationModel) -> RefundObligation:
    return RefundObligation(
        order_id=str(rec.order_id),
        payment_reference=rec.payment_reference,
        amount_cents=rec.amount_cents,
        reason=rec.reason,
        status=RefundStatus(rec.status),
        provider_response=rec.provider_response,
        created_at=rec.created_at,
    )


class DjangoRefundLedger:
    def create_obligation(self, obligation: RefundObligation) -> bool:
        _, created = RefundObligationModel.objects.get_or_create(
            order_id=obligation.order_id,
            defaults={
                "payment_reference": obligation.payment_reference,
                "amount_cents": obligation.amount_cents,
                "reason": obligation.reason,
                "status": obligation.status.value,
                "created_at": obligation.created_at,
            },
        )
        return created

    def find(self, order_id: str) -> Optional[RefundObligation]:
        rec = RefundObligationModel.objects.filter(order_id=order_id).first()
        return _obligation(rec) if rec else None

    def pending(self) -> List[RefundObligation]:
        qs = RefundObligationModel.objects.filter(status=RefundStatus.PENDING.value).order_by("created_at")
        return [_obligation(r) for r in qs]

    def mark(self, order_id: str, status: RefundStatus, raw: dict) -> int:
        return RefundObligationModel.objects.filter(order_id=order_id, status=RefundStatus.PENDING.value).update(
            status=RefundStatus(status).value, provider_response=raw
        )


# ---- event log ----

class DjangoEventLog:
    def remember(self, scope: str, key: str, now: datetime) -> bool:
        try:
            with transaction.atomic():
                ProcessedEvent.objects.create(scope=scope, key=key, processed_at=now)
        except IntegrityError:
            return False
        return True

    def forget(self, scope: str, key: str) -> None:
        ProcessedEvent.objects.filter(scope=scope, key=key).delete()

    def purge(self, before: datetime) -> int:
        deleted, _ = ProcessedEvent.objects.filter(processed_at__lt=before).delete()
        return deleted


# ---- accounts ----

class DjangoAccountDirectory:
    def profile(self, user_id: str) -> Optional[Profile]:
        rec = ProfileModel.objects.filter(user_id=user_id).first()
        if rec is None:
            return None
        return Profile(
            user_id=rec.user_id,
            name=rec.name,
            email=rec.email,
            pickup_address=rec.pickup_address,
            recipient_code=rec.recipient_code,
        )
