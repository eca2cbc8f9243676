import uuid

from django.db import models
from django.db.models import Q


class OrderModel(models.Model):
    """One seller's share of a purchase. Never deleted."""

    class Status(models.TextChoices):
        PENDING_COMMIT = "pending_commit"
        COMMITTED = "committed"
        DECLINED = "declined"
        EXPIRED = "expired"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        REFUNDED = "refunded"

    # UUID PK exposed in the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    buyer_id = models.CharField(max_length=64, db_index=True)
    seller_id = models.CharField(max_length=64, db_index=True)
    payment_reference = models.CharField(max_length=100, db_index=True)
    buyer_email = models.EmailField(blank=True, default="")
    seller_email = models.EmailField(blank=True, default="")

    # [{"book_id", "title", "price_cents"}]
    items = models.JSONField(default=list)
    currency = models.CharField(max_length=3, default="ZAR")
    total_cents = models.PositiveIntegerField(default=0)
    commission_policy = models.CharField(max_length=16, blank=True, default="")
    platform_commission_cents = models.IntegerField(null=True, blank=True)
    seller_net_cents = models.IntegerField(null=True, blank=True)
    delivery_fee_cents = models.IntegerField(null=True, blank=True)

    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING_COMMIT)
    created_at = models.DateTimeField()
    expires_at = models.DateTimeField(null=True, blank=True)
    committed_at = models.DateTimeField(null=True, blank=True)
    declined_at = models.DateTimeField(null=True, blank=True)
    decline_reason = models.CharField(max_length=255, blank=True, default="")
    expired_at = models.DateTimeField(null=True, blank=True)
    shipped_at = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)
    payout_initiated_at = models.DateTimeField(null=True, blank=True)
    reminder_sent_at = models.DateTimeField(null=True, blank=True)

    courier = models.CharField(max_length=64, blank=True, default="")
    tracking_number = models.CharField(max_length=64, blank=True, default="", db_index=True)
    label_url = models.URLField(max_length=500, blank=True, default="")
    pickup_window = models.CharField(max_length=64, blank=True, default="")
    shipping_address = models.JSONField(default=dict)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["payment_reference", "seller_id"], name="ux_order_payment_seller"),
        ]
        indexes = [models.Index(fields=["status", "expires_at"], name="ix_order_status_expiry")]


class Book(models.Model):
    """Marketplace listing; ``sold`` and the reservation gate checkout."""

    id = models.CharField(primary_key=True, max_length=64)
    seller_id = models.CharField(max_length=64, db_index=True)
    title = models.CharField(max_length=255)
    price_cents = models.PositiveIntegerField()
    sold = models.BooleanField(default=False)
    buyer_id = models.CharField(max_length=64, null=True, blank=True)
    reserved_by = models.CharField(max_length=64, null=True, blank=True)
    reserved_until = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "books"


class Profile(models.Model):
    user_id = models.CharField(primary_key=True, max_length=64)
    name = models.CharField(max_length=255, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    pickup_address = models.JSONField(default=dict, blank=True)
    # payment provider transfer recipient
    recipient_code = models.CharField(max_length=64, blank=True, default="")

    class Meta:
        db_table = "profiles"


class PaymentRecord(models.Model):
    """Checkout payment session; carries the cart until the charge is captured."""

    class Status(models.TextChoices):
        PENDING = "pending"
        CAPTURED = "captured"
        FAILED = "failed"

    reference = models.CharField(primary_key=True, max_length=100)
    buyer_id = models.CharField(max_length=64)
    buyer_email = models.EmailField(blank=True, default="")
    amount_cents = models.PositiveIntegerField()
    currency = models.CharField(max_length=3, default="ZAR")
    # [{"book_id", "seller_id", "price_cents", "title"}]
    lines = models.JSONField(default=list)
    shipping_address = models.JSONField(default=dict)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    provider_response = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payments"


class PayoutRecord(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        COMPLETED = "completed"
        FAILED = "failed"

    reference = models.CharField(primary_key=True, max_length=128)
    order = models.ForeignKey(OrderModel, on_delete=models.PROTECT, related_name="payouts")
    seller_id = models.CharField(max_length=64)
    amount_cents = models.IntegerField()
    platform_fee_cents = models.IntegerField()
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    provider_response = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payouts"
        constraints = [
            models.UniqueConstraint(
                fields=["order"], condition=~Q(status="failed"), name="ux_payout_order_not_failed"
            ),
        ]


class RefundObligation(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        PROCESSED = "processed"
        FAILED = "failed"

    order = models.OneToOneField(OrderModel, on_delete=models.PROTECT, primary_key=True, related_name="refund")
    payment_reference = models.CharField(max_length=100)
    amount_cents = models.PositiveIntegerField()
    reason = models.CharField(max_length=255)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    provider_response = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "refund_obligations"


class ProcessedEvent(models.Model):
    """Dedup log for webhook and tracking events, purged after a window."""

    scope = models.CharField(max_length=32)
    key = models.CharField(max_length=255)
    processed_at = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "processed_events"
        constraints = [models.UniqueConstraint(fields=["scope", "key"], name="ux_processed_event")]


class IdempotencyKey(models.Model):
    key = models.CharField(primary_key=True, max_length=200)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    payment_reference = models.CharField(max_length=100, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
