import time
import uuid

from django.conf import settings
from django.db import models
from django.utils import timezone

from .domain import OrderStatus, PaymentMethod, PaymentStatus


def _choices(enum_cls):
    return [(m.value, m.value) for m in enum_cls]


class OrderSequence(models.Model):
    """Allocator for ``OrderModel.internal_id``.

    Each new order inserts one row and takes its auto-increment id, so the
    counter comes from the database sequence and never locks an order row.
    Ids are not reused, even when an order is deleted.
    """

    id = models.BigAutoField(primary_key=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_number_sequence"


class OrderModel(models.Model):
    # UUID PK exposed in the API; order_number is what customers see
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Internal incremental counter, feeds the order number suffix
    internal_id = models.BigIntegerField(unique=True, editable=False, null=True)
    order_number = models.CharField(max_length=32, unique=True, editable=False)

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders")

    status = models.CharField(max_length=16, choices=_choices(OrderStatus), default=OrderStatus.PROCESSING.value)
    payment_method = models.CharField(max_length=24, choices=_choices(PaymentMethod), default=PaymentMethod.MPESA.value)
    payment_status = models.CharField(max_length=16, choices=_choices(PaymentStatus), default=PaymentStatus.PENDING.value)

    shipping_address = models.JSONField(default=dict)
    subtotal_cents = models.PositiveIntegerField(default=0)
    shipping_cents = models.PositiveIntegerField(default=0)
    tax_cents = models.PositiveIntegerField(default=0)
    total_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="KES")

    # Gateway correlation; checkout_request_id is the callback join key
    merchant_request_id = models.CharField(max_length=64, blank=True, default="")
    checkout_request_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    mpesa_receipt = models.CharField(max_length=32, blank=True, default="")
    transaction_date = models.DateTimeField(null=True, blank=True)
    payer_phone = models.CharField(max_length=16, blank=True, default="")

    is_paid = models.BooleanField(default=False)
    paid_at = models.DateTimeField(null=True, blank=True)

    estimated_delivery = models.DateTimeField(null=True, blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    tracking_number = models.CharField(max_length=64, blank=True, default="")
    cancel_reason = models.CharField(max_length=500, blank=True, default="")
    notes = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-internal_id"]
        indexes = [
            models.Index(fields=["user", "-created_at"], name="orders_user_created_idx"),
            models.Index(fields=["status"], name="orders_status_idx"),
            models.Index(fields=["payment_status"], name="orders_payment_status_idx"),
        ]

    def __str__(self):
        return self.order_number or str(self.id)

    def save(self, *args, **kwargs):
        # Assign internal_id and order_number only on creation
        if self.internal_id is None:
            self.internal_id = OrderSequence.objects.create().pk
            if not self.order_number:
                prefix = getattr(settings, "ORDER_NUMBER_PREFIX", "JMO")
                stamp = str(int(time.time() * 1000))[-8:]
                self.order_number = f"{prefix}{stamp}{self.internal_id:04d}"
        super().save(*args, **kwargs)


class OrderItemModel(models.Model):
    """Line item snapshot; never recomputed from the live catalog price."""

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey("catalog.Product", on_delete=models.PROTECT, related_name="order_items")
    name = models.CharField(max_length=200)
    image_url = models.URLField(max_length=500, blank=True, default="")
    part_number = models.CharField(max_length=64, blank=True, default="")
    quantity = models.PositiveIntegerField()
    unit_price_cents = models.PositiveIntegerField()

    class Meta:
        db_table = "order_items"
        ordering = ["id"]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gte=1), name="order_item_quantity_positive"),
        ]

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


class PaymentAttempt(models.Model):
    """One STK push sent for an order.

    ``OrderModel.checkout_request_id`` only holds the latest attempt; these
    rows keep the earlier ones so a late callback for a superseded prompt
    still finds its order.
    """

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="payment_attempts")
    checkout_request_id = models.CharField(max_length=64, unique=True)
    merchant_request_id = models.CharField(max_length=64, blank=True, default="")
    phone = models.CharField(max_length=16, blank=True, default="")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "order_payment_attempts"
        ordering = ["created_at", "id"]


class AppendOnlyError(RuntimeError):
    pass


class OrderStatusEntry(models.Model):
    """One row of an order's audit trail.

    Rows are inserted once and never changed: ``save`` on an existing row and
    ``delete`` both raise.
    """

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="history")
    status = models.CharField(max_length=32)
    note = models.CharField(max_length=500, blank=True, default="")
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    timestamp = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "order_status_history"
        ordering = ["timestamp", "id"]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyError("status history entries cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("status history entries cannot be deleted")


class IdempotencyKey(models.Model):
    """Stored outcome of a ``POST /api/orders/`` sent with ``Idempotency-Key``."""

    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
