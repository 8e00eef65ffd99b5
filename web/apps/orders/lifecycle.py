"""Order lifecycle: every write to an order's status, payment fields or history.

Each transition runs in its own transaction and starts by locking the order
row (``SELECT ... FOR UPDATE``). Two transitions on the same order, such as a
customer's cancellation and a late payment callback, therefore apply one
after the other, never interleaved. ``mark_paid`` and ``cancel`` are written
so that their effects commute: whichever runs last, the order ends up
``cancelled`` with the payment recorded and a refund noted in the history.

Order status changes are deliberately permissive (staff may correct any
status by hand). Two guards protect the stock ledger: a move to
``cancelled`` always goes through ``cancel`` so stock is released, and a
cancelled order cannot be moved back because its stock is gone.
"""

import logging

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .domain import (
    NON_CANCELLABLE,
    InventoryPort,
    InvalidTransition,
    LineItem,
    OrderNotFound,
    OrderStatus,
    PaymentMethod,
    PaymentReceipt,
    PaymentStatus,
    Quote,
    StkPushResult,
    estimate_delivery,
)
from .models import OrderItemModel, OrderModel, OrderStatusEntry, PaymentAttempt

logger = logging.getLogger(__name__)


def _locked(order_id) -> OrderModel:
    try:
        return OrderModel.objects.select_for_update().get(pk=order_id)
    except (OrderModel.DoesNotExist, ValidationError, ValueError):
        raise OrderNotFound(f"Order not found: {order_id}")


def _append(order: OrderModel, status: str, note: str, actor=None) -> OrderStatusEntry:
    return OrderStatusEntry.objects.create(order=order, status=status, note=note[:500], actor=actor)


def create(
    *,
    user,
    lines: list[LineItem],
    quote: Quote,
    shipping_address: dict,
    payment_method: PaymentMethod,
    notes: str = "",
) -> OrderModel:
    """Persist a new order in ``processing`` / ``pending``.

    Must be called inside the caller's transaction that holds the stock
    reservations, so a failure here also rolls those back.
    """
    now = timezone.now()
    order = OrderModel(
        user=user,
        shipping_address=shipping_address,
        payment_method=PaymentMethod(payment_method).value,
        subtotal_cents=quote.subtotal_cents,
        shipping_cents=quote.shipping_cents,
        tax_cents=quote.tax_cents,
        total_cents=quote.total_cents,
        currency=getattr(settings, "ORDER_CURRENCY", "KES"),
        notes=notes or "",
        created_at=now,
        estimated_delivery=estimate_delivery(
            now,
            timezone.get_current_timezone(),
            cutoff_hour=getattr(settings, "SAME_DAY_CUTOFF_HOUR", 14),
            delivery_hour=getattr(settings, "DELIVERY_HOUR", 18),
        ),
    )
    order.save()
    OrderItemModel.objects.bulk_create(
        [
            OrderItemModel(
                order=order,
                product_id=line.product_id,
                name=line.name,
                image_url=line.image_url,
                part_number=line.part_number,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
            )
            for line in lines
        ]
    )
    _append(order, OrderStatus.PROCESSING.value, "Order placed", actor=user)
    logger.info(
        "order created",
        extra={"order_number": order.order_number, "total_cents": order.total_cents, "items": len(lines)},
    )
    return order


@transaction.atomic
def update_status(order_id, new_status, note: str | None, actor, inventory: InventoryPort) -> OrderModel:
    """Set ``new_status`` and record it in the history.

    Raises:
        OrderNotFound: Unknown order.
        InvalidTransition: The order is cancelled, or a cancellation is
            refused by ``cancel``.
    """
    new_status = OrderStatus(new_status)
    if new_status is OrderStatus.CANCELLED:
        return cancel(order_id, note or "Cancelled by staff", actor, inventory)

    order = _locked(order_id)
    if order.status == OrderStatus.CANCELLED.value:
        raise InvalidTransition("A cancelled order cannot be reopened; its stock has been released")

    order.status = new_status.value
    if new_status is OrderStatus.DELIVERED and order.delivered_at is None:
        order.delivered_at = timezone.now()
    order.save(update_fields=["status", "delivered_at", "updated_at"])
    _append(order, new_status.value, note or f"Order {new_status.value}", actor)
    logger.info("order status updated", extra={"order_number": order.order_number, "status": new_status.value})
    return order


@transaction.atomic
def mark_paid(order_id, receipt: PaymentReceipt, actor=None) -> tuple[OrderModel, bool]:
    """Record a successful payment.

    ``is_paid`` and ``payment_status=completed`` are set together. A
    ``processing`` order moves to ``confirmed``; later statuses are left
    alone, and a cancelled order stays cancelled with a refund noted.
    Exactly one history entry is appended.

    Returns:
        ``(order, changed)``. ``changed`` is False when the order was
        already paid: a repeated receipt is a silent no-op, a different
        receipt is logged as a duplicate payment and otherwise ignored.
    """
    order = _locked(order_id)
    if order.is_paid:
        if receipt.receipt_number and receipt.receipt_number != order.mpesa_receipt:
            logger.warning(
                "duplicate payment ignored",
                extra={
                    "order_number": order.order_number,
                    "recorded_receipt": order.mpesa_receipt,
                    "incoming_receipt": receipt.receipt_number,
                },
            )
        return order, False

    now = timezone.now()
    order.is_paid = True
    order.paid_at = now
    order.payment_status = PaymentStatus.COMPLETED.value
    if receipt.receipt_number:
        order.mpesa_receipt = receipt.receipt_number
    if receipt.transaction_date:
        order.transaction_date = receipt.transaction_date
    if receipt.phone:
        order.payer_phone = receipt.phone

    if order.status in (OrderStatus.PROCESSING.value, OrderStatus.CONFIRMED.value):
        order.status = OrderStatus.CONFIRMED.value
        entry_status, note = OrderStatus.CONFIRMED.value, "Payment received successfully"
    elif order.status == OrderStatus.CANCELLED.value:
        entry_status, note = "payment_received", "Payment received after cancellation; refund due"
        logger.warning("payment received for cancelled order", extra={"order_number": order.order_number})
    else:
        entry_status, note = "payment_received", "Payment received"

    order.save()
    _append(order, entry_status, note, actor)
    logger.info(
        "order paid",
        extra={"order_number": order.order_number, "receipt": order.mpesa_receipt, "status": order.status},
    )
    return order, True


@transaction.atomic
def mark_payment_failed(order_id, description: str) -> tuple[OrderModel, bool]:
    """Flag the current payment attempt as failed without touching order status.

    Ignored (``changed=False``) when the order is already paid, or when the
    attempt is already marked failed (a redelivered callback).
    """
    order = _locked(order_id)
    if order.is_paid or order.payment_status == PaymentStatus.FAILED.value:
        logger.info(
            "payment failure ignored",
            extra={"order_number": order.order_number, "payment_status": order.payment_status},
        )
        return order, False

    order.payment_status = PaymentStatus.FAILED.value
    order.save(update_fields=["payment_status", "updated_at"])
    _append(order, "payment_failed", f"Payment failed: {description}")
    logger.info("order payment failed", extra={"order_number": order.order_number, "reason": description})
    return order, True


@transaction.atomic
def cancel(order_id, reason: str, actor, inventory: InventoryPort) -> OrderModel:
    """Cancel an order and give every line item's stock back.

    Raises:
        OrderNotFound: Unknown order.
        InvalidTransition: The order is shipped, delivered or already
            cancelled. Nothing is changed.
    """
    order = _locked(order_id)
    if OrderStatus(order.status) in NON_CANCELLABLE:
        raise InvalidTransition(f"Cannot cancel order with status: {order.status}")

    for item in order.items.all():
        inventory.release(item.product_id, item.quantity)

    order.status = OrderStatus.CANCELLED.value
    order.cancel_reason = (reason or "")[:500]
    order.save(update_fields=["status", "cancel_reason", "updated_at"])

    note = f"Cancelled: {reason}" if reason else "Cancelled"
    if order.is_paid:
        note += "; refund due"
    _append(order, OrderStatus.CANCELLED.value, note, actor)
    logger.info("order cancelled", extra={"order_number": order.order_number, "paid": order.is_paid})
    return order


@transaction.atomic
def attach_checkout(order_id, result: StkPushResult, phone: str) -> OrderModel:
    """Store the gateway correlation ids of a new payment attempt.

    The order keeps the latest ids; every attempt is also recorded as a
    ``PaymentAttempt`` so callbacks for earlier prompts can still be matched.
    A previous failed attempt is reset to ``pending``.
    """
    order = _locked(order_id)
    PaymentAttempt.objects.create(
        order=order,
        checkout_request_id=result.checkout_request_id,
        merchant_request_id=result.merchant_request_id,
        phone=phone,
    )
    order.merchant_request_id = result.merchant_request_id
    order.checkout_request_id = result.checkout_request_id
    order.payer_phone = phone
    if order.payment_status == PaymentStatus.FAILED.value:
        order.payment_status = PaymentStatus.PENDING.value
    order.save(
        update_fields=["merchant_request_id", "checkout_request_id", "payer_phone", "payment_status", "updated_at"]
    )
    return order
