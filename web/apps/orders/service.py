"""Order orchestrator: the use cases behind the orders and payment endpoints.

``OrderService`` composes the inventory ledger, the order lifecycle, the
payment gateway and the notifier. It owns authorization (owner or staff)
and transaction boundaries; it holds no lock while talking to the gateway.
"""

import logging
from collections import OrderedDict
from typing import Iterable

from django.db import transaction
from django.utils import timezone

from apps.payments.callbacks import CALLBACK_ACK, parse_callback, receipt_from
from . import lifecycle
from .domain import (
    EmptyOrder,
    InvalidLineItem,
    InvalidTransition,
    InventoryPort,
    LineItem,
    NotAuthorized,
    NotifierPort,
    OrderAlreadyPaid,
    OrderNotFound,
    OrderStatus,
    PaymentGatewayPort,
    PaymentMethod,
    PaymentReceipt,
    ShippingPolicy,
    price_lines,
)
from .models import OrderModel
from .repository import OrderRepository

logger = logging.getLogger(__name__)


def _merge_lines(items: Iterable[tuple[int, int]]) -> "OrderedDict[int, int]":
    merged: "OrderedDict[int, int]" = OrderedDict()
    for product_id, quantity in items:
        if quantity < 1:
            raise InvalidLineItem(f"Quantity must be at least 1, got {quantity}")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


class OrderService:
    """Use cases for placing, paying for and managing orders.

    Collaborators are injected so tests can swap the gateway or notifier;
    ``providers.get_order_service`` wires the production ones.
    """

    def __init__(
        self,
        inventory: InventoryPort,
        gateway: PaymentGatewayPort,
        notifier: NotifierPort,
        shipping: ShippingPolicy | None = None,
        repository: OrderRepository | None = None,
    ):
        self.inventory = inventory
        self.gateway = gateway
        self.notifier = notifier
        self.shipping = shipping or ShippingPolicy()
        self.repository = repository or OrderRepository()

    # ---- helpers ----
    @staticmethod
    def _authorize(order: OrderModel, actor) -> None:
        if not (actor.is_staff or order.user_id == actor.pk):
            raise NotAuthorized("Not authorized to access this order")

    @staticmethod
    def _require_staff(actor) -> None:
        if not actor.is_staff:
            raise NotAuthorized("Staff access required")

    def _emit(self, event: str, order: OrderModel, **extra) -> None:
        payload = {"order_id": str(order.pk), "order_number": order.order_number, "status": order.status}
        payload.update(extra)
        try:
            self.notifier.emit(event, payload)
        except Exception:
            logger.exception("event emission failed", extra={"event": event, "order_number": order.order_number})

    # ---- queries ----
    def get_order(self, order_id, actor) -> OrderModel:
        order = self.repository.get(order_id)
        self._authorize(order, actor)
        return order

    # ---- commands ----
    def create_order(
        self,
        customer,
        items: Iterable[tuple[int, int]],
        shipping_address: dict,
        payment_method=PaymentMethod.MPESA,
        notes: str = "",
    ) -> OrderModel:
        """Reserve stock for every line, price the order and persist it.

        Reservation, pricing and persistence share one transaction: if any
        line cannot be reserved, the stock debited for the earlier lines is
        rolled back with it. Confirmation email and the ``order.created``
        event are sent after commit and never fail the order.

        Args:
            customer: The authenticated user placing the order.
            items: ``(product_id, quantity)`` pairs; repeated products are
                merged into one line.
            shipping_address: Validated address mapping.
            payment_method: ``PaymentMethod`` or its value.
            notes: Free-text customer notes.

        Returns:
            The persisted ``OrderModel``.

        Raises:
            EmptyOrder: No items.
            InvalidLineItem: A quantity below 1.
            ProductNotFound: Unknown or inactive product.
            InsufficientStock: Not enough stock for a line.
        """
        merged = _merge_lines(items)
        if not merged:
            raise EmptyOrder("Order must contain at least one item")

        with transaction.atomic():
            lines = []
            for product_id, quantity in merged.items():
                product = self.inventory.reserve(product_id, quantity)
                lines.append(
                    LineItem(
                        product_id=product.pk,
                        name=product.name,
                        image_url=product.image_url or "",
                        part_number=product.part_number,
                        quantity=quantity,
                        unit_price_cents=product.price_cents,
                    )
                )
            quote = price_lines(((l.unit_price_cents, l.quantity) for l in lines), self.shipping)
            order = lifecycle.create(
                user=customer,
                lines=lines,
                quote=quote,
                shipping_address=shipping_address,
                payment_method=payment_method,
                notes=notes,
            )

        try:
            self.notifier.order_confirmation(customer, order)
        except Exception:
            logger.exception("order confirmation email failed", extra={"order_number": order.order_number})
        self._emit("order.created", order, total_cents=order.total_cents)
        return order

    def cancel_order(self, order_id, actor, reason: str = "") -> OrderModel:
        """Cancel on behalf of the owner or staff and give the stock back.

        Raises:
            OrderNotFound, NotAuthorized, InvalidTransition
        """
        order = self.repository.get(order_id)
        self._authorize(order, actor)
        order = lifecycle.cancel(order.pk, reason or "Cancelled by customer", actor, self.inventory)
        self._emit("order.cancelled", order, refund_due=order.is_paid)
        return order

    def update_status(self, order_id, actor, status, note: str | None = None) -> OrderModel:
        self._require_staff(actor)
        order = lifecycle.update_status(order_id, status, note, actor, self.inventory)
        self._emit("order.status_updated", order)
        return order

    def initiate_payment(self, order_id, actor, phone: str):
        """Send an STK push for the order total and remember its correlation ids.

        The gateway call runs outside any transaction; the ids are stored
        afterwards in a short transaction of their own.

        Returns:
            ``(order, StkPushResult)``.

        Raises:
            OrderNotFound, NotAuthorized
            OrderAlreadyPaid: The order is already paid.
            InvalidTransition: The order is cancelled.
            GatewayError: The gateway refused or was unreachable.
        """
        order = self.repository.get(order_id)
        self._authorize(order, actor)
        if order.is_paid:
            raise OrderAlreadyPaid("Order is already paid")
        if order.status == OrderStatus.CANCELLED.value:
            raise InvalidTransition("Cannot pay for a cancelled order")

        result = self.gateway.initiate(
            phone,
            order.total_cents,
            order.order_number,
            f"Payment for order {order.order_number}",
        )
        order = lifecycle.attach_checkout(order.pk, result, phone)
        logger.info(
            "payment initiated",
            extra={"order_number": order.order_number, "checkout_request_id": result.checkout_request_id},
        )
        return order, result

    def verify_payment(self, order_id, actor, receipt_number: str) -> OrderModel:
        """Manual payment confirmation by staff (e.g. receipt checked on the M-Pesa portal)."""
        self._require_staff(actor)
        receipt = PaymentReceipt(receipt_number=receipt_number, transaction_date=timezone.now())
        order, changed = lifecycle.mark_paid(order_id, receipt, actor)
        if changed:
            self._emit("payment.succeeded", order, receipt=order.mpesa_receipt, verified_by=actor.pk)
        return order

    def payment_status(self, checkout_request_id: str, actor) -> dict:
        """Gateway result for a checkout id combined with the local order state.

        Read-only: the gateway answer is reported, never applied.
        """
        order = self.repository.find_by_checkout_request_id(checkout_request_id)
        if order is None:
            raise OrderNotFound(f"No order for checkout request {checkout_request_id}")
        self._authorize(order, actor)
        result = self.gateway.query(checkout_request_id)
        return {
            "result_code": result.result_code,
            "result_desc": result.result_desc,
            "is_paid": order.is_paid,
            "payment_status": order.payment_status,
            "order_status": order.status,
        }

    def handle_callback(self, payload) -> dict:
        """Apply a gateway callback and return the acknowledgement body.

        Malformed payloads and unknown checkout ids are logged and
        acknowledged without touching any order. Redelivered callbacks are
        harmless: ``mark_paid`` and ``mark_payment_failed`` are idempotent.

        A callback for a superseded checkout id (the customer started a new
        prompt since) is still applied when it reports a payment. A failure
        on a superseded prompt says nothing about the current one and is
        ignored.
        """
        callback = parse_callback(payload)
        if callback is None:
            return CALLBACK_ACK

        order = self.repository.find_by_checkout_request_id(callback.CheckoutRequestID)
        if order is None:
            receipt = receipt_from(callback)
            logger.warning(
                "callback for unknown checkout request",
                extra={
                    "checkout_request_id": callback.CheckoutRequestID,
                    "result_code": callback.ResultCode,
                    "receipt": receipt.receipt_number,
                    "amount": receipt.amount,
                    "phone": receipt.phone,
                },
            )
            return CALLBACK_ACK

        superseded = callback.CheckoutRequestID != order.checkout_request_id
        if callback.ResultCode == 0:
            if superseded:
                logger.info(
                    "payment for superseded checkout request",
                    extra={"order_number": order.order_number, "checkout_request_id": callback.CheckoutRequestID},
                )
            order, changed = lifecycle.mark_paid(order.pk, receipt_from(callback))
            if changed:
                self._emit("payment.succeeded", order, receipt=order.mpesa_receipt)
        elif superseded:
            logger.info(
                "failure for superseded checkout request ignored",
                extra={
                    "order_number": order.order_number,
                    "checkout_request_id": callback.CheckoutRequestID,
                    "result_code": callback.ResultCode,
                },
            )
        else:
            order, changed = lifecycle.mark_payment_failed(order.pk, callback.ResultDesc)
            if changed:
                self._emit("payment.failed", order, result_code=callback.ResultCode, reason=callback.ResultDesc)
        return CALLBACK_ACK
