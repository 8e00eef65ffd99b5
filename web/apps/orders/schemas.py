"""Pydantic schemas for orders.

Request schemas validate and normalize client input before the orchestrator
runs; read schemas shape ``OrderModel`` rows into API responses.
"""

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .domain import OrderStatus, PaymentMethod


PHONE_RE = re.compile(r"^\+?\d{9,15}$")

# Labels the storefront checkout form sends
PAYMENT_METHOD_LABELS = {
    "m-pesa": PaymentMethod.MPESA.value,
    "mpesa": PaymentMethod.MPESA.value,
    "cash on delivery": PaymentMethod.CASH_ON_DELIVERY.value,
    "cash_on_delivery": PaymentMethod.CASH_ON_DELIVERY.value,
}


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product: Catalog product id.
        quantity: Positive integer indicating units requested.
    """

    product: int = Field(gt=0)
    quantity: int = Field(gt=0)


class ShippingAddressIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    phone: str
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    county: str = Field(default="", max_length=100)
    country: str = Field(default="Kenya", max_length=100)
    additional_info: str = Field(default="", max_length=500)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        compact = "".join(v.split())
        if not PHONE_RE.match(compact):
            raise ValueError("Invalid phone number")
        return compact


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Attributes:
        items: At least one ``OrderItemIn``. Prices are never taken from
            the client; they come from the catalog at reservation time.
        shipping_address: Delivery address.
        payment_method: ``mpesa`` or ``cash_on_delivery``; the display labels
            ``"M-Pesa"`` and ``"Cash on Delivery"`` are accepted too.
        notes: Optional customer notes.
    """

    items: list[OrderItemIn] = Field(min_length=1)
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod = PaymentMethod.MPESA
    notes: str = Field(default="", max_length=1000)

    @field_validator("payment_method", mode="before")
    @classmethod
    def normalize_payment_method(cls, v):
        """Map display labels to ``PaymentMethod`` values.

        Raises:
            ValueError: Unknown payment method.
        """
        if isinstance(v, str):
            key = v.strip().lower()
            if key not in PAYMENT_METHOD_LABELS:
                raise ValueError("Unsupported payment method")
            return PAYMENT_METHOD_LABELS[key]
        return v


class CancelOrderDTO(BaseModel):
    reason: str = Field(default="", max_length=500)


class UpdateStatusDTO(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(default=None, max_length=500)


# ---- Read side ----
class OrderItemOut(BaseModel):
    product: int
    name: str
    image_url: str
    part_number: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int


class StatusEntryOut(BaseModel):
    status: str
    note: str
    timestamp: datetime


class OrderSummaryDTO(BaseModel):
    """Row of the paginated order list."""

    id: UUID
    order_number: str
    status: str
    payment_status: str
    is_paid: bool
    total_cents: int
    currency: str
    created_at: datetime

    @classmethod
    def from_model(cls, o) -> "OrderSummaryDTO":
        return cls(
            id=o.id,
            order_number=o.order_number,
            status=o.status,
            payment_status=o.payment_status,
            is_paid=o.is_paid,
            total_cents=o.total_cents,
            currency=o.currency,
            created_at=o.created_at,
        )


class OrderReadDTO(OrderSummaryDTO):
    """Full order representation with items and status history."""

    payment_method: str
    shipping_address: dict
    subtotal_cents: int
    shipping_cents: int
    tax_cents: int
    mpesa_receipt: Optional[str] = None
    checkout_request_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
    cancel_reason: Optional[str] = None
    notes: Optional[str] = None
    items: list[OrderItemOut] = Field(default_factory=list)
    history: list[StatusEntryOut] = Field(default_factory=list)

    @classmethod
    def from_model(cls, o) -> "OrderReadDTO":
        return cls(
            id=o.id,
            order_number=o.order_number,
            status=o.status,
            payment_status=o.payment_status,
            payment_method=o.payment_method,
            is_paid=o.is_paid,
            shipping_address=o.shipping_address,
            subtotal_cents=o.subtotal_cents,
            shipping_cents=o.shipping_cents,
            tax_cents=o.tax_cents,
            total_cents=o.total_cents,
            currency=o.currency,
            created_at=o.created_at,
            mpesa_receipt=o.mpesa_receipt or None,
            checkout_request_id=o.checkout_request_id or None,
            paid_at=o.paid_at,
            estimated_delivery=o.estimated_delivery,
            delivered_at=o.delivered_at,
            tracking_number=o.tracking_number or None,
            cancel_reason=o.cancel_reason or None,
            notes=o.notes or None,
            items=[
                OrderItemOut(
                    product=i.product_id,
                    name=i.name,
                    image_url=i.image_url,
                    part_number=i.part_number,
                    quantity=i.quantity,
                    unit_price_cents=i.unit_price_cents,
                    line_total_cents=i.line_total_cents,
                )
                for i in o.items.all()
            ],
            history=[StatusEntryOut(status=h.status, note=h.note, timestamp=h.timestamp) for h in o.history.all()],
        )
