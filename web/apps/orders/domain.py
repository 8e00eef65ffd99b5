"""Domain types, pricing rules and ports for orders.

This module holds the pure part of the order core: status enums, the error
taxonomy, immutable value objects exchanged between components, the pricing
engine, the delivery estimate, and the protocol definitions (ports) for the
collaborators the orchestrator depends on. Nothing here touches the database
or the network.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Any, Iterable, Protocol


# ---- Enums ----
class OrderStatus(str, Enum):
    """Fulfilment status of an order.

    ``cancelled`` is reachable from every non-terminal status; the statuses
    in ``NON_CANCELLABLE`` refuse cancellation.
    """

    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


NON_CANCELLABLE = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class PaymentStatus(str, Enum):
    """Payment sub-status, orthogonal to ``OrderStatus``."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    MPESA = "mpesa"
    CASH_ON_DELIVERY = "cash_on_delivery"


# ---- Errors ----
class OrderError(ValueError):
    """Base class for order-core failures.

    ``str(exc)`` is a short machine code (``"EMPTY_ORDER"``,
    ``"INVALID_TRANSITION"``...) that the HTTP layer maps to a status code;
    ``exc.message`` carries the human explanation.
    """

    code = "ORDER_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(self.code)
        self.message = message or self.code


class EmptyOrder(OrderError):
    code = "EMPTY_ORDER"


class InvalidLineItem(OrderError):
    code = "INVALID_LINE_ITEM"


class OrderNotFound(OrderError):
    code = "ORDER_NOT_FOUND"


class NotAuthorized(OrderError):
    code = "NOT_AUTHORIZED"


class InvalidTransition(OrderError):
    code = "INVALID_TRANSITION"


class OrderAlreadyPaid(OrderError):
    code = "ORDER_ALREADY_PAID"


class GatewayError(OrderError):
    """The payment gateway could not be reached or refused the request."""

    code = "GATEWAY_ERROR"


# ---- Value objects ----
@dataclass(frozen=True)
class LineItem:
    """Snapshot of a product at order time.

    Attributes:
        product_id: Catalog primary key.
        name: Product name when the order was placed.
        image_url: First product image, may be empty.
        part_number: Manufacturer part number.
        quantity: Units ordered, >= 1.
        unit_price_cents: Price per unit captured at creation; later catalog
            price changes never touch it.
    """

    product_id: int
    name: str
    image_url: str
    part_number: str
    quantity: int
    unit_price_cents: int


@dataclass(frozen=True)
class ShippingPolicy:
    """Flat-fee shipping waived at or above a subtotal threshold."""

    free_threshold_cents: int = 1_000_000
    flat_fee_cents: int = 50_000


@dataclass(frozen=True)
class Quote:
    subtotal_cents: int
    shipping_cents: int
    tax_cents: int
    total_cents: int


@dataclass(frozen=True)
class PaymentReceipt:
    """Gateway evidence that a payment went through."""

    receipt_number: str | None
    transaction_date: datetime | None = None
    phone: str | None = None
    amount: float | None = None


@dataclass(frozen=True)
class StkPushResult:
    """Correlation identifiers returned by an accepted STK push."""

    merchant_request_id: str
    checkout_request_id: str
    response_description: str = ""
    customer_message: str = ""


@dataclass(frozen=True)
class StkQueryResult:
    result_code: str
    result_desc: str


# ---- Pricing engine ----
def price_lines(
    lines: Iterable[tuple[int, int]],
    policy: ShippingPolicy = ShippingPolicy(),
    tax_cents: int = 0,
) -> Quote:
    """Compute subtotal, shipping and total for ``(unit_price, quantity)`` pairs.

    Args:
        lines: Iterable of ``(unit_price_cents, quantity)``.
        policy: Shipping thresholds.
        tax_cents: Optional tax, added to the total as-is.

    Returns:
        Quote where ``total == subtotal + shipping + tax``.

    Raises:
        InvalidLineItem: A quantity below 1 or a negative price.
    """
    subtotal = 0
    for price, quantity in lines:
        if quantity < 1:
            raise InvalidLineItem(f"Quantity must be at least 1, got {quantity}")
        if price < 0:
            raise InvalidLineItem(f"Price cannot be negative, got {price}")
        subtotal += price * quantity

    shipping = 0 if subtotal >= policy.free_threshold_cents else policy.flat_fee_cents
    return Quote(
        subtotal_cents=subtotal,
        shipping_cents=shipping,
        tax_cents=tax_cents,
        total_cents=subtotal + shipping + tax_cents,
    )


# ---- Delivery estimate ----
def estimate_delivery(
    created_at: datetime,
    tz: tzinfo,
    cutoff_hour: int = 14,
    delivery_hour: int = 18,
) -> datetime:
    """Same-day delivery for orders placed before the cutoff, next day otherwise.

    Both the cutoff and the delivery slot are evaluated in ``tz`` (the
    shop's local time), whatever zone ``created_at`` carries.
    """
    local = created_at.astimezone(tz)
    day = local if local.hour < cutoff_hour else local + timedelta(days=1)
    return day.replace(hour=delivery_hour, minute=0, second=0, microsecond=0)


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Stock bookkeeping used by the orchestrator and the lifecycle."""

    def lookup(self, product_id) -> Any:
        """Return the product record (name, price, image, part number, stock)."""
        raise NotImplementedError()

    def reserve(self, product_id, quantity: int) -> Any:
        """Atomically debit stock; raise when unknown or insufficient."""
        raise NotImplementedError()

    def release(self, product_id, quantity: int) -> Any:
        """Credit stock back; never raises for bookkeeping anomalies."""
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """STK-push style mobile money gateway."""

    def initiate(self, phone: str, amount_cents: int, reference: str, description: str) -> StkPushResult:
        """Ask the gateway to prompt ``phone`` for payment.

        Raises:
            GatewayError: Token fetch or initiation failed.
        """
        raise NotImplementedError()

    def query(self, checkout_request_id: str) -> StkQueryResult:
        """Fetch the gateway's view of a previously initiated request.

        Raises:
            GatewayError: Token fetch or query failed.
        """
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Best-effort side channels; implementations may raise, callers swallow."""

    def order_confirmation(self, user, order) -> None:
        raise NotImplementedError()

    def emit(self, event: str, payload: dict) -> None:
        raise NotImplementedError()
