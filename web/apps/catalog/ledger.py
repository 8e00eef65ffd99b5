"""Inventory ledger: the only writer of ``Product.stock`` and ``sold_count``.

Every mutation is one conditional ``UPDATE`` statement, so concurrent orders
racing for the last units of a part cannot both succeed: the database
evaluates ``stock >= quantity`` and applies the decrement atomically, and the
loser sees zero affected rows. No row is read and written back from Python.

Debits (``reserve``) happen at order creation; credits (``release``) happen
only when an order is cancelled.
"""

import logging

from django.db.models import F, IntegerField
from django.db.models.functions import Greatest

from .models import Product

logger = logging.getLogger(__name__)


class InventoryError(ValueError):
    """Base class for ledger failures.

    ``str(exc)`` is the machine-readable code so callers can branch on it the
    same way they branch on order errors.
    """

    code = "INVENTORY_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(self.code)
        self.message = message or self.code


class ProductNotFound(InventoryError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id):
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class InsufficientStock(InventoryError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product: Product, requested: int):
        super().__init__(
            f"Insufficient stock for {product.name}. Available: {product.stock}"
        )
        self.product_id = product.pk
        self.available = product.stock
        self.requested = requested


class OutOfStock(InsufficientStock):
    code = "OUT_OF_STOCK"


class ProductLedger:
    """ORM-backed implementation of the orders ``InventoryPort``."""

    def lookup(self, product_id) -> Product:
        """Return an active product or raise ``ProductNotFound``."""
        try:
            return Product.objects.get(pk=product_id, is_active=True)
        except (Product.DoesNotExist, ValueError, TypeError):
            raise ProductNotFound(product_id)

    def reserve(self, product_id, quantity: int) -> Product:
        """Debit ``quantity`` units from stock and credit the sold counter.

        Args:
            product_id: Primary key of the product.
            quantity: Units to hold; must be >= 1.

        Returns:
            The refreshed ``Product``.

        Raises:
            ProductNotFound: Unknown or inactive product.
            InsufficientStock: ``quantity`` exceeds the stock currently
                available. Stock is left untouched. Raised as the
                ``OutOfStock`` subclass when nothing is left at all.
        """
        if quantity < 1:
            raise ValueError("quantity must be >= 1")

        updated = Product.objects.filter(
            pk=product_id, is_active=True, stock__gte=quantity
        ).update(
            stock=F("stock") - quantity,
            sold_count=F("sold_count") + quantity,
        )
        product = self.lookup(product_id)
        if not updated:
            logger.info(
                "reservation refused",
                extra={"product_id": product.pk, "requested": quantity, "available": product.stock},
            )
            raise (OutOfStock if product.stock == 0 else InsufficientStock)(product, quantity)

        if product.is_low_stock:
            logger.warning(
                "low stock",
                extra={"product_id": product.pk, "part_number": product.part_number, "stock": product.stock},
            )
        return product

    def release(self, product_id, quantity: int) -> Product | None:
        """Credit ``quantity`` units back to stock after a cancellation.

        ``sold_count`` is clamped at zero. A missing product or a sold counter
        smaller than ``quantity`` is logged as an anomaly; this method never
        raises for either, so a cancellation can always complete.
        """
        current = Product.objects.filter(pk=product_id).values("sold_count").first()
        if current is None:
            logger.warning("release for unknown product", extra={"product_id": product_id, "quantity": quantity})
            return None
        if current["sold_count"] < quantity:
            logger.warning(
                "sold_count underflow clamped",
                extra={"product_id": product_id, "quantity": quantity, "sold_count": current["sold_count"]},
            )

        Product.objects.filter(pk=product_id).update(
            stock=F("stock") + quantity,
            sold_count=Greatest(F("sold_count") - quantity, 0, output_field=IntegerField()),
        )
        return Product.objects.get(pk=product_id)
