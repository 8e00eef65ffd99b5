"""Read-side queries over persisted orders.

Writes live in ``lifecycle``; this repository only fetches, so views and the
orchestrator never build ORM queries themselves.
"""

from django.core.exceptions import ValidationError
from django.db.models import QuerySet

from .domain import OrderNotFound
from .models import OrderModel


class OrderRepository:
    """Lookups returning ``OrderModel`` instances with related rows prefetched."""

    def _base(self) -> QuerySet:
        return OrderModel.objects.select_related("user").prefetch_related("items", "history")

    def get(self, order_id) -> OrderModel:
        """Fetch one order by its UUID.

        Raises:
            OrderNotFound: No such order (or a malformed id).
        """
        try:
            return self._base().get(pk=order_id)
        except (OrderModel.DoesNotExist, ValidationError, ValueError):
            raise OrderNotFound(f"Order not found: {order_id}")

    def find_by_checkout_request_id(self, checkout_request_id: str) -> OrderModel | None:
        """Return the order a gateway checkout id (current or superseded) belongs to, or None."""
        if not checkout_request_id:
            return None
        order = self._base().filter(checkout_request_id=checkout_request_id).first()
        if order is None:
            # an earlier prompt, superseded by a newer initiate
            order = self._base().filter(payment_attempts__checkout_request_id=checkout_request_id).first()
        return order

    def list_for(self, user, status: str | None = None) -> QuerySet:
        """Newest-first orders visible to ``user``: their own, or all for staff."""
        qs = OrderModel.objects.order_by("-created_at")
        if not user.is_staff:
            qs = qs.filter(user=user)
        if status:
            qs = qs.filter(status=status)
        return qs
