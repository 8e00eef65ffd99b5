"""HTTP views for the orders app.

Views are kept small: they validate requests with pydantic, delegate to the
``OrderService`` returned by ``providers.get_order_service()`` and map the
outcome (or the domain error code) to an HTTP response.

Idempotency: when an ``Idempotency-Key`` header is sent with
``POST /api/orders/``, the first request is processed and its response
stored. Retries with the same key, user and body replay the stored response
with an ``Idempotent-Replay: true`` header; the same key with a different
body returns HTTP 409.
"""

import logging

from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .idempotency import finalize, get_or_create_idempotent, release
from .repository import OrderRepository
from .responses import error_body, error_response, validation_response
from .schemas import CancelOrderDTO, CreateOrderDTO, OrderReadDTO, OrderSummaryDTO, UpdateStatusDTO

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _positive_int(raw, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List the caller's orders (GET) or place a new one (POST)."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        """Paginated orders, newest first.

        Query params: ``page``, ``page_size`` (max 100) and, for staff or
        customers alike, ``status``.
        """
        qs = OrderRepository().list_for(request.user, status=request.GET.get("status") or None)
        page = _positive_int(request.GET.get("page"), 1)
        page_size = min(_positive_int(request.GET.get("page_size"), 20), MAX_PAGE_SIZE)
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)

        results = [OrderSummaryDTO.from_model(o).model_dump(mode="json") for o in page_obj.object_list]
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=200,
        )

    def post(self, request):
        """Create a new order.

        Returns:
            - 201 with the full order when created.
            - replayed status and body for a repeated ``Idempotency-Key``.
            - 400 for validation errors or an empty order.
            - 404 ``PRODUCT_NOT_FOUND`` for an unknown product.
            - 409 ``IDEMPOTENCY_CONFLICT`` for a reused key.
            - 422 ``INSUFFICIENT_STOCK`` / ``OUT_OF_STOCK`` when a line
              cannot be reserved.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_response(e)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.user.pk, dto.model_dump(mode="json"))
            except ValueError as e:
                return error_response(e)
            if existing:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Orchestrator
        service = providers.get_order_service()
        try:
            order = service.create_order(
                customer=request.user,
                items=[(i.product, i.quantity) for i in dto.items],
                shipping_address=dto.shipping_address.model_dump(),
                payment_method=dto.payment_method,
                notes=dto.notes,
            )
        except ValueError as e:
            status_code, body = error_body(e)
            if rec:
                finalize(rec, status_code, body)
            return Response(body, status=status_code)
        except Exception:
            if rec:
                release(rec)
            raise

        # 4) Response
        body = OrderReadDTO.from_model(OrderRepository().get(order.pk)).model_dump(mode="json")
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.pk)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = providers.get_order_service().get_order(oid, request.user)
        except ValueError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_model(order).model_dump(mode="json"), status=200)


class CancelOrderView(APIView):
    """``PUT /api/orders/<id>/cancel/``: owner or staff cancels and stock is released."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def put(self, request, oid):
        try:
            dto = CancelOrderDTO.model_validate(request.data or {})
        except ValidationError as e:
            return validation_response(e)

        service = providers.get_order_service()
        try:
            service.cancel_order(oid, request.user, dto.reason)
            order = service.get_order(oid, request.user)
        except ValueError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_model(order).model_dump(mode="json"), status=200)


class OrderStatusView(APIView):
    """Staff-only status update (``PUT`` or ``PATCH``)."""

    permission_classes = [IsAdminUser]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def put(self, request, oid):
        try:
            dto = UpdateStatusDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_response(e)

        service = providers.get_order_service()
        try:
            service.update_status(oid, request.user, dto.status, dto.note)
            order = service.get_order(oid, request.user)
        except ValueError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_model(order).model_dump(mode="json"), status=200)

    patch = put
