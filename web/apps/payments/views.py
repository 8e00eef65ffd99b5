"""HTTP views for M-Pesa payments.

``MpesaCallbackView`` is the only public endpoint: Daraja posts STK results
to it without credentials. It always answers 200 with the acknowledgement
body; whatever goes wrong while applying a callback is logged, never
reported back to the gateway.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from apps.orders import providers
from apps.orders.responses import error_response, validation_response
from apps.orders.schemas import OrderReadDTO
from .callbacks import CALLBACK_ACK
from .schemas import InitiatePaymentDTO, VerifyPaymentDTO

logger = logging.getLogger(__name__)


class InitiatePaymentView(APIView):
    """Send an STK push for one of the caller's orders."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = InitiatePaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_response(e)

        try:
            order, result = providers.get_order_service().initiate_payment(
                dto.order_id, request.user, dto.phone_number
            )
        except ValueError as e:
            return error_response(e)

        return Response(
            {
                "message": "Payment request sent. Please check your phone to complete payment.",
                "order_number": order.order_number,
                "merchant_request_id": result.merchant_request_id,
                "checkout_request_id": result.checkout_request_id,
                "response_description": result.response_description,
                "customer_message": result.customer_message,
            },
            status=status.HTTP_200_OK,
        )


class MpesaCallbackView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        logger.info("payment callback received")
        try:
            ack = providers.get_order_service().handle_callback(request.data)
        except Exception:
            logger.exception("payment callback processing failed")
            ack = CALLBACK_ACK
        return Response(ack, status=status.HTTP_200_OK)


class PaymentStatusView(APIView):
    """Ask the gateway about a checkout request and report it with the local order state."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def get(self, request, checkout_id: str):
        try:
            data = providers.get_order_service().payment_status(checkout_id, request.user)
        except ValueError as e:
            return error_response(e)
        return Response(data, status=status.HTTP_200_OK)


class VerifyPaymentView(APIView):
    """Staff confirmation of a payment checked outside the callback flow."""

    permission_classes = [IsAdminUser]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments"

    def post(self, request):
        try:
            dto = VerifyPaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return validation_response(e)

        service = providers.get_order_service()
        try:
            service.verify_payment(dto.order_id, request.user, dto.receipt_number)
            order = service.get_order(dto.order_id, request.user)
        except ValueError as e:
            return error_response(e)
        return Response(
            {"message": "Payment verified successfully", "order": OrderReadDTO.from_model(order).model_dump(mode="json")},
            status=status.HTTP_200_OK,
        )
