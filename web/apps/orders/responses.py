"""Translate domain errors into DRF responses.

Bodies always look like ``{"detail": CODE, "message": text}``; clients
branch on ``detail`` and may show ``message``.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "EMPTY_ORDER": status.HTTP_400_BAD_REQUEST,
    "INVALID_LINE_ITEM": status.HTTP_400_BAD_REQUEST,
    "PRODUCT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "OUT_OF_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NOT_AUTHORIZED": status.HTTP_403_FORBIDDEN,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "ORDER_ALREADY_PAID": status.HTTP_409_CONFLICT,
    "IDEMPOTENCY_CONFLICT": status.HTTP_409_CONFLICT,
    "IDEMPOTENCY_IN_PROGRESS": status.HTTP_409_CONFLICT,
    "GATEWAY_ERROR": status.HTTP_502_BAD_GATEWAY,
}


def error_body(exc: ValueError) -> tuple[int, dict]:
    """``(status_code, body)`` for a ``ValueError("CODE")``-style domain error."""
    code = str(exc)
    body = {"detail": code, "message": getattr(exc, "message", code)}
    return ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST), body


def error_response(exc: ValueError) -> Response:
    status_code, body = error_body(exc)
    if status_code >= 500:
        logger.error("request failed", extra={"code": body["detail"], "error": body["message"]})
    return Response(body, status=status_code)


def validation_response(exc: ValidationError) -> Response:
    errors = [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors(include_url=False)
    ]
    return Response(
        {"detail": "VALIDATION_ERROR", "message": "Invalid request", "errors": errors},
        status=status.HTTP_400_BAD_REQUEST,
    )
