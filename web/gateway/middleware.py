"""Request correlation and payload guard middleware.

``RequestIdMiddleware`` gives every request an identifier: the inbound
``X-Request-ID`` header when the caller (or the payment gateway's proxy)
supplies one, a fresh UUIDv4 otherwise. The id lives on ``request.request_id``
and in ``REQUEST_ID_CTX`` so log filters and the outbound Daraja client can
read it without threading it through call signatures. Each handled request
produces one structured ``request handled`` log line, mirroring the sandbox
service.

``ApiSizeLimitMiddleware`` rejects oversized ``/api/`` bodies before DRF
parses them.
"""

import contextvars
import logging
import time
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_REQUEST_ID_LEN = 128

logger = logging.getLogger("gateway.requests")


class RequestIdMiddleware(MiddlewareMixin):
    """Assign, expose and log a per-request identifier.

    Attributes:
        HEADER: Incoming header name in ``request.META`` casing.
        RESPONSE_HEADER: Header echoed back on every response.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        """Attach the request id and start the latency clock.

        Client ids longer than ``MAX_REQUEST_ID_LEN`` are replaced so a caller
        cannot bloat every log line.
        """
        rid = request.META.get(self.HEADER)
        if not rid or len(rid) > MAX_REQUEST_ID_LEN:
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._started_at = time.monotonic()
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        started = getattr(request, "_started_at", None)
        logger.info(
            "request handled",
            extra={
                "path": request.path,
                "method": request.method,
                "status": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 2) if started else None,
            },
        )
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Return 413 for ``/api/`` requests whose declared body exceeds ``API_MAX_BYTES``."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        limit = getattr(settings, "API_MAX_BYTES", 1024 * 1024)
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > limit:
            logger.warning("payload rejected", extra={"path": request.path, "content_length": int(clen)})
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
