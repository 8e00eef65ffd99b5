"""Idempotency keys for ``POST /api/orders/``.

A client that retries an order submission with the same ``Idempotency-Key``
header gets the stored response of the first attempt instead of a second
order (and a second stock reservation). The key is bound to the user and the
request body; reusing it for a different body is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .domain import OrderError
from .models import IdempotencyKey


class IdempotencyConflict(OrderError):
    code = "IDEMPOTENCY_CONFLICT"


class IdempotencyInProgress(OrderError):
    code = "IDEMPOTENCY_IN_PROGRESS"


def request_hash(user_id, payload) -> str:
    """Stable SHA-256 of ``{"user": user_id, "body": payload}``.

    The payload is serialized with sorted keys and compact separators so
    the same JSON body always hashes the same way.
    """
    body = json.dumps({"user": user_id, "body": payload}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, user_id, payload) -> tuple[bool, IdempotencyKey]:
    """Claim ``key`` for this request, or return the record of an earlier one.

    Returns:
        ``(existing, rec)``: ``existing`` is False when the record was
        created by this call (the caller must ``finalize`` it), True when
        an earlier request already finished and ``rec`` holds its response.

    Raises:
        IdempotencyConflict: The key was used with another user or body.
        IdempotencyInProgress: The earlier request has not finished yet.
    """
    h = request_hash(user_id, payload)

    try:
        # Savepoint: an IntegrityError only rolls back this block
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict("Idempotency-Key already used with a different request")
        if not rec.response_status:
            raise IdempotencyInProgress("A request with this Idempotency-Key is still being processed")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    """Store the response so retries can replay it without side effects."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])


def release(rec: IdempotencyKey) -> None:
    """Forget a claim whose request crashed, so the client can retry."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()
