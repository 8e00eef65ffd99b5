"""Daraja STK callback ingestion helpers.

Parsing never raises: a payload that does not look like an STK callback is
logged and reported as ``None`` so the view can still acknowledge it.
"""

import logging
from datetime import datetime
from typing import Optional

from django.utils import timezone
from pydantic import ValidationError

from apps.orders.domain import PaymentReceipt
from .schemas import CallbackEnvelope, StkCallback

logger = logging.getLogger(__name__)

# Daraja only needs a 200 with this body; anything else triggers redelivery.
CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}

TRANSACTION_DATE_FORMAT = "%Y%m%d%H%M%S"


def parse_callback(payload) -> Optional[StkCallback]:
    try:
        return CallbackEnvelope.model_validate(payload).Body.stkCallback
    except ValidationError as e:
        logger.warning("malformed payment callback", extra={"errors": e.error_count()})
        return None


def _metadata(callback: StkCallback) -> dict:
    if callback.CallbackMetadata is None:
        return {}
    return {item.Name: item.Value for item in callback.CallbackMetadata.Item}


def parse_transaction_date(value) -> Optional[datetime]:
    """``20240115143025`` (local time, int or str) to an aware datetime."""
    if value in (None, ""):
        return None
    try:
        naive = datetime.strptime(str(value), TRANSACTION_DATE_FORMAT)
    except ValueError:
        logger.warning("unparseable transaction date", extra={"value": str(value)})
        return None
    return timezone.make_aware(naive, timezone.get_current_timezone())


def receipt_from(callback: StkCallback) -> PaymentReceipt:
    """Pick receipt number, transaction date, phone and amount out of ``CallbackMetadata``."""
    meta = _metadata(callback)
    receipt = meta.get("MpesaReceiptNumber")
    phone = meta.get("PhoneNumber")
    amount = meta.get("Amount")
    return PaymentReceipt(
        receipt_number=str(receipt) if receipt is not None else None,
        transaction_date=parse_transaction_date(meta.get("TransactionDate")),
        phone=str(phone) if phone is not None else None,
        amount=float(amount) if isinstance(amount, (int, float)) else None,
    )
