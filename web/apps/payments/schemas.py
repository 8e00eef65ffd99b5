"""Pydantic schemas for the payment endpoints and the Daraja callback envelope."""

import re
from typing import Any, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


PHONE_RE = re.compile(r"^\+?\d{9,15}$")


class InitiatePaymentDTO(BaseModel):
    """Body of ``POST /api/payment/initiate/``.

    Accepts both ``order_id``/``phone_number`` and the camelCase names used
    by the storefront client.
    """

    order_id: UUID = Field(validation_alias=AliasChoices("order_id", "orderId"))
    phone_number: str = Field(validation_alias=AliasChoices("phone_number", "phoneNumber"))

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        compact = "".join(v.split())
        if not PHONE_RE.match(compact):
            raise ValueError("Invalid phone number")
        return compact


class VerifyPaymentDTO(BaseModel):
    order_id: UUID = Field(validation_alias=AliasChoices("order_id", "orderId"))
    receipt_number: str = Field(
        min_length=1,
        max_length=32,
        validation_alias=AliasChoices("receipt_number", "mpesaReceiptNumber"),
    )


# ---- Daraja STK callback ----
class CallbackItem(BaseModel):
    Name: str
    Value: Any = None


class StkMetadata(BaseModel):
    Item: list[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MerchantRequestID: str = ""
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: str = ""
    CallbackMetadata: Optional[StkMetadata] = None


class CallbackBody(BaseModel):
    stkCallback: StkCallback


class CallbackEnvelope(BaseModel):
    """``{"Body": {"stkCallback": {...}}}`` as posted by Daraja."""

    Body: CallbackBody
