"""M-Pesa Daraja sandbox built with FastAPI.

A local stand-in for the three Daraja endpoints the storefront uses (OAuth
token, STK push, STK push query) plus a control endpoint that plays the
customer's part: ``POST /sandbox/stk/{checkout_request_id}/complete``
settles a pending push and delivers the Daraja-shaped callback to the
``CallBackURL`` given at initiation. Point the web app at it with
``MPESA_BASE_URL=http://mpesa-sandbox:9002``.
"""

import base64
import logging
import os
import uuid
from datetime import datetime
from typing import Annotated, Optional
from zoneinfo import ZoneInfo

import httpx
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from repo import SandboxRepo, engine, init_db

app = FastAPI(title="M-Pesa Sandbox")

SANDBOX_PASSKEY = os.getenv("SANDBOX_PASSKEY", "")
SANDBOX_TZ = ZoneInfo(os.getenv("SANDBOX_TZ", "Africa/Nairobi"))
CALLBACK_TIMEOUT_SECS = float(os.getenv("SANDBOX_CALLBACK_TIMEOUT_SECS", "5"))
# Replaced by an httpx.MockTransport in tests
CALLBACK_TRANSPORT: Optional[httpx.BaseTransport] = None

RESULT_DESCRIPTIONS = {
    0: "The service request is processed successfully.",
    1: "The balance is insufficient for the transaction.",
    1032: "Request cancelled by user",
    1037: "DS timeout user cannot be reached",
    2001: "The initiator information is invalid.",
}

Msisdn = constr(pattern=r"^254\d{9}$")
DarajaTimestamp = constr(pattern=r"^\d{14}$")


logger = logging.getLogger("mpesa_sandbox")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    init_db()


class DarajaError(Exception):
    def __init__(self, status_code: int, error_code: str, message: str):
        self.status_code = status_code
        self.error_code = error_code
        self.message = message


@app.exception_handler(DarajaError)
async def _daraja_error(request: Request, exc: DarajaError):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "requestId": getattr(request.state, "request_id", ""),
            "errorCode": exc.error_code,
            "errorMessage": exc.message,
        },
    )


class StkPushRequest(BaseModel):
    """Body of ``POST /mpesa/stkpush/v1/processrequest``."""

    BusinessShortCode: str = Field(min_length=5, max_length=7)
    Password: str
    Timestamp: DarajaTimestamp
    TransactionType: str = "CustomerPayBillOnline"
    Amount: int = Field(gt=0)
    PartyA: Msisdn
    PartyB: str
    PhoneNumber: Msisdn
    CallBackURL: str = Field(pattern=r"^https?://")
    AccountReference: str = Field(min_length=1, max_length=64)
    TransactionDesc: str = Field(default="", max_length=128)


class StkQueryRequest(BaseModel):
    BusinessShortCode: str
    Password: str
    Timestamp: DarajaTimestamp
    CheckoutRequestID: str


class CompleteRequest(BaseModel):
    """Outcome to simulate for a pending push (0 = the customer paid)."""

    result_code: int = 0
    result_desc: Optional[str] = None
    deliver: bool = True


def _require_bearer(authorization: Optional[str]):
    if not authorization or not authorization.startswith("Bearer "):
        raise DarajaError(401, "404.001.03", "Invalid Access Token")
    if not SandboxRepo().token_valid(authorization[len("Bearer "):]):
        raise DarajaError(401, "404.001.03", "Invalid Access Token")


def _check_password(shortcode: str, password: str, timestamp: str):
    try:
        decoded = base64.b64decode(password, validate=True).decode("utf-8")
    except ValueError:
        raise DarajaError(400, "400.002.02", "Bad Request - Invalid Password")
    expected_passkey_ok = not SANDBOX_PASSKEY or decoded == f"{shortcode}{SANDBOX_PASSKEY}{timestamp}"
    if not (decoded.startswith(shortcode) and decoded.endswith(timestamp) and expected_passkey_ok):
        raise DarajaError(400, "400.002.02", "Bad Request - Invalid Password")


def _callback_payload(req) -> dict:
    body = {
        "MerchantRequestID": req.merchant_request_id,
        "CheckoutRequestID": req.checkout_request_id,
        "ResultCode": req.result_code,
        "ResultDesc": req.result_desc,
    }
    if req.result_code == 0:
        body["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": req.amount},
                {"Name": "MpesaReceiptNumber", "Value": req.receipt_number},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": int(datetime.now(SANDBOX_TZ).strftime("%Y%m%d%H%M%S"))},
                {"Name": "PhoneNumber", "Value": int(req.phone)},
            ]
        }
    return {"Body": {"stkCallback": body}}


def deliver_callback(url: str, payload: dict, request_id: str) -> bool:
    """POST the callback like Daraja does; one attempt, failures are logged."""
    try:
        with httpx.Client(timeout=CALLBACK_TIMEOUT_SECS, transport=CALLBACK_TRANSPORT) as client:
            r = client.post(url, json=payload, headers={"X-Request-ID": request_id})
        ok = 200 <= r.status_code < 300
        logger.info("callback delivered", extra={"request_id": request_id, "url": url, "status_code": r.status_code})
        return ok
    except httpx.RequestError as e:
        logger.warning("callback delivery failed", extra={"request_id": request_id, "url": url, "error": str(e)})
        return False


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1"))
    except Exception:
        return JSONResponse(status_code=503, content={"ok": False})
    return {"ok": True}


@app.get("/oauth/v1/generate")
def generate_token(
    grant_type: Annotated[str, Query()] = "",
    authorization: Annotated[Optional[str], Header()] = None,
):
    """Issue an access token for HTTP basic ``consumer_key:consumer_secret``."""
    if grant_type != "client_credentials":
        raise DarajaError(400, "400.008.02", "Invalid grant type passed")
    if not authorization or not authorization.startswith("Basic "):
        raise DarajaError(400, "400.008.01", "Invalid Authentication passed")
    try:
        consumer_key, _, secret = base64.b64decode(authorization[len("Basic "):]).decode("utf-8").partition(":")
    except ValueError:
        raise DarajaError(400, "400.008.01", "Invalid Authentication passed")
    if not consumer_key or not secret:
        raise DarajaError(400, "400.008.01", "Invalid Authentication passed")

    tok = SandboxRepo().issue_token(consumer_key)
    return {"access_token": tok.token, "expires_in": "3599"}


@app.post("/mpesa/stkpush/v1/processrequest")
def stk_push(
    req: StkPushRequest,
    request: Request,
    authorization: Annotated[Optional[str], Header()] = None,
):
    """Accept an STK push and leave it pending until ``/sandbox/.../complete``."""
    _require_bearer(authorization)
    _check_password(req.BusinessShortCode, req.Password, req.Timestamp)

    stk = SandboxRepo().create_request(
        shortcode=req.BusinessShortCode,
        phone=req.PhoneNumber,
        amount=req.Amount,
        account_reference=req.AccountReference,
        description=req.TransactionDesc,
        callback_url=req.CallBackURL,
    )
    logger.info(
        "stk push accepted",
        extra={
            "request_id": request.state.request_id,
            "checkout_request_id": stk.checkout_request_id,
            "amount": stk.amount,
            "reference": stk.account_reference,
        },
    )
    return {
        "MerchantRequestID": stk.merchant_request_id,
        "CheckoutRequestID": stk.checkout_request_id,
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


@app.post("/mpesa/stkpushquery/v1/query")
def stk_query(
    req: StkQueryRequest,
    authorization: Annotated[Optional[str], Header()] = None,
):
    _require_bearer(authorization)
    _check_password(req.BusinessShortCode, req.Password, req.Timestamp)

    stk = SandboxRepo().get(req.CheckoutRequestID)
    if stk is None:
        raise DarajaError(400, "400.002.02", "Bad Request - Invalid CheckoutRequestID")
    if stk.status == "pending":
        raise DarajaError(500, "500.001.1001", "The transaction is being processed")
    return {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": stk.merchant_request_id,
        "CheckoutRequestID": stk.checkout_request_id,
        "ResultCode": str(stk.result_code),
        "ResultDesc": stk.result_desc,
    }


@app.post("/sandbox/stk/{checkout_request_id}/complete")
def complete(checkout_request_id: str, body: CompleteRequest, request: Request):
    """Settle a pending push and (by default) deliver its callback.

    Raises:
        HTTPException: 404 for an unknown id, 409 when already settled.
    """
    desc = body.result_desc or RESULT_DESCRIPTIONS.get(body.result_code, "Transaction failed")
    stk, changed = SandboxRepo().settle(checkout_request_id, body.result_code, desc)
    if stk is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    if not changed:
        raise HTTPException(status_code=409, detail="ALREADY_SETTLED")

    payload = _callback_payload(stk)
    delivered = deliver_callback(stk.callback_url, payload, request.state.request_id) if body.deliver else False
    return {
        "checkout_request_id": stk.checkout_request_id,
        "status": stk.status,
        "callback_delivered": delivered,
        "callback": payload,
    }


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
