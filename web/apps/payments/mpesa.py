"""M-Pesa Daraja client: OAuth token, STK push and STK push query over ``httpx``.

The client implements ``PaymentGatewayPort`` and adds:

- Explicit configuration: an immutable ``MpesaConfig`` is handed to the
  client at construction; nothing reads settings at call time.
- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
  by the gateway middleware.
- A circuit breaker per client so a Daraja outage fails fast instead of
  tying up request threads on timeouts, with HALF_OPEN probing after a
  timeout.

Gateway calls are never retried automatically. A failed initiation is
reported to the customer, who may try again.
"""

import base64
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from django.utils import timezone

from gateway.middleware import REQUEST_ID_CTX
from apps.orders.domain import GatewayError, PaymentGatewayPort, StkPushResult, StkQueryResult

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
LIVE_BASE_URL = "https://api.safaricom.co.ke"

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"


# ---------------- Configuration ---------------- #

@dataclass(frozen=True)
class MpesaConfig:
    """Credentials and endpoints for one Daraja shortcode.

    Attributes:
        consumer_key: Daraja app consumer key (basic-auth user).
        consumer_secret: Daraja app consumer secret (basic-auth password).
        shortcode: Paybill / till number receiving the money.
        passkey: Lipa Na M-Pesa Online passkey used to derive the password.
        callback_url: Public URL Daraja posts the STK result to.
        environment: ``"sandbox"`` or ``"live"``.
        base_url: Optional override (the local sandbox service, a proxy).
        country_code: Prefix used by ``normalize_phone``.
        timeout: Per-request timeout in seconds.
        fail_threshold: Consecutive failures that open the circuit.
        reset_timeout: Seconds before an open circuit allows a probe.
    """

    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    environment: str = "sandbox"
    base_url: str = ""
    country_code: str = "254"
    timeout: float = 10.0
    fail_threshold: int = 5
    reset_timeout: float = 30.0

    @property
    def api_base(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return LIVE_BASE_URL if self.environment == "live" else SANDBOX_BASE_URL

    @property
    def is_complete(self) -> bool:
        return all((self.consumer_key, self.consumer_secret, self.shortcode, self.passkey, self.callback_url))

    @classmethod
    def from_settings(cls, settings) -> "MpesaConfig":
        return cls(
            consumer_key=getattr(settings, "MPESA_CONSUMER_KEY", ""),
            consumer_secret=getattr(settings, "MPESA_CONSUMER_SECRET", ""),
            shortcode=getattr(settings, "MPESA_SHORTCODE", "174379"),
            passkey=getattr(settings, "MPESA_PASSKEY", ""),
            callback_url=getattr(settings, "MPESA_CALLBACK_URL", ""),
            environment=getattr(settings, "MPESA_ENVIRONMENT", "sandbox"),
            base_url=getattr(settings, "MPESA_BASE_URL", ""),
            country_code=getattr(settings, "MPESA_COUNTRY_CODE", "254"),
            timeout=getattr(settings, "HTTP_TIMEOUT_SECS", 10.0),
            fail_threshold=getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
            reset_timeout=getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
        )


# ---------------- Pure helpers ---------------- #

def normalize_phone(phone, country_code: str = "254") -> str:
    """Convert a Kenyan MSISDN to the ``2547XXXXXXXX`` form Daraja expects.

    ``"0712 345 678"`` and ``"+254712345678"`` become ``"254712345678"``;
    numbers already starting with the country code pass through; anything
    else gets the country code prepended.
    """
    phone = "".join(str(phone).split())
    if phone.startswith("0"):
        return country_code + phone[1:]
    if phone.startswith("+"):
        return phone[1:]
    if phone.startswith(country_code):
        return phone
    return country_code + phone


def make_timestamp(now: Optional[datetime] = None) -> str:
    """Daraja timestamp ``YYYYMMDDHHMMSS`` in the shop's local time."""
    return timezone.localtime(now or timezone.now()).strftime("%Y%m%d%H%M%S")


def make_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """``base64(shortcode + passkey + timestamp)`` as required by STK endpoints."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def shillings(amount_cents: int) -> int:
    """Whole shillings, rounded up; Daraja rejects fractional amounts."""
    return -(-amount_cents // 100)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Admit or refuse a call.

        Raises:
            GatewayError: The circuit is OPEN, or a HALF_OPEN probe is
                already in flight.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise GatewayError(f"{self.name} circuit open; payment service temporarily unavailable")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise GatewayError(f"{self.name} circuit half-open; retry shortly")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


def _request_headers(extra: Optional[dict] = None) -> dict:
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


# ---------------- Daraja Adapter ---------------- #

class MpesaClient(PaymentGatewayPort):
    """HTTP client for Daraja STK push with a circuit breaker.

    A fresh OAuth token is requested for every gateway operation; tokens are
    not cached between calls.
    """

    def __init__(self, config: MpesaConfig, breaker: CircuitBreaker | None = None):
        self.config = config
        self.breaker = breaker or CircuitBreaker("mpesa", config.fail_threshold, config.reset_timeout)

    def _call(self, fn, what: str):
        """Run ``fn(client)`` under the breaker, mapping transport errors to GatewayError.

        Business refusals (HTTP 4xx from Daraja) do not count as circuit
        failures; transport errors and 5xx do.
        """
        self.breaker.before_call()
        try:
            with httpx.Client(timeout=self.config.timeout) as client:
                result = fn(client)
            self.breaker.on_success()
            return result
        except httpx.RequestError as e:
            self.breaker.on_failure()
            logger.error("gateway transport error", extra={"operation": what, "error": str(e)})
            raise GatewayError(f"Failed to {what}: payment service unreachable") from e
        except _UpstreamError as e:
            if e.status_code >= 500:
                self.breaker.on_failure()
            else:
                self.breaker.on_success()
            logger.error(
                "gateway refused request",
                extra={"operation": what, "status_code": e.status_code, "body": e.body},
            )
            raise GatewayError(e.message or f"Failed to {what}") from e
        finally:
            self.breaker.on_finish()

    def _token(self, client: httpx.Client) -> str:
        resp = client.get(
            f"{self.config.api_base}{TOKEN_PATH}",
            params={"grant_type": "client_credentials"},
            auth=(self.config.consumer_key, self.config.consumer_secret),
            headers=_request_headers() or None,
        )
        data = _json_or_raise(resp)
        token = data.get("access_token")
        if not token:
            raise _UpstreamError(resp.status_code, data, "Failed to get M-Pesa OAuth token")
        return token

    def _post(self, client: httpx.Client, path: str, payload: dict) -> dict:
        token = self._token(client)
        resp = client.post(
            f"{self.config.api_base}{path}",
            json=payload,
            headers=_request_headers({"Authorization": f"Bearer {token}"}),
        )
        return _json_or_raise(resp)

    def initiate(self, phone: str, amount_cents: int, reference: str, description: str) -> StkPushResult:
        """Send an STK push prompting ``phone`` to pay ``amount_cents``.

        Returns:
            StkPushResult with Daraja's MerchantRequestID and
            CheckoutRequestID.

        Raises:
            GatewayError: Circuit open, transport failure, non-2xx answer,
                or a response without correlation ids.
        """
        timestamp = make_timestamp()
        msisdn = normalize_phone(phone, self.config.country_code)
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": make_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": shillings(amount_cents),
            "PartyA": msisdn,
            "PartyB": self.config.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.config.callback_url,
            "AccountReference": reference,
            "TransactionDesc": description,
        }

        def send(client):
            data = self._post(client, STK_PUSH_PATH, payload)
            if not data.get("CheckoutRequestID") or not data.get("MerchantRequestID"):
                raise _UpstreamError(200, data, "Gateway response missing correlation ids")
            return data

        data = self._call(send, "initiate M-Pesa payment")
        logger.info(
            "stk push accepted",
            extra={"reference": reference, "checkout_request_id": data["CheckoutRequestID"]},
        )
        return StkPushResult(
            merchant_request_id=data["MerchantRequestID"],
            checkout_request_id=data["CheckoutRequestID"],
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", ""),
        )

    def query(self, checkout_request_id: str) -> StkQueryResult:
        """Ask Daraja for the outcome of an earlier STK push.

        Raises:
            GatewayError: Circuit open, transport failure or non-2xx answer.
        """
        timestamp = make_timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": make_password(self.config.shortcode, self.config.passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        data = self._call(lambda client: self._post(client, STK_QUERY_PATH, payload), "query M-Pesa transaction status")
        return StkQueryResult(
            result_code=str(data.get("ResultCode", "")),
            result_desc=data.get("ResultDesc", ""),
        )


class _UpstreamError(Exception):
    def __init__(self, status_code: int, body, message: str = ""):
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body
        self.message = message


def _json_or_raise(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    if not 200 <= resp.status_code < 300:
        raise _UpstreamError(resp.status_code, data, data.get("errorMessage", ""))
    return data
