"""Unit tests for the Daraja HTTP client.

HTTP is faked by monkeypatching ``httpx.Client.get``/``post``; no network.
"""
import base64

import httpx
import pytest

from apps.orders.domain import GatewayError
from apps.payments.mpesa import (
    CircuitBreaker,
    MpesaClient,
    MpesaConfig,
    make_password,
    normalize_phone,
    shillings,
)
from gateway.middleware import REQUEST_ID_CTX

CONFIG = MpesaConfig(
    consumer_key="ck",
    consumer_secret="cs",
    shortcode="174379",
    passkey="pk",
    callback_url="https://shop.example.com/api/payment/callback/",
)


class DummyResp:
    """Minimal httpx-like response stub."""

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}

    def json(self):
        return self._json


@pytest.fixture
def daraja(monkeypatch):
    """Fake Daraja: records calls, answers token and STK requests."""
    calls = {"get": [], "post": []}
    answers = {
        "token": DummyResp(200, {"access_token": "tok-1", "expires_in": "3599"}),
        "push": DummyResp(
            200,
            {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        ),
        "query": DummyResp(200, {"ResultCode": "0", "ResultDesc": "The service request is processed successfully."}),
    }

    def fake_get(self, url, params=None, auth=None, headers=None, **kw):
        calls["get"].append({"url": url, "params": params, "auth": auth, "headers": headers})
        return answers["token"]

    def fake_post(self, url, json=None, headers=None, **kw):
        calls["post"].append({"url": url, "json": json, "headers": headers})
        return answers["query" if "stkpushquery" in url else "push"]

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    return calls, answers


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0712345678", "254712345678"),
        ("0712 345 678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("254712345678", "254712345678"),
        ("712345678", "254712345678"),
        (" 0110 000 000 ", "254110000000"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_password_is_base64_of_shortcode_passkey_timestamp():
    pw = make_password("174379", "pk", "20240115143025")
    assert base64.b64decode(pw).decode() == "174379pk20240115143025"


@pytest.mark.parametrize("cents, expected", [(250_000, 2_500), (250_001, 2_501), (1, 1), (100, 1)])
def test_amount_rounds_up_to_whole_shillings(cents, expected):
    assert shillings(cents) == expected


def test_config_base_url_selection():
    assert CONFIG.api_base == "https://sandbox.safaricom.co.ke"
    live = MpesaConfig("ck", "cs", "1", "pk", "https://x", environment="live")
    assert live.api_base == "https://api.safaricom.co.ke"
    local = MpesaConfig("ck", "cs", "1", "pk", "https://x", base_url="http://localhost:9002/")
    assert local.api_base == "http://localhost:9002"
    assert MpesaConfig("", "", "174379", "", "").is_complete is False


def test_config_from_settings(settings):
    settings.MPESA_CONSUMER_KEY = "key"
    settings.MPESA_CONSUMER_SECRET = "secret"
    settings.MPESA_PASSKEY = "pass"
    settings.MPESA_CALLBACK_URL = "https://shop.example.com/cb"
    cfg = MpesaConfig.from_settings(settings)
    assert cfg.shortcode == "174379"
    assert cfg.is_complete


def test_initiate_sends_stk_push(daraja):
    calls, _ = daraja
    token = REQUEST_ID_CTX.set("rid-42")
    try:
        result = MpesaClient(CONFIG).initiate("0712345678", 250_050, "JMO123456780001", "Payment for order JMO123456780001")
    finally:
        REQUEST_ID_CTX.reset(token)

    assert result.checkout_request_id == "ws_CO_191220191020363925"
    assert result.merchant_request_id == "29115-34620561-1"

    get = calls["get"][0]
    assert get["url"].endswith("/oauth/v1/generate")
    assert get["params"] == {"grant_type": "client_credentials"}
    assert get["auth"] == ("ck", "cs")

    post = calls["post"][0]
    body = post["json"]
    assert post["url"] == "https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest"
    assert post["headers"]["Authorization"] == "Bearer tok-1"
    assert post["headers"]["X-Request-ID"] == "rid-42"
    assert body["Amount"] == 2_501
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["PartyB"] == body["BusinessShortCode"] == "174379"
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["AccountReference"] == "JMO123456780001"
    assert len(body["Timestamp"]) == 14
    assert base64.b64decode(body["Password"]).decode() == "174379pk" + body["Timestamp"]


def test_token_fetched_for_every_call(daraja):
    calls, _ = daraja
    client = MpesaClient(CONFIG)
    client.initiate("0712345678", 100, "REF", "desc")
    client.query("ws_CO_1")
    assert len(calls["get"]) == 2


def test_query_returns_result_code(daraja):
    calls, _ = daraja
    result = MpesaClient(CONFIG).query("ws_CO_191220191020363925")
    assert result.result_code == "0"
    assert calls["post"][0]["json"]["CheckoutRequestID"] == "ws_CO_191220191020363925"


def test_token_failure_raises_gateway_error(daraja):
    calls, answers = daraja
    answers["token"] = DummyResp(400, {"errorMessage": "Invalid credentials"})
    with pytest.raises(GatewayError) as exc:
        MpesaClient(CONFIG).initiate("0712345678", 100, "REF", "desc")
    assert str(exc.value) == "GATEWAY_ERROR"
    assert exc.value.message == "Invalid credentials"
    assert calls["post"] == []


def test_rejected_push_raises_gateway_error(daraja):
    _, answers = daraja
    answers["push"] = DummyResp(500, {"errorCode": "500.001.1001", "errorMessage": "Unable to lock subscriber"})
    with pytest.raises(GatewayError):
        MpesaClient(CONFIG).initiate("0712345678", 100, "REF", "desc")


def test_push_without_ids_raises_gateway_error(daraja):
    _, answers = daraja
    answers["push"] = DummyResp(200, {"ResponseCode": "0"})
    with pytest.raises(GatewayError):
        MpesaClient(CONFIG).initiate("0712345678", 100, "REF", "desc")


def test_network_error_raises_gateway_error(monkeypatch):
    def fake_get(self, url, **kw):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    with pytest.raises(GatewayError):
        MpesaClient(CONFIG).initiate("0712345678", 100, "REF", "desc")


def test_circuit_opens_after_repeated_transport_failures(monkeypatch):
    attempts = {"n": 0}

    def fake_get(self, url, **kw):
        attempts["n"] += 1
        raise httpx.ConnectTimeout("timeout")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    client = MpesaClient(CONFIG, breaker=CircuitBreaker("mpesa", fail_threshold=2, reset_timeout=60))
    for _ in range(2):
        with pytest.raises(GatewayError):
            client.initiate("0712345678", 100, "REF", "desc")
    assert client.breaker.state == "OPEN"

    with pytest.raises(GatewayError) as exc:
        client.initiate("0712345678", 100, "REF", "desc")
    assert "circuit open" in exc.value.message
    assert attempts["n"] == 2


def test_business_refusal_does_not_open_circuit(daraja):
    _, answers = daraja
    answers["push"] = DummyResp(400, {"errorMessage": "Invalid PhoneNumber"})
    client = MpesaClient(CONFIG, breaker=CircuitBreaker("mpesa", fail_threshold=1, reset_timeout=60))
    with pytest.raises(GatewayError):
        client.initiate("0712345678", 100, "REF", "desc")
    assert client.breaker.state == "CLOSED"


def test_half_open_probe_closes_circuit(monkeypatch):
    breaker = CircuitBreaker("mpesa", fail_threshold=1, reset_timeout=0)
    breaker.on_failure()
    # reset_timeout elapsed immediately
    assert breaker.state == "HALF_OPEN"
    assert breaker.before_call() == "HALF_OPEN"
    with pytest.raises(GatewayError):
        breaker.before_call()
    breaker.on_success()
    assert breaker.state == "CLOSED"
