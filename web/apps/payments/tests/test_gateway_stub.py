"""In-process gateway stub used by tests and local development."""
import pytest

from apps.orders.domain import GatewayError
from apps.payments.adapters import GatewayStub


def test_stub_accepts_push_and_reports_success():
    stub = GatewayStub()
    result = stub.initiate("254712345678", 250_000, "JMO123456780001", "Payment for order JMO123456780001")
    assert result.checkout_request_id.startswith("ws_CO_")
    assert stub.query(result.checkout_request_id).result_code == "0"
    assert stub.query("ws_CO_other").result_code == "1032"


def test_stub_rejects_non_positive_amount():
    with pytest.raises(GatewayError):
        GatewayStub().initiate("254712345678", 0, "JMO1", "")


def test_stub_forgets_oldest_pushes_beyond_limit():
    stub = GatewayStub(max_requests=2)
    ids = [stub.initiate("254712345678", 100, f"JMO{i}", "").checkout_request_id for i in range(3)]
    assert list(stub.requests) == ids[1:]
    assert stub.query(ids[0]).result_code == "1032"
