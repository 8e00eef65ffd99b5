"""In-process stub for the payment gateway port.

``GatewayStub`` implements ``PaymentGatewayPort`` without any network calls.
It is used by tests and local development (``USE_HTTP_ADAPTERS=0``) where a
deterministic gateway is more useful than the Daraja sandbox.
"""

import uuid

from apps.orders.domain import GatewayError, PaymentGatewayPort, StkPushResult, StkQueryResult


class GatewayStub(PaymentGatewayPort):
    """Accepts every push with a positive amount and remembers it.

    Queries report ``ResultCode "0"`` for requests it issued and ``"1032"``
    (cancelled by user) for anything else. Only the newest ``max_requests``
    pushes are remembered; older ones are forgotten first.
    """

    def __init__(self, max_requests: int = 1000):
        self.max_requests = max_requests
        self.requests: dict[str, dict] = {}

    def initiate(self, phone: str, amount_cents: int, reference: str, description: str) -> StkPushResult:
        if amount_cents <= 0:
            raise GatewayError("Amount must be positive")
        checkout_id = f"ws_CO_{uuid.uuid4().hex[:20]}"
        self.requests[checkout_id] = {
            "phone": phone,
            "amount_cents": amount_cents,
            "reference": reference,
            "description": description,
        }
        while len(self.requests) > self.max_requests:
            self.requests.pop(next(iter(self.requests)))
        return StkPushResult(
            merchant_request_id=f"stub-{uuid.uuid4().hex[:12]}",
            checkout_request_id=checkout_id,
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    def query(self, checkout_request_id: str) -> StkQueryResult:
        if checkout_request_id in self.requests:
            return StkQueryResult(result_code="0", result_desc="The service request is processed successfully.")
        return StkQueryResult(result_code="1032", result_desc="Request cancelled by user")
