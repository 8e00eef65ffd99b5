"""Service provider helpers for wiring OrderService with its ports.

``get_order_service`` returns an ``OrderService`` backed by the ORM stock
ledger and the email/signal notifier. The payment gateway is the Daraja
HTTP client when ``settings.USE_HTTP_ADAPTERS`` is truthy, otherwise the
in-process ``GatewayStub`` used by tests and local development.
"""

from django.conf import settings

from apps.catalog.ledger import ProductLedger
from apps.payments.adapters import GatewayStub
from apps.payments.mpesa import MpesaClient, MpesaConfig
from .domain import PaymentGatewayPort, ShippingPolicy
from .notifications import Notifier
from .repository import OrderRepository
from .service import OrderService

# One client per process so the circuit breaker state is shared across requests
_gateway: PaymentGatewayPort | None = None
_gateway_key = None


def get_gateway() -> PaymentGatewayPort:
    """Return the process-wide gateway, rebuilt when the relevant settings change."""
    global _gateway, _gateway_key
    use_http = bool(getattr(settings, "USE_HTTP_ADAPTERS", False))
    config = MpesaConfig.from_settings(settings) if use_http else None
    key = (use_http, config)
    if _gateway is None or key != _gateway_key:
        _gateway = MpesaClient(config) if use_http else GatewayStub()
        _gateway_key = key
    return _gateway


def get_shipping_policy() -> ShippingPolicy:
    return ShippingPolicy(
        free_threshold_cents=getattr(settings, "FREE_SHIPPING_THRESHOLD_CENTS", 1_000_000),
        flat_fee_cents=getattr(settings, "FLAT_SHIPPING_FEE_CENTS", 50_000),
    )


def get_order_service() -> OrderService:
    """Return a configured OrderService instance."""
    return OrderService(
        inventory=ProductLedger(),
        gateway=get_gateway(),
        notifier=Notifier(),
        shipping=get_shipping_policy(),
        repository=OrderRepository(),
    )
