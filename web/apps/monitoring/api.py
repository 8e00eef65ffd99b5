from django.conf import settings
from django.db import connection
from django.http import JsonResponse

from apps.payments.mpesa import MpesaConfig


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        db_ok = False

    # The stub gateway needs no credentials
    use_http = bool(getattr(settings, "USE_HTTP_ADAPTERS", False))
    gateway_ok = MpesaConfig.from_settings(settings).is_complete if use_http else True

    ok = db_ok and gateway_ok
    code = 200 if ok else 503
    return JsonResponse(
        {
            "ok": ok,
            "components": {
                "db": {"ok": db_ok},
                "payment_gateway": {"ok": gateway_ok, "mode": "mpesa" if use_http else "stub"},
            },
        },
        status=code,
    )
