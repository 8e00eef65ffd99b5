import pytest

from apps.orders.models import IdempotencyKey, OrderModel

CREATE_URL = "/api/orders/"


def _payload(product, quantity):
    return {
        "items": [{"product": product.pk, "quantity": quantity}],
        "shipping_address": {"name": "Wanjiku", "phone": "0712345678", "street": "Moi Ave", "city": "Nairobi"},
    }


@pytest.mark.django_db
def test_idempotent_retry_returns_same_order_without_second_reservation(customer_client, product):
    key = "idem-same-1"
    r1 = customer_client.post(CREATE_URL, data=_payload(product, 2), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 201

    r2 = customer_client.post(CREATE_URL, data=_payload(product, 2), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"

    assert OrderModel.objects.count() == 1
    product.refresh_from_db()
    assert product.stock == 3
    assert IdempotencyKey.objects.get(key=key).order_id is not None


@pytest.mark.django_db
def test_idempotent_conflict_on_different_payload_with_same_key(customer_client, product):
    key = "idem-conflict-1"
    r1 = customer_client.post(CREATE_URL, data=_payload(product, 2), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 201

    r2 = customer_client.post(CREATE_URL, data=_payload(product, 3), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_same_key_from_another_user_conflicts(client, customer, other_customer, product):
    key = "idem-user-1"
    client.force_login(customer)
    assert client.post(CREATE_URL, data=_payload(product, 1), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key).status_code == 201

    client.force_login(other_customer)
    r = client.post(CREATE_URL, data=_payload(product, 1), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r.status_code == 409


@pytest.mark.django_db
def test_idempotent_replay_preserves_422_status(customer_client, product):
    key = "idem-422"
    r1 = customer_client.post(CREATE_URL, data=_payload(product, 50), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 422

    r2 = customer_client.post(CREATE_URL, data=_payload(product, 50), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 422
    assert r2.json()["detail"] == "INSUFFICIENT_STOCK"
    assert r2.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_in_flight_key_is_reported(customer_client, customer, product):
    from apps.orders.idempotency import request_hash
    from apps.orders.schemas import CreateOrderDTO

    body = CreateOrderDTO.model_validate(_payload(product, 1)).model_dump(mode="json")
    IdempotencyKey.objects.create(key="idem-busy", request_hash=request_hash(customer.pk, body))

    r = customer_client.post(CREATE_URL, data=_payload(product, 1), content_type="application/json", HTTP_IDEMPOTENCY_KEY="idem-busy")
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_IN_PROGRESS"
