"""Order lifecycle transitions: payment, cancellation, status updates, history."""
import re

import pytest
from django.db import connection
from django.test.utils import CaptureQueriesContext

from apps.catalog.ledger import ProductLedger
from apps.orders import lifecycle
from apps.orders.domain import (
    InvalidTransition,
    LineItem,
    OrderNotFound,
    PaymentReceipt,
    StkPushResult,
    price_lines,
)
from apps.orders.models import AppendOnlyError, OrderModel


@pytest.fixture
def order(customer, product, address):
    ledger = ProductLedger()
    p = ledger.reserve(product.pk, 2)
    lines = [LineItem(p.pk, p.name, p.image_url, p.part_number, 2, p.price_cents)]
    return lifecycle.create(
        user=customer,
        lines=lines,
        quote=price_lines([(p.price_cents, 2)]),
        shipping_address=address,
        payment_method="mpesa",
    )


def _notes(order):
    return [h.note for h in OrderModel.objects.get(pk=order.pk).history.all()]


@pytest.mark.django_db
def test_create_sets_initial_state(order, settings):
    assert order.status == "processing"
    assert order.payment_status == "pending"
    assert order.is_paid is False
    assert order.total_cents == 250_000
    assert order.estimated_delivery is not None
    assert re.fullmatch(r"JMO\d{8}\d{4,}", order.order_number)
    assert order.order_number.endswith(f"{order.internal_id:04d}")
    assert [h.status for h in order.history.all()] == ["processing"]


@pytest.mark.django_db
def test_internal_id_increments(order, customer, address, make_product):
    p = make_product()
    second = lifecycle.create(
        user=customer,
        lines=[LineItem(p.pk, p.name, "", p.part_number, 1, p.price_cents)],
        quote=price_lines([(p.price_cents, 1)]),
        shipping_address=address,
        payment_method="cash_on_delivery",
    )
    assert second.internal_id > order.internal_id
    assert second.order_number.endswith(f"{second.internal_id:04d}")


@pytest.mark.django_db
def test_internal_id_never_reused_after_delete(customer):
    first = OrderModel.objects.create(user=customer)
    first_id = first.internal_id
    first.delete()

    second = OrderModel.objects.create(user=customer)
    assert second.internal_id > first_id


@pytest.mark.django_db
def test_order_creation_takes_no_lock_on_order_rows(customer):
    OrderModel.objects.create(user=customer)
    with CaptureQueriesContext(connection) as ctx:
        OrderModel.objects.create(user=customer)
    order_reads = [q["sql"] for q in ctx.captured_queries if q["sql"].startswith("SELECT") and '"orders"' in q["sql"]]
    assert order_reads == []


@pytest.mark.django_db
def test_mark_paid_confirms_and_is_idempotent(order):
    receipt = PaymentReceipt("QAB123XYZ", phone="254712345678")
    paid, changed = lifecycle.mark_paid(order.pk, receipt)
    assert changed is True
    assert paid.is_paid and paid.payment_status == "completed"
    assert paid.status == "confirmed"
    assert paid.mpesa_receipt == "QAB123XYZ"

    again, changed = lifecycle.mark_paid(order.pk, receipt)
    assert changed is False
    assert len(_notes(order)) == 2  # placed + payment received


@pytest.mark.django_db
def test_mark_paid_with_different_receipt_keeps_first(order, caplog):
    lifecycle.mark_paid(order.pk, PaymentReceipt("FIRST0001"))
    with caplog.at_level("WARNING", logger="apps.orders.lifecycle"):
        o, changed = lifecycle.mark_paid(order.pk, PaymentReceipt("SECOND002"))
    assert changed is False
    assert o.mpesa_receipt == "FIRST0001"
    assert any(r.getMessage() == "duplicate payment ignored" for r in caplog.records)


@pytest.mark.django_db
def test_mark_paid_leaves_later_status_alone(order, staff):
    lifecycle.update_status(order.pk, "packed", None, staff, ProductLedger())
    o, _ = lifecycle.mark_paid(order.pk, PaymentReceipt("R1"))
    assert o.status == "packed"


@pytest.mark.django_db
def test_payment_failed_then_ignored_once_paid(order):
    o, changed = lifecycle.mark_payment_failed(order.pk, "Request cancelled by user")
    assert changed and o.payment_status == "failed" and o.status == "processing"
    assert "Payment failed: Request cancelled by user" in _notes(order)

    # redelivery of the same failure
    _, changed = lifecycle.mark_payment_failed(order.pk, "Request cancelled by user")
    assert changed is False

    lifecycle.mark_paid(order.pk, PaymentReceipt("R2"))
    o, changed = lifecycle.mark_payment_failed(order.pk, "late failure")
    assert changed is False
    assert o.payment_status == "completed"


@pytest.mark.django_db
def test_attach_checkout_resets_failed_attempt(order):
    lifecycle.mark_payment_failed(order.pk, "timeout")
    o = lifecycle.attach_checkout(order.pk, StkPushResult("m-1", "ws_CO_1"), "254712345678")
    assert o.checkout_request_id == "ws_CO_1"
    assert o.payment_status == "pending"


@pytest.mark.django_db
def test_attach_checkout_keeps_earlier_attempts(order):
    lifecycle.attach_checkout(order.pk, StkPushResult("m-1", "ws_CO_1"), "254712345678")
    o = lifecycle.attach_checkout(order.pk, StkPushResult("m-2", "ws_CO_2"), "254712345678")
    assert o.checkout_request_id == "ws_CO_2"
    assert list(o.payment_attempts.values_list("checkout_request_id", flat=True)) == ["ws_CO_1", "ws_CO_2"]


@pytest.mark.django_db
def test_cancel_restores_stock(order, product, customer):
    product.refresh_from_db()
    assert product.stock == 3

    o = lifecycle.cancel(order.pk, "changed my mind", customer, ProductLedger())
    assert o.status == "cancelled"
    assert o.cancel_reason == "changed my mind"
    product.refresh_from_db()
    assert product.stock == 5
    assert product.sold_count == 0


@pytest.mark.django_db
@pytest.mark.parametrize("status", ["shipped", "delivered"])
def test_cancel_rejected_once_shipped(order, product, staff, status):
    lifecycle.update_status(order.pk, status, None, staff, ProductLedger())
    with pytest.raises(InvalidTransition):
        lifecycle.cancel(order.pk, "too late", staff, ProductLedger())
    product.refresh_from_db()
    assert product.stock == 3
    assert OrderModel.objects.get(pk=order.pk).status == status


@pytest.mark.django_db
def test_cancel_twice_rejected(order, customer):
    lifecycle.cancel(order.pk, "", customer, ProductLedger())
    with pytest.raises(InvalidTransition):
        lifecycle.cancel(order.pk, "", customer, ProductLedger())


@pytest.mark.django_db
def test_cancel_then_payment_records_refund_due(order, customer, product):
    lifecycle.cancel(order.pk, "out of town", customer, ProductLedger())
    o, changed = lifecycle.mark_paid(order.pk, PaymentReceipt("LATE001"))
    assert changed
    assert o.status == "cancelled"
    assert o.is_paid and o.payment_status == "completed"
    assert any("refund due" in n for n in _notes(order))
    product.refresh_from_db()
    assert product.stock == 5


@pytest.mark.django_db
def test_payment_then_cancel_records_refund_due(order, customer, product):
    lifecycle.mark_paid(order.pk, PaymentReceipt("EARLY01"))
    o = lifecycle.cancel(order.pk, "out of town", customer, ProductLedger())
    assert o.status == "cancelled"
    assert o.is_paid and o.payment_status == "completed"
    assert _notes(order)[-1] == "Cancelled: out of town; refund due"
    product.refresh_from_db()
    assert product.stock == 5


@pytest.mark.django_db
def test_update_status_to_cancelled_releases_stock(order, staff, product):
    o = lifecycle.update_status(order.pk, "cancelled", "customer called", staff, ProductLedger())
    assert o.status == "cancelled"
    product.refresh_from_db()
    assert product.stock == 5


@pytest.mark.django_db
def test_cancelled_order_cannot_be_reopened(order, staff):
    lifecycle.cancel(order.pk, "", staff, ProductLedger())
    with pytest.raises(InvalidTransition):
        lifecycle.update_status(order.pk, "processing", None, staff, ProductLedger())


@pytest.mark.django_db
def test_delivered_stamps_delivered_at_once(order, staff):
    o = lifecycle.update_status(order.pk, "delivered", None, staff, ProductLedger())
    first = o.delivered_at
    assert first is not None
    o = lifecycle.update_status(order.pk, "delivered", "re-confirmed", staff, ProductLedger())
    assert o.delivered_at == first


@pytest.mark.django_db
def test_unknown_order_raises_not_found(staff):
    with pytest.raises(OrderNotFound):
        lifecycle.update_status("00000000-0000-0000-0000-000000000000", "packed", None, staff, ProductLedger())
    with pytest.raises(OrderNotFound):
        lifecycle.mark_paid("not-a-uuid", PaymentReceipt("X"))


@pytest.mark.django_db
def test_history_is_append_only(order):
    entry = order.history.first()
    entry.note = "rewritten"
    with pytest.raises(AppendOnlyError):
        entry.save()
    with pytest.raises(AppendOnlyError):
        entry.delete()
