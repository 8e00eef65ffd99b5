"""Inventory ledger tests: conditional debits, credits and the sold counter."""
import pytest
from django.db import connection
from django.test.utils import CaptureQueriesContext

from apps.catalog.ledger import InsufficientStock, OutOfStock, ProductLedger, ProductNotFound
from apps.catalog.models import Product


@pytest.mark.django_db
def test_reserve_debits_stock_and_credits_sold_count(product):
    p = ProductLedger().reserve(product.pk, 2)
    assert p.stock == 3
    assert p.sold_count == 2


@pytest.mark.django_db
def test_reserve_insufficient_leaves_stock_unchanged(product):
    with pytest.raises(InsufficientStock) as exc:
        ProductLedger().reserve(product.pk, 6)
    assert str(exc.value) == "INSUFFICIENT_STOCK"
    assert exc.value.available == 5
    assert exc.value.requested == 6

    product.refresh_from_db()
    assert product.stock == 5
    assert product.sold_count == 0


@pytest.mark.django_db
def test_reserve_exact_stock_then_out_of_stock(product):
    ledger = ProductLedger()
    ledger.reserve(product.pk, 5)
    with pytest.raises(OutOfStock) as exc:
        ledger.reserve(product.pk, 1)
    assert str(exc.value) == "OUT_OF_STOCK"
    # OutOfStock is still an InsufficientStock for callers
    assert isinstance(exc.value, InsufficientStock)


@pytest.mark.django_db
def test_reserve_is_one_guarded_update(product):
    with CaptureQueriesContext(connection) as ctx:
        ProductLedger().reserve(product.pk, 2)
    sql = [q["sql"] for q in ctx.captured_queries]
    updates = [s for s in sql if s.startswith("UPDATE")]
    assert len(updates) == 1
    # the stock check and the decrement happen in the same statement
    assert sql[0] == updates[0]
    assert '"stock" >= 2' in updates[0]


@pytest.mark.django_db
def test_competing_debit_wins_and_stock_never_goes_negative(product):
    ledger = ProductLedger()
    seen = ledger.lookup(product.pk)
    assert seen.stock == 5

    # another order takes 4 units after our caller looked at the product
    ledger.reserve(product.pk, 4)
    with pytest.raises(InsufficientStock) as exc:
        ledger.reserve(product.pk, 3)
    assert exc.value.available == 1

    product.refresh_from_db()
    assert product.stock == 1
    assert product.sold_count == 4


@pytest.mark.django_db
def test_reserve_unknown_and_inactive_products(make_product):
    ledger = ProductLedger()
    with pytest.raises(ProductNotFound):
        ledger.reserve(999_999, 1)

    hidden = make_product(is_active=False)
    with pytest.raises(ProductNotFound):
        ledger.reserve(hidden.pk, 1)
    hidden.refresh_from_db()
    assert hidden.stock == 5


@pytest.mark.django_db
def test_reserve_rejects_non_positive_quantity(product):
    with pytest.raises(ValueError):
        ProductLedger().reserve(product.pk, 0)


@pytest.mark.django_db
def test_release_restores_stock(product):
    ledger = ProductLedger()
    ledger.reserve(product.pk, 3)
    p = ledger.release(product.pk, 3)
    assert p.stock == 5
    assert p.sold_count == 0


@pytest.mark.django_db
def test_release_clamps_sold_count_at_zero(make_product, caplog):
    p = make_product(stock=2, sold_count=1)
    with caplog.at_level("WARNING", logger="apps.catalog.ledger"):
        out = ProductLedger().release(p.pk, 3)
    assert out.stock == 5
    assert out.sold_count == 0
    assert any("underflow" in r.getMessage() for r in caplog.records)


@pytest.mark.django_db
def test_release_unknown_product_is_logged_not_raised():
    assert ProductLedger().release(424242, 1) is None


@pytest.mark.django_db
def test_product_flags_and_part_number_normalized(make_product):
    p = make_product(part_number="oil-flt-9", stock=3)
    assert Product.objects.get(pk=p.pk).part_number == "OIL-FLT-9"
    assert p.in_stock is True
    assert p.is_low_stock is True

    p.stock = 0
    assert p.in_stock is False
    assert p.is_low_stock is False
