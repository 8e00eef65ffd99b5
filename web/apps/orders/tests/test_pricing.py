"""Pricing engine and delivery estimate (pure functions, no database)."""
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from apps.orders.domain import InvalidLineItem, ShippingPolicy, estimate_delivery, price_lines

NAIROBI = ZoneInfo("Africa/Nairobi")


def test_subtotal_below_threshold_pays_flat_fee():
    q = price_lines([(100_000, 2)])
    assert q.subtotal_cents == 200_000
    assert q.shipping_cents == 50_000
    assert q.total_cents == 250_000


def test_free_shipping_at_threshold():
    q = price_lines([(500_000, 2)])
    assert q.subtotal_cents == 1_000_000
    assert q.shipping_cents == 0
    assert q.total_cents == 1_000_000


def test_just_below_threshold_still_pays():
    q = price_lines([(999_999, 1)])
    assert q.shipping_cents == 50_000


def test_total_includes_tax_and_custom_policy():
    q = price_lines([(1_000, 3), (500, 1)], ShippingPolicy(free_threshold_cents=10_000, flat_fee_cents=200), tax_cents=70)
    assert q.subtotal_cents == 3_500
    assert q.total_cents == q.subtotal_cents + q.shipping_cents + q.tax_cents == 3_770


@pytest.mark.parametrize("line", [(100, 0), (100, -1), (-5, 1)])
def test_invalid_lines_rejected(line):
    with pytest.raises(InvalidLineItem):
        price_lines([line])


def test_delivery_same_day_before_cutoff():
    created = datetime(2024, 1, 15, 10, 30, tzinfo=NAIROBI)
    assert estimate_delivery(created, NAIROBI) == datetime(2024, 1, 15, 18, 0, tzinfo=NAIROBI)


def test_delivery_next_day_from_cutoff_on():
    created = datetime(2024, 1, 15, 14, 0, tzinfo=NAIROBI)
    assert estimate_delivery(created, NAIROBI) == datetime(2024, 1, 16, 18, 0, tzinfo=NAIROBI)


def test_delivery_uses_local_time_of_shop():
    # 12:00 UTC is 15:00 in Nairobi: past the cutoff
    created = datetime(2024, 1, 31, 12, 0, tzinfo=ZoneInfo("UTC"))
    assert estimate_delivery(created, NAIROBI) == datetime(2024, 2, 1, 18, 0, tzinfo=NAIROBI)
