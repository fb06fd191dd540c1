"""Tests de los formatos de presentación."""

from datetime import date
from decimal import Decimal

import pytest

from services.formatting import PLACEHOLDER, format_btc, format_currency, format_date, format_percent


@pytest.mark.parametrize(
    "value,currency,expected",
    [
        (Decimal("1234.56"), "BRL", "R$ 1.234,56"),
        (Decimal("1234.56"), "USD", "US$ 1,234.56"),
        (Decimal("1234567.891"), "BRL", "R$ 1.234.567,89"),
        (Decimal("0"), "BRL", "R$ 0,00"),
        (Decimal("-10.5"), "USD", "US$ -10.50"),
        (Decimal("0.005"), "BRL", "R$ 0,01"),
    ],
)
def test_format_currency(value, currency, expected):
    assert format_currency(value, currency) == expected


def test_format_btc():
    assert format_btc(Decimal("0.00018959")) == "0,00018959 BTC"
    assert format_btc(Decimal("1.5"), "BTC") == "1,50000000 BTC"
    assert format_btc(Decimal("0.00018959"), "SATS") == "18.959 sats"
    assert format_btc(Decimal("12"), "sats") == "1.200.000.000 sats"


def test_format_percent():
    assert format_percent(Decimal("12.345")) == "+12,35%"
    assert format_percent(Decimal("-3.1")) == "-3,10%"
    assert format_percent(Decimal("0")) == "0,00%"


def test_format_date_never_shifts_the_day():
    assert format_date(date(2024, 1, 1)) == "01/01/2024"


def test_missing_values_use_placeholder():
    assert format_currency(None) == PLACEHOLDER
    assert format_btc(None) == PLACEHOLDER
    assert format_percent(None) == PLACEHOLDER
    assert format_date(None) == PLACEHOLDER
