"""
Formato de presentación (pt-BR para BRL, en-US para USD).
Solo strings para la UI: los cálculos nunca pasan por aquí.
"""

from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from services.parsing import SATS_PER_BTC

PLACEHOLDER = "—"

_CURRENCY_PREFIX = {"BRL": "R$", "USD": "US$"}


def _group(value: Decimal, places: int, thousands: str, decimal_mark: str) -> str:
    quantum = Decimal(1).scaleb(-places)
    text = f"{abs(value.quantize(quantum, ROUND_HALF_UP)):,.{places}f}"
    # Formato en-US → intercambio de separadores
    text = text.replace(",", "\0").replace(".", decimal_mark).replace("\0", thousands)
    return f"-{text}" if value < 0 else text


def format_currency(value: Decimal | None, currency: str = "BRL") -> str:
    """R$ 1.234,56 · US$ 1,234.56"""
    if value is None:
        return PLACEHOLDER
    prefix = _CURRENCY_PREFIX.get(currency, currency)
    if currency == "USD":
        return f"{prefix} {_group(value, 2, ',', '.')}"
    return f"{prefix} {_group(value, 2, '.', ',')}"


def format_btc(value: Decimal | None, unit: str = "BTC") -> str:
    """
    value siempre en BTC.
    BTC → "0,00018959 BTC" · SATS → "18.959 sats"
    """
    if value is None:
        return PLACEHOLDER
    if str(unit).upper() == "SATS":
        return f"{_group(value * SATS_PER_BTC, 0, '.', ',')} sats"
    return f"{_group(value, 8, '.', ',')} BTC"


def format_percent(value: Decimal | None) -> str:
    """+12,34% · -3,10% · — si no hay valor."""
    if value is None:
        return PLACEHOLDER
    sign = "+" if value > 0 else ""
    return f"{sign}{_group(value, 2, '.', ',')}%"


def format_date(day: date | None) -> str:
    return day.strftime("%d/%m/%Y") if day else PLACEHOLDER
