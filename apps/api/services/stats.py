"""
Agregados del portafolio de aportes.

Funciones puras: misma lista de aportes + misma cotización → mismo resultado.
Sin acceso a BD ni a red; el router les pasa los datos ya cargados.

Conversión de moneda:
- Vista USD: aportes BRL usan su valor_usd almacenado (valor / cotacao_usd_brl del día).
  Sin cotacao_usd_brl el aporte queda FUERA del total invertido y se cuenta en excluded_entries.
- Vista BRL: aportes USD se convierten con la relación actual brl / usd.
  Sin cotización actual quedan fuera y se cuentan igual.
- total_btc suma SIEMPRE todos los aportes.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable

from market.types import CurrentRate
from services.entries import EntryView
from services.parsing import SATS_PER_BTC

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PCT_PRECISION = Decimal("0.01")
MONEY_PRECISION = Decimal("0.01")
BTC_PRECISION = Decimal("0.00000001")

PERIODS = ("month", "year", "all")


class DisplayUnit(str, Enum):
    BTC = "BTC"
    SATS = "SATS"


@dataclass(frozen=True)
class OriginShare:
    origin: str
    btc_amount: Decimal
    pct: Decimal


@dataclass
class PortfolioStatistics:
    currency: str
    unit: DisplayUnit
    total_invested: Decimal
    total_btc: Decimal              # en la unidad de presentación (BTC o sats)
    average_cost: Decimal           # precio medio por 1 BTC en `currency`
    current_value: Decimal | None   # None sin cotización actual
    unrealized_gain_pct: Decimal | None
    distribution: list[OriginShare] = field(default_factory=list)
    excluded_entries: int = 0
    entries_count: int = 0


def _converted_amount(entry: EntryView, currency: str, current_rate: CurrentRate | None) -> Decimal | None:
    """Valor invertido del aporte expresado en `currency`; None si no es convertible."""
    if entry.currency == currency:
        return entry.amount_invested
    if currency == "USD":
        if entry.cotacao_usd_brl is None:
            return None
        if entry.valor_usd is not None:
            return entry.valor_usd
        return entry.amount_invested / entry.cotacao_usd_brl
    # Vista BRL de un aporte USD
    if current_rate is None or current_rate.usd <= 0:
        return None
    return entry.amount_invested * (current_rate.brl / current_rate.usd)


def _distribution(entries: list[EntryView], total_btc: Decimal) -> list[OriginShare]:
    """
    Reparto de BTC por origen. Los porcentajes se redondean a 0.01 y el resto
    de redondeo va a la mayor participación, de modo que siempre suman 100.
    """
    if total_btc <= 0:
        return []

    by_origin: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for entry in entries:
        by_origin[entry.origin] += entry.btc_amount

    shares = sorted(by_origin.items(), key=lambda item: (-item[1], item[0]))
    pcts = [(amount / total_btc * HUNDRED).quantize(PCT_PRECISION, ROUND_HALF_UP) for _, amount in shares]
    pcts[0] += HUNDRED - sum(pcts)

    return [
        OriginShare(origin=origin, btc_amount=amount, pct=pct)
        for (origin, amount), pct in zip(shares, pcts)
    ]


def compute_statistics(
    entries: Iterable[EntryView],
    current_rate: CurrentRate | None,
    currency: str = "BRL",
    unit: DisplayUnit = DisplayUnit.BTC,
) -> PortfolioStatistics:
    entries = list(entries)

    total_btc = sum((entry.btc_amount for entry in entries), ZERO)
    total_invested = ZERO
    excluded = 0
    for entry in entries:
        converted = _converted_amount(entry, currency, current_rate)
        if converted is None:
            excluded += 1
            continue
        total_invested += converted

    average_cost = total_invested / total_btc if total_btc > 0 else ZERO

    current_value: Decimal | None = None
    if current_rate is not None:
        current_value = total_btc * current_rate.price_in(currency)

    unrealized_gain_pct: Decimal | None = None
    if current_value is not None and total_invested > 0:
        unrealized_gain_pct = ((current_value - total_invested) / total_invested * HUNDRED).quantize(PCT_PRECISION)

    display_btc = total_btc * SATS_PER_BTC if unit is DisplayUnit.SATS else total_btc

    return PortfolioStatistics(
        currency=currency,
        unit=unit,
        total_invested=total_invested.quantize(MONEY_PRECISION),
        total_btc=display_btc.quantize(Decimal("1") if unit is DisplayUnit.SATS else BTC_PRECISION),
        average_cost=average_cost.quantize(MONEY_PRECISION),
        current_value=current_value.quantize(MONEY_PRECISION) if current_value is not None else None,
        unrealized_gain_pct=unrealized_gain_pct,
        distribution=_distribution(entries, total_btc),
        excluded_entries=excluded,
        entries_count=len(entries),
    )


def average_by_period(
    entries: Iterable[EntryView],
    period: str,
    today: date | None = None,
    currency: str | None = None,
) -> Decimal:
    """
    Cotação media ponderada por valor invertido: sum(cotação_i * valor_i) / sum(valor_i).
    period: "month" (mes actual) | "year" (año actual) | "all".
    currency limita el cálculo a aportes en esa moneda (no se mezclan cotações BRL y USD).
    """
    if period not in PERIODS:
        raise ValueError(f"Período inválido: {period}")
    today = today or date.today()

    selected = [entry for entry in entries if currency is None or entry.currency == currency]
    if period == "month":
        selected = [e for e in selected if e.date.year == today.year and e.date.month == today.month]
    elif period == "year":
        selected = [e for e in selected if e.date.year == today.year]

    total_invested = sum((e.amount_invested for e in selected), ZERO)
    if total_invested <= 0:
        return ZERO
    weighted = sum((e.exchange_rate * e.amount_invested for e in selected), ZERO)
    return (weighted / total_invested).quantize(MONEY_PRECISION)


def percentage_change(buy_rate: Decimal, current_rate: Decimal) -> Decimal | None:
    """Variación % entre la cotação de compra y la actual; None si la de compra es 0."""
    if buy_rate is None or buy_rate == 0:
        return None
    return ((current_rate - buy_rate) / buy_rate * HUNDRED).quantize(PCT_PRECISION)


def _fmt(value: Decimal | None) -> str | None:
    # Notación fija: Decimal("0E-8") → "0.00000000"
    return format(value, "f") if value is not None else None


def statistics_to_dict(stats: PortfolioStatistics) -> dict:
    return {
        "currency": stats.currency,
        "unit": stats.unit.value,
        "total_invested": _fmt(stats.total_invested),
        "total_btc": _fmt(stats.total_btc),
        "average_cost": _fmt(stats.average_cost),
        "current_value": _fmt(stats.current_value),
        "unrealized_gain_pct": _fmt(stats.unrealized_gain_pct),
        "distribution": [
            {"origin": share.origin, "btc_amount": _fmt(share.btc_amount), "pct": _fmt(share.pct)}
            for share in stats.distribution
        ],
        "excluded_entries": stats.excluded_entries,
        "entries_count": stats.entries_count,
    }
