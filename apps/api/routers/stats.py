"""
Router: /api/v1/stats
GET / → agregados del portafolio en la moneda y unidad elegidas.

Se recalcula en cada petición a partir de la lista de aportes (cacheada)
y la última cotización del monitor; no guarda estado propio.
"""

from typing import Literal

from fastapi import APIRouter, Depends, Query

from core.dependencies import get_entry_repository, get_rate_monitor
from core.responses import ok
from market.rate_monitor import RateMonitor
from services.entries import EntryRepository
from services.formatting import format_btc, format_currency, format_percent
from services.parsing import SATS_PER_BTC
from services.stats import (
    PERIODS,
    DisplayUnit,
    average_by_period,
    compute_statistics,
    percentage_change,
    statistics_to_dict,
)

router = APIRouter()


@router.get("")
async def get_stats(
    currency: Literal["BRL", "USD"] = Query("BRL"),
    unit: DisplayUnit = Query(DisplayUnit.BTC),
    repo: EntryRepository = Depends(get_entry_repository),
    monitor: RateMonitor = Depends(get_rate_monitor),
) -> dict:
    entries = await repo.list_entries()
    rate = monitor.latest
    stats = compute_statistics(entries, rate, currency=currency, unit=unit)

    total_btc = stats.total_btc / SATS_PER_BTC if unit is DisplayUnit.SATS else stats.total_btc
    data = statistics_to_dict(stats)
    data["average_by_period"] = {
        period: str(average_by_period(entries, period, currency=currency)) for period in PERIODS
    }
    # Variación del precio medio pagado frente a la cotação actual
    average_change = percentage_change(stats.average_cost, rate.price_in(currency)) if rate else None
    data["average_cost_change_pct"] = str(average_change) if average_change is not None else None
    data["display"] = {
        "total_invested": format_currency(stats.total_invested, currency),
        "total_btc": format_btc(total_btc, unit.value),
        "average_cost": format_currency(stats.average_cost, currency),
        "current_value": format_currency(stats.current_value, currency),
        "unrealized_gain_pct": format_percent(stats.unrealized_gain_pct),
        "average_cost_change_pct": format_percent(average_change),
    }

    return ok(
        data=data,
        meta={
            "rate_source": monitor.source,
            "rate_timestamp": rate.timestamp.isoformat() if rate else None,
            "rate_error": monitor.last_error,
        },
    )
