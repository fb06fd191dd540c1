"""
Router: /api/v1/prices
GET  /current     → última cotización BTC en USD y BRL (monitor periódico)
POST /refresh     → refresco manual inmediato
GET  /variation   → variación 24h / 7d / 30d / 1y
GET  /history     → serie de precios para el gráfico
GET  /fear-greed  → Fear & Greed Index

Fuentes (en orden de prioridad):
  1. CoinGecko      — free tier, sin API key
  2. CoinMarketCap  — fallback, solo con CMC_API_KEY
Sin reintentos: si la fuente falla se responde 502 y la UI ofrece reintentar.
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from core.dependencies import get_market_client, get_rate_monitor
from core.responses import ok
from market.market_data_client import MarketDataClient
from market.rate_monitor import RateMonitor
from market.types import CurrentRate

router = APIRouter()


def _rate_to_dict(rate: CurrentRate) -> dict:
    return {"btc_usd": str(rate.usd), "btc_brl": str(rate.brl), "timestamp": rate.timestamp.isoformat()}


def _unavailable(error: str | None) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Cotação indisponível no momento: {error or 'sem resposta'}",
    )


@router.get("/current")
async def get_current(monitor: RateMonitor = Depends(get_rate_monitor)) -> dict:
    """
    Devuelve la última cotización resuelta. Si el monitor aún no tiene ninguna
    (arranque o fuentes caídas), intenta una vez en el momento.
    """
    rate = monitor.latest
    if rate is None:
        result = await monitor.refresh()
        if not result.ok:
            raise _unavailable(result.error)
        rate = result.value
    return ok(data=_rate_to_dict(rate), meta={"source": monitor.source, "last_error": monitor.last_error})


@router.post("/refresh")
async def refresh_current(monitor: RateMonitor = Depends(get_rate_monitor)) -> dict:
    result = await monitor.refresh()
    if not result.ok:
        raise _unavailable(result.error)
    return ok(data=_rate_to_dict(result.value), meta={"source": result.source})


@router.get("/variation")
async def get_variation(client: MarketDataClient = Depends(get_market_client)) -> dict:
    result = await client.get_price_variation()
    if not result.ok:
        raise _unavailable(result.error)
    variation = result.value
    return ok(
        data={
            "day": str(variation.day),
            "week": str(variation.week),
            "month": str(variation.month),
            "year": str(variation.year),
            "timestamp": variation.timestamp.isoformat(),
        },
        meta={"source": result.source},
    )


@router.get("/history")
async def get_history(
    range_: Literal["1D", "7D", "1M", "1Y", "ALL"] = Query("1M", alias="range"),
    currency: Literal["BRL", "USD"] = Query("USD"),
    client: MarketDataClient = Depends(get_market_client),
) -> dict:
    result = await client.get_price_history(range_, currency)
    if not result.ok:
        raise _unavailable(result.error)
    return ok(
        data=[{"timestamp": p.timestamp.isoformat(), "price": str(p.price)} for p in result.value],
        meta={"source": result.source, "range": range_, "currency": currency, "points": len(result.value)},
    )


@router.get("/fear-greed")
async def get_fear_greed(client: MarketDataClient = Depends(get_market_client)) -> dict:
    result = await client.get_fear_greed()
    if not result.ok:
        raise _unavailable(result.error)
    index = result.value
    return ok(
        data={
            "value": index.value,
            "classification": index.classification,
            "timestamp": index.timestamp.isoformat(),
        },
        meta={"source": result.source},
    )
