"""
Cliente HTTP de datos de mercado del Bitcoin.

Fuentes (en orden de prioridad):
  1. CoinGecko      — free tier, sin API key
  2. CoinMarketCap  — fallback, solo si CMC_API_KEY está configurada
  3. alternative.me — Fear & Greed Index (solo lectura)

Reglas:
- Sin reintentos: un fallo vuelve como FetchResult.failure y la UI ofrece reintento manual.
- NUNCA float en los valores devueltos: Decimal(str(valor)).
- NUNCA loguear la API key de CoinMarketCap.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog

from market.types import CurrentRate, FearGreed, FetchResult, PricePoint, PriceVariation

logger = structlog.get_logger(__name__)

# Periodo del gráfico → parámetro "days" de CoinGecko market_chart
HISTORY_RANGES: dict[str, str] = {
    "1D": "1",
    "7D": "7",
    "1M": "30",
    "1Y": "365",
    "ALL": "max",
}

_PRICE_PRECISION = Decimal("0.01")


class MarketDataError(Exception):
    """Respuesta con estructura inesperada de una API de mercado."""


def _to_decimal(value: Any) -> Decimal:
    # bool es subclase de int: nunca es un precio válido
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise MarketDataError(f"valor no numérico: {value!r}")
    try:
        result = Decimal(str(value))
    except InvalidOperation as exc:
        raise MarketDataError(f"valor no numérico: {value!r}") from exc
    if not result.is_finite():
        raise MarketDataError(f"valor no finito: {value!r}")
    return result


def _pct_or_zero(value: Any) -> Decimal:
    """Las variaciones ausentes se muestran como 0 (igual que la UI original)."""
    try:
        return _to_decimal(value)
    except MarketDataError:
        return Decimal("0")


class MarketDataClient:
    """
    Cliente asíncrono para cotización, variación, histórico y Fear & Greed.

    Uso:
        async with MarketDataClient() as client:
            result = await client.get_current_rate()
            if result.ok:
                ...

    El http_client es inyectable para facilitar tests unitarios.
    """

    def __init__(
        self,
        coingecko_url: str = "https://api.coingecko.com/api/v3",
        coinmarketcap_url: str = "https://pro-api.coinmarketcap.com/v1",
        cmc_api_key: str | None = None,
        fear_greed_url: str = "https://api.alternative.me/fng/",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._coingecko_url = coingecko_url.rstrip("/")
        self._cmc_url = coinmarketcap_url.rstrip("/")
        self._cmc_api_key = cmc_api_key
        self._fear_greed_url = fear_greed_url
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def __aenter__(self) -> "MarketDataClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_json(self, url: str, params: dict[str, Any], headers: dict[str, str] | None = None) -> Any:
        response = await self._client.get(url, params=params, headers=headers)
        response.raise_for_status()
        return response.json()

    # -----------------------------------------------------------------------
    # Cotización actual
    # -----------------------------------------------------------------------

    async def _current_from_coingecko(self) -> CurrentRate:
        data = await self._get_json(
            f"{self._coingecko_url}/simple/price",
            params={"ids": "bitcoin", "vs_currencies": "usd,brl", "include_last_updated_at": "true"},
        )
        bitcoin = data.get("bitcoin") if isinstance(data, dict) else None
        if not isinstance(bitcoin, dict):
            raise MarketDataError("CoinGecko sin bloque 'bitcoin'")
        updated_at = bitcoin.get("last_updated_at")
        timestamp = (
            datetime.fromtimestamp(int(updated_at), tz=timezone.utc)
            if isinstance(updated_at, (int, float)) and not isinstance(updated_at, bool)
            else datetime.now(timezone.utc)
        )
        return CurrentRate(
            usd=_to_decimal(bitcoin.get("usd")),
            brl=_to_decimal(bitcoin.get("brl")),
            timestamp=timestamp,
        )

    async def _cmc_quote(self) -> dict:
        data = await self._get_json(
            f"{self._cmc_url}/cryptocurrency/quotes/latest",
            params={"symbol": "BTC", "convert": "USD,BRL"},
            headers={"X-CMC_PRO_API_KEY": self._cmc_api_key or "", "Accept": "application/json"},
        )
        try:
            return data["data"]["BTC"]
        except (KeyError, TypeError) as exc:
            raise MarketDataError("CoinMarketCap sin bloque 'data.BTC'") from exc

    async def _current_from_coinmarketcap(self) -> CurrentRate:
        btc = await self._cmc_quote()
        try:
            usd = _to_decimal(btc["quote"]["USD"]["price"])
            brl = _to_decimal(btc["quote"]["BRL"]["price"])
        except (KeyError, TypeError) as exc:
            raise MarketDataError("CoinMarketCap sin cotización USD/BRL") from exc
        return CurrentRate(usd=usd, brl=brl, timestamp=_parse_iso(btc.get("last_updated")))

    async def get_current_rate(self) -> FetchResult[CurrentRate]:
        """Cotización BTC en USD y BRL. CoinGecko primero; CoinMarketCap si hay clave."""
        try:
            rate = await self._current_from_coingecko()
            return FetchResult.success(rate, source="coingecko")
        except (httpx.HTTPError, ValueError, MarketDataError) as exc:
            logger.warning("market.current_rate.coingecko_failed", error=str(exc))
            primary_error = str(exc)

        if not self._cmc_api_key:
            return FetchResult.failure(primary_error, source="coingecko")

        try:
            rate = await self._current_from_coinmarketcap()
            return FetchResult.success(rate, source="coinmarketcap")
        except (httpx.HTTPError, ValueError, MarketDataError) as exc:
            logger.warning("market.current_rate.coinmarketcap_failed", error=str(exc))
            return FetchResult.failure(str(exc), source="coinmarketcap")

    # -----------------------------------------------------------------------
    # Variación de precio
    # -----------------------------------------------------------------------

    async def get_price_variation(self) -> FetchResult[PriceVariation]:
        """Variación 24h / 7d / 30d / 1y. El fallback de CMC no trae el año (queda en 0)."""
        try:
            data = await self._get_json(
                f"{self._coingecko_url}/coins/bitcoin",
                params={
                    "localization": "false",
                    "tickers": "false",
                    "market_data": "true",
                    "community_data": "false",
                    "developer_data": "false",
                    "sparkline": "false",
                },
            )
            market = data.get("market_data") if isinstance(data, dict) else None
            if not isinstance(market, dict):
                raise MarketDataError("CoinGecko sin 'market_data'")
            return FetchResult.success(
                PriceVariation(
                    day=_pct_or_zero(market.get("price_change_percentage_24h")),
                    week=_pct_or_zero(market.get("price_change_percentage_7d")),
                    month=_pct_or_zero(market.get("price_change_percentage_30d")),
                    year=_pct_or_zero(market.get("price_change_percentage_1y")),
                    timestamp=datetime.now(timezone.utc),
                ),
                source="coingecko",
            )
        except (httpx.HTTPError, ValueError, MarketDataError) as exc:
            logger.warning("market.variation.coingecko_failed", error=str(exc))
            primary_error = str(exc)

        if not self._cmc_api_key:
            return FetchResult.failure(primary_error, source="coingecko")

        try:
            btc = await self._cmc_quote()
            usd_quote = btc.get("quote", {}).get("USD", {})
            return FetchResult.success(
                PriceVariation(
                    day=_pct_or_zero(usd_quote.get("percent_change_24h")),
                    week=_pct_or_zero(usd_quote.get("percent_change_7d")),
                    month=_pct_or_zero(usd_quote.get("percent_change_30d")),
                    year=Decimal("0"),
                    timestamp=_parse_iso(btc.get("last_updated")),
                ),
                source="coinmarketcap",
            )
        except (httpx.HTTPError, ValueError, MarketDataError, AttributeError) as exc:
            logger.warning("market.variation.coinmarketcap_failed", error=str(exc))
            return FetchResult.failure(str(exc), source="coinmarketcap")

    # -----------------------------------------------------------------------
    # Histórico para el gráfico
    # -----------------------------------------------------------------------

    async def get_price_history(self, range_: str, currency: str = "USD") -> FetchResult[list[PricePoint]]:
        """
        Serie [timestamp, precio] para el gráfico de precios.
        range_: "1D" | "7D" | "1M" | "1Y" | "ALL"
        """
        days = HISTORY_RANGES.get(range_)
        if days is None:
            return FetchResult.failure(f"Período inválido: {range_}")

        try:
            data = await self._get_json(
                f"{self._coingecko_url}/coins/bitcoin/market_chart",
                params={"vs_currency": currency.lower(), "days": days},
            )
            raw_prices = data.get("prices") if isinstance(data, dict) else None
            if not isinstance(raw_prices, list) or not raw_prices:
                raise MarketDataError("CoinGecko sin serie 'prices'")
            points = [
                PricePoint(
                    timestamp=datetime.fromtimestamp(int(ts) / 1000, tz=timezone.utc),
                    price=_to_decimal(price).quantize(_PRICE_PRECISION),
                )
                for ts, price in raw_prices
            ]
        except (httpx.HTTPError, ValueError, TypeError, MarketDataError) as exc:
            logger.warning("market.history.failed", range=range_, currency=currency, error=str(exc))
            return FetchResult.failure(str(exc), source="coingecko")

        return FetchResult.success(points, source="coingecko")

    # -----------------------------------------------------------------------
    # Fear & Greed Index
    # -----------------------------------------------------------------------

    async def get_fear_greed(self) -> FetchResult[FearGreed]:
        try:
            data = await self._get_json(self._fear_greed_url, params={"limit": 1})
            latest = data["data"][0]
            index = FearGreed(
                value=int(latest["value"]),
                classification=str(latest["value_classification"]),
                timestamp=datetime.fromtimestamp(int(latest["timestamp"]), tz=timezone.utc),
            )
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("market.fear_greed.failed", error=str(exc))
            return FetchResult.failure(str(exc), source="alternative.me")

        return FetchResult.success(index, source="alternative.me")


def _parse_iso(raw: Any) -> datetime:
    """ISO-8601 de CoinMarketCap ("2024-01-15T10:00:00.000Z"); ahora si no se puede leer."""
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)
