"""
Cotización histórica diaria USD/BRL (AwesomeAPI).

GET /json/daily/USD-BRL/1?start_date=YYYYMMDD&end_date=YYYYMMDD
→ [{"bid": "4.9512", ...}]

Los aciertos se cachean en memoria por la clave del día (YYYYMMDD) para no
repetir llamadas dentro del mismo proceso. Los fallos NO se cachean: el
backfill retroactivo puede volver a intentarlo más tarde.
"""

from datetime import date
from decimal import Decimal, InvalidOperation

import httpx
import structlog

from market.types import FetchResult

logger = structlog.get_logger(__name__)

SOURCE = "awesomeapi"


def day_key(day: date) -> str:
    """Clave del día usada por la API y por la caché: YYYYMMDD."""
    return day.strftime("%Y%m%d")


class UsdBrlRateClient:
    """
    Uso:
        async with UsdBrlRateClient() as client:
            result = await client.get_rate(date(2024, 1, 15))

    get_rate nunca lanza por errores de red o datos vacíos: devuelve FetchResult.failure.
    """

    def __init__(
        self,
        base_url: str = "https://economia.awesomeapi.com.br",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._cache: dict[str, Decimal] = {}

    async def __aenter__(self) -> "UsdBrlRateClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def cached(self, day: date) -> Decimal | None:
        return self._cache.get(day_key(day))

    async def get_rate(self, day: date) -> FetchResult[Decimal]:
        key = day_key(day)
        if key in self._cache:
            return FetchResult.success(self._cache[key], source="cache")

        try:
            response = await self._client.get(
                f"{self._base_url}/json/daily/USD-BRL/1",
                params={"start_date": key, "end_date": key},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("rates.usd_brl.lookup_failed", day=key, error=str(exc))
            return FetchResult.failure(str(exc), source=SOURCE)

        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            logger.warning("rates.usd_brl.empty", day=key)
            return FetchResult.failure(f"Sem cotação USD/BRL para {key}", source=SOURCE)

        raw_bid = data[0].get("bid")
        try:
            rate = Decimal(str(raw_bid))
        except InvalidOperation:
            rate = None
        if rate is None or not rate.is_finite() or rate <= 0:
            logger.warning("rates.usd_brl.invalid_bid", day=key, bid=raw_bid)
            return FetchResult.failure(f"Cotação USD/BRL inválida para {key}: {raw_bid!r}", source=SOURCE)

        self._cache[key] = rate
        logger.debug("rates.usd_brl.resolved", day=key, rate=str(rate))
        return FetchResult.success(rate, source=SOURCE)
