"""
Refresco periódico de la cotación actual del Bitcoin.

- Intervalo fijo (RATE_REFRESH_MINUTES) más refresco manual vía refresh().
- Periódico y manual pueden solaparse: gana la última respuesta resuelta.
  No hay token de secuencia; la cotización es aproximada y de vida corta.
- Un fallo conserva la última cotización válida y guarda el error.
"""

import asyncio
import contextlib

import structlog

from market.market_data_client import MarketDataClient
from market.types import CurrentRate, FetchResult

logger = structlog.get_logger(__name__)


class RateMonitor:
    def __init__(self, client: MarketDataClient, interval_seconds: float) -> None:
        self._client = client
        self._interval = interval_seconds
        self._latest: CurrentRate | None = None
        self._latest_source: str | None = None
        self.last_error: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def latest(self) -> CurrentRate | None:
        return self._latest

    @property
    def source(self) -> str | None:
        return self._latest_source

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> FetchResult[CurrentRate]:
        result = await self._client.get_current_rate()
        if result.ok:
            self._latest = result.value
            self._latest_source = result.source
            self.last_error = None
            logger.info("rates.current.refreshed", source=result.source)
        else:
            self.last_error = result.error
            logger.warning("rates.current.refresh_failed", source=result.source, error=result.error)
        return result

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:
                # Un fallo inesperado no detiene el refresco periódico
                self.last_error = str(exc) or type(exc).__name__
                logger.error("rates.monitor.refresh_crashed", error=self.last_error, exc_info=exc)
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rate-monitor")
        logger.info("rates.monitor.started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("rates.monitor.stopped")
