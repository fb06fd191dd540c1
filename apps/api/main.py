"""
satsflow — registro de aportes DCA en Bitcoin. FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.errors import DomainError
from core.logging import setup_logging
from core.responses import err
from market.market_data_client import MarketDataClient
from market.rate_monitor import RateMonitor
from market.usd_brl_client import UsdBrlRateClient
from routers import entries, imports, prices, stats
from services.entries import EditSessionStore, EntryCache

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info("api.startup", env=settings.APP_ENV, log_level=settings.LOG_LEVEL)

    app.state.market_client = MarketDataClient(
        coingecko_url=settings.COINGECKO_API_URL,
        coinmarketcap_url=settings.COINMARKETCAP_API_URL,
        cmc_api_key=settings.CMC_API_KEY,
        fear_greed_url=settings.FEAR_GREED_API_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    app.state.usd_brl_client = UsdBrlRateClient(
        base_url=settings.AWESOMEAPI_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    app.state.entry_cache = EntryCache()
    app.state.edit_sessions = EditSessionStore()
    app.state.rate_monitor = RateMonitor(
        app.state.market_client,
        interval_seconds=settings.RATE_REFRESH_MINUTES * 60,
    )
    app.state.rate_monitor.start()

    yield

    await app.state.rate_monitor.stop()
    await app.state.market_client.close()
    await app.state.usd_brl_client.close()
    logger.info("api.shutdown")


app = FastAPI(
    title="satsflow API",
    description="API del registro de aportes DCA en Bitcoin: aportes, importación, estadísticas y cotización.",
    version="1.0.0",
    docs_url="/docs" if settings.APP_ENV != "production" else None,
    redoc_url="/redoc" if settings.APP_ENV != "production" else None,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Session-Id"],
)

# ---------------------------------------------------------------------------
# Exception handlers globales: mantienen formato { data, error, meta }
# ---------------------------------------------------------------------------


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info("api.domain_error", path=request.url.path, error=type(exc).__name__, status=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=err(exc.message, details=exc.details),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    headers = getattr(exc, "headers", None)
    return JSONResponse(
        status_code=exc.status_code,
        content=err(exc.detail),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=err("Dados inválidos.", details=jsonable_errors(exc)),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=str(request.url), error=str(exc), exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=err(f"Erro interno do servidor: {type(exc).__name__}"),
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx puede traer la excepción original (no serializable)
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(entries.router, prefix="/api/v1/entries", tags=["entries"])
app.include_router(imports.router, prefix="/api/v1/imports", tags=["imports"])
app.include_router(stats.router, prefix="/api/v1/stats", tags=["stats"])
app.include_router(prices.router, prefix="/api/v1/prices", tags=["prices"])


# ---------------------------------------------------------------------------
# Health check (sin auth)
# ---------------------------------------------------------------------------


@app.get("/health", tags=["health"])
async def health_check() -> dict:
    return {"status": "ok", "env": settings.APP_ENV}
