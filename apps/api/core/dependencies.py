"""
Dependencias inyectables de FastAPI.
Uso: añadir como parámetro en la firma del endpoint con Depends().

Los objetos de larga vida (clientes HTTP, caché, monitor de cotización)
se crean en el lifespan y viven en app.state; aquí solo se exponen.
"""

import uuid
from collections.abc import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import AsyncSessionLocal
from core.security import verify_token
from market.market_data_client import MarketDataClient
from market.rate_monitor import RateMonitor
from market.usd_brl_client import UsdBrlRateClient
from services.entries import EditSessionStore, EntryCache, EntryRepository
from services.rates import RateResolver

_bearer = HTTPBearer()


# ---------------------------------------------------------------------------
# Sesión de base de datos
# ---------------------------------------------------------------------------


async def get_db() -> AsyncIterator[AsyncSession]:
    """Proporciona una sesión SQLAlchemy async con rollback automático ante errores."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# ---------------------------------------------------------------------------
# Autenticación JWT
# ---------------------------------------------------------------------------


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer),
) -> uuid.UUID:
    """
    Valida el Bearer token JWT y devuelve el UUID del usuario.
    Lanza 401 si el token es inválido o expirado.
    """
    try:
        return verify_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# ---------------------------------------------------------------------------
# Estado de la aplicación
# ---------------------------------------------------------------------------


def get_entry_cache(request: Request) -> EntryCache:
    return request.app.state.entry_cache


def get_edit_sessions(request: Request) -> EditSessionStore:
    return request.app.state.edit_sessions


def get_market_client(request: Request) -> MarketDataClient:
    return request.app.state.market_client


def get_rate_monitor(request: Request) -> RateMonitor:
    return request.app.state.rate_monitor


def get_usd_brl_client(request: Request) -> UsdBrlRateClient:
    return request.app.state.usd_brl_client


def get_rate_resolver(
    usd_brl_client: UsdBrlRateClient = Depends(get_usd_brl_client),
) -> RateResolver:
    return RateResolver(usd_brl_client, tolerance_pct=settings.RATE_TOLERANCE_PCT)


# ---------------------------------------------------------------------------
# Repositorio de aportes del usuario autenticado
# ---------------------------------------------------------------------------


async def get_entry_repository(
    db: AsyncSession = Depends(get_db),
    user_id: uuid.UUID = Depends(get_current_user),
    resolver: RateResolver = Depends(get_rate_resolver),
    cache: EntryCache = Depends(get_entry_cache),
    session_id: str | None = Header(default=None, alias="X-Session-Id"),
) -> EntryRepository:
    """
    X-Session-Id (opcional) identifica la pestaña/sesión del cliente: si cambia
    el usuario detrás de la misma sesión, la caché se invalida antes de leer.
    """
    if session_id:
        cache.bind_session(session_id, user_id)
    return EntryRepository(db=db, user_id=user_id, resolver=resolver, cache=cache)
