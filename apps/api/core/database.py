"""
Configuración del motor SQLAlchemy async y fábrica de sesiones.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings

# El pool solo se dimensiona para Postgres; SQLite (tests locales) usa su pool por defecto
_pool_options: dict = (
    {"pool_size": 5, "max_overflow": 10}
    if settings.DATABASE_URL.startswith("postgresql")
    else {}
)

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.APP_ENV == "development",
    pool_pre_ping=True,   # detecta conexiones muertas
    **_pool_options,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)
