"""
Fixtures compartidas.
Las variables de entorno se fijan ANTES de importar core.config
(settings se instancia al importar el módulo).
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DATABASE_SYNC_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("APP_ENV", "test")

import uuid  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from models.base import Base  # noqa: E402
from services.entries import EntryCache, EntryRepository  # noqa: E402
from services.rates import RateResolver  # noqa: E402

from fakes import FakeUsdBrlClient  # noqa: E402


@pytest.fixture
async def db_session():
    """SQLite en memoria con el esquema creado desde los modelos."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def usd_brl() -> FakeUsdBrlClient:
    return FakeUsdBrlClient(default=Decimal("5.00"))


@pytest.fixture
def resolver(usd_brl) -> RateResolver:
    return RateResolver(usd_brl, tolerance_pct=5)


@pytest.fixture
def entry_cache() -> EntryCache:
    return EntryCache()


@pytest.fixture
def repo(db_session, user_id, resolver, entry_cache) -> EntryRepository:
    return EntryRepository(db=db_session, user_id=user_id, resolver=resolver, cache=entry_cache)
