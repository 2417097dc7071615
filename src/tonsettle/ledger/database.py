"""Engine and session wiring for the ledger.

Every unit of ledger work goes through get_db(), which opens one session
and one transaction around the block. Status transitions rely on that:
a conditional UPDATE and the rows it guards commit or roll back together.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tonsettle.config import Settings, get_settings
from tonsettle.ledger.models import Base

logger = logging.getLogger(__name__)

# Sync driver names mapped to the async driver used in their place
ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def async_url(url: str) -> str:
    """Swap a plain sqlite/postgresql URL onto its async driver."""
    parsed = make_url(url)
    driver = ASYNC_DRIVERS.get(parsed.drivername)
    if driver is None:
        return url
    return parsed.set(drivername=driver).render_as_string(hide_password=False)


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for `url`."""
    url = async_url(url)
    options = {"echo": echo}
    if not make_url(url).drivername.startswith("sqlite"):
        options["pool_pre_ping"] = True
    return create_async_engine(url, **options)


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows handed back to callers stay readable after their session closed
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Return the process-wide engine, building it from settings on first use."""
    global _engine
    if _engine is None:
        settings = settings or get_settings()
        _engine = build_engine(
            settings.database_url,
            echo=settings.debug and not settings.is_production,
        )
        logger.info(f"Database engine ready: {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def set_session_factory(factory: async_sessionmaker[AsyncSession]) -> None:
    """Route get_db() through `factory` (tests bind it to their own engine)."""
    global _session_factory
    _session_factory = factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = session_factory_for(get_engine())
    return _session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One session, one transaction.

    Commits when the block exits cleanly and rolls back when it raises;
    the exception is propagated either way.
    """
    async with get_session_factory()() as session:
        async with session.begin():
            yield session


async def init_db() -> None:
    """Create missing tables. Migrations live in alembic/."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
