"""Async database engine for the analytics tables.

Provides a singleton engine shared by the repositories and the
database-backed collaborators.
"""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from ..config import get_settings
from .models import OWNED_TABLES, riskengine_metadata

logger = structlog.get_logger()

# ---------------------------------------------------------------------------
# Engine singleton
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None


def _make_async_url(postgres_url: str) -> str:
    """Ensure the URL uses the asyncpg driver prefix."""
    url = postgres_url
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def get_engine(postgres_url: str | None = None) -> AsyncEngine:
    """Create or return the async engine singleton.

    On first call the engine is created with connection pooling.
    Subsequent calls return the cached engine (the *postgres_url* argument
    is ignored after the first call).

    Args:
        postgres_url: PostgreSQL connection string. If None on first call,
            read from settings (RISKENGINE_POSTGRES_URL).

    Raises:
        RuntimeError: If engine not yet created and no URL available
    """
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    if postgres_url is None:
        postgres_url = settings.postgres_url

    if not postgres_url:
        raise RuntimeError(
            "Engine not initialized and no postgres URL provided. "
            "Call init_db() first or set RISKENGINE_POSTGRES_URL."
        )

    kwargs: dict = dict(
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    if settings.db_ssl:
        kwargs["connect_args"] = {"ssl": "require"}
    _engine = create_async_engine(_make_async_url(postgres_url), **kwargs)
    logger.info("riskengine_engine_created")
    return _engine


async def close_engine() -> None:
    """Dispose of the connection pool."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("riskengine_engine_closed")


async def init_db(postgres_url: str | None = None) -> AsyncEngine:
    """Create the engine-owned tables if they do not already exist.

    ``prices_daily`` and ``holdings_snapshots`` are only read and are never
    created here.
    """
    engine = get_engine(postgres_url)
    async with engine.begin() as conn:
        await conn.run_sync(riskengine_metadata.create_all, tables=list(OWNED_TABLES))
    logger.info("riskengine_db_initialized", tables=[t.name for t in OWNED_TABLES])
    return engine
