"""
SPARK — Async Database Engine & Session Factory

The engine is created lazily from ``DATABASE_URL`` so that importing the
package (tests, the in-memory backend, the CLI ``--help``) never opens a
connection pool.  ``get_session_factory`` hands out the shared
``async_sessionmaker`` used by ``SqlDocumentStore``.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from spark.config import get_settings

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Declarative base for all ORM models
# ------------------------------------------------------------------ #

class Base(DeclarativeBase):
    """Shared declarative base for every SQLAlchemy model in the project."""
    pass


# ------------------------------------------------------------------ #
# Pool configuration
# ------------------------------------------------------------------ #

_POOL_KWARGS = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def _normalise_url(url: str) -> str:
    # Accept a plain ``postgresql://`` URL and upgrade it to the asyncpg dialect.
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Create (once) the async engine from ``DATABASE_URL``."""
    settings = get_settings()
    engine = create_async_engine(
        _normalise_url(settings.DATABASE_URL),
        echo=(settings.LOG_LEVEL == "DEBUG"),
        **_POOL_KWARGS,
    )
    logger.info("Database engine created from DATABASE_URL")
    return engine


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )
