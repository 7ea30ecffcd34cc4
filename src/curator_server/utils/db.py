"""Membership database: one async engine per process."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for the membership tables."""


class Database:
    """Holds the engine and session factory as class-level state.

    Only the host list lives here; statuses are never written. init() once
    during app construction, create_schema() in the lifespan, close() on
    shutdown.
    """

    _engine: ClassVar[AsyncEngine | None] = None
    _pool: ClassVar[async_sessionmaker[AsyncSession] | None] = None

    @staticmethod
    def is_in_memory(database_url: str) -> bool:
        """True for SQLite URLs without a file, e.g. ``sqlite+aiosqlite://``."""
        url = make_url(database_url)
        return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")

    @staticmethod
    def init(database_url: str) -> async_sessionmaker[AsyncSession]:
        """Create the engine and return its session factory."""
        options: dict[str, Any] = {}
        if Database.is_in_memory(database_url):
            # Every session must share the single connection holding the data.
            options["poolclass"] = StaticPool
            options["connect_args"] = {"check_same_thread": False}
        Database._engine = create_async_engine(database_url, **options)
        Database._pool = async_sessionmaker(Database._engine, expire_on_commit=False)
        logger.debug("Membership database at %s", make_url(database_url).render_as_string())
        return Database._pool

    @staticmethod
    def is_initialized() -> bool:
        """True between init() and close()."""
        return Database._engine is not None

    @staticmethod
    def get_pool() -> async_sessionmaker[AsyncSession]:
        """Return the session factory. Requires init()."""
        assert Database._pool is not None, "call Database.init() first"
        return Database._pool

    @staticmethod
    async def create_schema() -> None:
        """Create missing membership tables. Existing rows are kept."""
        import curator_server.models

        _ = curator_server.models  # registers HostRecord on Base.metadata
        assert Database._engine is not None, "call Database.init() first"
        async with Database._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    @staticmethod
    async def close() -> None:
        """Dispose the engine. A no-op if init() was never called."""
        engine, Database._engine, Database._pool = Database._engine, None, None
        if engine is not None:
            await engine.dispose()
