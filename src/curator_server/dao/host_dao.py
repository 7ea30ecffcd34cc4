"""Data access for HostRecord model."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, cast

from sqlalchemy import CursorResult, delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from curator_server.models.host import HostRecord

_active_conn: ContextVar[AsyncSession] = ContextVar("_host_dao_conn")


class HostDAO:
    """Data access built once at startup with the connection pool.

    Use transaction() to wrap a group of operations in one unit of work.
    """

    def __init__(self, pool: async_sessionmaker[AsyncSession]) -> None:
        self._pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Open a unit of work. All DAO calls inside share one connection."""
        async with self._pool() as connection:
            context_token = _active_conn.set(connection)
            try:
                yield
            finally:
                _active_conn.reset(context_token)

    def _conn(self) -> AsyncSession:
        """Return the current unit-of-work connection."""
        return _active_conn.get()

    async def create_host(
        self,
        *,
        host_id: str,
        name: str,
        address: str,
        host_class: str,
        capabilities: str,
    ) -> HostRecord:
        """Insert a host record and flush."""
        record = HostRecord(
            id=host_id,
            name=name,
            address=address,
            host_class=host_class,
            capabilities=capabilities,
        )
        self._conn().add(record)
        await self._conn().flush()
        return record

    async def find_by_id(self, host_id: str) -> HostRecord | None:
        """Find a host by primary key."""
        result = await self._conn().execute(
            select(HostRecord).where(HostRecord.id == host_id),
        )
        return result.scalar_one_or_none()

    async def list_hosts(self) -> list[HostRecord]:
        """Return all hosts, oldest first."""
        result = await self._conn().execute(
            select(HostRecord).order_by(HostRecord.created_at, HostRecord.id),
        )
        return list(result.scalars().all())

    async def delete_host(self, host_id: str) -> int:
        """Delete a host by id. Returns count deleted."""
        result = await self._conn().execute(
            delete(HostRecord).where(HostRecord.id == host_id),
        )
        return cast(CursorResult[Any], result).rowcount

    async def commit(self) -> None:
        """Commit the current transaction."""
        await self._conn().commit()
