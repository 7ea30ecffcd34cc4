"""Business logic for persisted fleet membership."""

from __future__ import annotations

import json

from curator_server.dao.host_dao import HostDAO
from curator_server.models.host import HostRecord
from curator_server.schemas.fleet import ActionKind, Host


class HostService:
    """Built once at startup with its DAO pre-wired.

    Each method wraps its DAO calls in a transaction — one unit of work
    per service call.
    """

    def __init__(self, host_dao: HostDAO) -> None:
        self._dao = host_dao

    async def list_hosts(self) -> list[Host]:
        """Return every configured host."""
        async with self._dao.transaction():
            records = await self._dao.list_hosts()
        return [HostService._record_to_host(r) for r in records]

    async def save_host(self, host: Host) -> Host:
        """Persist a new host.

        Raises:
            ValueError: If a host with the same id is already configured.
        """
        async with self._dao.transaction():
            if await self._dao.find_by_id(host.id) is not None:
                raise ValueError(f"Host already exists: {host.id}")
            await self._dao.create_host(
                host_id=host.id,
                name=host.name,
                address=host.address,
                host_class=host.host_class,
                capabilities=json.dumps(sorted(c.value for c in host.capabilities)),
            )
            await self._dao.commit()
        return host

    async def delete_host(self, host_id: str) -> bool:
        """Remove a host. Returns False if it was not configured."""
        async with self._dao.transaction():
            count = await self._dao.delete_host(host_id)
            await self._dao.commit()
        return count > 0

    @staticmethod
    def _record_to_host(record: HostRecord) -> Host:
        """Map a HostRecord row to the Host schema."""
        return Host(
            id=record.id,
            name=record.name,
            address=record.address,
            host_class=record.host_class,
            capabilities=frozenset(
                ActionKind(value) for value in json.loads(record.capabilities)
            ),
        )
