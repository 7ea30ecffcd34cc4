"""Database membership plugin — store the host set in the hosts table."""

from __future__ import annotations

from curator_server.plugins.contracts.membership import MembershipStore
from curator_server.schemas.fleet import Host
from curator_server.services.host_service import HostService


class DbMembershipStore(MembershipStore):
    """Store fleet membership in the hosts table."""

    def __init__(self, host_service: HostService) -> None:
        self._service = host_service

    async def load(self) -> list[Host]:
        """Return all hosts from the hosts table."""
        return await self._service.list_hosts()

    async def save(self, host: Host) -> None:
        """Insert the host row."""
        await self._service.save_host(host)

    async def delete(self, host_id: str) -> bool:
        """Delete the host row."""
        return await self._service.delete_host(host_id)
