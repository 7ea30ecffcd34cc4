"""Membership store contract — where the configured host set lives."""

from __future__ import annotations

from abc import ABC, abstractmethod

from curator_server.schemas.fleet import Host


class MembershipStore(ABC):
    """Persists fleet membership. Host status is never stored here.

    Implementations decide the storage format — a database table, a
    config file, an inventory service.
    """

    @abstractmethod
    async def load(self) -> list[Host]:
        """Return the configured hosts, loaded once at startup."""

    @abstractmethod
    async def save(self, host: Host) -> None:
        """Persist a newly added host.

        Raises:
            ValueError: If the host id is already stored.
        """

    @abstractmethod
    async def delete(self, host_id: str) -> bool:
        """Forget a host. Returns False if it was not stored."""
