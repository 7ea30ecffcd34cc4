"""Fleet resource — protocol-agnostic read, subscribe, and action API."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from pydantic import ValidationError

from curator_server.plugins.contracts.membership import MembershipStore
from curator_server.plugins.contracts.transport import TransportAdapter
from curator_server.schemas.fleet import (
    ActionKind,
    ActionOutcome,
    ActionRequest,
    FleetSnapshot,
    Host,
    HostStatus,
)
from curator_server.services.action_dispatcher import ActionDispatcher, ActionHandle
from curator_server.services.fleet_store import FleetStore, SnapshotCallback, Subscription
from curator_server.services.poller import Poller
from curator_server.services.reconciler import Reconciler
from curator_server.utils.time import Time

logger = logging.getLogger(__name__)


class HostNotFoundError(Exception):
    """Raised when the requested host is not part of the fleet."""


class HostAlreadyExistsError(Exception):
    """Raised when adding a host whose id is already taken."""


class InvalidHostError(Exception):
    """Raised when a host definition fails validation."""


class UnknownActionError(Exception):
    """Raised when an action name is not a supported ActionKind."""


class FleetResource:
    """Fleet membership, snapshots, and action dispatch.

    Built once at startup with all dependencies pre-wired. start() loads
    membership and begins polling; stop() tears everything down.
    """

    def __init__(
        self,
        *,
        store: FleetStore,
        reconciler: Reconciler,
        poller: Poller,
        dispatcher: ActionDispatcher,
        membership: MembershipStore,
        transport: TransportAdapter,
        seed_hosts: list[Host] | None = None,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._poller = poller
        self._dispatcher = dispatcher
        self._membership = membership
        self._transport = transport
        self._seed_hosts = list(seed_hosts or [])

    async def start(self) -> None:
        """Load membership and start a polling loop per host.

        Every host starts with unknown status until its first poll.
        """
        hosts = await self._membership.load()
        if not hosts and self._seed_hosts:
            for host in self._seed_hosts:
                await self._membership.save(host)
            hosts = list(self._seed_hosts)
            logger.info("Seeded membership with %d demo hosts", len(hosts))
        for host in hosts:
            await self._store.add_host(host)
            self._poller.track(host)
        logger.info("Fleet started with %d hosts", len(hosts))

    async def stop(self) -> None:
        """Stop polling and dispatch, close subscriptions, release the transport."""
        await self._poller.stop()
        await self._dispatcher.stop()
        await self._store.close()
        await self._transport.aclose()

    def snapshot(self) -> dict[str, Any]:
        """Return the current fleet snapshot as a JSON-safe dict."""
        return FleetResource.snapshot_to_dict(self._store.snapshot())

    def get_host(self, host_id: str) -> dict[str, Any]:
        """Return one host with its current status.

        Raises:
            HostNotFoundError: If the host is not in the fleet.
        """
        snapshot = self._store.snapshot()
        host = snapshot.hosts.get(host_id)
        if host is None:
            raise HostNotFoundError(f"Host not found: {host_id}")
        return FleetResource._host_to_dict(host, snapshot.status_of(host_id))

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        """Receive every published snapshot, most recent wins."""
        return self._store.subscribe(callback)

    async def add_host(self, data: dict[str, Any]) -> dict[str, Any]:
        """Add a host to the fleet, persist it, and start polling it.

        Raises:
            InvalidHostError: If the definition fails validation.
            HostAlreadyExistsError: If the id is already in the fleet.
        """
        try:
            host = Host.model_validate(data)
        except ValidationError as error:
            raise InvalidHostError(str(error)) from error
        if self._store.has_host(host.id):
            raise HostAlreadyExistsError(f"Host already exists: {host.id}")
        try:
            await self._membership.save(host)
        except ValueError as error:
            raise HostAlreadyExistsError(str(error)) from error
        await self._store.add_host(host)
        self._poller.track(host)
        logger.info("Added host %s (%s)", host.id, host.address)
        return FleetResource._host_to_dict(host, None)

    async def remove_host(self, host_id: str) -> dict[str, str]:
        """Remove a host. Its poll loop stops; late results are discarded.

        Raises:
            HostNotFoundError: If the host is not in the fleet.
        """
        if not self._store.has_host(host_id):
            raise HostNotFoundError(f"Host not found: {host_id}")
        self._poller.untrack(host_id)
        await self._store.remove_host(host_id)
        self._reconciler.forget(host_id)
        await self._membership.delete(host_id)
        logger.info("Removed host %s", host_id)
        return {"id": host_id, "status": "removed"}

    def refresh(self, host_id: str) -> dict[str, str]:
        """Poll a host now instead of waiting for its next interval.

        Raises:
            HostNotFoundError: If the host is not being polled.
        """
        if not self._poller.refresh(host_id):
            raise HostNotFoundError(f"Host not found: {host_id}")
        return {"id": host_id, "status": "refresh_requested"}

    async def submit_action(
        self, host_id: str, action: str, request_id: str | None = None,
    ) -> ActionHandle:
        """Build an ActionRequest and hand it to the dispatcher.

        Raises:
            UnknownActionError: If ``action`` is not a known ActionKind.
            HostNotFoundError: If the host is not in the fleet.
            InvalidPreconditionError: If the host cannot take the action now.
            DuplicateRequestError: If ``request_id`` is already in flight.
        """
        try:
            kind = ActionKind(action)
        except ValueError as error:
            raise UnknownActionError(f"Unknown action: {action}") from error
        if not self._store.has_host(host_id):
            raise HostNotFoundError(f"Host not found: {host_id}")
        request = ActionRequest(
            host_id=host_id,
            action=kind,
            request_id=request_id or uuid.uuid4().hex,
            submitted_at=Time.now(),
        )
        return await self._dispatcher.submit(request)

    @staticmethod
    def snapshot_to_dict(snapshot: FleetSnapshot) -> dict[str, Any]:
        """Serialize a snapshot, hosts in membership order."""
        return {
            "version": snapshot.version,
            "hosts": [
                FleetResource._host_to_dict(host, snapshot.status_of(host_id))
                for host_id, host in snapshot.hosts.items()
            ],
        }

    @staticmethod
    def handle_to_dict(handle: ActionHandle) -> dict[str, Any]:
        """Serialize a pending request for a 202 response."""
        request = handle.request
        return {
            "request_id": request.request_id,
            "host_id": request.host_id,
            "action": request.action.value,
            "state": handle.state.value,
            "submitted_at": request.submitted_at.isoformat(),
        }

    @staticmethod
    def outcome_to_dict(outcome: ActionOutcome) -> dict[str, Any]:
        """Serialize a terminal outcome."""
        return {
            "request_id": outcome.request_id,
            "host_id": outcome.host_id,
            "action": outcome.action.value,
            "state": outcome.state.value,
            "detail": outcome.detail,
            "attempts": outcome.attempts,
        }

    @staticmethod
    def _host_to_dict(host: Host, status: HostStatus | None) -> dict[str, Any]:
        return {
            "id": host.id,
            "name": host.name,
            "address": host.address,
            "host_class": host.host_class,
            "capabilities": sorted(c.value for c in host.capabilities),
            "state": status.state.value if status is not None else "unknown",
            "status": FleetResource._status_to_dict(status) if status else None,
        }

    @staticmethod
    def _status_to_dict(status: HostStatus) -> dict[str, Any]:
        return {
            "state": status.state.value,
            "cpu": status.cpu,
            "memory": status.memory,
            "uptime_seconds": status.uptime_seconds,
            "uptime": Time.format_uptime(status.uptime_seconds),
            "observed_at": status.observed_at.isoformat(),
            "source": status.source.value,
        }
