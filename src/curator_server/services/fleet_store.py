"""Fleet store — the single owner of host status records."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable

from curator_server.schemas.fleet import FleetSnapshot, Host, HostStatus

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[FleetSnapshot], "Awaitable[None] | None"]
StatusDecision = Callable[[HostStatus | None], HostStatus | None]


class Subscription:
    """A subscriber's delivery slot.

    Holds only the latest undelivered snapshot, so a slow callback skips
    intermediate versions instead of queueing them.
    """

    def __init__(
        self,
        callback: SnapshotCallback,
        on_cancel: Callable[[Subscription], None],
    ) -> None:
        self._callback = callback
        self._on_cancel = on_cancel
        self._pending: FleetSnapshot | None = None
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.delivered_version = -1

    @property
    def active(self) -> bool:
        """True until cancel() is called."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin delivering. Requires a running event loop."""
        self._task = asyncio.get_running_loop().create_task(
            self._deliver(), name="fleet-subscription",
        )

    def offer(self, snapshot: FleetSnapshot) -> None:
        """Replace the pending snapshot; older undelivered versions are dropped."""
        if self._pending is None or snapshot.version > self._pending.version:
            self._pending = snapshot
        self._wakeup.set()

    def cancel(self) -> None:
        """Stop delivery and detach from the store."""
        if self._task is not None:
            self._task.cancel()
        self._on_cancel(self)

    async def wait_closed(self) -> None:
        """Wait for the delivery task to finish after cancel()."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _deliver(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            snapshot, self._pending = self._pending, None
            if snapshot is None or snapshot.version <= self.delivered_version:
                continue
            try:
                result = self._callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Subscriber failed on snapshot version %d", snapshot.version,
                )
            self.delivered_version = snapshot.version


class FleetStore:
    """Authoritative in-memory fleet snapshot with change fan-out.

    Every mutation runs under one lock and publishes a fresh immutable
    FleetSnapshot with the next version; readers never see a partial
    update. A status replaces the stored one only when its timestamp is
    strictly newer.
    """

    def __init__(self) -> None:
        self._snapshot = FleetSnapshot()
        self._lock = asyncio.Lock()
        self._subscriptions: list[Subscription] = []

    def snapshot(self) -> FleetSnapshot:
        """Return the current snapshot without blocking."""
        return self._snapshot

    def has_host(self, host_id: str) -> bool:
        """True if the host is currently part of the fleet."""
        return host_id in self._snapshot.hosts

    def subscribe(self, callback: SnapshotCallback) -> Subscription:
        """Register a callback. It receives the current snapshot first.

        Must be called from within the running event loop.
        """
        subscription = Subscription(callback, self._detach)
        self._subscriptions.append(subscription)
        subscription.start()
        subscription.offer(self._snapshot)
        return subscription

    async def add_host(self, host: Host) -> bool:
        """Add a host with unknown status. Returns False if already present."""
        async with self._lock:
            current = self._snapshot
            if host.id in current.hosts:
                return False
            self._publish(
                hosts={**current.hosts, host.id: host},
                statuses=current.statuses,
            )
        return True

    async def remove_host(self, host_id: str) -> bool:
        """Drop a host and its status. Returns False if it was not present."""
        async with self._lock:
            current = self._snapshot
            if host_id not in current.hosts:
                return False
            hosts = dict(current.hosts)
            del hosts[host_id]
            statuses = {k: v for k, v in current.statuses.items() if k != host_id}
            self._publish(hosts=hosts, statuses=statuses)
        return True

    async def update_status(
        self, host_id: str, decide: StatusDecision,
    ) -> HostStatus | None:
        """Atomically replace a host's status.

        ``decide`` sees the stored status (or None) and returns the
        replacement, or None to leave it untouched. The replacement is
        dropped if the host is gone, if it names another host, or if its
        timestamp is not newer than the stored one.

        Returns:
            The accepted status, or None if nothing changed.
        """
        async with self._lock:
            current = self._snapshot
            if host_id not in current.hosts:
                return None
            stored = current.statuses.get(host_id)
            candidate = decide(stored)
            if candidate is None or candidate.host_id != host_id:
                return None
            if stored is not None and candidate.observed_at <= stored.observed_at:
                return None
            self._publish(
                hosts=current.hosts,
                statuses={**current.statuses, host_id: candidate},
            )
        return candidate

    async def close(self) -> None:
        """Cancel every subscription and wait for their delivery tasks."""
        subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.cancel()
        for subscription in subscriptions:
            await subscription.wait_closed()

    def _publish(
        self, *, hosts: dict[str, Host], statuses: dict[str, HostStatus],
    ) -> None:
        """Swap in the next snapshot version and notify subscribers. Lock held."""
        self._snapshot = FleetSnapshot(
            version=self._snapshot.version + 1,
            hosts=hosts,
            statuses=statuses,
        )
        for subscription in self._subscriptions:
            subscription.offer(self._snapshot)

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
