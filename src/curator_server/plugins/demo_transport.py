"""Demo transport plugin — a simulated fleet for local development.

This is an explicit data source selected by configuration. It is never
substituted for a real transport that failed.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime

from curator_server.plugins.contracts.transport import TransportAdapter, TransportError
from curator_server.schemas.fleet import (
    ActionKind,
    ActionReceipt,
    FailureKind,
    Host,
    HostStatus,
    LifecycleState,
    StatusSource,
)
from curator_server.utils.time import Time

_DAY = 86_400.0


@dataclass
class _SimulatedHost:
    state: LifecycleState
    cpu: float
    memory: float
    booted_at: float


class DemoTransport(TransportAdapter):
    """Simulates hosts in memory with gauges that drift a little on every fetch.

    Hosts it has not seen before start online. ``down_hosts`` refuse every
    connection, which exercises backoff and the unreachable transition.
    """

    _SEED: dict[str, tuple[LifecycleState, float, float, float]] = {
        "srv-1": (LifecycleState.ONLINE, 0.28, 0.54, _DAY * 6),
        "srv-2": (LifecycleState.ONLINE, 0.62, 0.71, _DAY * 20),
        "srv-3": (LifecycleState.MAINTENANCE, 0.10, 0.22, _DAY * 1),
        "srv-4": (LifecycleState.OFFLINE, 0.0, 0.0, 0.0),
    }

    def __init__(
        self,
        *,
        latency_seconds: float = 0.05,
        seed: int | None = None,
        down_hosts: frozenset[str] = frozenset(),
    ) -> None:
        self._latency = latency_seconds
        self._random = random.Random(seed)
        self._down_hosts = down_hosts
        self._hosts: dict[str, _SimulatedHost] = {}

    @staticmethod
    def demo_hosts() -> list[Host]:
        """The fleet used when seeding an empty membership store."""
        return [
            Host(id="srv-1", name="web-01", address="192.168.1.10", host_class="web"),
            Host(id="srv-2", name="db-01", address="192.168.1.11", host_class="database"),
            Host(id="srv-3", name="cache-01", address="192.168.1.12", host_class="cache"),
            Host(id="srv-4", name="backup-01", address="192.168.1.20", host_class="backup"),
        ]

    async def fetch_status(self, host: Host, *, timeout: float) -> HostStatus:
        """Return the simulated status after a short artificial delay."""
        sent_at = Time.now()
        await self._reach(host, timeout)
        sim = self._simulated(host.id)
        if sim.state is LifecycleState.ONLINE:
            sim.cpu = self._drift(sim.cpu)
            sim.memory = self._drift(sim.memory)
        return self._status(host.id, sim, StatusSource.POLL, sent_at)

    async def invoke_action(
        self, host: Host, action: ActionKind, *, timeout: float,
    ) -> ActionReceipt:
        """Apply the action to the simulated host and acknowledge it."""
        sent_at = Time.now()
        await self._reach(host, timeout)
        sim = self._simulated(host.id)
        if action is ActionKind.SSH_OPEN:
            return ActionReceipt(detail=f"ssh://{host.address}")
        if action is ActionKind.RESTART:
            sim.state = LifecycleState.ONLINE
            sim.booted_at = time.monotonic()
            detail = f"{host.name} restarted"
        else:
            sim.state = LifecycleState.OFFLINE
            sim.cpu = 0.0
            sim.memory = 0.0
            detail = f"{host.name} powered off"
        return ActionReceipt(
            detail=detail, status=self._status(host.id, sim, StatusSource.ACTION, sent_at),
        )

    async def _reach(self, host: Host, timeout: float) -> None:
        """Sleep for the simulated round trip, failing like a real network would."""
        if self._latency > timeout:
            await asyncio.sleep(timeout)
            raise TransportError(FailureKind.TIMEOUT, f"{host.name} did not answer")
        await asyncio.sleep(self._latency)
        if host.id in self._down_hosts:
            raise TransportError(
                FailureKind.CONNECTION_REFUSED, f"{host.address} refused the connection",
            )

    def _simulated(self, host_id: str) -> _SimulatedHost:
        sim = self._hosts.get(host_id)
        if sim is None:
            state, cpu, memory, uptime = DemoTransport._SEED.get(
                host_id,
                (LifecycleState.ONLINE, self._random.uniform(0.05, 0.5),
                 self._random.uniform(0.1, 0.6), 0.0),
            )
            sim = _SimulatedHost(state, cpu, memory, time.monotonic() - uptime)
            self._hosts[host_id] = sim
        return sim

    def _drift(self, value: float) -> float:
        return min(1.0, max(0.0, value + self._random.uniform(-0.05, 0.05)))

    @staticmethod
    def _status(
        host_id: str, sim: _SimulatedHost, source: StatusSource, observed_at: datetime,
    ) -> HostStatus:
        running = sim.state in (LifecycleState.ONLINE, LifecycleState.MAINTENANCE)
        return HostStatus(
            host_id=host_id,
            state=sim.state,
            cpu=round(sim.cpu, 4),
            memory=round(sim.memory, 4),
            uptime_seconds=max(0.0, time.monotonic() - sim.booted_at) if running else 0.0,
            observed_at=observed_at,
            source=source,
        )
