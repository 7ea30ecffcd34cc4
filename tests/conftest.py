"""Shared fixtures for curator_server tests."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone

import pytest
from litestar.testing import TestClient

from curator_server.app import create_app
from curator_server.config import Settings
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
from curator_server.services.fleet_store import FleetStore
from curator_server.services.reconciler import Reconciler

T0 = datetime(2025, 11, 29, 12, 0, 0, tzinfo=timezone.utc)


def make_host(host_id: str = "h1", **overrides: object) -> Host:
    """A host with every capability unless overridden."""
    fields: dict[str, object] = {
        "id": host_id,
        "name": f"{host_id}-name",
        "address": f"10.0.0.{len(host_id)}",
    }
    fields.update(overrides)
    return Host.model_validate(fields)


def make_status(
    host_id: str = "h1",
    seconds: float = 0,
    state: LifecycleState = LifecycleState.ONLINE,
    cpu: float | None = 0.3,
    memory: float | None = 0.5,
    source: StatusSource = StatusSource.POLL,
    at: datetime | None = None,
) -> HostStatus:
    """A status observed ``seconds`` after ``at`` (T0 by default)."""
    return HostStatus(
        host_id=host_id,
        state=state,
        cpu=cpu,
        memory=memory,
        uptime_seconds=3600.0,
        observed_at=(at or T0) + timedelta(seconds=seconds),
        source=source,
    )


def failure(kind: FailureKind = FailureKind.TIMEOUT) -> TransportError:
    """A scripted transport failure."""
    return TransportError(kind, f"scripted {kind.value}")


class ScriptedTransport(TransportAdapter):
    """Replays scripted results per host and records every call.

    When a host's script runs out, its last entry repeats. A cleared gate
    holds calls until the test sets it.
    """

    def __init__(self) -> None:
        self.statuses: dict[str, list[HostStatus | TransportError]] = {}
        self.receipts: dict[str, list[ActionReceipt | TransportError]] = {}
        self.fetch_calls: list[str] = []
        self.action_calls: list[tuple[str, ActionKind]] = []
        self.fetch_gate = asyncio.Event()
        self.fetch_gate.set()
        self.action_gate = asyncio.Event()
        self.action_gate.set()
        self.active_fetches: dict[str, int] = {}
        self.max_concurrent_fetches: dict[str, int] = {}

    def script_status(self, host_id: str, *results: HostStatus | TransportError) -> None:
        self.statuses.setdefault(host_id, []).extend(results)

    def script_action(self, host_id: str, *results: ActionReceipt | TransportError) -> None:
        self.receipts.setdefault(host_id, []).extend(results)

    async def fetch_status(self, host: Host, *, timeout: float) -> HostStatus:
        self.fetch_calls.append(host.id)
        active = self.active_fetches.get(host.id, 0) + 1
        self.active_fetches[host.id] = active
        self.max_concurrent_fetches[host.id] = max(
            active, self.max_concurrent_fetches.get(host.id, 0),
        )
        try:
            await self.fetch_gate.wait()
            result = ScriptedTransport._next(self.statuses.get(host.id))
        finally:
            self.active_fetches[host.id] -= 1
        if result is None:
            raise TransportError(FailureKind.CONNECTION_REFUSED, "nothing scripted")
        if isinstance(result, TransportError):
            raise result
        return result

    async def invoke_action(
        self, host: Host, action: ActionKind, *, timeout: float,
    ) -> ActionReceipt:
        self.action_calls.append((host.id, action))
        await self.action_gate.wait()
        result = ScriptedTransport._next(self.receipts.get(host.id))
        if result is None:
            return ActionReceipt(detail="acknowledged")
        if isinstance(result, TransportError):
            raise result
        return result

    @staticmethod
    def _next(script: list | None):  # type: ignore[type-arg]
        if not script:
            return None
        return script.pop(0) if len(script) > 1 else script[0]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds or fail."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def wait_for_state(
    client: TestClient,  # type: ignore[type-arg]
    host_id: str,
    predicate: Callable[[str], bool],
    timeout: float = 5.0,
) -> dict[str, object]:
    """Poll GET /api/fleet/hosts/{id} from a sync test until the state matches."""
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/fleet/hosts/{host_id}").json()
        if predicate(body["state"]):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"{host_id} stuck in {body['state']}")
        time.sleep(0.02)


@pytest.fixture()
def store() -> FleetStore:
    """An empty fleet store."""
    return FleetStore()


@pytest.fixture()
def reconciler(store: FleetStore) -> Reconciler:
    """Reconciler with the default threshold of three."""
    return Reconciler(store, failure_threshold=3)


@pytest.fixture()
def transport() -> ScriptedTransport:
    """A scripted transport with open gates."""
    return ScriptedTransport()


@pytest.fixture()
def settings() -> Settings:
    """Test settings: in-memory SQLite, fast simulated fleet."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        transport="demo",
        seed_demo_hosts=True,
        poll_interval_seconds=0.05,
        poll_max_interval_seconds=0.2,
        transport_timeout_seconds=1.0,
        action_backoff_seconds=0.0,
        log_level="WARNING",
    )


@pytest.fixture()
def client(settings: Settings) -> Iterator[TestClient]:  # type: ignore[type-arg]
    """Sync test client with the app lifespan (polling included) running."""
    app = create_app(settings)
    with TestClient(app=app) as test_client:
        yield test_client
