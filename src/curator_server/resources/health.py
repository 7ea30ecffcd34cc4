"""Health resource — protocol-agnostic health check logic."""

from __future__ import annotations

from curator_server.schemas.fleet import LifecycleState
from curator_server.services.fleet_store import FleetStore


class HealthResource:
    """Health check operations. Reads the fleet store, never the network."""

    def __init__(self, store: FleetStore) -> None:
        self._store = store

    def check(self) -> dict[str, str | int]:
        """Return server status with a host count per lifecycle state."""
        snapshot = self._store.snapshot()
        counts: dict[str, int] = {state.value: 0 for state in LifecycleState}
        counts["unknown"] = 0
        for host_id in snapshot.hosts:
            status = snapshot.status_of(host_id)
            counts[status.state.value if status else "unknown"] += 1
        return {
            "status": "ok",
            "version": snapshot.version,
            "hosts": len(snapshot.hosts),
            **counts,
        }
