"""Reconciler — decides which observations enter the fleet store."""

from __future__ import annotations

import logging

from curator_server.schemas.fleet import (
    FailureKind,
    HostStatus,
    LifecycleState,
    StatusSource,
)
from curator_server.services.fleet_store import FleetStore
from curator_server.utils.time import Time

logger = logging.getLogger(__name__)


class Reconciler:
    """Merges raw per-host results into the store.

    Successful observations win by timestamp; older ones are dropped
    silently. Failures only mark a host unreachable after
    ``failure_threshold`` in a row, so one lost packet does not flap the
    fleet view. Last-known gauges survive that transition.
    """

    def __init__(self, store: FleetStore, *, failure_threshold: int = 3) -> None:
        self._store = store
        self._threshold = failure_threshold
        self._failures: dict[str, int] = {}
        self._last_real: dict[str, HostStatus] = {}
        self._optimistic_owner: dict[str, str] = {}

    @property
    def failure_threshold(self) -> int:
        """Consecutive failures before a host is marked unreachable."""
        return self._threshold

    def failure_count(self, host_id: str) -> int:
        """Current consecutive-failure count for a host."""
        return self._failures.get(host_id, 0)

    def last_observation(self, host_id: str) -> HostStatus | None:
        """Latest accepted status that was not an optimistic write."""
        return self._last_real.get(host_id)

    def forget(self, host_id: str) -> None:
        """Drop all per-host bookkeeping after the host leaves the fleet."""
        self._failures.pop(host_id, None)
        self._last_real.pop(host_id, None)
        self._optimistic_owner.pop(host_id, None)

    async def accept(self, status: HostStatus) -> HostStatus | None:
        """Offer a successful observation.

        Returns:
            The stored status, or None if it was stale or the host is gone.
        """
        host_id = status.host_id
        if not self._store.has_host(host_id):
            return None
        self._failures[host_id] = 0

        previous: list[HostStatus | None] = []

        def decide(current: HostStatus | None) -> HostStatus | None:
            previous.append(current)
            if current is not None and status.observed_at <= current.observed_at:
                return None
            return status

        accepted = await self._store.update_status(host_id, decide)
        if accepted is None:
            logger.debug(
                "Discarded stale %s status for %s observed at %s",
                status.source.value, host_id, status.observed_at.isoformat(),
            )
            return None
        self._remember(accepted)
        before = previous[0] if previous else None
        if before is None or before.state is not accepted.state:
            logger.info(
                "Host %s is now %s (%s)",
                host_id, accepted.state.value, accepted.source.value,
            )
        return accepted

    async def record_failure(
        self, host_id: str, kind: FailureKind,
    ) -> HostStatus | None:
        """Count a failed fetch; at the threshold mark the host unreachable.

        Returns:
            The unreachable status if this failure caused the transition.
        """
        if not self._store.has_host(host_id):
            return None
        count = self._failures.get(host_id, 0) + 1
        self._failures[host_id] = count
        if count < self._threshold:
            logger.debug(
                "Host %s failure %d/%d (%s)", host_id, count, self._threshold, kind.value,
            )
            return None

        def decide(current: HostStatus | None) -> HostStatus | None:
            if current is None:
                return HostStatus(
                    host_id=host_id,
                    state=LifecycleState.UNREACHABLE,
                    observed_at=Time.now(),
                )
            if current.state is LifecycleState.UNREACHABLE:
                return None
            return current.model_copy(update={
                "state": LifecycleState.UNREACHABLE,
                "observed_at": Time.after(current.observed_at),
                "source": StatusSource.POLL,
            })

        accepted = await self._store.update_status(host_id, decide)
        if accepted is not None:
            self._remember(accepted)
            logger.warning(
                "Host %s unreachable after %d consecutive failures (last: %s)",
                host_id, count, kind.value,
            )
        return accepted

    async def apply_optimistic(
        self, host_id: str, state: LifecycleState, owner: str | None = None,
    ) -> HostStatus | None:
        """Write an unconfirmed state ahead of an action's result.

        ``owner`` names the request the write belongs to; only that owner
        may revert it later.
        """

        def decide(current: HostStatus | None) -> HostStatus | None:
            if current is None:
                return None
            if owner is None:
                self._optimistic_owner.pop(host_id, None)
            else:
                self._optimistic_owner[host_id] = owner
            return current.model_copy(update={
                "state": state,
                "observed_at": Time.after(current.observed_at),
                "source": StatusSource.OPTIMISTIC,
            })

        return await self._store.update_status(host_id, decide)

    async def revert(self, host_id: str, owner: str | None = None) -> HostStatus | None:
        """Replace a still-optimistic status with the last real observation.

        If a poll has already overwritten the optimistic write, the store
        already holds a real observation and nothing changes. With ``owner``
        set, an optimistic write made for a different request is kept.
        """
        last = self._last_real.get(host_id)

        def decide(current: HostStatus | None) -> HostStatus | None:
            if last is None or current is None:
                return None
            if current.source is not StatusSource.OPTIMISTIC:
                return None
            if owner is not None and self._optimistic_owner.get(host_id) not in (None, owner):
                return None
            self._optimistic_owner.pop(host_id, None)
            return last.model_copy(update={"observed_at": Time.after(current.observed_at)})

        reverted = await self._store.update_status(host_id, decide)
        if reverted is not None:
            logger.info("Host %s reverted to %s", host_id, reverted.state.value)
        return reverted

    def _remember(self, status: HostStatus) -> None:
        if status.source is not StatusSource.OPTIMISTIC:
            self._last_real[status.host_id] = status
