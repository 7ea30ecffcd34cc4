"""Poller — one independent status loop per host."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from curator_server.plugins.contracts.transport import TransportAdapter, TransportError
from curator_server.schemas.fleet import FailureKind, Host
from curator_server.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

# 2**32 base intervals is far past any sane maximum.
_MAX_EXPONENT = 32


@dataclass
class _HostLoop:
    host: Host
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    previous: asyncio.Task[None] | None = None
    stopped: bool = False
    in_flight: bool = False
    failures: int = 0


class Poller:
    """Fetches every tracked host on its own schedule.

    A host's loop awaits each fetch before sleeping, so at most one fetch
    per host is ever in flight. Failures back off exponentially up to
    ``max_interval`` and a single success restores the base interval.
    """

    def __init__(
        self,
        transport: TransportAdapter,
        reconciler: Reconciler,
        *,
        base_interval: float = 10.0,
        intervals: dict[str, float] | None = None,
        max_interval: float = 300.0,
        timeout: float = 5.0,
    ) -> None:
        self._transport = transport
        self._reconciler = reconciler
        self._base_interval = base_interval
        self._intervals = dict(intervals or {})
        self._max_interval = max_interval
        self._timeout = timeout
        self._loops: dict[str, _HostLoop] = {}
        self._retiring: dict[str, asyncio.Task[None]] = {}

    @staticmethod
    def next_delay(base: float, failures: int, maximum: float) -> float:
        """Seconds until the next fetch after ``failures`` consecutive failures."""
        if failures <= 0:
            return min(base, maximum)
        return min(base * 2 ** min(failures, _MAX_EXPONENT), maximum)

    def interval_for(self, host: Host) -> float:
        """Base interval for the host's class."""
        return self._intervals.get(host.host_class, self._base_interval)

    def is_tracking(self, host_id: str) -> bool:
        """True while the host has a polling loop."""
        return host_id in self._loops

    def is_in_flight(self, host_id: str) -> bool:
        """True while a fetch for the host is outstanding."""
        loop = self._loops.get(host_id)
        return loop is not None and loop.in_flight

    def track(self, host: Host) -> bool:
        """Start polling a host. Returns False if already tracked.

        The first fetch waits for a fetch still running from an earlier
        loop for the same id. Must be called from within the running
        event loop.
        """
        if host.id in self._loops:
            return False
        loop = _HostLoop(host=host, previous=self._retiring.get(host.id))
        loop.task = asyncio.get_running_loop().create_task(
            self._run(loop), name=f"poll:{host.id}",
        )
        self._loops[host.id] = loop
        return True

    def untrack(self, host_id: str) -> bool:
        """Stop polling a host. An in-flight fetch finishes and is discarded."""
        loop = self._loops.pop(host_id, None)
        if loop is None:
            return False
        loop.stopped = True
        loop.wake.set()
        if loop.task is not None and not loop.task.done():
            self._retiring[host_id] = loop.task
            loop.task.add_done_callback(self._retired)
        return True

    def refresh(self, host_id: str) -> bool:
        """Cut the current wait short. Never overlaps an in-flight fetch."""
        loop = self._loops.get(host_id)
        if loop is None:
            return False
        loop.wake.set()
        return True

    async def stop(self) -> None:
        """Stop every loop and wait for outstanding fetches to settle."""
        for host_id in list(self._loops):
            self.untrack(host_id)
        if self._retiring:
            await asyncio.gather(*list(self._retiring.values()), return_exceptions=True)

    def _retired(self, task: asyncio.Task[None]) -> None:
        host_id = task.get_name().removeprefix("poll:")
        if self._retiring.get(host_id) is task:
            del self._retiring[host_id]

    async def _run(self, loop: _HostLoop) -> None:
        host = loop.host
        if loop.previous is not None:
            await asyncio.gather(loop.previous, return_exceptions=True)
            loop.previous = None
        while not loop.stopped:
            try:
                await self._poll_once(loop)
                if loop.stopped:
                    break
                delay = Poller.next_delay(
                    self.interval_for(host), loop.failures, self._max_interval,
                )
            except Exception:
                logger.exception("Polling loop for %s failed; retrying", host.id)
                loop.in_flight = False
                delay = self._max_interval
            try:
                await asyncio.wait_for(loop.wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            loop.wake.clear()
        logger.debug("Stopped polling %s", host.id)

    async def _poll_once(self, loop: _HostLoop) -> None:
        host = loop.host
        loop.in_flight = True
        try:
            status = await TransportAdapter.bounded(
                self._transport.fetch_status(host, timeout=self._timeout),
                self._timeout,
            )
            if status.host_id != host.id:
                raise TransportError(
                    FailureKind.PROTOCOL_ERROR,
                    f"status for {status.host_id} returned by {host.id}",
                )
        except TransportError as error:
            loop.in_flight = False
            if loop.stopped:
                logger.debug("Discarded failed fetch for removed host %s", host.id)
                return
            loop.failures += 1
            logger.warning(
                "Fetch from %s failed (%s): %s", host.id, error.kind.value, error,
            )
            await self._reconciler.record_failure(host.id, error.kind)
        except Exception:
            loop.in_flight = False
            if loop.stopped:
                return
            loop.failures += 1
            logger.exception("Unexpected error fetching %s", host.id)
            await self._reconciler.record_failure(host.id, FailureKind.PROTOCOL_ERROR)
        else:
            loop.in_flight = False
            if loop.stopped:
                logger.debug("Discarded late status for removed host %s", host.id)
                return
            loop.failures = 0
            await self._reconciler.accept(status)
