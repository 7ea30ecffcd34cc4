"""Action dispatch — precondition checks, optimistic updates, retries."""

from __future__ import annotations

import asyncio
import logging

from curator_server.plugins.contracts.transport import TransportAdapter, TransportError
from curator_server.schemas.fleet import (
    TERMINAL_ACTION_STATES,
    ActionKind,
    ActionOutcome,
    ActionReceipt,
    ActionRequest,
    ActionState,
    FailureKind,
    Host,
    HostStatus,
    LifecycleState,
)
from curator_server.services.fleet_store import FleetStore
from curator_server.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

_RUNNING_STATES = frozenset({LifecycleState.ONLINE, LifecycleState.MAINTENANCE})

# Host states in which each action may start.
ALLOWED_STATES: dict[ActionKind, frozenset[LifecycleState]] = {
    ActionKind.RESTART: _RUNNING_STATES,
    ActionKind.POWER_OFF: _RUNNING_STATES,
    ActionKind.SSH_OPEN: _RUNNING_STATES,
}

# State written to the store before the transport answers.
OPTIMISTIC_STATES: dict[ActionKind, LifecycleState] = {
    ActionKind.RESTART: LifecycleState.MAINTENANCE,
    ActionKind.POWER_OFF: LifecycleState.OFFLINE,
}


class InvalidPreconditionError(Exception):
    """Raised when the host cannot accept the action in its current state."""


class DuplicateRequestError(Exception):
    """Raised when a request id is already in flight."""


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: TransportError, *, all_timeouts: bool) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
        self.all_timeouts = all_timeouts


class ActionHandle:
    """Completion handle for one dispatched request."""

    def __init__(self, request: ActionRequest) -> None:
        self.request = request
        self.state = ActionState.SUBMITTED
        self.attempts = 0
        self._future: asyncio.Future[ActionOutcome] = (
            asyncio.get_running_loop().create_future()
        )

    @property
    def done(self) -> bool:
        """True once a terminal outcome is available."""
        return self._future.done()

    async def result(self) -> ActionOutcome:
        """Wait for the terminal outcome."""
        return await asyncio.shield(self._future)

    def _finish(self, outcome: ActionOutcome) -> None:
        if outcome.state not in TERMINAL_ACTION_STATES:
            raise ValueError(f"{outcome.state.value} is not a terminal action state")
        self.state = outcome.state
        if not self._future.done():
            self._future.set_result(outcome)


class ActionDispatcher:
    """Runs each accepted request as its own task.

    Request state: submitted -> inFlight -> succeeded | failed | timedOut.
    Timeouts and refused connections are retried with linear backoff up
    to ``max_attempts``; protocol errors end the request immediately.
    Any failure reverts the optimistic status to the last real observation.
    """

    def __init__(
        self,
        store: FleetStore,
        reconciler: Reconciler,
        transport: TransportAdapter,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout: float = 5.0,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._transport = transport
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._timeout = timeout
        self._in_flight: dict[str, ActionHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def in_flight(self, request_id: str) -> ActionHandle | None:
        """Return the handle for an in-flight request id."""
        return self._in_flight.get(request_id)

    @property
    def in_flight_count(self) -> int:
        """Number of requests not yet terminal."""
        return len(self._in_flight)

    async def submit(self, request: ActionRequest) -> ActionHandle:
        """Validate and start an action.

        Returns once the request is in flight and any optimistic status is
        published; await ``handle.result()`` for the outcome.

        Raises:
            DuplicateRequestError: If the request id is already in flight.
            InvalidPreconditionError: If the host cannot take the action now.
        """
        if request.request_id in self._in_flight:
            raise DuplicateRequestError(
                f"Request {request.request_id} is already in flight",
            )
        snapshot = self._store.snapshot()
        host = snapshot.hosts.get(request.host_id)
        ActionDispatcher.check_preconditions(
            request, host, snapshot.status_of(request.host_id),
        )
        assert host is not None

        # Registered before the first await so a concurrent duplicate is caught.
        handle = ActionHandle(request)
        handle.state = ActionState.IN_FLIGHT
        self._in_flight[request.request_id] = handle
        try:
            optimistic = OPTIMISTIC_STATES.get(request.action)
            if optimistic is not None:
                await self._reconciler.apply_optimistic(
                    host.id, optimistic, owner=request.request_id,
                )
        except BaseException:
            self._in_flight.pop(request.request_id, None)
            raise

        logger.info(
            "Dispatching %s to %s (request %s)",
            request.action.value, host.id, request.request_id,
        )
        task = asyncio.get_running_loop().create_task(
            self._execute(host, handle), name=f"action:{request.request_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return handle

    async def stop(self) -> None:
        """Cancel outstanding actions; their handles resolve as failed.

        A task cancelled before it ever ran skips its own cleanup, so any
        handle still registered afterwards is reverted and failed here.
        """
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for handle in list(self._in_flight.values()):
            request = handle.request
            await asyncio.shield(
                self._reconciler.revert(request.host_id, request.request_id),
            )
            self._complete(handle, ActionState.FAILED, "dispatcher stopped")

    @staticmethod
    def check_preconditions(
        request: ActionRequest, host: Host | None, status: HostStatus | None,
    ) -> None:
        """Raise InvalidPreconditionError unless the action may start."""
        if host is None:
            raise InvalidPreconditionError(f"Unknown host: {request.host_id}")
        if request.action not in host.capabilities:
            raise InvalidPreconditionError(
                f"Host {host.id} does not support {request.action.value}",
            )
        allowed = ALLOWED_STATES[request.action]
        if status is None:
            raise InvalidPreconditionError(
                f"Host {host.id} has not reported a status yet",
            )
        if status.state not in allowed:
            raise InvalidPreconditionError(
                f"Cannot {request.action.value} host {host.id} while {status.state.value}",
            )

    async def _execute(self, host: Host, handle: ActionHandle) -> None:
        request = handle.request
        try:
            outcome = await self._run(host, handle)
        except asyncio.CancelledError:
            await asyncio.shield(self._reconciler.revert(host.id, request.request_id))
            self._complete(handle, ActionState.FAILED, "dispatcher stopped")
            raise
        self._complete(handle, outcome.state, outcome.detail)
        if not self._store.has_host(host.id):
            logger.info("Host %s was removed; dropped result of %s", host.id, request.request_id)

    async def _run(self, host: Host, handle: ActionHandle) -> ActionOutcome:
        request = handle.request
        try:
            receipt = await self._attempt(host, handle)
        except RetryExhaustedError as error:
            await self._reconciler.revert(host.id, request.request_id)
            state = ActionState.TIMED_OUT if error.all_timeouts else ActionState.FAILED
            return self._outcome(handle, state, str(error))
        except TransportError as error:
            await self._reconciler.revert(host.id, request.request_id)
            return self._outcome(handle, ActionState.FAILED, str(error))
        except Exception:
            logger.exception("Action %s on %s crashed", request.request_id, host.id)
            await self._reconciler.revert(host.id, request.request_id)
            return self._outcome(handle, ActionState.FAILED, "internal error")

        if receipt.status is not None and receipt.status.host_id == host.id:
            await self._reconciler.accept(receipt.status)
        return self._outcome(handle, ActionState.SUCCEEDED, receipt.detail)

    async def _attempt(self, host: Host, handle: ActionHandle) -> ActionReceipt:
        """Call the transport until success, a permanent error, or the last attempt.

        Raises:
            TransportError: On a non-transient failure.
            RetryExhaustedError: When every attempt failed transiently.
        """
        request = handle.request
        last_error: TransportError | None = None
        all_timeouts = True
        for attempt in range(1, self._max_attempts + 1):
            handle.attempts = attempt
            try:
                return await TransportAdapter.bounded(
                    self._transport.invoke_action(
                        host, request.action, timeout=self._timeout,
                    ),
                    self._timeout,
                )
            except TransportError as error:
                if not error.transient:
                    logger.warning(
                        "%s on %s rejected: %s", request.action.value, host.id, error,
                    )
                    raise
                last_error = error
                all_timeouts = all_timeouts and error.kind is FailureKind.TIMEOUT
                logger.warning(
                    "%s on %s attempt %d/%d failed (%s)",
                    request.action.value, host.id, attempt, self._max_attempts,
                    error.kind.value,
                )
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._backoff * attempt)
        assert last_error is not None
        raise RetryExhaustedError(
            self._max_attempts, last_error, all_timeouts=all_timeouts,
        )

    @staticmethod
    def _outcome(
        handle: ActionHandle, state: ActionState, detail: str | None,
    ) -> ActionOutcome:
        request = handle.request
        return ActionOutcome(
            request_id=request.request_id,
            host_id=request.host_id,
            action=request.action,
            state=state,
            detail=detail,
            attempts=handle.attempts,
        )

    def _complete(
        self, handle: ActionHandle, state: ActionState, detail: str | None,
    ) -> None:
        request = handle.request
        self._in_flight.pop(request.request_id, None)
        handle._finish(ActionDispatcher._outcome(handle, state, detail))
        log = logger.info if state is ActionState.SUCCEEDED else logger.warning
        log(
            "Action %s (%s on %s) %s after %d attempt(s)",
            request.request_id, request.action.value, request.host_id,
            state.value, handle.attempts,
        )
