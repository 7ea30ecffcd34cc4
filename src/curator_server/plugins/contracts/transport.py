"""Transport contract — one status fetch or action call against one host."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import TypeVar

from curator_server.schemas.fleet import (
    TRANSIENT_FAILURES,
    ActionKind,
    ActionReceipt,
    FailureKind,
    Host,
    HostStatus,
)

_T = TypeVar("_T")


class TransportError(Exception):
    """A single transport attempt failed."""

    def __init__(self, kind: FailureKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind

    @property
    def transient(self) -> bool:
        """True if a retry might succeed."""
        return self.kind in TRANSIENT_FAILURES


class TransportAdapter(ABC):
    """Talks to hosts over whatever protocol they speak.

    Implementations make exactly one attempt per call and keep no state
    about previous calls. They must be safe to call concurrently; ordering
    of results for the same host is the Reconciler's job.
    """

    @abstractmethod
    async def fetch_status(self, host: Host, *, timeout: float) -> HostStatus:
        """Fetch the current status of a host.

        Raises:
            TransportError: On timeout, refused connection, or a malformed reply.
        """

    @abstractmethod
    async def invoke_action(
        self, host: Host, action: ActionKind, *, timeout: float,
    ) -> ActionReceipt:
        """Ask a host to perform an action.

        Returns:
            The host's acknowledgement, with a post-action status if reported.

        Raises:
            TransportError: On timeout, refused connection, or a rejected call.
        """

    async def aclose(self) -> None:
        """Release any pooled connections."""

    @staticmethod
    async def bounded(call: Awaitable[_T], timeout: float) -> _T:
        """Await a transport call, reporting a hang past ``timeout`` as a failure."""
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as error:
            raise TransportError(
                FailureKind.TIMEOUT, f"no reply within {timeout:g}s",
            ) from error
