"""Fleet schemas — hosts, status observations, snapshots, and actions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class LifecycleState(str, Enum):
    """Host lifecycle state as reported by polling or action side effects."""

    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"
    UNREACHABLE = "unreachable"


class StatusSource(str, Enum):
    """Where a HostStatus came from.

    ``optimistic`` marks a dispatcher write that the host has not confirmed.
    """

    POLL = "poll"
    ACTION = "action"
    OPTIMISTIC = "optimistic"


class ActionKind(str, Enum):
    """Control actions a host may support."""

    RESTART = "restart"
    POWER_OFF = "powerOff"
    SSH_OPEN = "sshOpen"


class ActionState(str, Enum):
    """Per-request state machine. The last three are terminal."""

    SUBMITTED = "submitted"
    IN_FLIGHT = "inFlight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timedOut"


TERMINAL_ACTION_STATES = frozenset(
    {ActionState.SUCCEEDED, ActionState.FAILED, ActionState.TIMED_OUT},
)


class FailureKind(str, Enum):
    """Transport failure taxonomy."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connectionRefused"
    PROTOCOL_ERROR = "protocolError"


TRANSIENT_FAILURES = frozenset(
    {FailureKind.TIMEOUT, FailureKind.CONNECTION_REFUSED},
)


class Host(BaseModel):
    """A managed host. Identity and capabilities are fixed for its lifetime."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    address: str = Field(min_length=1, max_length=255)
    host_class: str = "default"
    capabilities: frozenset[ActionKind] = frozenset(ActionKind)


class HostStatus(BaseModel):
    """Point-in-time observation of one host."""

    model_config = ConfigDict(frozen=True)

    host_id: str
    state: LifecycleState
    cpu: float | None = Field(default=None, ge=0.0, le=1.0)
    memory: float | None = Field(default=None, ge=0.0, le=1.0)
    uptime_seconds: float | None = Field(default=None, ge=0.0)
    observed_at: datetime
    source: StatusSource = StatusSource.POLL


class FleetSnapshot(BaseModel):
    """Immutable, versioned view of the fleet.

    ``statuses`` only holds hosts with at least one accepted observation;
    a host present in ``hosts`` but absent from ``statuses`` is unknown.
    """

    model_config = ConfigDict(frozen=True)

    version: int = 0
    hosts: dict[str, Host] = Field(default_factory=dict)
    statuses: dict[str, HostStatus] = Field(default_factory=dict)

    def status_of(self, host_id: str) -> HostStatus | None:
        """Return the accepted status for a host, if any."""
        return self.statuses.get(host_id)


class ActionRequest(BaseModel):
    """A user-requested action. ``request_id`` is the idempotency key."""

    model_config = ConfigDict(frozen=True)

    host_id: str
    action: ActionKind
    request_id: str = Field(min_length=1, max_length=64)
    submitted_at: datetime


class ActionReceipt(BaseModel):
    """Transport acknowledgement of an action.

    ``status`` is the post-action observation when the host reports one.
    """

    model_config = ConfigDict(frozen=True)

    detail: str | None = None
    status: HostStatus | None = None


class ActionOutcome(BaseModel):
    """Terminal result of an ActionRequest."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    host_id: str
    action: ActionKind
    state: ActionState
    detail: str | None = None
    attempts: int = 0
