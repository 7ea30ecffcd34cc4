"""HTTP transport plugin — hosts running a small JSON status agent."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

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

logger = logging.getLogger(__name__)


class HttpTransport(TransportAdapter):
    """Speaks to a host agent over HTTP.

    ``GET {base}/status`` returns ``{"state", "cpu", "memory",
    "uptime_seconds"}``; ``POST {base}/actions/{kind}`` returns
    ``{"detail", "status"}`` where ``status`` has the same shape.
    Observations are stamped with the local time the request was sent,
    so host clock skew never affects ordering.
    """

    def __init__(self, *, scheme: str = "http") -> None:
        self._scheme = scheme

    def base_url(self, host: Host) -> str:
        """Build the agent base URL from the host address."""
        address = host.address.rstrip("/")
        if "://" in address:
            return address
        return f"{self._scheme}://{address}"

    async def fetch_status(self, host: Host, *, timeout: float) -> HostStatus:
        """GET the host's status document."""
        sent_at = Time.now()
        body = await self._request("GET", host, "/status", timeout)
        return HttpTransport._parse_status(host, body, StatusSource.POLL, sent_at)

    async def invoke_action(
        self, host: Host, action: ActionKind, *, timeout: float,
    ) -> ActionReceipt:
        """POST the action and parse the acknowledgement."""
        sent_at = Time.now()
        body = await self._request("POST", host, f"/actions/{action.value}", timeout)
        raw_status = body.get("status")
        status = (
            HttpTransport._parse_status(host, raw_status, StatusSource.ACTION, sent_at)
            if isinstance(raw_status, dict)
            else None
        )
        detail = body.get("detail")
        return ActionReceipt(
            detail=str(detail) if detail is not None else None,
            status=status,
        )

    async def _request(
        self, method: str, host: Host, path: str, timeout: float,
    ) -> dict[str, Any]:
        """Send one request and return the decoded JSON object.

        Raises:
            TransportError: Mapped from httpx errors, non-2xx codes, or bad JSON.
        """
        url = f"{self.base_url(host)}{path}"
        try:
            async with httpx.AsyncClient(timeout=timeout) as http_client:
                response = await http_client.request(method, url)
        except httpx.TimeoutException as error:
            raise TransportError(FailureKind.TIMEOUT, f"{method} {url} timed out") from error
        except httpx.NetworkError as error:
            raise TransportError(
                FailureKind.CONNECTION_REFUSED, f"{method} {url}: {error}",
            ) from error
        except httpx.HTTPError as error:
            raise TransportError(
                FailureKind.PROTOCOL_ERROR, f"{method} {url}: {error}",
            ) from error

        if not 200 <= response.status_code < 300:
            raise TransportError(
                FailureKind.PROTOCOL_ERROR,
                f"{method} {url} returned {response.status_code}",
            )
        try:
            body = response.json()
        except ValueError as error:
            raise TransportError(
                FailureKind.PROTOCOL_ERROR, f"{method} {url} returned invalid JSON",
            ) from error
        if not isinstance(body, dict):
            raise TransportError(
                FailureKind.PROTOCOL_ERROR, f"{method} {url} returned a non-object body",
            )
        return body

    @staticmethod
    def _parse_status(
        host: Host, body: dict[str, Any], source: StatusSource, observed_at: datetime,
    ) -> HostStatus:
        """Validate an agent status document into a HostStatus."""
        try:
            status = HostStatus(
                host_id=host.id,
                state=LifecycleState(str(body.get("state", "")).lower()),
                cpu=body.get("cpu"),
                memory=body.get("memory"),
                uptime_seconds=body.get("uptime_seconds"),
                observed_at=observed_at,
                source=source,
            )
        except (ValueError, ValidationError) as error:
            logger.debug("Rejecting status document from %s: %s", host.id, error)
            raise TransportError(
                FailureKind.PROTOCOL_ERROR, f"malformed status from {host.id}",
            ) from error
        return status
