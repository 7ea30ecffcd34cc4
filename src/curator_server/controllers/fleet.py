"""Fleet controller — thin HTTP adapter for FleetResource."""

from __future__ import annotations

from typing import Any

from litestar import Controller, delete, get, post
from litestar.exceptions import HTTPException
from litestar.response import Response

from curator_server.resources.fleet import (
    FleetResource,
    HostAlreadyExistsError,
    HostNotFoundError,
    InvalidHostError,
    UnknownActionError,
)
from curator_server.services.action_dispatcher import (
    DuplicateRequestError,
    InvalidPreconditionError,
)


class FleetController(Controller):
    """HTTP adapter for fleet snapshots, membership, and actions."""

    path = "/api/fleet"

    @get("/")
    async def snapshot(self, fleet_resource: FleetResource) -> dict[str, Any]:
        """Current fleet snapshot."""
        return fleet_resource.snapshot()

    @get("/hosts/{host_id:str}")
    async def get_host(
        self, host_id: str, fleet_resource: FleetResource,
    ) -> dict[str, Any]:
        """One host with its latest accepted status."""
        try:
            return fleet_resource.get_host(host_id)
        except HostNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error

    @post("/hosts", status_code=201)
    async def add_host(
        self, data: dict[str, Any], fleet_resource: FleetResource,
    ) -> dict[str, Any]:
        """Add a host to the fleet.

        Body: {"id", "name", "address", "host_class"?, "capabilities"?}
        """
        try:
            return await fleet_resource.add_host(data)
        except InvalidHostError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except HostAlreadyExistsError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error

    @delete("/hosts/{host_id:str}", status_code=200)
    async def remove_host(
        self, host_id: str, fleet_resource: FleetResource,
    ) -> dict[str, str]:
        """Remove a host and stop polling it."""
        try:
            return await fleet_resource.remove_host(host_id)
        except HostNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error

    @post("/hosts/{host_id:str}/refresh", status_code=202)
    async def refresh_host(
        self, host_id: str, fleet_resource: FleetResource,
    ) -> dict[str, str]:
        """Poll a host now."""
        try:
            return fleet_resource.refresh(host_id)
        except HostNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error

    @post("/actions")
    async def submit_action(
        self,
        data: dict[str, str],
        fleet_resource: FleetResource,
        wait: bool = False,
    ) -> Response[dict[str, Any]]:
        """Dispatch an action.

        Body: {"host_id": "...", "action": "restart|powerOff|sshOpen",
        "request_id": "..."?}. Returns 202 with the pending request, or
        200 with the terminal outcome when ``?wait=true``.
        """
        host_id = str(data.get("host_id", "")).strip()
        action = str(data.get("action", "")).strip()
        if not host_id or not action:
            raise HTTPException(
                status_code=400, detail="host_id and action are required",
            )
        request_id = str(data.get("request_id") or "").strip() or None
        try:
            handle = await fleet_resource.submit_action(host_id, action, request_id)
        except UnknownActionError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except HostNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except DuplicateRequestError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error
        except InvalidPreconditionError as error:
            raise HTTPException(status_code=422, detail=str(error)) from error

        if wait:
            outcome = await handle.result()
            return Response(
                content=FleetResource.outcome_to_dict(outcome), status_code=200,
            )
        return Response(content=FleetResource.handle_to_dict(handle), status_code=202)
