"""WebSocket transport — live snapshots and actions over one connection."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from litestar import WebSocket, websocket
from litestar.datastructures import State
from litestar.exceptions import WebSocketDisconnect

from curator_server.resources.fleet import (
    FleetResource,
    HostNotFoundError,
    UnknownActionError,
)
from curator_server.schemas.fleet import FleetSnapshot
from curator_server.services.action_dispatcher import (
    ActionHandle,
    DuplicateRequestError,
    InvalidPreconditionError,
)

logger = logging.getLogger(__name__)


class WebSocketHandler:
    """Stateful per-connection handler.

    Pushes a ``fleet.snapshot`` message for every store version the
    client keeps up with, and dispatches ``fleet.*`` actions. Outcomes of
    submitted actions arrive later as ``fleet.outcome`` messages.
    """

    def __init__(
        self,
        socket: WebSocket[object, object, State],
        fleet_resource: FleetResource,
    ) -> None:
        self._socket = socket
        self._fleet = fleet_resource
        self._send_lock = asyncio.Lock()
        self._waiters: set[asyncio.Task[None]] = set()

    async def send(self, message: dict[str, Any]) -> None:
        """Serialize sends from the subscription and the receive loop."""
        async with self._send_lock:
            await self._socket.send_json(message)

    async def push_snapshot(self, snapshot: FleetSnapshot) -> None:
        """Subscription callback."""
        await self.send({
            "action": "fleet.snapshot",
            "data": FleetResource.snapshot_to_dict(snapshot),
        })

    async def dispatch(self, action: str, data: dict[str, Any]) -> dict[str, Any]:
        """Route an action to the appropriate resource method."""
        if action == "fleet.snapshot":
            return {"action": action, "data": self._fleet.snapshot()}

        if action == "fleet.refresh":
            try:
                result = self._fleet.refresh(str(data.get("host_id", "")))
            except HostNotFoundError as error:
                return WebSocketHandler._error(action, 404, str(error))
            return {"action": action, "data": result}

        if action == "fleet.submit":
            host_id = str(data.get("host_id", "")).strip()
            kind = str(data.get("action", "")).strip()
            if not host_id or not kind:
                return WebSocketHandler._error(
                    action, 400, "host_id and action are required",
                )
            request_id = str(data.get("request_id") or "").strip() or None
            try:
                handle = await self._fleet.submit_action(host_id, kind, request_id)
            except UnknownActionError as error:
                return WebSocketHandler._error(action, 400, str(error))
            except HostNotFoundError as error:
                return WebSocketHandler._error(action, 404, str(error))
            except DuplicateRequestError as error:
                return WebSocketHandler._error(action, 409, str(error))
            except InvalidPreconditionError as error:
                return WebSocketHandler._error(action, 422, str(error))
            self._watch(handle)
            return {"action": action, "data": FleetResource.handle_to_dict(handle)}

        return WebSocketHandler._error(action, 400, f"Unknown action: {action}")

    async def run(self) -> None:
        """Main connection loop: accept, subscribe, then dispatch actions."""
        await self._socket.accept()
        subscription = self._fleet.subscribe(self.push_snapshot)
        try:
            while True:
                message = await self._socket.receive_json()
                action = str(message.get("action", ""))
                data = message.get("data")
                response = await self.dispatch(
                    action, data if isinstance(data, dict) else {},
                )
                await self.send(response)
        except WebSocketDisconnect:
            pass
        finally:
            subscription.cancel()
            for waiter in list(self._waiters):
                waiter.cancel()

    def _watch(self, handle: ActionHandle) -> None:
        """Forward the handle's outcome to the client when it completes."""

        async def forward() -> None:
            outcome = await handle.result()
            try:
                await self.send({
                    "action": "fleet.outcome",
                    "data": FleetResource.outcome_to_dict(outcome),
                })
            except WebSocketDisconnect:
                logger.debug("Client gone before outcome of %s", outcome.request_id)

        task = asyncio.get_running_loop().create_task(forward())
        self._waiters.add(task)
        task.add_done_callback(self._waiters.discard)

    @staticmethod
    def _error(action: str, code: int, detail: str) -> dict[str, Any]:
        return {"action": action, "error": {"code": code, "detail": detail}}


@websocket("/ws")
async def websocket_endpoint(socket: WebSocket[object, object, State]) -> None:
    """Handle WebSocket connections with JSON message dispatch."""
    handler = WebSocketHandler(socket=socket, fleet_resource=socket.app.state.fleet)
    await handler.run()
