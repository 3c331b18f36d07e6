from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import websockets

from .ble_comms.errors import DroneError
from .ble_comms.events import DroneEvent
from .ble_comms.protocol import FlipDirection
from .ble_comms.scheduler import Clock, MonotonicClock
from .ble_comms.session import DroneSession
from .control_logic import OrientationFilter

logger = logging.getLogger(__name__)

SIMPLE_COMMANDS = frozenset(
    {
        "hover",
        "move_forwards",
        "move_backwards",
        "move_left",
        "move_right",
        "move_up",
        "move_down",
        "start_movement",
        "stop_movement",
        "calibrate",
    }
)


def parse_flip_direction(raw: Any) -> FlipDirection:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return FlipDirection(raw)
    try:
        return FlipDirection[str(raw).strip().upper()]
    except KeyError as exc:
        raise ValueError(f"unknown flip direction: {raw!r}") from exc


class ControlServer:
    """WebSocket bridge between a browser controller and a ``DroneSession``.

    Clients send JSON objects with any of ``orientation``, ``altitude`` and
    ``command`` and get the session snapshot back. Session events are pushed
    to every connected client as they happen.
    """

    def __init__(
        self,
        session: DroneSession,
        host: str = "0.0.0.0",
        port: int = 8765,
        orientation_filter: Optional[OrientationFilter] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._session = session
        self._host = host
        self._port = int(port)
        if orientation_filter is None:
            orientation_filter = session.config.build_orientation_filter()
        self._filter = orientation_filter
        self._clock = clock if clock is not None else MonotonicClock()
        self._clients: Set[Any] = set()
        self._send_tasks: Set[asyncio.Task] = set()
        self._server = None
        self._unsubscribe = session.events.subscribe(self._on_event)

    async def start(self) -> None:
        self._server = await websockets.serve(self._ws_handler, self._host, self._port)
        logger.info("WebSocket server listening on ws://%s:%d", self._host, self._port)

    async def close(self) -> None:
        self._unsubscribe()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _ws_handler(self, websocket) -> None:
        self._clients.add(websocket)
        try:
            await websocket.send(
                json.dumps(
                    {"ok": True, "message": "minidrone controller ready", "state": self._session.snapshot()},
                    ensure_ascii=True,
                )
            )
            async for raw in websocket:
                response = await self.handle_raw(raw)
                await websocket.send(json.dumps(response, ensure_ascii=True))
        except websockets.ConnectionClosed:
            logger.debug("client disconnected")
        finally:
            self._clients.discard(websocket)

    def _on_event(self, event: DroneEvent) -> None:
        if not self._clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        message = json.dumps(event.as_dict(), ensure_ascii=True)
        for websocket in list(self._clients):
            task = loop.create_task(self._send(websocket, message))
            self._send_tasks.add(task)
            task.add_done_callback(self._send_tasks.discard)

    async def _send(self, websocket, message: str) -> None:
        try:
            await websocket.send(message)
        except websockets.ConnectionClosed:
            self._clients.discard(websocket)

    async def handle_raw(self, raw: Any) -> Dict[str, Any]:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            return {"ok": False, "error": f"invalid_json: {exc}"}

        if not isinstance(data, dict):
            return {"ok": False, "error": "payload must be object"}

        try:
            response: Dict[str, Any] = {"ok": True}
            if "orientation" in data:
                response["movement"] = self._handle_orientation(data["orientation"])
            if "altitude" in data:
                response["altitude"] = self._session.set_altitude(int(data["altitude"]))
            if "command" in data:
                await self._run_command(str(data["command"]).strip().lower(), data)
            response["state"] = self._session.snapshot()
            return response

        except (DroneError, TypeError, ValueError) as exc:
            return {"ok": False, "error": str(exc)}

    def _handle_orientation(self, raw: Any) -> Optional[dict]:
        if not isinstance(raw, dict):
            raise ValueError("'orientation' must be object with alpha/beta/gamma")
        sample = self._filter.accept(
            raw.get("alpha"),
            raw.get("beta"),
            raw.get("gamma"),
            now_s=self._clock.monotonic(),
        )
        if sample is None:
            return None
        movement = self._session.on_orientation(sample)
        return movement.as_dict() if movement is not None else None

    async def _run_command(self, command: str, data: Dict[str, Any]) -> None:
        session = self._session
        if command == "connect":
            await session.connect()
        elif command == "take_off":
            await session.take_off()
        elif command == "land":
            await session.land()
        elif command == "emergency":
            session.emergency_cut_off()
        elif command == "flip":
            session.flip(parse_flip_direction(data.get("direction", "front")))
        elif command == "turn":
            session.turn(int(data.get("degrees", 180)))
        elif command in SIMPLE_COMMANDS:
            if command == "start_movement":
                self._filter.reset()
            getattr(session, command)()
        else:
            raise ValueError(f"unknown command: {command!r}")
