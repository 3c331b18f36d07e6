from __future__ import annotations

import argparse
import asyncio
import logging
import threading
from typing import Any, Callable, Optional

from ..config import ControllerConfig, load_config
from ..control_logic import Orientation
from .errors import DroneError
from .events import DroneEvent
from .protocol import CHAR_BATTERY_STATUS, CHAR_FLIGHT_STATUS, FlipDirection
from .session import DroneSession
from .telemetry import FLIGHT_STATE_OFFSET, FlightState
from .transport import load_transport_class

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  help
  status
  connect
  takeoff | land | emergency
  flip [front|back|right|left]
  turn <degrees -180..180>
  forward | back | left | right | up | down | hover
  move on|off
  calibrate
  altitude <-100..100>
  orient <alpha> <beta> <gamma>
  notify battery <0..100>
  notify flight <landed|taking_off|hovering|unknown|landing|cut_off>
  watch on|off
  log on|off
  quit
"""

STEP_COMMANDS = {
    "forward": "move_forwards",
    "back": "move_backwards",
    "left": "move_left",
    "right": "move_right",
    "up": "move_up",
    "down": "move_down",
    "hover": "hover",
}


class SessionRunner:
    """Runs the session's event loop on a background thread for the console."""

    def __init__(self, session: DroneSession, call_timeout_s: float = 10.0) -> None:
        self.session = session
        self._call_timeout_s = call_timeout_s
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._thread_main, daemon=True, name="drone-session")

    def _thread_main(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def start(self) -> None:
        self._thread.start()

    def run(self, coro) -> Any:
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return fut.result(timeout=self._call_timeout_s)

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        async def _invoke():
            return fn(*args)

        return self.run(_invoke())

    def stop(self) -> None:
        if not self._thread.is_alive():
            return
        try:
            self.run(self.session.close())
        except Exception:
            logger.exception("session close failed")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=1.0)


def _parse_on_off(raw: str) -> bool:
    if raw == "on":
        return True
    if raw == "off":
        return False
    raise ValueError("expected 'on' or 'off'")


def _format_status(snapshot: dict) -> str:
    movement = snapshot["movement"]
    flight = snapshot["flight_status"]
    battery = snapshot["battery"]
    flight_text = "N/A" if flight is None else (flight["state"] or f"raw={flight['raw_state']}")
    battery_text = "N/A" if battery is None else f"{battery['percent']}%"
    stats = snapshot["stats"]
    return (
        f"state={snapshot['state']} "
        f"flight={flight_text} "
        f"battery={battery_text} "
        f"yaw={movement['yaw']} pitch={movement['pitch']} "
        f"roll={movement['roll']} alt={movement['altitude']} "
        f"steps={movement['drive_steps_remaining']} "
        f"loop={int(snapshot['drive_loop_running'])} "
        f"move={int(snapshot['movement_enabled'])} "
        f"tx_ok={stats['tx_frames_ok']} tx_err={stats['tx_errors']} "
        f"rx={stats['rx_notifications']} rx_err={stats['rx_decode_errors']}"
    )


def _print_event(event: DroneEvent) -> None:
    if event.kind in ("error", "low_battery", "state", "drive_loop_stopped", "flight_state_unrecognized"):
        print(f"[{event.kind}] {event.as_dict()}")


def _watch_loop(runner: SessionRunner, stop_event: threading.Event, enabled_ref: dict, period_s: float) -> None:
    while not stop_event.is_set():
        if enabled_ref.get("watch", False):
            try:
                print(_format_status(runner.call(runner.session.snapshot)))
            except Exception as exc:
                print(f"watch error: {exc}")
        stop_event.wait(period_s)


def _flight_payload(name: str) -> bytes:
    try:
        state = FlightState[name.upper()]
    except KeyError as exc:
        raise ValueError(f"unknown flight state: {name}") from exc
    payload = bytearray(FLIGHT_STATE_OFFSET + 1)
    payload[FLIGHT_STATE_OFFSET] = int(state)
    return bytes(payload)


def _simulate_notification(runner: SessionRunner, transport: Any, parts: list) -> None:
    notify = getattr(transport, "notify", None)
    if notify is None:
        raise ValueError("transport does not simulate notifications")
    if len(parts) != 3:
        raise ValueError("usage: notify battery <pct> | notify flight <state>")
    kind, value = parts[1].lower(), parts[2]
    if kind == "battery":
        level = int(value)
        if not 0 <= level <= 255:
            raise ValueError("battery byte must be within 0..255")
        delivered = runner.call(notify, CHAR_BATTERY_STATUS, bytes([0, 0, level]))
    elif kind == "flight":
        delivered = runner.call(notify, CHAR_FLIGHT_STATUS, _flight_payload(value))
    else:
        raise ValueError("usage: notify battery <pct> | notify flight <state>")
    if not delivered:
        print("no subscriber (connect first)")


def build_session(config: ControllerConfig) -> tuple:
    transport_factory = load_transport_class(config.transport)
    transport = transport_factory()
    return DroneSession(transport=transport, config=config), transport


def run_cli(args: argparse.Namespace) -> int:
    config = build_config(args)
    session, transport = build_session(config)
    runner = SessionRunner(session)
    server = None

    watch_state = {"watch": False}
    watch_stop = threading.Event()
    watch_thread = threading.Thread(
        target=_watch_loop,
        args=(runner, watch_stop, watch_state, 1.0 / max(0.1, float(args.status_print_hz))),
        daemon=True,
        name="drone-watch",
    )

    try:
        runner.start()
        runner.call(session.events.subscribe, _print_event)
        if args.serve:
            from ..control_server import ControlServer

            server = ControlServer(
                session,
                host=config.ws_host,
                port=config.ws_port,
                orientation_filter=config.build_orientation_filter(),
            )
            runner.run(server.start())
        watch_thread.start()
        print("minidrone controller ready. Type 'help' for commands.")

        while True:
            try:
                raw = input("drone> ").strip()
            except EOFError:
                raw = "quit"

            if not raw:
                continue

            parts = raw.split()
            cmd = parts[0].lower()

            try:
                if cmd == "help":
                    print(HELP_TEXT, end="")

                elif cmd == "status":
                    print(_format_status(runner.call(session.snapshot)))

                elif cmd == "connect":
                    runner.run(session.connect())
                    print(f"state={session.state.value}")

                elif cmd == "takeoff":
                    runner.run(session.take_off())
                    print(f"state={session.state.value}")

                elif cmd == "land":
                    runner.run(session.land())
                    print(f"state={session.state.value}")

                elif cmd == "emergency":
                    runner.call(session.emergency_cut_off)
                    print("emergency cut off sent")

                elif cmd == "flip":
                    if len(parts) > 2:
                        raise ValueError("usage: flip [front|back|right|left]")
                    name = parts[1].upper() if len(parts) == 2 else "FRONT"
                    if name not in FlipDirection.__members__:
                        raise ValueError("usage: flip [front|back|right|left]")
                    runner.call(session.flip, FlipDirection[name])
                    print(f"flip {name.lower()} queued")

                elif cmd == "turn":
                    if len(parts) != 2:
                        raise ValueError("usage: turn <degrees>")
                    runner.call(session.turn, int(parts[1]))
                    print(f"turn {int(parts[1])} queued")

                elif cmd in STEP_COMMANDS:
                    runner.call(getattr(session, STEP_COMMANDS[cmd]))
                    print(cmd)

                elif cmd == "move":
                    if len(parts) != 2:
                        raise ValueError("usage: move on|off")
                    if _parse_on_off(parts[1].lower()):
                        runner.call(session.start_movement)
                    else:
                        runner.call(session.stop_movement)
                    print(f"move={parts[1].lower()}")

                elif cmd == "calibrate":
                    runner.call(session.calibrate)
                    print("calibration pending")

                elif cmd == "altitude":
                    if len(parts) != 2:
                        raise ValueError("usage: altitude <-100..100>")
                    print(f"altitude={runner.call(session.set_altitude, int(parts[1]))}")

                elif cmd == "orient":
                    if len(parts) != 4:
                        raise ValueError("usage: orient <alpha> <beta> <gamma>")
                    sample = Orientation(float(parts[1]), float(parts[2]), float(parts[3]))
                    movement = runner.call(session.on_orientation, sample)
                    print("movement unchanged" if movement is None else f"movement={movement.as_dict()}")

                elif cmd == "notify":
                    _simulate_notification(runner, transport, parts)

                elif cmd == "watch":
                    if len(parts) != 2:
                        raise ValueError("usage: watch on|off")
                    watch_state["watch"] = _parse_on_off(parts[1].lower())
                    print(f"watch={'on' if watch_state['watch'] else 'off'}")

                elif cmd == "log":
                    if len(parts) != 2:
                        raise ValueError("usage: log on|off")
                    enabled = _parse_on_off(parts[1].lower())
                    session.log_frames = enabled
                    logging.getLogger("minidrone_controller").setLevel(logging.INFO if enabled else logging.NOTSET)
                    print(f"log={'on' if enabled else 'off'}")

                elif cmd == "quit":
                    print("exiting...")
                    break

                else:
                    print("unknown command. try: help")

            except (DroneError, ValueError) as exc:
                print(f"error: {exc}")

    except KeyboardInterrupt:
        print("\ninterrupted")

    finally:
        watch_stop.set()
        if watch_thread.is_alive():
            watch_thread.join(timeout=1.0)
        if server is not None:
            try:
                runner.run(server.close())
            except Exception:
                logger.exception("server close failed")
        runner.stop()

    return 0


def build_config(args: argparse.Namespace) -> ControllerConfig:
    config = load_config(args.config)
    return config.with_overrides(
        transport=args.transport,
        drive_interval_s=args.drive_interval,
        default_speed=args.speed,
        handshake_delay_s=args.handshake_delay,
        low_battery_pct=args.low_battery,
        max_speed=args.max_speed,
        orientation_hz=args.orientation_hz,
        ws_host=args.ws_host,
        ws_port=args.ws_port,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Console for Parrot BLE mini drones")
    parser.add_argument("--config", default=None, help="Optional JSON config file")
    parser.add_argument(
        "--transport",
        default=None,
        help="Transport factory as module:Attribute (default: in-memory mock)",
    )
    parser.add_argument("--drive-interval", type=float, default=None, help="Drive loop period in seconds (default: 0.1)")
    parser.add_argument("--speed", type=int, default=None, help="Speed of discrete moves 0..100 (default: 50)")
    parser.add_argument("--max-speed", type=int, default=None, help="Orientation control speed cap (default: 50)")
    parser.add_argument("--orientation-hz", type=float, default=None, help="Max orientation samples per second (default: 30)")
    parser.add_argument("--handshake-delay", type=float, default=None, help="Delay before handshake in seconds")
    parser.add_argument("--low-battery", type=int, default=None, help="Low battery warning threshold in percent")
    parser.add_argument("--serve", action="store_true", help="Also run the WebSocket control server")
    parser.add_argument("--ws-host", default=None, help="WebSocket host (default: 0.0.0.0)")
    parser.add_argument("--ws-port", type=int, default=None, help="WebSocket port (default: 8765)")
    parser.add_argument(
        "--status-print-hz",
        type=float,
        default=2.0,
        help="Status print rate when watch=on (default: 2)",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    return parser


def configure_logging(level_name: Optional[str]) -> None:
    level = getattr(logging, str(level_name or "WARNING").upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"unknown log level: {level_name}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
