from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Set, Tuple

from ..config import ControllerConfig
from ..control_logic import Movement, Orientation, OrientationMapper
from .controller import MovementState
from .errors import InvalidStateError, ProtocolDecodeError, TransportError
from .events import (
    BatteryEvent,
    DriveLoopStoppedEvent,
    ErrorEvent,
    EventBus,
    FlightStateEvent,
    LowBatteryWarning,
    MovementEvent,
    StateChangedEvent,
    UnrecognizedFlightStateEvent,
)
from .protocol import (
    CHAR_BATTERY_STATUS,
    CHAR_FLIGHT_STATUS,
    DISCOVERY_FILTER,
    SERVICE_READ,
    CommandCodec,
    CommandFrame,
    FlipDirection,
)
from .scheduler import Clock, MonotonicClock, RepeatingTask
from .telemetry import (
    BatteryStatus,
    FlightState,
    FlightStatus,
    parse_battery_status,
    parse_flight_status,
)
from .transport import Transport

logger = logging.getLogger(__name__)


class DroneState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    AIRBORNE = "airborne"
    LANDING = "landing"
    EMERGENCY = "emergency"
    ERROR = "error"


CONNECTABLE_STATES = frozenset({DroneState.IDLE, DroneState.ERROR, DroneState.EMERGENCY})
TAKE_OFF_STATES = frozenset({DroneState.READY, DroneState.EMERGENCY})
LAND_STATES = frozenset({DroneState.AIRBORNE, DroneState.ERROR})


@dataclass(slots=True)
class SessionStats:
    tx_frames_ok: int = 0
    tx_errors: int = 0
    rx_notifications: int = 0
    rx_decode_errors: int = 0


QueuedCommand = Tuple[str, Callable[[], CommandFrame]]


class DroneSession:
    """Lifecycle, drive loop and safety gating for one drone link.

    All state lives on the event loop thread. While airborne the drive loop
    writes one frame per tick: a queued one-shot command if there is one,
    otherwise a PCMD frame built from the current movement. A write failure
    ends the loop and moves the session to ``ERROR``; ``connect`` performs a
    fresh handshake from there.
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[ControllerConfig] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
        mapper: Optional[OrientationMapper] = None,
        codec: Optional[CommandCodec] = None,
    ) -> None:
        self.config = config if config is not None else ControllerConfig()
        self._transport = transport
        self._clock = clock if clock is not None else MonotonicClock()
        self.events = events if events is not None else EventBus()
        self.mapper = mapper if mapper is not None else self.config.build_mapper()
        self.codec = codec if codec is not None else CommandCodec()

        self.state = DroneState.IDLE
        self.movement = MovementState()
        self.stats = SessionStats()
        self.flight_status: Optional[FlightStatus] = None
        self.battery: Optional[BatteryStatus] = None
        self.log_frames = False

        self._queued: Optional[QueuedCommand] = None
        self._seen_flying = False
        self._phase = 0
        self._command_lock = asyncio.Lock()
        self._pending_writes: Set[asyncio.Task] = set()
        self._drive_loop = RepeatingTask(
            self._drive_tick,
            self.config.drive_interval_s,
            self._clock,
            name="drive-loop",
            on_failure=self._on_drive_loop_failure,
        )

    # -- observability -------------------------------------------------

    @property
    def drive_loop_running(self) -> bool:
        return self._drive_loop.running

    @property
    def queued_command(self) -> Optional[str]:
        return self._queued[0] if self._queued is not None else None

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "movement": self.movement.to_dict(),
            "queued_command": self.queued_command,
            "drive_loop_running": self.drive_loop_running,
            "flight_status": self.flight_status.as_dict() if self.flight_status else None,
            "battery": self.battery.as_dict() if self.battery else None,
            "movement_enabled": self.mapper.enabled,
            "calibration_pending": self.mapper.calibration_pending,
            "orientation_diff": self.mapper.diff.as_dict(),
            "stats": asdict(self.stats),
        }

    def _set_state(self, state: DroneState) -> None:
        if state == self.state:
            return
        previous = self.state
        self.state = state
        logger.info("State %s -> %s", previous.value, state.value)
        self.events.publish(StateChangedEvent(previous=previous.value, current=state.value))

    def _report_error(self, source: str, exc: BaseException) -> None:
        logger.error("%s failed: %s", source, exc)
        self.events.publish(ErrorEvent(source=source, error_type=type(exc).__name__, message=str(exc)))

    def _publish_movement(self) -> None:
        self.events.publish(
            MovementEvent(
                yaw=self.movement.yaw,
                pitch=self.movement.pitch,
                roll=self.movement.roll,
                altitude=self.movement.altitude,
            )
        )

    def _publish_loop_stopped(self, reason: str) -> None:
        self.events.publish(DriveLoopStoppedEvent(reason=reason, ticks=self._drive_loop.ticks))

    # -- transport ------------------------------------------------------

    async def _call_transport(self, operation: str, call: Awaitable[None]) -> None:
        try:
            await call
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(f"{operation} failed: {exc}") from exc

    async def _write(self, frame: CommandFrame) -> None:
        if self.log_frames:
            logger.info("[TX] %s", frame.hex())
        else:
            logger.debug("[TX] %s", frame.hex())
        try:
            await self._call_transport(
                "write",
                self._transport.write(frame.service, frame.characteristic, frame.data),
            )
        except TransportError:
            self.stats.tx_errors += 1
            raise
        self.stats.tx_frames_ok += 1

    # -- lifecycle ------------------------------------------------------

    def _superseded(self, phase: int, operation: str) -> bool:
        if phase == self._phase:
            return False
        logger.warning("%s interrupted by cut off or close", operation)
        return True

    async def connect(self) -> None:
        if self.state not in CONNECTABLE_STATES:
            raise InvalidStateError("connect", self.state.value)

        phase = self._phase
        self._drive_loop.cancel()
        self._queued = None
        self._set_state(DroneState.CONNECTING)
        try:
            await self._call_transport("connect", self._transport.connect(DISCOVERY_FILTER))
        except TransportError as exc:
            self._report_error("connect", exc)
            if phase == self._phase:
                self._set_state(DroneState.ERROR)
            raise
        if self._superseded(phase, "Connect"):
            return

        self._set_state(DroneState.HANDSHAKING)
        await self._start_notifications()
        if self._superseded(phase, "Connect"):
            return
        await self._clock.sleep(self.config.handshake_delay_s)
        if self._superseded(phase, "Handshake"):
            return

        logger.debug("Handshake")
        try:
            await self._write(self.codec.current_date())
        except TransportError as exc:
            self._report_error("handshake", exc)
            if phase == self._phase:
                self._set_state(DroneState.ERROR)
            raise
        if self._superseded(phase, "Handshake"):
            return
        logger.debug("Completed handshake")

        if self.flight_status is not None and self.flight_status.flying:
            logger.warning("Drone still flying after handshake, resuming drive loop")
            self.movement.hover()
            self._set_state(DroneState.AIRBORNE)
            self._drive_loop.start()
        else:
            self._set_state(DroneState.READY)

    async def _start_notifications(self) -> None:
        logger.debug("Start notifications...")
        subscriptions = (
            (CHAR_FLIGHT_STATUS, self._on_flight_status),
            (CHAR_BATTERY_STATUS, self._on_battery_status),
        )
        for characteristic, handler in subscriptions:
            try:
                await self._call_transport(
                    "start_notifications",
                    self._transport.start_notifications(SERVICE_READ, characteristic, handler),
                )
            except TransportError as exc:
                self._report_error("notifications", exc)
        logger.debug("Finished starting notifications")

    async def take_off(self) -> None:
        async with self._command_lock:
            if self.state not in TAKE_OFF_STATES:
                raise InvalidStateError("take off", self.state.value)

            logger.info("Take off...")
            phase = self._phase
            try:
                # flat trim is expected right before taking off
                await self._write(self.codec.flat_trim())
                if phase == self._phase:
                    await self._write(self.codec.take_off())
            except TransportError as exc:
                self._report_error("take_off", exc)
                if phase == self._phase:
                    self._set_state(DroneState.READY)
                raise

            if self._superseded(phase, "Take off"):
                return

            self._seen_flying = False
            self._queued = None
            self.movement.hover()
            self._set_state(DroneState.AIRBORNE)
            logger.debug("Start drive loop")
            self._drive_loop.start()

    async def land(self) -> None:
        async with self._command_lock:
            if self.state not in LAND_STATES:
                raise InvalidStateError("land", self.state.value)

            logger.info("Land...")
            phase = self._phase
            self._set_state(DroneState.LANDING)
            self._queued = None
            was_running = self._drive_loop.running
            await self._drive_loop.stop()
            self.movement.hover()
            if was_running:
                self._publish_loop_stopped("land")

            # one more interval so a tick that was already due cannot follow the land frame
            await self._clock.sleep(self.config.drive_interval_s)
            if self._superseded(phase, "Landing"):
                return

            try:
                await self._write(self.codec.landing())
            except TransportError as exc:
                self._report_error("land", exc)
                self._set_state(DroneState.ERROR)
                raise
            self._set_state(DroneState.READY)

    def emergency_cut_off(self) -> asyncio.Task:
        """Cut the motors now; the frame is written in the background.

        The returned task resolves when the write finishes. Failures are
        logged and published as an error event whether or not it is awaited.
        """
        logger.warning("Emergency cut off!")
        self._phase += 1
        was_running = self._drive_loop.running
        self._drive_loop.cancel()
        self._queued = None
        self.movement.hover()
        if was_running:
            self._publish_loop_stopped("emergency")
        self._set_state(DroneState.EMERGENCY)

        task = asyncio.get_running_loop().create_task(self._write(self.codec.emergency()))
        self._pending_writes.add(task)
        task.add_done_callback(self._on_emergency_written)
        return task

    def _on_emergency_written(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._report_error("emergency", exc)

    async def close(self) -> None:
        self._phase += 1
        self._drive_loop.cancel()
        self._queued = None
        if self._pending_writes:
            await asyncio.wait(set(self._pending_writes))

    # -- drive loop -----------------------------------------------------

    async def _drive_tick(self) -> None:
        queued = self._queued
        if queued is not None:
            self._queued = None
            label, build = queued
            logger.debug("Write queued command: %s", label)
            await self._write(build())
            return

        logger.debug("Drive... %s", self.movement.to_dict())
        await self._write(self.codec.pcmd(self.movement))
        if self.movement.consume_step():
            logger.debug("Move complete, reset to hover state")
            self._publish_movement()

    def _on_drive_loop_failure(self, exc: BaseException) -> None:
        self._queued = None
        self.movement.hover()
        self._report_error("drive_loop", exc)
        self._publish_loop_stopped(f"error: {exc}")
        self._set_state(DroneState.ERROR)

    def _require_airborne(self, operation: str) -> None:
        if self.state != DroneState.AIRBORNE:
            raise InvalidStateError(operation, self.state.value)

    def _queue(self, label: str, build: Callable[[], CommandFrame]) -> None:
        if self._queued is not None:
            logger.debug("Replacing queued command %s with %s", self._queued[0], label)
        self._queued = (label, build)

    def flip(self, direction: FlipDirection = FlipDirection.FRONT) -> None:
        self._require_airborne("flip")
        direction = FlipDirection(direction)
        logger.info("Flip %s", direction.name.lower())
        self._queue(f"flip {direction.name.lower()}", lambda: self.codec.flip(direction))

    def turn(self, degrees: int = 180) -> None:
        self._require_airborne("turn")
        degrees = int(degrees)
        logger.info("Turn %d degrees", degrees)
        self._queue(f"turn {degrees}", lambda: self.codec.cap(degrees))

    # -- movement -------------------------------------------------------

    def set_movement(self, movement: Movement) -> None:
        self.movement.hover()
        self.movement.set_speeds(
            yaw=movement.yaw,
            pitch=movement.pitch,
            roll=movement.roll,
            altitude=movement.altitude,
        )
        self._publish_movement()

    def hover(self) -> None:
        logger.debug("Hover")
        self.movement.hover()
        self._publish_movement()

    def _step_move(self, axis: str, speed: int) -> None:
        self._require_airborne(f"move {axis}")
        steps = self.config.drive_steps
        logger.debug("Start movement of %s with speed %d for %d steps", axis, speed, steps)
        self.movement.start_steps(axis, speed, steps)
        self._publish_movement()

    def move_forwards(self) -> None:
        self._step_move("pitch", self.config.default_speed)

    def move_backwards(self) -> None:
        self._step_move("pitch", -self.config.default_speed)

    def move_left(self) -> None:
        self._step_move("roll", -self.config.default_speed)

    def move_right(self) -> None:
        self._step_move("roll", self.config.default_speed)

    def move_up(self) -> None:
        self._step_move("altitude", self.config.default_speed)

    def move_down(self) -> None:
        self._step_move("altitude", -self.config.default_speed)

    def start_movement(self) -> None:
        logger.info("Start movement")
        self.mapper.start()

    def stop_movement(self) -> None:
        logger.info("Stop movement")
        self.mapper.stop()
        self.hover()

    def calibrate(self) -> None:
        self.mapper.calibrate()

    def set_altitude(self, value: int) -> int:
        movement = self.mapper.with_altitude(value)
        if movement is not None:
            self.set_movement(movement)
        return self.mapper.altitude

    def on_orientation(self, sample: Orientation) -> Optional[Movement]:
        movement = self.mapper.feed(sample)
        if movement is not None:
            self.set_movement(movement)
        return movement

    # -- notifications --------------------------------------------------

    def _log_rx(self, name: str, payload: bytes) -> None:
        if self.log_frames:
            logger.info("[RX] %s %s", name, payload.hex(" "))
        else:
            logger.debug("[RX] %s %s", name, payload.hex(" "))

    def _on_flight_status(self, payload: bytes) -> None:
        self.stats.rx_notifications += 1
        self._log_rx("flight_status", payload)
        try:
            status = parse_flight_status(payload, self._clock.monotonic())
        except ProtocolDecodeError as exc:
            self.stats.rx_decode_errors += 1
            self._report_error("flight_status", exc)
            return

        self.flight_status = status
        if status.state is None:
            logger.warning("Unrecognized flight state %d", status.raw_state)
            self.events.publish(UnrecognizedFlightStateEvent(raw_state=status.raw_state))
            return

        if status.hovering:
            logger.info("Hovering - ready to go")
        self.events.publish(FlightStateEvent(state=status.state.name.lower(), flying=status.flying))
        self._apply_flight_state(status)

    def _apply_flight_state(self, status: FlightStatus) -> None:
        if status.flying:
            self._seen_flying = True
            return

        if status.state == FlightState.CUT_OFF and self.state in (
            DroneState.AIRBORNE,
            DroneState.LANDING,
        ):
            logger.warning("Drone reported motor cut off")
            self._phase += 1
            was_running = self._drive_loop.running
            self._drive_loop.cancel()
            self._queued = None
            self.movement.hover()
            if was_running:
                self._publish_loop_stopped("cut_off")
            self._set_state(DroneState.EMERGENCY)

        elif status.state == FlightState.LANDED and self.state == DroneState.AIRBORNE and self._seen_flying:
            logger.info("Drone reported landed")
            was_running = self._drive_loop.running
            self._drive_loop.cancel()
            self._queued = None
            self.movement.hover()
            if was_running:
                self._publish_loop_stopped("landed")
            self._set_state(DroneState.READY)

    def _on_battery_status(self, payload: bytes) -> None:
        self.stats.rx_notifications += 1
        self._log_rx("battery", payload)
        try:
            status = parse_battery_status(
                payload,
                self._clock.monotonic(),
                low_threshold_pct=self.config.low_battery_pct,
            )
        except ProtocolDecodeError as exc:
            self.stats.rx_decode_errors += 1
            self._report_error("battery", exc)
            return

        self.battery = status
        logger.debug("Battery Level: %d%%", status.percent)
        self.events.publish(BatteryEvent(percent=status.percent))
        if status.low:
            logger.warning("Battery level too low: %d%%", status.percent)
            self.events.publish(
                LowBatteryWarning(percent=status.percent, threshold=self.config.low_battery_pct)
            )
