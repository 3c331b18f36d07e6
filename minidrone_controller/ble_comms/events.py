from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Callable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DroneEvent:
    kind = "event"

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload["event"] = self.kind
        return payload


@dataclass(frozen=True, slots=True)
class MovementEvent(DroneEvent):
    yaw: int
    pitch: int
    roll: int
    altitude: int

    kind = "movement"


@dataclass(frozen=True, slots=True)
class StateChangedEvent(DroneEvent):
    previous: str
    current: str

    kind = "state"


@dataclass(frozen=True, slots=True)
class FlightStateEvent(DroneEvent):
    state: str
    flying: bool

    kind = "flight_state"


@dataclass(frozen=True, slots=True)
class UnrecognizedFlightStateEvent(DroneEvent):
    raw_state: int

    kind = "flight_state_unrecognized"


@dataclass(frozen=True, slots=True)
class BatteryEvent(DroneEvent):
    percent: int

    kind = "battery"


@dataclass(frozen=True, slots=True)
class LowBatteryWarning(DroneEvent):
    percent: int
    threshold: int

    kind = "low_battery"


@dataclass(frozen=True, slots=True)
class ErrorEvent(DroneEvent):
    source: str
    error_type: str
    message: str

    kind = "error"


@dataclass(frozen=True, slots=True)
class DriveLoopStoppedEvent(DroneEvent):
    reason: str
    ticks: int

    kind = "drive_loop_stopped"


Observer = Callable[[DroneEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._observers: List[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: DroneEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Observer %r failed on %s", observer, event.kind)


class EventRecorder:
    """Observer that keeps every event, mostly for tests and the console."""

    def __init__(self) -> None:
        self.events: List[DroneEvent] = []

    def __call__(self, event: DroneEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]

    def clear(self) -> None:
        self.events.clear()
