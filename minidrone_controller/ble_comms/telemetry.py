from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .errors import ProtocolDecodeError

FLIGHT_STATE_OFFSET = 6
LOW_BATTERY_PCT = 10


class FlightState(IntEnum):
    LANDED = 0
    TAKING_OFF = 1
    HOVERING = 2
    UNKNOWN = 3
    LANDING = 4
    CUT_OFF = 5


FLYING_STATES = frozenset(
    {FlightState.TAKING_OFF, FlightState.HOVERING, FlightState.UNKNOWN, FlightState.LANDING}
)


@dataclass(slots=True)
class FlightStatus:
    raw_state: int
    state: Optional[FlightState]
    rx_monotonic_s: float

    @property
    def recognized(self) -> bool:
        return self.state is not None

    @property
    def flying(self) -> bool:
        return self.state in FLYING_STATES

    @property
    def hovering(self) -> bool:
        return self.state == FlightState.HOVERING

    def as_dict(self) -> dict:
        return {
            "raw_state": self.raw_state,
            "state": self.state.name if self.state is not None else None,
            "recognized": self.recognized,
            "flying": self.flying,
            "rx_monotonic_s": self.rx_monotonic_s,
        }


@dataclass(slots=True)
class BatteryStatus:
    percent: int
    low: bool
    rx_monotonic_s: float

    def as_dict(self) -> dict:
        return {
            "percent": self.percent,
            "low": self.low,
            "rx_monotonic_s": self.rx_monotonic_s,
        }


def parse_flight_status(payload: bytes, rx_monotonic_s: float = 0.0) -> FlightStatus:
    if len(payload) <= FLIGHT_STATE_OFFSET:
        raise ProtocolDecodeError(f"Flight status payload too short: {len(payload)} bytes")

    raw_state = payload[FLIGHT_STATE_OFFSET]
    try:
        state: Optional[FlightState] = FlightState(raw_state)
    except ValueError:
        state = None
    return FlightStatus(raw_state=raw_state, state=state, rx_monotonic_s=rx_monotonic_s)


def parse_battery_status(
    payload: bytes,
    rx_monotonic_s: float = 0.0,
    low_threshold_pct: int = LOW_BATTERY_PCT,
) -> BatteryStatus:
    if not payload:
        raise ProtocolDecodeError("Empty battery status payload")

    percent = payload[-1]
    if percent > 100:
        raise ProtocolDecodeError(f"Invalid battery level: {percent}")
    return BatteryStatus(percent=percent, low=percent < low_threshold_pct, rx_monotonic_s=rx_monotonic_s)
