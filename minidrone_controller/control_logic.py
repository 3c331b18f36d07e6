from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Optional

from .ble_comms.controller import clamp_speed

FULL_TURN = 360.0
HALF_TURN = 180.0


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def angle_diff(center: float, current: float) -> float:
    """Signed shortest rotation from ``current`` to ``center``, in (-180, 180]."""
    raw = (float(center) - float(current)) % FULL_TURN
    if raw <= HALF_TURN:
        return raw
    return raw - FULL_TURN


@dataclass(frozen=True, slots=True)
class Orientation:
    alpha: float = 0.0
    beta: float = 0.0
    gamma: float = 0.0

    def rounded(self) -> "Orientation":
        return Orientation(alpha=round(self.alpha), beta=round(self.beta), gamma=round(self.gamma))

    def as_dict(self) -> dict:
        return {"alpha": self.alpha, "beta": self.beta, "gamma": self.gamma}


@dataclass(frozen=True, slots=True)
class Movement:
    yaw: int = 0
    pitch: int = 0
    roll: int = 0
    altitude: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "yaw", clamp_speed(self.yaw))
        object.__setattr__(self, "pitch", clamp_speed(self.pitch))
        object.__setattr__(self, "roll", clamp_speed(self.roll))
        object.__setattr__(self, "altitude", clamp_speed(self.altitude))

    def as_dict(self) -> dict:
        return {"yaw": self.yaw, "pitch": self.pitch, "roll": self.roll, "altitude": self.altitude}


HOVER = Movement()


@dataclass(frozen=True, slots=True)
class AxisThresholds:
    yaw: float
    pitch: float
    roll: float

    def as_dict(self) -> dict:
        return {"yaw": self.yaw, "pitch": self.pitch, "roll": self.roll}


DEFAULT_SENSITIVITY = AxisThresholds(yaw=20.0, pitch=15.0, roll=20.0)
DEFAULT_MAX_DIFF = AxisThresholds(yaw=60.0, pitch=50.0, roll=50.0)
DEFAULT_MAX_SPEED = 50


def proportional_speed(diff: float, sensitivity: float, max_diff: float, max_speed: int) -> int:
    magnitude = abs(diff)
    if magnitude < sensitivity:
        return 0
    sign = 1 if diff > 0 else -1
    if magnitude >= max_diff:
        return sign * max_speed
    span = max_diff - sensitivity
    return sign * int(math.floor((magnitude - sensitivity) / span * max_speed))


@dataclass(slots=True)
class OrientationMapper:
    """Turns device orientation samples into movement around a calibrated center.

    The first sample after ``calibrate`` (or ``start``) becomes the center and
    maps to hover. Roll wins over yaw so a banking tilt never turns the drone
    at the same time. ``feed`` adds the movement-enabled gate and only returns
    a movement when it differs from the last one returned.
    """

    sensitivity: AxisThresholds = DEFAULT_SENSITIVITY
    max_diff: AxisThresholds = DEFAULT_MAX_DIFF
    max_speed: int = DEFAULT_MAX_SPEED
    center: Optional[Orientation] = None
    diff: Orientation = field(default_factory=Orientation)
    altitude: int = 0
    enabled: bool = False
    last_movement: Optional[Movement] = None

    def __post_init__(self) -> None:
        self.max_speed = int(clamp(int(self.max_speed), 0, 100))
        for axis in ("yaw", "pitch", "roll"):
            low = getattr(self.sensitivity, axis)
            high = getattr(self.max_diff, axis)
            if low < 0 or high <= low:
                raise ValueError(f"{axis}: max_diff must be greater than sensitivity >= 0")

    @property
    def calibration_pending(self) -> bool:
        return self.center is None

    def calibrate(self) -> None:
        self.center = None

    def start(self) -> None:
        self.calibrate()
        self.altitude = 0
        self.last_movement = None
        self.enabled = True

    def stop(self) -> None:
        self.enabled = False
        self.last_movement = None

    def set_altitude(self, value: int) -> int:
        self.altitude = clamp_speed(value)
        return self.altitude

    def with_altitude(self, value: int) -> Optional[Movement]:
        """Apply a new altitude input to the last emitted movement, if any."""
        self.set_altitude(value)
        if not self.enabled or self.last_movement is None:
            return None
        if self.last_movement.altitude == self.altitude:
            return None
        self.last_movement = replace(self.last_movement, altitude=self.altitude)
        return self.last_movement

    def current_movement(self) -> Movement:
        if self.calibration_pending or self.last_movement is None:
            return HOVER
        return self.last_movement

    def map(self, sample: Orientation) -> Movement:
        if self.center is None:
            self.center = sample
            self.diff = Orientation()
            return HOVER

        self.diff = Orientation(
            alpha=angle_diff(sample.alpha, self.center.alpha),
            beta=angle_diff(sample.beta, self.center.beta),
            gamma=angle_diff(sample.gamma, self.center.gamma),
        )

        pitch = proportional_speed(
            self.diff.beta, self.sensitivity.pitch, self.max_diff.pitch, self.max_speed
        )
        roll = proportional_speed(
            self.diff.gamma, self.sensitivity.roll, self.max_diff.roll, self.max_speed
        )
        yaw = 0
        if roll == 0:
            yaw = proportional_speed(
                self.diff.alpha, self.sensitivity.yaw, self.max_diff.yaw, self.max_speed
            )
        return Movement(yaw=yaw, pitch=pitch, roll=roll, altitude=self.altitude)

    def feed(self, sample: Orientation) -> Optional[Movement]:
        if not self.enabled:
            return None
        movement = self.map(sample)
        if movement == self.last_movement:
            return None
        self.last_movement = movement
        return movement


@dataclass(slots=True)
class OrientationFilter:
    """Sensor side conditioning: whole degrees, bounded rate, no repeats."""

    max_hz: float = 30.0
    last_sample: Optional[Orientation] = None
    last_emit_s: Optional[float] = None

    @property
    def min_interval_s(self) -> float:
        return 1.0 / max(0.1, float(self.max_hz))

    def accept(self, alpha, beta, gamma, now_s: float) -> Optional[Orientation]:
        if alpha is None or beta is None or gamma is None:
            raise ValueError("device orientation not supported")

        if self.last_emit_s is not None and (now_s - self.last_emit_s) < self.min_interval_s:
            return None

        sample = Orientation(alpha=float(alpha), beta=float(beta), gamma=float(gamma)).rounded()
        if sample == self.last_sample:
            return None

        self.last_sample = sample
        self.last_emit_s = now_s
        return sample

    def reset(self) -> None:
        self.last_sample = None
        self.last_emit_s = None
