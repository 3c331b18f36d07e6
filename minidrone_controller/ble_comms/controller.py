from __future__ import annotations

from dataclasses import dataclass

AXES = ("yaw", "pitch", "roll", "altitude")

SPEED_LIMIT = 100


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp_speed(value: float) -> int:
    return int(_clamp(int(value), -SPEED_LIMIT, SPEED_LIMIT))


@dataclass(slots=True)
class MovementState:
    yaw: int = 0
    pitch: int = 0
    roll: int = 0
    altitude: int = 0
    drive_steps_remaining: int = 0

    @property
    def is_moving(self) -> bool:
        if self.drive_steps_remaining > 0:
            return True
        return any(getattr(self, axis) != 0 for axis in AXES)

    def set_axis(self, axis: str, value: int) -> int:
        if axis not in AXES:
            raise ValueError(f"unknown axis: {axis!r}")
        clamped = clamp_speed(value)
        setattr(self, axis, clamped)
        return clamped

    def set_speeds(self, yaw: int = 0, pitch: int = 0, roll: int = 0, altitude: int = 0) -> None:
        self.yaw = clamp_speed(yaw)
        self.pitch = clamp_speed(pitch)
        self.roll = clamp_speed(roll)
        self.altitude = clamp_speed(altitude)

    def start_steps(self, axis: str, speed: int, steps: int) -> None:
        """Move along a single axis for a fixed number of drive loop ticks."""
        self.hover()
        self.set_axis(axis, speed)
        self.drive_steps_remaining = max(0, int(steps))

    def consume_step(self) -> bool:
        """Count one sent PCMD frame; return True when a stepped move just ended."""
        if self.drive_steps_remaining <= 0:
            return False
        self.drive_steps_remaining -= 1
        if self.drive_steps_remaining == 0:
            self.hover()
            return True
        return False

    def hover(self) -> None:
        self.yaw = 0
        self.pitch = 0
        self.roll = 0
        self.altitude = 0
        self.drive_steps_remaining = 0

    def to_dict(self) -> dict:
        return {
            "yaw": self.yaw,
            "pitch": self.pitch,
            "roll": self.roll,
            "altitude": self.altitude,
            "drive_steps_remaining": self.drive_steps_remaining,
            "moving": self.is_moving,
        }
