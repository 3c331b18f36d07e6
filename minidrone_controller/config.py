from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .ble_comms.transport import DEFAULT_TRANSPORT
from .control_logic import (
    DEFAULT_MAX_DIFF,
    DEFAULT_MAX_SPEED,
    DEFAULT_SENSITIVITY,
    AxisThresholds,
    OrientationFilter,
    OrientationMapper,
)

DEFAULT_DRIVE_INTERVAL_S = 0.1
DEFAULT_SPEED = 50


@dataclass(slots=True)
class ControllerConfig:
    drive_interval_s: float = DEFAULT_DRIVE_INTERVAL_S
    default_speed: int = DEFAULT_SPEED
    default_drive_steps: Optional[int] = None
    handshake_delay_s: float = 0.1
    low_battery_pct: int = 10
    sensitivity: AxisThresholds = DEFAULT_SENSITIVITY
    max_diff: AxisThresholds = DEFAULT_MAX_DIFF
    max_speed: int = DEFAULT_MAX_SPEED
    orientation_hz: float = 30.0
    ws_host: str = "0.0.0.0"
    ws_port: int = 8765
    transport: str = DEFAULT_TRANSPORT

    def __post_init__(self) -> None:
        if self.drive_interval_s <= 0:
            raise ValueError("drive_interval_s must be > 0")
        if not 0 <= int(self.default_speed) <= 100:
            raise ValueError("default_speed must be within 0..100")
        if not 0 <= int(self.max_speed) <= 100:
            raise ValueError("max_speed must be within 0..100")
        if not 0 <= int(self.low_battery_pct) <= 100:
            raise ValueError("low_battery_pct must be within 0..100")
        if self.handshake_delay_s < 0:
            raise ValueError("handshake_delay_s must be >= 0")
        if self.default_drive_steps is not None and int(self.default_drive_steps) < 1:
            raise ValueError("default_drive_steps must be >= 1")
        if self.orientation_hz <= 0:
            raise ValueError("orientation_hz must be > 0")

    @property
    def drive_steps(self) -> int:
        """Ticks a discrete move lasts; one second of drive loop by default."""
        if self.default_drive_steps is not None:
            return int(self.default_drive_steps)
        return max(1, int(round(1.0 / self.drive_interval_s)))

    def build_mapper(self) -> OrientationMapper:
        return OrientationMapper(
            sensitivity=self.sensitivity,
            max_diff=self.max_diff,
            max_speed=self.max_speed,
        )

    def build_orientation_filter(self) -> OrientationFilter:
        return OrientationFilter(max_hz=self.orientation_hz)

    def with_overrides(self, **overrides: Any) -> "ControllerConfig":
        known = {f.name for f in fields(self)}
        applied = {key: value for key, value in overrides.items() if key in known and value is not None}
        return replace(self, **applied)

    def to_dict(self) -> dict:
        return asdict(self)


def _thresholds(raw: Any, default: AxisThresholds, name: str) -> AxisThresholds:
    if raw is None:
        return default
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' must be an object with yaw/pitch/roll")
    merged = default.as_dict()
    for axis, value in raw.items():
        if axis not in merged:
            raise ValueError(f"'{name}' has unknown axis '{axis}'")
        merged[axis] = float(value)
    return AxisThresholds(**merged)


def config_from_dict(data: Dict[str, Any]) -> ControllerConfig:
    if not isinstance(data, dict):
        raise ValueError("config must be a JSON object")

    known = {f.name for f in fields(ControllerConfig)} - {"sensitivity", "max_diff"}
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if key in ("sensitivity", "max_diff"):
            continue
        if key not in known:
            raise ValueError(f"unknown config key '{key}'")
        values[key] = value

    return ControllerConfig(
        sensitivity=_thresholds(data.get("sensitivity"), DEFAULT_SENSITIVITY, "sensitivity"),
        max_diff=_thresholds(data.get("max_diff"), DEFAULT_MAX_DIFF, "max_diff"),
        **values,
    )


def load_config(path: Optional[str]) -> ControllerConfig:
    if not path:
        return ControllerConfig()
    config_path = Path(path).expanduser()
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid config {config_path}: {exc}") from exc
    return config_from_dict(data)
