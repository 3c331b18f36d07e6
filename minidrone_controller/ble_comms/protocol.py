from __future__ import annotations

import datetime as _dt
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Optional, Tuple

from .controller import MovementState


def vendor_uuid(segment: str) -> str:
    return f"9a66{segment}-0800-9191-11e4-012d1540cb8e"


SERVICE_WRITE = vendor_uuid("fa00")
SERVICE_READ = vendor_uuid("fb00")

CHAR_PCMD = vendor_uuid("fa0a")  # non-acknowledged, PCMD only
CHAR_COMMAND = vendor_uuid("fa0b")  # acknowledged commands
CHAR_HIGH_PRIO = vendor_uuid("fa0c")  # emergency only
CHAR_FLIGHT_STATUS = vendor_uuid("fb0e")
CHAR_BATTERY_STATUS = vendor_uuid("fb0f")

DEVICE_NAME_PREFIXES = ("RS_", "Mars_", "Travis_", "Mambo_")

SEQUENCE_MAX = 255
PCMD_RESERVED_BYTES = 8

HANDSHAKE_DATE_FORMAT = "%Y-%m-%d"


class DataType(IntEnum):
    NORMAL = 2
    LOW_LATENCY = 3
    ACK = 4


class Feature(IntEnum):
    COMMON = 0
    MINIDRONE = 2


class CommandClass(IntEnum):
    PILOTING = 0
    ANIMATIONS = 4


class CommonClass(IntEnum):
    COMMON = 4


class PilotingCmd(IntEnum):
    FLAT_TRIM = 0
    TAKE_OFF = 1
    PCMD = 2
    LANDING = 3
    EMERGENCY = 4
    AUTO_TAKE_OFF_MODE = 5


class AnimationCmd(IntEnum):
    FLIP = 0
    CAP = 1


class CommonCmd(IntEnum):
    CURRENT_DATE = 1


class FlipDirection(IntEnum):
    FRONT = 0
    BACK = 1
    RIGHT = 2
    LEFT = 3


@dataclass(frozen=True, slots=True)
class DiscoveryFilter:
    name_prefixes: Tuple[str, ...]
    services: Tuple[str, ...]

    def matches(self, device_name: Optional[str]) -> bool:
        if not device_name:
            return False
        return any(device_name.startswith(prefix) for prefix in self.name_prefixes)


DISCOVERY_FILTER = DiscoveryFilter(
    name_prefixes=DEVICE_NAME_PREFIXES,
    services=(SERVICE_WRITE, SERVICE_READ),
)


@dataclass(frozen=True, slots=True)
class CommandFrame:
    service: str
    characteristic: str
    data: bytes

    @property
    def sequence(self) -> int:
        return self.data[1]

    def hex(self) -> str:
        return self.data.hex(" ")


class SequenceRegistry:
    """Per-characteristic frame counters.

    The drone drops frames whose sequence number is older than the last one
    it saw on the same characteristic, so every new frame takes the next
    number. Counters start over at 1 after 255; 0 is only ever implied by a
    fresh counter and is never sent.
    """

    __slots__ = ("_counters",)

    def __init__(self) -> None:
        self._counters: Dict[str, int] = {}

    def next(self, characteristic: str) -> int:
        current = self._counters.get(characteristic, 0)
        if current == 0 or current == SEQUENCE_MAX:
            current = 0
        current += 1
        self._counters[characteristic] = current
        return current

    def peek(self, characteristic: str) -> int:
        return self._counters.get(characteristic, 0)


class CommandCodec:
    __slots__ = ("sequences",)

    def __init__(self, sequences: Optional[SequenceRegistry] = None) -> None:
        self.sequences = sequences if sequences is not None else SequenceRegistry()

    def encode(
        self,
        service: str,
        characteristic: str,
        data_type: int,
        feature_id: int,
        cmd_class: int,
        cmd_id: int,
        payload: bytes = b"",
    ) -> CommandFrame:
        seq = self.sequences.next(characteristic)
        header = struct.pack(
            "<BBBBH",
            int(data_type) & 0xFF,
            seq,
            int(feature_id) & 0xFF,
            int(cmd_class) & 0xFF,
            int(cmd_id) & 0xFFFF,
        )
        return CommandFrame(service=service, characteristic=characteristic, data=header + bytes(payload))

    def _piloting(self, data_type: DataType, cmd: PilotingCmd, payload: bytes = b"") -> CommandFrame:
        return self.encode(
            SERVICE_WRITE,
            CHAR_COMMAND,
            data_type,
            Feature.MINIDRONE,
            CommandClass.PILOTING,
            cmd,
            payload,
        )

    def flat_trim(self) -> CommandFrame:
        return self._piloting(DataType.NORMAL, PilotingCmd.FLAT_TRIM)

    def take_off(self) -> CommandFrame:
        return self._piloting(DataType.ACK, PilotingCmd.TAKE_OFF)

    def landing(self) -> CommandFrame:
        return self._piloting(DataType.ACK, PilotingCmd.LANDING)

    def emergency(self) -> CommandFrame:
        # Firmware accepts the normal data type on the high priority channel.
        return self.encode(
            SERVICE_WRITE,
            CHAR_HIGH_PRIO,
            DataType.NORMAL,
            Feature.MINIDRONE,
            CommandClass.PILOTING,
            PilotingCmd.EMERGENCY,
        )

    def flip(self, direction: FlipDirection = FlipDirection.FRONT) -> CommandFrame:
        return self.encode(
            SERVICE_WRITE,
            CHAR_COMMAND,
            DataType.ACK,
            Feature.MINIDRONE,
            CommandClass.ANIMATIONS,
            AnimationCmd.FLIP,
            struct.pack("<I", int(FlipDirection(direction))),
        )

    def cap(self, degrees: int = 180) -> CommandFrame:
        offset = max(-180, min(180, int(degrees)))
        return self.encode(
            SERVICE_WRITE,
            CHAR_COMMAND,
            DataType.ACK,
            Feature.MINIDRONE,
            CommandClass.ANIMATIONS,
            AnimationCmd.CAP,
            struct.pack("<i", offset),
        )

    def pcmd(self, state: MovementState) -> CommandFrame:
        # flag, roll, pitch, yaw, gaz, then reserved padding
        payload = struct.pack(
            f"<Bbbbb{PCMD_RESERVED_BYTES}x",
            1 if state.is_moving else 0,
            state.roll,
            state.pitch,
            state.yaw,
            state.altitude,
        )
        return self.encode(
            SERVICE_WRITE,
            CHAR_PCMD,
            DataType.NORMAL,
            Feature.MINIDRONE,
            CommandClass.PILOTING,
            PilotingCmd.PCMD,
            payload,
        )

    def current_date(self, date: Optional[_dt.date] = None) -> CommandFrame:
        day = date if date is not None else _dt.date.today()
        payload = day.strftime(HANDSHAKE_DATE_FORMAT).encode("ascii") + b"\x00"
        return self.encode(
            SERVICE_WRITE,
            CHAR_COMMAND,
            DataType.ACK,
            Feature.COMMON,
            CommonClass.COMMON,
            CommonCmd.CURRENT_DATE,
            payload,
        )
