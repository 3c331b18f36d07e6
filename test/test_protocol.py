import datetime

import pytest

from minidrone_controller.ble_comms.controller import MovementState
from minidrone_controller.ble_comms.protocol import (
    CHAR_COMMAND,
    CHAR_HIGH_PRIO,
    CHAR_PCMD,
    DISCOVERY_FILTER,
    SERVICE_WRITE,
    CommandCodec,
    FlipDirection,
    SequenceRegistry,
    vendor_uuid,
)


def test_vendor_uuid_namespace() -> None:
    assert vendor_uuid("fa0a") == "9a66fa0a-0800-9191-11e4-012d1540cb8e"
    assert CHAR_PCMD == "9a66fa0a-0800-9191-11e4-012d1540cb8e"


def test_discovery_filter_prefixes() -> None:
    assert DISCOVERY_FILTER.matches("Mambo_612345")
    assert DISCOVERY_FILTER.matches("RS_W123")
    assert not DISCOVERY_FILTER.matches("Bebop2")
    assert not DISCOVERY_FILTER.matches(None)


def test_sequence_starts_at_one_and_wraps_skipping_zero() -> None:
    registry = SequenceRegistry()
    values = [registry.next("a") for _ in range(255)]

    assert values == list(range(1, 256))
    assert registry.peek("a") == 255
    assert registry.next("a") == 1
    assert registry.next("a") == 2


def test_sequences_are_independent_per_characteristic() -> None:
    registry = SequenceRegistry()
    registry.next("a")
    registry.next("a")

    assert registry.next("b") == 1
    assert registry.next("a") == 3


def test_flat_trim_and_take_off_frames() -> None:
    codec = CommandCodec()
    trim = codec.flat_trim()
    take_off = codec.take_off()

    assert trim.service == SERVICE_WRITE
    assert trim.characteristic == CHAR_COMMAND
    assert trim.data == bytes([2, 1, 2, 0, 0, 0])
    assert take_off.data == bytes([4, 2, 2, 0, 1, 0])
    assert take_off.sequence == 2


def test_landing_and_emergency_frames() -> None:
    codec = CommandCodec()
    landing = codec.landing()
    emergency = codec.emergency()

    assert landing.data == bytes([4, 1, 2, 0, 3, 0])
    assert emergency.characteristic == CHAR_HIGH_PRIO
    assert emergency.data == bytes([2, 1, 2, 0, 4, 0])


def test_flip_and_cap_frames() -> None:
    codec = CommandCodec()

    flip = codec.flip(FlipDirection.LEFT)
    assert flip.data == bytes([4, 1, 2, 4, 0, 0, 3, 0, 0, 0])

    cap = codec.cap(90)
    assert cap.data == bytes([4, 2, 2, 4, 1, 0, 90, 0, 0, 0])

    left = codec.cap(-90)
    assert left.data[6:] == bytes([0xA6, 0xFF, 0xFF, 0xFF])

    assert codec.cap(720).data[6:8] == bytes([180, 0])


def test_flip_rejects_unknown_direction() -> None:
    with pytest.raises(ValueError):
        CommandCodec().flip(7)


def test_pcmd_frame_layout() -> None:
    codec = CommandCodec()
    state = MovementState(yaw=-10, pitch=50, roll=-100, altitude=3)
    frame = codec.pcmd(state)

    assert frame.characteristic == CHAR_PCMD
    assert len(frame.data) == 19
    assert frame.data[:6] == bytes([2, 1, 2, 0, 2, 0])
    assert frame.data[6] == 1
    assert frame.data[7] == 0x9C  # roll -100
    assert frame.data[8] == 50
    assert frame.data[9] == 0xF6  # yaw -10
    assert frame.data[10] == 3
    assert frame.data[11:] == bytes(8)


def test_pcmd_moving_flag_follows_drive_steps() -> None:
    codec = CommandCodec()
    assert codec.pcmd(MovementState()).data[6] == 0
    assert codec.pcmd(MovementState(drive_steps_remaining=3)).data[6] == 1


def test_pcmd_and_command_sequences_do_not_interfere() -> None:
    codec = CommandCodec()
    codec.flat_trim()
    codec.take_off()

    assert codec.pcmd(MovementState()).sequence == 1
    assert codec.landing().sequence == 3


def test_current_date_handshake_frame() -> None:
    frame = CommandCodec().current_date(datetime.date(2014, 10, 28))

    assert frame.characteristic == CHAR_COMMAND
    assert frame.data[:6] == bytes([4, 1, 0, 4, 1, 0])
    assert frame.data[6:] == b"2014-10-28\x00"
