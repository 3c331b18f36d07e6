import pytest

from minidrone_controller.ble_comms.errors import ProtocolDecodeError
from minidrone_controller.ble_comms.telemetry import (
    FlightState,
    parse_battery_status,
    parse_flight_status,
)


def make_flight_payload(state: int) -> bytes:
    return bytes([4, 7, 2, 3, 1, 0, state, 0])


def test_flight_status_hovering() -> None:
    status = parse_flight_status(make_flight_payload(2), rx_monotonic_s=12.5)

    assert status.state == FlightState.HOVERING
    assert status.hovering is True
    assert status.flying is True
    assert status.rx_monotonic_s == 12.5


def test_flight_status_cut_off() -> None:
    status = parse_flight_status(make_flight_payload(5))

    assert status.state == FlightState.CUT_OFF
    assert status.flying is False


@pytest.mark.parametrize(
    "raw,flying",
    [(0, False), (1, True), (2, True), (3, True), (4, True), (5, False)],
)
def test_flight_status_flying_table(raw: int, flying: bool) -> None:
    assert parse_flight_status(make_flight_payload(raw)).flying is flying


def test_flight_status_unknown_index_is_not_an_error() -> None:
    status = parse_flight_status(make_flight_payload(9))

    assert status.state is None
    assert status.recognized is False
    assert status.raw_state == 9
    assert status.as_dict()["state"] is None


def test_flight_status_short_payload_raises() -> None:
    with pytest.raises(ProtocolDecodeError, match="too short"):
        parse_flight_status(bytes([4, 1, 2, 3, 1, 0]))


def test_battery_low_level_warns() -> None:
    status = parse_battery_status(bytes([4, 1, 0, 5, 1, 0, 5]))

    assert status.percent == 5
    assert status.low is True


def test_battery_normal_level() -> None:
    status = parse_battery_status(bytes([4, 1, 0, 5, 1, 0, 55]))

    assert status.percent == 55
    assert status.low is False


def test_battery_threshold_is_exclusive() -> None:
    assert parse_battery_status(bytes([10])).low is False
    assert parse_battery_status(bytes([9])).low is True
    assert parse_battery_status(bytes([30]), low_threshold_pct=40).low is True


def test_battery_rejects_empty_and_out_of_range() -> None:
    with pytest.raises(ProtocolDecodeError):
        parse_battery_status(b"")
    with pytest.raises(ProtocolDecodeError, match="Invalid battery"):
        parse_battery_status(bytes([0, 200]))
