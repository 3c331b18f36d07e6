import asyncio
import json

import pytest

from minidrone_controller.ble_comms.events import EventBus
from minidrone_controller.ble_comms.protocol import CHAR_COMMAND, FlipDirection
from minidrone_controller.ble_comms.scheduler import VirtualClock
from minidrone_controller.ble_comms.session import DroneSession
from minidrone_controller.ble_comms.transport import MockTransport
from minidrone_controller.config import ControllerConfig
from minidrone_controller.control_server import ControlServer, parse_flip_direction


def make_server():
    clock = VirtualClock()
    transport = MockTransport(clock=clock)
    config = ControllerConfig(drive_interval_s=0.125, handshake_delay_s=0.0, max_speed=100)
    session = DroneSession(transport, config=config, clock=clock, events=EventBus())
    server = ControlServer(session, clock=clock)
    return server, session, transport, clock


async def send(server: ControlServer, **message) -> dict:
    return await server.handle_raw(json.dumps(message))


def test_invalid_payloads_are_reported() -> None:
    async def scenario() -> None:
        server, _, _, _ = make_server()

        bad_json = await server.handle_raw("{not json")
        assert bad_json["ok"] is False
        assert bad_json["error"].startswith("invalid_json")

        not_object = await server.handle_raw("[1, 2]")
        assert not_object == {"ok": False, "error": "payload must be object"}

        unknown = await send(server, command="barrel_roll")
        assert unknown["ok"] is False
        assert "unknown command" in unknown["error"]

    asyncio.run(scenario())


def test_connect_and_take_off_commands() -> None:
    async def scenario() -> None:
        server, session, transport, _ = make_server()

        early = await send(server, command="take_off")
        assert early == {"ok": False, "error": "cannot take off while idle"}

        connected = await send(server, command="connect")
        assert connected["ok"] is True
        assert connected["state"]["state"] == "ready"

        flying = await send(server, command="take_off")
        assert flying["state"]["state"] == "airborne"
        assert flying["state"]["drive_loop_running"] is True
        assert len(transport.writes_to(CHAR_COMMAND)) == 3
        await session.close()

    asyncio.run(scenario())


def test_land_command_waits_for_landing_frame() -> None:
    async def scenario() -> None:
        server, session, transport, clock = make_server()
        await send(server, command="connect")
        await send(server, command="take_off")

        pending = asyncio.ensure_future(send(server, command="land"))
        while not pending.done():
            await clock.advance(0.125)
        response = pending.result()

        assert response["state"]["state"] == "ready"
        assert transport.writes[-1].data[4] == 3

    asyncio.run(scenario())


def test_flip_and_turn_commands_are_queued() -> None:
    async def scenario() -> None:
        server, session, _, _ = make_server()
        await send(server, command="connect")
        await send(server, command="take_off")

        flipped = await send(server, command="flip", direction="left")
        assert flipped["state"]["queued_command"] == "flip left"

        turned = await send(server, command="turn", degrees=-45)
        assert turned["state"]["queued_command"] == "turn -45"

        bad = await send(server, command="flip", direction="sideways")
        assert bad["ok"] is False
        await session.close()

    asyncio.run(scenario())


def test_emergency_command_cuts_off() -> None:
    async def scenario() -> None:
        server, session, _, _ = make_server()
        await send(server, command="connect")
        await send(server, command="take_off")

        response = await send(server, command="emergency")
        assert response["state"]["state"] == "emergency"
        assert response["state"]["drive_loop_running"] is False
        await session.close()

    asyncio.run(scenario())


def test_orientation_messages_drive_movement() -> None:
    async def scenario() -> None:
        server, session, _, clock = make_server()
        await send(server, command="connect")
        await send(server, command="take_off")
        await send(server, command="start_movement")

        first = await send(server, orientation={"alpha": 0, "beta": 0, "gamma": 0})
        assert first["movement"] == {"yaw": 0, "pitch": 0, "roll": 0, "altitude": 0}

        throttled = await send(server, orientation={"alpha": 10, "beta": 40, "gamma": 0})
        assert throttled["movement"] is None

        await clock.advance(0.125)
        tilted = await send(server, orientation={"alpha": 10.2, "beta": 39.7, "gamma": 0})
        assert tilted["movement"] == {"yaw": 0, "pitch": 71, "roll": 0, "altitude": 0}
        assert tilted["state"]["orientation_diff"]["beta"] == 40
        assert session.movement.pitch == 71
        await session.close()

    asyncio.run(scenario())


def test_orientation_without_sensor_axes_is_rejected() -> None:
    async def scenario() -> None:
        server, _, _, _ = make_server()
        response = await send(server, orientation={"alpha": None, "beta": 1, "gamma": 2})

        assert response == {"ok": False, "error": "device orientation not supported"}

        malformed = await send(server, orientation=[1, 2, 3])
        assert malformed["ok"] is False

    asyncio.run(scenario())


def test_altitude_message_returns_clamped_value() -> None:
    async def scenario() -> None:
        server, _, _, _ = make_server()
        response = await send(server, altitude=150)

        assert response["ok"] is True
        assert response["altitude"] == 100

    asyncio.run(scenario())


def test_parse_flip_direction() -> None:
    assert parse_flip_direction("Back") is FlipDirection.BACK
    assert parse_flip_direction(2) is FlipDirection.RIGHT
    with pytest.raises(ValueError):
        parse_flip_direction("sideways")
    with pytest.raises(ValueError):
        parse_flip_direction(9)


def test_orientation_rate_comes_from_session_config() -> None:
    async def scenario() -> None:
        clock = VirtualClock()
        config = ControllerConfig(drive_interval_s=0.125, handshake_delay_s=0.0, orientation_hz=4.0)
        session = DroneSession(MockTransport(clock=clock), config=config, clock=clock, events=EventBus())
        server = ControlServer(session, clock=clock)
        await send(server, command="start_movement")

        assert (await send(server, orientation={"alpha": 0, "beta": 0, "gamma": 0}))["movement"] is not None
        await clock.advance(0.125)
        assert (await send(server, orientation={"alpha": 0, "beta": 40, "gamma": 0}))["movement"] is None
        await clock.advance(0.125)
        tilted = await send(server, orientation={"alpha": 0, "beta": 40, "gamma": 0})
        assert tilted["movement"]["pitch"] == 35

    asyncio.run(scenario())
