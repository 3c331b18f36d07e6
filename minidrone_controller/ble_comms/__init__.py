from .controller import MovementState
from .errors import DroneError, InvalidStateError, ProtocolDecodeError, TransportError
from .protocol import CommandCodec, CommandFrame, FlipDirection, SequenceRegistry
from .telemetry import BatteryStatus, FlightState, FlightStatus, parse_battery_status, parse_flight_status
from .transport import MockTransport, Transport

# DroneSession lives in .session; it depends on the top-level config and
# control logic, which import from this package.

__all__ = [
    "BatteryStatus",
    "CommandCodec",
    "CommandFrame",
    "DroneError",
    "FlightState",
    "FlightStatus",
    "FlipDirection",
    "InvalidStateError",
    "MockTransport",
    "MovementState",
    "ProtocolDecodeError",
    "SequenceRegistry",
    "Transport",
    "TransportError",
    "parse_battery_status",
    "parse_flight_status",
]
