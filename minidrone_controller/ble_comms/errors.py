from __future__ import annotations


class DroneError(Exception):
    pass


class TransportError(DroneError):
    """Connect, notify or write failure reported by the BLE transport."""


class ProtocolDecodeError(DroneError):
    """Notification payload too short or out of range."""


class InvalidStateError(DroneError):
    def __init__(self, operation: str, state: object) -> None:
        super().__init__(f"cannot {operation} while {state}")
        self.operation = operation
        self.state = state
