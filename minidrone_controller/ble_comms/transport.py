from __future__ import annotations

import asyncio
import importlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .errors import TransportError
from .protocol import DiscoveryFilter

logger = logging.getLogger(__name__)

NotificationHandler = Callable[[bytes], None]

DEFAULT_TRANSPORT = "minidrone_controller.ble_comms.transport:MockTransport"


class Transport(Protocol):
    """What the session needs from a BLE binding.

    Implementations raise ``TransportError`` (or any exception, which the
    session wraps) and must deliver notifications on the event loop thread.
    """

    async def connect(self, discovery_filter: DiscoveryFilter) -> None: ...

    async def start_notifications(
        self,
        service_id: str,
        characteristic_id: str,
        handler: NotificationHandler,
    ) -> None: ...

    async def write(self, service_id: str, characteristic_id: str, data: bytes) -> None: ...


@dataclass(frozen=True, slots=True)
class WrittenFrame:
    service_id: str
    characteristic_id: str
    data: bytes
    at_s: float


class MockTransport:
    """In-memory transport that records writes and lets callers push notifications."""

    def __init__(self, device_name: str = "Mambo_000000", clock=None) -> None:
        self.device_name = device_name
        self._clock = clock
        self.connected = False
        self.writes: List[WrittenFrame] = []
        self._handlers: Dict[Tuple[str, str], NotificationHandler] = {}
        self._write_failures: List[Tuple[Optional[str], Exception]] = []
        self._notify_failures: Dict[str, Exception] = {}
        self.connect_error: Optional[Exception] = None

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock.monotonic()
        return asyncio.get_running_loop().time()

    async def connect(self, discovery_filter: DiscoveryFilter) -> None:
        if self.connected:
            logger.debug("Already connected")
            return
        if self.connect_error is not None:
            raise self.connect_error
        if not discovery_filter.matches(self.device_name):
            raise TransportError(f"no device matching {discovery_filter.name_prefixes}")
        logger.debug("Connected to %s", self.device_name)
        self.connected = True

    async def start_notifications(
        self,
        service_id: str,
        characteristic_id: str,
        handler: NotificationHandler,
    ) -> None:
        self._require_connected()
        error = self._notify_failures.pop(characteristic_id, None)
        if error is not None:
            raise error
        self._handlers[(service_id, characteristic_id)] = handler

    async def write(self, service_id: str, characteristic_id: str, data: bytes) -> None:
        self._require_connected()
        for index, (target, error) in enumerate(self._write_failures):
            if target is None or target == characteristic_id:
                del self._write_failures[index]
                raise error
        frame = WrittenFrame(service_id, characteristic_id, bytes(data), self._now())
        self.writes.append(frame)

    def _require_connected(self) -> None:
        if not self.connected:
            raise TransportError("not connected")

    def disconnect(self) -> None:
        self.connected = False
        self._handlers.clear()

    def fail_next_write(self, characteristic_id: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self._write_failures.append((characteristic_id, error or TransportError("write failed")))

    def fail_notifications(self, characteristic_id: str, error: Optional[Exception] = None) -> None:
        self._notify_failures[characteristic_id] = error or TransportError("notify failed")

    def notify(self, characteristic_id: str, data: bytes) -> bool:
        for (_, char_id), handler in self._handlers.items():
            if char_id == characteristic_id:
                handler(bytes(data))
                return True
        return False

    def subscribed(self, characteristic_id: str) -> bool:
        return any(char_id == characteristic_id for _, char_id in self._handlers)

    def writes_to(self, characteristic_id: str) -> List[WrittenFrame]:
        return [frame for frame in self.writes if frame.characteristic_id == characteristic_id]


def load_transport_class(path: str = DEFAULT_TRANSPORT):
    """Resolve ``package.module:Attribute`` to a transport factory."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"transport must look like 'module:Attribute', got {path!r}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute {attr!r}") from exc
