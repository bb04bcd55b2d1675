"""
Transport capabilities consumed by the device layer.

Link is the wireless (GATT) transport, Bus the wired two-channel serial
transport. Concrete implementations live in ble.py and serial_bus.py; tests
provide in-memory fakes.
"""

import logging
import itertools
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator, Optional, Sequence, Tuple

from .models import Advertisement

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[bytes], None]
ScanResultCallback = Callable[[Advertisement], bool]


def can_notify(characteristic: Any) -> bool:
    props = getattr(characteristic, "properties", ())
    return "notify" in props or "indicate" in props


def can_indicate(characteristic: Any) -> bool:
    return "indicate" in getattr(characteristic, "properties", ())


def can_write(characteristic: Any) -> bool:
    props = getattr(characteristic, "properties", ())
    return "write" in props or "write-without-response" in props


class Link(ABC):
    """Asynchronous GATT transport.

    Characteristics returned by get_characteristic() expose ``uuid`` and a
    bleak-style ``properties`` list. Clients are opaque handles.
    """

    @property
    @abstractmethod
    def is_scanning(self) -> bool: ...

    @abstractmethod
    async def start_scan(
        self,
        service_uuids: Sequence[str],
        duration_ms: int,
        on_result: ScanResultCallback,
        on_scan_end: Callable[[], None],
    ) -> None:
        """Start a bounded scan and return immediately.

        on_result is called per advertisement; returning True stops the scan.
        on_scan_end is called exactly once when the scan stops for any reason.
        """

    @abstractmethod
    async def stop_scan(self) -> None: ...

    @abstractmethod
    async def connect(self, address: str, on_disconnect: Callable[[], None]) -> Any:
        """Connect and discover services. Raises TransportError on failure."""

    @abstractmethod
    async def disconnect(self, client: Any) -> None: ...

    @abstractmethod
    def get_service(self, client: Any, uuid: str) -> Optional[Any]: ...

    @abstractmethod
    def get_characteristic(self, service: Any, uuid: str) -> Optional[Any]: ...

    @abstractmethod
    async def read(self, client: Any, characteristic: Any) -> bytes: ...

    @abstractmethod
    async def write(
        self, client: Any, characteristic: Any, data: bytes, with_response: bool = True
    ) -> None: ...

    @abstractmethod
    async def subscribe(
        self, client: Any, characteristic: Any, on_notify: NotifyCallback
    ) -> bool:
        """Enable notifications (or indications). Returns False if refused."""


class Bus(ABC):
    """Two independent byte-oriented receive channels."""

    REQUEST = 0
    RESPONSE = 1

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def available(self, channel: int) -> int: ...

    @abstractmethod
    def read_byte(self, channel: int) -> int: ...


class Mailbox:
    """Single-slot, lock-protected hand-off from transport callbacks to poll().

    A newer payload overwrites an unconsumed one. Mailboxes sharing one
    sequence can be drained in arrival order via take_stamped().
    """

    def __init__(self, sequence: Optional[Iterator[int]] = None) -> None:
        self._lock = threading.Lock()
        self._sequence = sequence if sequence is not None else itertools.count()
        self._payload: Optional[bytes] = None
        self._stamp = 0
        self.overwritten = 0

    def put(self, payload: bytes) -> None:
        with self._lock:
            if self._payload is not None:
                self.overwritten += 1
            self._payload = bytes(payload)
            self._stamp = next(self._sequence)

    def take_stamped(self) -> Optional[Tuple[int, bytes]]:
        """Take the payload together with its arrival stamp."""
        with self._lock:
            payload, self._payload = self._payload, None
            if payload is None:
                return None
            return self._stamp, payload

    def take(self) -> Optional[bytes]:
        stamped = self.take_stamped()
        return stamped[1] if stamped is not None else None

    def clear(self) -> None:
        with self._lock:
            self._payload = None


class ScanCoordinator:
    """Serializes scans system-wide: the radio scans for one device at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owner: Optional[object] = None

    @property
    def owner(self) -> Optional[object]:
        return self._owner

    def try_acquire(self, owner: object) -> bool:
        with self._lock:
            if self._owner is None or self._owner is owner:
                self._owner = owner
                return True
            return False

    def release(self, owner: object) -> None:
        with self._lock:
            if self._owner is owner:
                self._owner = None
