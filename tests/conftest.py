"""Shared in-memory transports and sinks for the test suite."""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from treadsync.core import (
    FTMS_CONTROL_POINT_UUID,
    FTMS_FEATURE_UUID,
    FTMS_SERVICE_UUID,
    FTMS_STATUS_UUID,
    FTMS_TREADMILL_DATA_UUID,
    FTMS_TREADMILL_FEATURE_UUID,
    VENDOR_NOTIFY_UUID,
    VENDOR_SERVICE_UUID,
    VENDOR_WRITE_UUID,
)
from treadsync.errors import TransportError
from treadsync.link import Bus, Link, ScanCoordinator
from treadsync.models import Advertisement


@dataclass
class FakeChar:
    uuid: str
    properties: List[str] = field(default_factory=list)
    value: bytes = b""


@dataclass
class FakeService:
    uuid: str
    characteristics: Dict[str, FakeChar] = field(default_factory=dict)


class FakeClient:
    def __init__(self, services: Dict[str, FakeService]) -> None:
        self.services = services
        self.connected = True


class FakeLink(Link):
    """Scriptable Link: advertisements, GATT layout and failures are set by the test."""

    def __init__(self) -> None:
        self.advertisements: List[Advertisement] = []
        self.services: Dict[str, FakeService] = {}
        self.fail_connect = False
        self.fail_writes = False
        self.refuse_subscribe: set = set()
        self.writes: List[Tuple[str, bytes, bool]] = []
        self.subscriptions: Dict[str, Callable[[bytes], None]] = {}
        self.scan_requests: List[Tuple[str, ...]] = []
        self.connects: List[str] = []
        self.disconnects = 0
        self.scanning = False
        self._on_scan_end: Optional[Callable[[], None]] = None
        self._on_disconnect: Optional[Callable[[], None]] = None
        self.client: Optional[FakeClient] = None
        self.auto_finish_scan = True

    # ---------- GATT layout helpers ----------

    def add_characteristic(self, service_uuid: str, char_uuid: str, *props: str, value: bytes = b"") -> FakeChar:
        service = self.services.setdefault(service_uuid, FakeService(service_uuid))
        char = FakeChar(char_uuid, list(props), value)
        service.characteristics[char_uuid] = char
        return char

    def notify(self, char_uuid: str, payload: bytes) -> None:
        self.subscriptions[char_uuid](payload)

    def drop_connection(self) -> None:
        if self._on_disconnect is not None:
            self._on_disconnect()

    def finish_scan(self) -> None:
        self.scanning = False
        on_scan_end, self._on_scan_end = self._on_scan_end, None
        if on_scan_end is not None:
            on_scan_end()

    def writes_to(self, char_uuid: str) -> List[bytes]:
        return [data for uuid, data, _ in self.writes if uuid == char_uuid]

    # ---------- Link ----------

    @property
    def is_scanning(self) -> bool:
        return self.scanning

    async def start_scan(self, service_uuids, duration_ms, on_result, on_scan_end) -> None:
        self.scan_requests.append(tuple(service_uuids))
        self.scanning = True
        self._on_scan_end = on_scan_end
        for adv in self.advertisements:
            if on_result(adv):
                self.finish_scan()
                return
        if self.auto_finish_scan:
            self.finish_scan()

    async def stop_scan(self) -> None:
        self.finish_scan()

    async def connect(self, address, on_disconnect):
        self.connects.append(address)
        if self.fail_connect:
            raise TransportError("connection refused")
        self._on_disconnect = on_disconnect
        self.client = FakeClient(self.services)
        return self.client

    async def disconnect(self, client) -> None:
        self.disconnects += 1
        client.connected = False

    def get_service(self, client, uuid):
        return client.services.get(uuid)

    def get_characteristic(self, service, uuid):
        return service.characteristics.get(uuid)

    async def read(self, client, characteristic) -> bytes:
        return characteristic.value

    async def write(self, client, characteristic, data, with_response=True) -> None:
        if self.fail_writes:
            raise TransportError("write failed")
        self.writes.append((characteristic.uuid, bytes(data), with_response))

    async def subscribe(self, client, characteristic, on_notify) -> bool:
        if characteristic.uuid in self.refuse_subscribe:
            return False
        self.subscriptions[characteristic.uuid] = on_notify
        return True


class FakeBus(Bus):
    def __init__(self) -> None:
        self.opened = False
        self.fail_open = False
        self.open_attempts = 0
        self.channels = (deque(), deque())

    def feed(self, channel: int, data) -> None:
        self.channels[channel].extend(data)

    def open(self) -> None:
        self.open_attempts += 1
        if self.fail_open:
            raise TransportError("no such port")
        self.opened = True

    def close(self) -> None:
        self.opened = False

    @property
    def is_open(self) -> bool:
        return self.opened

    def available(self, channel: int) -> int:
        return len(self.channels[channel])

    def read_byte(self, channel: int) -> int:
        return self.channels[channel].popleft()


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[str] = []
        self.samples = []

    def on_session_started(self) -> None:
        self.events.append("started")

    def on_session_ended(self) -> None:
        self.events.append("ended")

    def on_telemetry_updated(self, sample) -> None:
        self.samples.append(sample)


class FakeClock:
    def __init__(self, now: int = 0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def make_ftms_link() -> FakeLink:
    link = FakeLink()
    link.advertisements.append(
        Advertisement(address="AA:BB:CC:DD:EE:01", name="KS-AP-RQ3", service_uuids=(FTMS_SERVICE_UUID,))
    )
    link.add_characteristic(FTMS_SERVICE_UUID, FTMS_TREADMILL_DATA_UUID, "notify")
    link.add_characteristic(FTMS_SERVICE_UUID, FTMS_STATUS_UUID, "notify")
    link.add_characteristic(FTMS_SERVICE_UUID, FTMS_CONTROL_POINT_UUID, "write", "indicate")
    # Treadmill with total distance, step count and elapsed time
    link.add_characteristic(FTMS_SERVICE_UUID, FTMS_FEATURE_UUID, "read", value=bytes([0x44, 0x10, 0x00, 0x00]))
    link.add_characteristic(FTMS_SERVICE_UUID, FTMS_TREADMILL_FEATURE_UUID, "read", value=bytes([0x01, 0x00, 0x00, 0x00]))
    return link


def make_vendor_link(name: str = "LifeSpan-TM5000", with_ftms: bool = False) -> FakeLink:
    link = FakeLink()
    uuids = (FTMS_SERVICE_UUID,) if with_ftms else ()
    link.advertisements.append(Advertisement(address="AA:BB:CC:DD:EE:02", name=name, service_uuids=uuids))
    if with_ftms:
        link.add_characteristic(FTMS_SERVICE_UUID, FTMS_CONTROL_POINT_UUID, "write", "indicate")
    link.add_characteristic(VENDOR_SERVICE_UUID, VENDOR_NOTIFY_UUID, "notify")
    link.add_characteristic(VENDOR_SERVICE_UUID, VENDOR_WRITE_UUID, "write", "write-without-response")
    return link


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scans() -> ScanCoordinator:
    return ScanCoordinator()


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def ftms_link() -> FakeLink:
    return make_ftms_link()


@pytest.fixture
def vendor_link():
    """Factory: vendor_link(name=..., with_ftms=...)."""
    return make_vendor_link


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()
