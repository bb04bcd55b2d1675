"""
Concrete treadmill device variants and the device factory.
"""

import itertools
import logging
from functools import partial
from typing import Any, Optional

from .connection import BleTreadmillDevice, TreadmillDevice
from .core import (
    CONSOLE_COMMAND_ORDER,
    CONSOLE_NAME_PREFIX,
    FTMS_CONTROL_POINT_UUID,
    FTMS_FEATURE_UUID,
    FTMS_SERVICE_UUID,
    FTMS_STATUS_UUID,
    FTMS_TREADMILL_DATA_UUID,
    FTMS_TREADMILL_FEATURE_UUID,
    PROPRIETARY_START_STREAM,
    RESTREAM_DELAY_MS,
    RETRY_INTERVAL_MS,
    VENDOR_NOTIFY_UUID,
    VENDOR_SERVICE_UUID,
    VENDOR_WRITE_UUID,
)
from .decoders import (
    MachineFeatures,
    SerialSnoopDecoder,
    decode_console_response,
    decode_machine_features,
    decode_machine_status,
    decode_proprietary,
    decode_treadmill_data,
    hex_str,
)
from .errors import DecodeError, ProtocolError, TransportError
from .link import Bus, Link, Mailbox, ScanCoordinator, can_notify, can_write
from .models import Advertisement, ConnectionState, DecodedFrame, DeviceKind
from .polling import PollingScheduler
from .session import SessionSink
from .timer import IntervalTimer

logger = logging.getLogger(__name__)


class FtmsDevice(BleTreadmillDevice):
    """Standard Fitness Machine Service treadmill."""

    kind = DeviceKind.FTMS
    scan_service_uuids = (FTMS_SERVICE_UUID,)

    def __init__(self, link: Link, sink: SessionSink, **kwargs: Any) -> None:
        # Machine status notifications are edge events, sent once per change
        kwargs.setdefault("required_repeats", 0)
        super().__init__(link, sink, **kwargs)
        # One arrival sequence so data and status apply in the order received
        arrivals = itertools.count()
        self.data_mailbox = Mailbox(arrivals)
        self.status_mailbox = Mailbox(arrivals)
        self.mailboxes = (self.data_mailbox, self.status_mailbox)
        self.control_point: Any = None
        self.features: Optional[MachineFeatures] = None
        self.treadmill_features: Optional[bytes] = None

    async def discover(self, client: Any) -> bool:
        service = self.link.get_service(client, FTMS_SERVICE_UUID)
        if service is None:
            logger.warning(f"[{self.name}] FTMS service not found")
            return False

        data_char = self.link.get_characteristic(service, FTMS_TREADMILL_DATA_UUID)
        if data_char is None or not can_notify(data_char):
            logger.warning(f"[{self.name}] Treadmill Data characteristic missing or not notifiable")
            return False
        if not await self.subscribe(client, data_char, self.data_mailbox.put):
            logger.warning(f"[{self.name}] Treadmill Data subscription refused")
            return False

        status_char = self.link.get_characteristic(service, FTMS_STATUS_UUID)
        if status_char is not None and can_notify(status_char):
            if not await self.subscribe(client, status_char, self.status_mailbox.put):
                logger.info(f"[{self.name}] Machine Status subscription refused, continuing without it")

        self.control_point = self.link.get_characteristic(service, FTMS_CONTROL_POINT_UUID)
        if self.control_point is None:
            logger.info(f"[{self.name}] No control point, reset unavailable")

        feature_char = self.link.get_characteristic(service, FTMS_FEATURE_UUID)
        if feature_char is not None:
            await self._read_features(client, feature_char)

        treadmill_char = self.link.get_characteristic(service, FTMS_TREADMILL_FEATURE_UUID)
        if treadmill_char is not None:
            await self._read_treadmill_features(client, treadmill_char)
        return True

    async def _read_features(self, client: Any, characteristic: Any) -> None:
        try:
            self.features = decode_machine_features(await self.link.read(client, characteristic))
        except (TransportError, DecodeError) as e:
            logger.info(f"[{self.name}] Could not read machine features: {e}")
            return
        supported = ", ".join(sorted(self.features.common)) or "none"
        logger.info(f"[{self.name}] Machine features: {supported}")

    async def _read_treadmill_features(self, client: Any, characteristic: Any) -> None:
        try:
            value = await self.link.read(client, characteristic)
        except TransportError as e:
            logger.info(f"[{self.name}] Could not read treadmill features: {e}")
            return
        if not value:
            logger.info(f"[{self.name}] Treadmill features read returned nothing")
            return
        self.treadmill_features = value
        logger.info(f"[{self.name}] Treadmill features: {hex_str(value)}")

    def _decode_data(self, payload: bytes) -> DecodedFrame:
        return decode_treadmill_data(payload, last_distance_m=self.telemetry.distance_m)

    async def poll_subscribed(self, now_ms: int) -> None:
        received = []
        for mailbox, decode in (
            (self.data_mailbox, self._decode_data),
            (self.status_mailbox, decode_machine_status),
        ):
            stamped = mailbox.take_stamped()
            if stamped is not None:
                received.append((stamped[0], decode, stamped[1]))

        for _, decode, payload in sorted(received, key=lambda item: item[0]):
            self.handle_payload(decode, payload, now_ms)

        if self.reset_sequencer.poll(now_ms):
            await self.reset_via_control_point(self.control_point)

    def on_link_down(self) -> None:
        self.data_mailbox.clear()
        self.status_mailbox.clear()
        self.control_point = None


class ProprietaryDevice(BleTreadmillDevice):
    """Vendor stream on FFF1, started by a write to FFF2.

    The console advertises FTMS, so scanning and the reset path reuse the
    FTMS service and its control point.
    """

    kind = DeviceKind.PROPRIETARY
    scan_service_uuids = (FTMS_SERVICE_UUID,)

    def __init__(self, link: Link, sink: SessionSink, **kwargs: Any) -> None:
        super().__init__(link, sink, **kwargs)
        self.mailbox = Mailbox()
        self.mailboxes = (self.mailbox,)
        self.control_point: Any = None
        self.write_char: Any = None
        self.restream_timer: Optional[IntervalTimer] = None

    async def discover(self, client: Any) -> bool:
        ftms = self.link.get_service(client, FTMS_SERVICE_UUID)
        if ftms is None:
            logger.warning(f"[{self.name}] FTMS service not found")
            return False
        self.control_point = self.link.get_characteristic(ftms, FTMS_CONTROL_POINT_UUID)
        if self.control_point is None:
            logger.info(f"[{self.name}] No control point, reset unavailable")

        vendor = self.link.get_service(client, VENDOR_SERVICE_UUID)
        if vendor is None:
            logger.warning(f"[{self.name}] Vendor service not found")
            return False
        notify_char = self.link.get_characteristic(vendor, VENDOR_NOTIFY_UUID)
        self.write_char = self.link.get_characteristic(vendor, VENDOR_WRITE_UUID)
        if notify_char is None or self.write_char is None:
            logger.warning(f"[{self.name}] Vendor characteristics missing")
            return False
        if not await self.subscribe(client, notify_char, self.mailbox.put):
            logger.warning(f"[{self.name}] Vendor notify subscription refused")
            return False

        logger.info(f"[{self.name}] Sending start stream command")
        await self.link.write(client, self.write_char, PROPRIETARY_START_STREAM, True)
        return True

    async def poll_subscribed(self, now_ms: int) -> None:
        payload = self.mailbox.take()
        if payload is not None:
            self.handle_payload(decode_proprietary, payload, now_ms)

        if self.reset_sequencer.poll(now_ms):
            if await self.reset_via_control_point(self.control_point):
                # The console stops streaming after a reset
                self.restream_timer = IntervalTimer(RESTREAM_DELAY_MS, start_ms=now_ms)

        if self.restream_timer is not None and self.restream_timer.is_interval_up(now_ms):
            self.restream_timer = None
            logger.info(f"[{self.name}] Re-sending start stream command")
            await self.write(self.write_char, PROPRIETARY_START_STREAM)

    def on_link_down(self) -> None:
        self.mailbox.clear()
        self.control_point = None
        self.write_char = None
        self.restream_timer = None


class PollingConsoleDevice(BleTreadmillDevice):
    """Request/response console: one opcode out on FFF2, one answer on FFF1."""

    kind = DeviceKind.POLLING_CONSOLE

    def __init__(
        self,
        link: Link,
        sink: SessionSink,
        *,
        name_prefix: str = CONSOLE_NAME_PREFIX,
        scheduler: Optional[PollingScheduler] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(link, sink, **kwargs)
        self.name_prefix = name_prefix
        self.scheduler = scheduler or PollingScheduler(CONSOLE_COMMAND_ORDER)
        self.mailbox = Mailbox()
        self.mailboxes = (self.mailbox,)
        self.write_char: Any = None
        self.unpaired_responses = 0

    def matches(self, advertisement: Advertisement) -> bool:
        return bool(advertisement.name) and advertisement.name.startswith(self.name_prefix)

    async def discover(self, client: Any) -> bool:
        service = self.link.get_service(client, VENDOR_SERVICE_UUID)
        if service is None:
            logger.warning(f"[{self.name}] Console service not found")
            return False

        notify_char = self.link.get_characteristic(service, VENDOR_NOTIFY_UUID)
        if notify_char is None or not can_notify(notify_char):
            logger.warning(f"[{self.name}] Console notify characteristic missing or not notifiable")
            return False
        self.write_char = self.link.get_characteristic(service, VENDOR_WRITE_UUID)
        if self.write_char is None or not can_write(self.write_char):
            logger.warning(f"[{self.name}] Console write characteristic missing or not writable")
            return False

        return await self.subscribe(client, notify_char, self.mailbox.put)

    def on_subscribed(self, now_ms: int) -> None:
        self.scheduler.reset()

    async def poll_subscribed(self, now_ms: int) -> None:
        # Pair the buffered answer before the next request changes the outstanding opcode
        payload = self.mailbox.take()
        if payload is not None:
            self._handle_response(payload, now_ms)

        request = self.scheduler.maybe_send(now_ms)
        if request is not None:
            await self.write(self.write_char, request, with_response=False)

        if self.reset_sequencer.poll(now_ms):
            logger.info(f"[{self.name}] Reset not supported by this console, ignoring")

    def _pair_response(self) -> int:
        opcode = self.scheduler.on_response()
        if opcode is None:
            raise ProtocolError("response received with no outstanding request")
        return opcode

    def _handle_response(self, payload: bytes, now_ms: int) -> None:
        try:
            opcode = self._pair_response()
        except ProtocolError as e:
            self.unpaired_responses += 1
            logger.debug(f"[{self.name}] Discarding {hex_str(payload)}: {e}")
            return
        self.handle_payload(partial(decode_console_response, opcode), payload, now_ms)

    def on_link_down(self) -> None:
        self.mailbox.clear()
        self.write_char = None


class SerialSnoopDevice(TreadmillDevice):
    """Passive listener on the console-to-motor serial link.

    Connected means the bus is open; there is nothing to discover.
    """

    kind = DeviceKind.SERIAL_SNOOP

    def __init__(
        self,
        bus: Bus,
        sink: SessionSink,
        *,
        retry_interval_ms: int = RETRY_INTERVAL_MS,
        decoder: Optional[SerialSnoopDecoder] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(sink, **kwargs)
        self.bus = bus
        self.decoder = decoder or SerialSnoopDecoder()
        self.retry_timer = IntervalTimer(retry_interval_ms, start_ms=-retry_interval_ms)

    @property
    def is_connected(self) -> bool:
        return self.bus.is_open

    @property
    def state(self) -> ConnectionState:
        return ConnectionState.SUBSCRIBED if self.bus.is_open else ConnectionState.IDLE

    async def poll(self, now_ms: int) -> None:
        if not self.bus.is_open:
            if self.retry_timer.is_interval_up(now_ms):
                self._open_bus()
            return

        self._drain(Bus.REQUEST, self.decoder.requests.push)
        self._drain(Bus.RESPONSE, self.decoder.responses.push)

        for process in (self.decoder.process_request, self.decoder.process_response):
            try:
                frame = process()
            except DecodeError as e:
                self.decode_errors += 1
                logger.warning(f"[{self.name}] Dropping malformed frame: {e}")
                continue
            if frame is not None:
                self.apply_frame(frame, now_ms)

        if self.reset_sequencer.poll(now_ms):
            logger.info(f"[{self.name}] Reset not supported on the serial link, ignoring")

    def _open_bus(self) -> None:
        try:
            self.bus.open()
        except TransportError as e:
            logger.warning(f"[{self.name}] Could not open serial bus: {e}")
            return
        logger.info(f"[{self.name}] Serial bus open, listening")

    def _drain(self, channel: int, push) -> None:
        try:
            while self.bus.available(channel):
                push(self.bus.read_byte(channel))
        except TransportError as e:
            logger.warning(f"[{self.name}] Serial read failed: {e}")
            self.bus.close()

    async def close(self) -> None:
        self.bus.close()


def create_device(
    kind: DeviceKind,
    sink: SessionSink,
    *,
    link: Optional[Link] = None,
    bus: Optional[Bus] = None,
    scans: Optional[ScanCoordinator] = None,
    **kwargs: Any,
) -> TreadmillDevice:
    """Build the device variant for kind.

    Args:
        kind: Which protocol the treadmill speaks
        sink: Receiver for session and telemetry events
        link: GATT transport, required for the wireless kinds
        bus: Serial transport, required for SERIAL_SNOOP
        scans: Shared scan coordinator for wireless kinds
        **kwargs: Timing overrides passed to the device

    Returns:
        A device ready to be polled
    """
    if kind is DeviceKind.SERIAL_SNOOP:
        if bus is None:
            raise ValueError("serial_snoop devices need a Bus")
        kwargs.pop("name_prefix", None)
        kwargs.pop("scan_duration_ms", None)
        return SerialSnoopDevice(bus, sink, **kwargs)

    if link is None:
        raise ValueError(f"{kind.value} devices need a Link")
    if kind is DeviceKind.POLLING_CONSOLE:
        return PollingConsoleDevice(link, sink, scans=scans, **kwargs)

    kwargs.pop("name_prefix", None)
    if kind is DeviceKind.FTMS:
        return FtmsDevice(link, sink, scans=scans, **kwargs)
    if kind is DeviceKind.PROPRIETARY:
        return ProprietaryDevice(link, sink, scans=scans, **kwargs)
    raise ValueError(f"Unknown device kind: {kind}")
