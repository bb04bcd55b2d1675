"""
Per-device connection state machine and the shared device contract.

Every device is driven by poll(now_ms) once per scheduler tick. While
disconnected a BLE device walks IDLE -> SCANNING -> FOUND -> CONNECTING ->
DISCOVERING -> SUBSCRIBED; any failure or disconnect drops it back to IDLE
and the retry timer starts the next attempt.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from .core import (
    CONTROL_REQUEST_CONTROL,
    CONTROL_RESET,
    FOUND_CONNECT_DELAY_MS,
    RESET_DELAY_MS,
    RETRY_INTERVAL_MS,
    SCAN_DURATION_MS,
)
from .decoders import hex_str
from .errors import DecodeError, TransportError
from .link import Link, Mailbox, NotifyCallback, ScanCoordinator, can_indicate
from .models import (
    Advertisement,
    ConnectionState,
    DecodedFrame,
    DeviceKind,
    SessionEvent,
    TelemetrySample,
)
from .session import ResetSequencer, SessionDetector, SessionSink
from .timer import IntervalTimer, monotonic_ms

logger = logging.getLogger(__name__)

# Attempt in flight: poll() must not start another scan or connect
_IN_FLIGHT = (
    ConnectionState.SCANNING,
    ConnectionState.CONNECTING,
    ConnectionState.DISCOVERING,
)


class TreadmillDevice(ABC):
    """Uniform contract for all device kinds.

    Owns the per-device telemetry sample, session detector and reset
    sequencer, and publishes to the injected SessionSink.
    """

    kind: DeviceKind

    def __init__(
        self,
        sink: SessionSink,
        *,
        reset_delay_ms: int = RESET_DELAY_MS,
        required_repeats: int = 1,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        self.sink = sink
        self.clock = clock
        self.telemetry = TelemetrySample()
        self.detector = SessionDetector(required_repeats=required_repeats)
        self.reset_sequencer = ResetSequencer(delay_ms=reset_delay_ms)
        self.decode_errors = 0

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @property
    @abstractmethod
    def state(self) -> ConnectionState: ...

    @abstractmethod
    async def poll(self, now_ms: int) -> None:
        """Advance the device by one scheduler tick."""

    @abstractmethod
    async def close(self) -> None: ...

    def request_reset(self) -> None:
        """Ask for a console reset on the next connected poll."""
        logger.info(f"[{self.name}] External reset requested")
        self.reset_sequencer.request()

    def handle_payload(
        self, decode: Callable[[bytes], DecodedFrame], payload: bytes, now_ms: int
    ) -> Optional[DecodedFrame]:
        """Decode one payload and apply it. Malformed frames are dropped."""
        logger.debug(f"[{self.name}] RX {hex_str(payload)}")
        try:
            frame = decode(payload)
        except DecodeError as e:
            self.decode_errors += 1
            logger.warning(f"[{self.name}] Dropping malformed frame: {e}")
            return None
        self.apply_frame(frame, now_ms)
        return frame

    def apply_frame(self, frame: DecodedFrame, now_ms: int) -> None:
        """Merge telemetry, run session detection and notify the sink."""
        sample = self.telemetry.merged(frame.telemetry)
        if sample != self.telemetry:
            self.telemetry = sample
            self._notify_sink("on_telemetry_updated", sample)

        if frame.status is None:
            return
        event = self.detector.observe(frame.status)
        if event is SessionEvent.STARTED:
            self._notify_sink("on_session_started")
        elif event is SessionEvent.ENDED:
            self._notify_sink("on_session_ended")
            self.reset_sequencer.arm(now_ms)

    def _notify_sink(self, method: str, *args: Any) -> None:
        try:
            getattr(self.sink, method)(*args)
        except Exception as e:
            logger.error(f"[{self.name}] Sink {method} failed: {e}")


class BleTreadmillDevice(TreadmillDevice):
    """Scan/connect/discover/subscribe state machine over a Link.

    Subclasses provide the match policy, the discovery step and what to do
    on each connected tick.
    """

    scan_service_uuids: Sequence[str] = ()

    def __init__(
        self,
        link: Link,
        sink: SessionSink,
        *,
        scans: Optional[ScanCoordinator] = None,
        retry_interval_ms: int = RETRY_INTERVAL_MS,
        scan_duration_ms: int = SCAN_DURATION_MS,
        **kwargs: Any,
    ) -> None:
        super().__init__(sink, **kwargs)
        self.link = link
        self.scans = scans
        self.scan_duration_ms = scan_duration_ms
        # Starting at -interval makes the first poll attempt right away
        self.retry_timer = IntervalTimer(retry_interval_ms, start_ms=-retry_interval_ms)

        self._state = ConnectionState.IDLE
        self._lock = threading.Lock()
        self._link_lost = False
        self._attempt: Optional[asyncio.Task] = None
        self.address: Optional[str] = None
        self.advertisement: Optional[Advertisement] = None
        self.client: Any = None
        self.connect_failures = 0
        self.mailboxes: Tuple[Mailbox, ...] = ()
        # Characteristic uuid -> "notify" or "indicate"
        self.subscriptions: Dict[str, str] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.SUBSCRIBED

    @property
    def overwritten_payloads(self) -> int:
        """Payloads replaced by a newer one before a poll consumed them."""
        return sum(mailbox.overwritten for mailbox in self.mailboxes)

    def matches(self, advertisement: Advertisement) -> bool:
        """Default policy: the device advertises one of the scanned services."""
        advertised = {uuid.lower() for uuid in advertisement.service_uuids}
        return any(uuid.lower() in advertised for uuid in self.scan_service_uuids)

    @abstractmethod
    async def discover(self, client: Any) -> bool:
        """Locate characteristics and subscribe. False aborts the attempt."""

    @abstractmethod
    async def poll_subscribed(self, now_ms: int) -> None:
        """One connected tick: requests, buffered notifications, resets."""

    def on_subscribed(self, now_ms: int) -> None:
        """Hook run once the device reaches SUBSCRIBED."""

    def on_link_down(self) -> None:
        """Hook run when the device falls back to IDLE."""

    # ---------- Driving ----------

    async def poll(self, now_ms: int) -> None:
        self._handle_link_loss()
        if self._state is ConnectionState.SUBSCRIBED:
            await self.poll_subscribed(now_ms)
            return
        await self._drive_connection(now_ms)

    async def _drive_connection(self, now_ms: int) -> None:
        if self._state in _IN_FLIGHT:
            return
        if not self.retry_timer.is_interval_up(now_ms):
            return

        if self._state is ConnectionState.FOUND:
            # Connecting while the radio is still scanning is unreliable
            if self.link.is_scanning:
                logger.debug(f"[{self.name}] Waiting for scan to finish...")
                self.retry_timer.run_next_time_in(FOUND_CONNECT_DELAY_MS, now_ms)
                return
            self._begin_connect()
        else:
            await self._start_scan()

    # ---------- Scanning ----------

    async def _start_scan(self) -> None:
        if self.scans is not None and not self.scans.try_acquire(self):
            logger.debug(f"[{self.name}] Radio busy scanning for another device, backing off")
            self._state = ConnectionState.BACKOFF
            return

        logger.info(f"[{self.name}] Scanning for treadmill...")
        self.address = None
        self.advertisement = None
        self._state = ConnectionState.SCANNING
        try:
            await self.link.start_scan(
                self.scan_service_uuids,
                self.scan_duration_ms,
                self._on_scan_result,
                self._on_scan_end,
            )
        except TransportError as e:
            logger.warning(f"[{self.name}] Scan failed: {e}")
            self._release_scan()
            self._state = ConnectionState.IDLE

    def _on_scan_result(self, advertisement: Advertisement) -> bool:
        with self._lock:
            if self._state is not ConnectionState.SCANNING:
                return False
            if not self.matches(advertisement):
                return False
            logger.info(
                f"[{self.name}] Found {advertisement.name or 'treadmill'} ({advertisement.address})"
            )
            self.address = advertisement.address
            self.advertisement = advertisement
            self._state = ConnectionState.FOUND
        self.retry_timer.run_next_time_in(FOUND_CONNECT_DELAY_MS, self.clock())
        return True

    def _on_scan_end(self) -> None:
        self._release_scan()
        with self._lock:
            if self._state is ConnectionState.SCANNING:
                logger.info(f"[{self.name}] Scan ended without a match")
                self._state = ConnectionState.IDLE

    def _release_scan(self) -> None:
        if self.scans is not None:
            self.scans.release(self)

    # ---------- Connecting ----------

    def _begin_connect(self) -> None:
        address = self.address
        self._state = ConnectionState.CONNECTING
        self._attempt = asyncio.create_task(self._connect_attempt(address))

    async def _connect_attempt(self, address: Optional[str]) -> None:
        with self._lock:
            self._link_lost = False
        logger.info(f"[{self.name}] Attempting to connect to {address}")
        try:
            client = await self.link.connect(address, self._on_link_disconnected)
        except TransportError as e:
            self.connect_failures += 1
            logger.warning(f"[{self.name}] Connection failed: {e}")
            self._to_idle()
            return
        except Exception as e:
            self.connect_failures += 1
            logger.error(f"[{self.name}] Unexpected connection error: {type(e).__name__}: {e}")
            self._to_idle()
            return

        self.client = client
        self._state = ConnectionState.DISCOVERING
        logger.info(f"[{self.name}] Connected. Discovering services...")
        try:
            ok = await self.discover(client)
        except TransportError as e:
            logger.warning(f"[{self.name}] Discovery failed: {e}")
            ok = False
        except Exception as e:
            logger.error(f"[{self.name}] Unexpected discovery error: {type(e).__name__}: {e}")
            ok = False

        with self._lock:
            if ok and not self._link_lost:
                self._state = ConnectionState.SUBSCRIBED
        if self._state is ConnectionState.SUBSCRIBED:
            logger.info(f"[{self.name}] Subscribed, streaming telemetry")
            self.on_subscribed(self.clock())
            return

        self.connect_failures += 1
        await self._abort(client)

    async def _abort(self, client: Any) -> None:
        logger.info(f"[{self.name}] Aborting connection attempt")
        try:
            await self.link.disconnect(client)
        except TransportError as e:
            logger.debug(f"[{self.name}] Disconnect after abort failed: {e}")
        self._to_idle()

    def _on_link_disconnected(self) -> None:
        logger.warning(f"[{self.name}] Device disconnected")
        with self._lock:
            self._link_lost = True

    def _handle_link_loss(self) -> None:
        with self._lock:
            lost = self._link_lost and self._state is ConnectionState.SUBSCRIBED
            if lost:
                self._link_lost = False
        if lost:
            self._to_idle()

    def _to_idle(self) -> None:
        # A fresh scan is required: the stale address is never retried blindly
        self._state = ConnectionState.IDLE
        self.address = None
        self.advertisement = None
        self.client = None
        self.detector.reset()
        self.subscriptions.clear()
        self.on_link_down()

    # ---------- Shared helpers ----------

    async def subscribe(self, client: Any, characteristic: Any, on_payload: NotifyCallback) -> bool:
        props = getattr(characteristic, "properties", ())
        mode = "indicate" if can_indicate(characteristic) and "notify" not in props else "notify"
        if not await self.link.subscribe(client, characteristic, on_payload):
            return False
        self.subscriptions[characteristic.uuid] = mode
        logger.debug(f"[{self.name}] Subscribed to {characteristic.uuid} ({mode})")
        return True

    async def write(self, characteristic: Any, data: bytes, with_response: bool = True) -> bool:
        try:
            await self.link.write(self.client, characteristic, data, with_response)
            return True
        except TransportError as e:
            logger.warning(f"[{self.name}] Write of {hex_str(data)} failed: {e}")
            return False

    async def reset_via_control_point(self, control_point: Any) -> bool:
        """Request control, then send the reset opcode to the control point."""
        if control_point is None or not self.is_connected:
            logger.info(f"[{self.name}] Cannot reset treadmill: control point not available")
            return False
        if not await self.write(control_point, CONTROL_REQUEST_CONTROL):
            return False
        if not await self.write(control_point, CONTROL_RESET):
            return False
        logger.info(f"[{self.name}] Sent request control + reset to control point")
        return True

    async def close(self) -> None:
        if self._attempt is not None and not self._attempt.done():
            self._attempt.cancel()
            try:
                await self._attempt
            except asyncio.CancelledError:
                pass
        if self._state is ConnectionState.SCANNING:
            try:
                await self.link.stop_scan()
            except TransportError as e:
                logger.debug(f"[{self.name}] Stop scan failed: {e}")
            self._release_scan()
        if self.client is not None:
            try:
                await self.link.disconnect(self.client)
            except TransportError as e:
                logger.debug(f"[{self.name}] Disconnect failed: {e}")
        self._state = ConnectionState.IDLE
        self.client = None
