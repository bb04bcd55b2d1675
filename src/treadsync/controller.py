"""
Top-level driver that owns the devices and runs the polling loop.

This module wires settings, transports and the session recorder together
and ticks every device from a single asyncio task.
"""

import asyncio
import logging
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Sequence

from .config import Settings
from .decoders import hex_str
from .connection import BleTreadmillDevice, TreadmillDevice
from .devices import FtmsDevice, PollingConsoleDevice, create_device
from .link import Bus, Link, ScanCoordinator
from .models import DeviceKind, TelemetrySample
from .recorder import SessionRecorder
from .timer import monotonic_ms

logger = logging.getLogger(__name__)


class TreadmillController:
    """Runs one or more treadmill devices against a shared session recorder."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        link: Optional[Link] = None,
        bus: Optional[Bus] = None,
        recorder: Optional[SessionRecorder] = None,
        kinds: Optional[Sequence[DeviceKind]] = None,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        """Initialize controller and build its devices.

        Args:
            settings: Runtime settings (defaults when None)
            link: GATT transport; a BleakLink is created when needed and None
            bus: Serial transport; a SerialBus is created when needed and None
            recorder: Session sink shared by all devices
            kinds: Device kinds to run; defaults to settings.device
            clock: Millisecond clock used for every tick
        """
        self.settings = settings or Settings()
        self.recorder = recorder or SessionRecorder()
        self.scans = ScanCoordinator()
        self.clock = clock
        self._link = link
        self._bus = bus
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._update_queue: asyncio.Queue = asyncio.Queue(maxsize=10)
        self.poll_errors = 0

        self.devices: List[TreadmillDevice] = [
            self._build_device(kind) for kind in (kinds or [self.settings.device])
        ]
        self.recorder.add_listener(self._on_recorder_event)

    def _build_device(self, kind: DeviceKind) -> TreadmillDevice:
        s = self.settings
        options: Dict[str, Any] = {
            "retry_interval_ms": s.retry_interval_ms,
            "reset_delay_ms": s.reset_delay_ms,
            "clock": self.clock,
        }
        if kind is DeviceKind.SERIAL_SNOOP:
            return create_device(kind, self.recorder, bus=self._get_bus(), **options)

        options["scan_duration_ms"] = s.scan_duration_ms
        if kind is DeviceKind.POLLING_CONSOLE:
            options["name_prefix"] = s.name_prefix
        return create_device(
            kind, self.recorder, link=self._get_link(), scans=self.scans, **options
        )

    def _get_link(self) -> Link:
        if self._link is None:
            from .ble import BleakLink

            self._link = BleakLink()
        return self._link

    def _get_bus(self) -> Bus:
        if self._bus is None:
            from .serial_bus import SerialBus

            s = self.settings
            if not s.request_port or not s.response_port:
                raise ValueError("serial_snoop needs request_port and response_port")
            self._bus = SerialBus(s.request_port, s.response_port, s.baudrate)
        return self._bus

    @property
    def device(self) -> TreadmillDevice:
        """The primary device, shown by status and live views."""
        return self.devices[0]

    @property
    def is_connected(self) -> bool:
        return any(device.is_connected for device in self.devices)

    @property
    def is_running(self) -> bool:
        return self._running

    # ---------- Loop ----------

    async def tick(self) -> None:
        """Poll every device once. A failing device never stops the others."""
        now = self.clock()
        for device in self.devices:
            try:
                await device.poll(now)
            except Exception as e:
                self.poll_errors += 1
                logger.error(f"[{device.name}] Poll failed: {type(e).__name__}: {e}")

    async def run(self) -> None:
        """Tick until stop() is called."""
        self._running = True
        interval = self.settings.tick_interval_ms / 1000.0
        logger.debug(f"Polling {len(self.devices)} device(s) every {interval:.3f}s")
        while self._running:
            await self.tick()
            await asyncio.sleep(interval)

    def start(self) -> asyncio.Task:
        """Run the loop in a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Stop the loop and release every transport."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for device in self.devices:
            try:
                await device.close()
            except Exception as e:
                logger.error(f"[{device.name}] Close failed: {e}")

    # ---------- Commands ----------

    def request_reset(self, kind: Optional[DeviceKind] = None) -> int:
        """Request a console reset.

        Args:
            kind: Only reset devices of this kind; all devices when None

        Returns:
            Number of devices the request was queued for
        """
        targets = [d for d in self.devices if kind is None or d.kind is kind]
        for device in targets:
            device.request_reset()
        return len(targets)

    def get_status(self) -> dict:
        """Get current telemetry of the primary device.

        Returns:
            Dictionary with status, speed, distance, time, steps, calories
        """
        device = self.device
        if not device.is_connected:
            status = "DISCONNECTED"
        elif device.detector.active:
            status = "IN SESSION"
        else:
            status = "IDLE"
        data = device.telemetry.as_dict()
        data["status"] = status
        return data

    def get_info(self) -> List[dict]:
        """Connection and diagnostic details for every device."""
        info = []
        for device in self.devices:
            entry: Dict[str, Any] = {
                "kind": device.kind.value,
                "state": device.state.value,
                "connected": device.is_connected,
                "session_active": device.detector.active,
                "reset_pending": device.reset_sequencer.is_pending,
                "decode_errors": device.decode_errors,
            }
            if isinstance(device, BleTreadmillDevice):
                entry["address"] = device.address or "-"
                entry["connect_failures"] = device.connect_failures
                entry["overwritten_payloads"] = device.overwritten_payloads
            if isinstance(device, FtmsDevice) and device.features is not None:
                entry["features"] = ", ".join(sorted(device.features.common)) or "none"
            if isinstance(device, FtmsDevice) and device.treadmill_features is not None:
                entry["treadmill_features"] = hex_str(device.treadmill_features)
            if isinstance(device, PollingConsoleDevice):
                entry["missed_responses"] = device.scheduler.total_misses
                entry["unpaired_responses"] = device.unpaired_responses
            info.append(entry)
        return info

    # ---------- Updates ----------

    def _on_recorder_event(self, event: str, sample: TelemetrySample) -> None:
        try:
            self._update_queue.put_nowait((event, sample))
        except asyncio.QueueFull:
            # Live display can skip a frame
            pass

    async def get_updates(self) -> AsyncGenerator[tuple, None]:
        """Async generator yielding (event, sample) pairs from the recorder."""
        while True:
            try:
                yield await asyncio.wait_for(self._update_queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                if not self._running:
                    break
                continue
