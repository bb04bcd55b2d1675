"""
Bleak-backed GATT transport.

Scans run in the background with a detection callback; connections go
through bleak-retry-connector so service discovery is cached between
reconnects.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Sequence

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError
from bleak_retry_connector import BleakClientWithServiceCache, establish_connection

from .errors import TransportError
from .link import Link, NotifyCallback, ScanResultCallback
from .models import Advertisement

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 20.0


class BleakLink(Link):
    """Link implementation on top of bleak."""

    def __init__(self, connect_timeout: float = CONNECT_TIMEOUT_S) -> None:
        self.connect_timeout = connect_timeout
        self._scanner: Optional[BleakScanner] = None
        self._scan_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._on_result: Optional[ScanResultCallback] = None
        self._on_scan_end: Optional[Callable[[], None]] = None
        # Last BLEDevice seen per address, needed by establish_connection
        self._seen: Dict[str, BLEDevice] = {}

    @property
    def is_scanning(self) -> bool:
        return self._scanner is not None

    async def start_scan(
        self,
        service_uuids: Sequence[str],
        duration_ms: int,
        on_result: ScanResultCallback,
        on_scan_end: Callable[[], None],
    ) -> None:
        if self._scanner is not None:
            raise TransportError("A scan is already running")

        self._on_result = on_result
        self._on_scan_end = on_scan_end
        scanner = BleakScanner(
            detection_callback=self._on_detection,
            service_uuids=list(service_uuids) or None,
        )
        self._scanner = scanner
        try:
            await scanner.start()
        except (BleakError, OSError) as e:
            self._scanner = None
            self._on_result = None
            self._on_scan_end = None
            raise TransportError(f"Could not start scan: {e}") from e

        self._scan_task = asyncio.create_task(self._stop_after(duration_ms / 1000.0))
        logger.debug(f"Scan started for {duration_ms} ms")

    async def _stop_after(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self._scan_task = None
        await self.stop_scan()

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData) -> None:
        if self._on_result is None:
            return
        self._seen[device.address] = device
        advertisement = Advertisement(
            address=device.address,
            name=adv.local_name or device.name,
            service_uuids=tuple(adv.service_uuids or ()),
            device=device,
        )
        if self._on_result(advertisement):
            self._on_result = None
            self._stop_task = asyncio.get_running_loop().create_task(self.stop_scan())

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        if self._scan_task is not None:
            self._scan_task.cancel()
            self._scan_task = None
        self._on_result = None
        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            logger.warning(f"Stopping scan failed: {e}")
        finally:
            on_scan_end, self._on_scan_end = self._on_scan_end, None
            if on_scan_end is not None:
                on_scan_end()
        logger.debug("Scan stopped")

    async def connect(self, address: str, on_disconnect: Callable[[], None]) -> Any:
        device = self._seen.get(address)
        if device is None:
            device = await BleakScanner.find_device_by_address(address, timeout=5.0)
        if device is None:
            raise TransportError(f"Device {address} not found")

        try:
            return await establish_connection(
                BleakClientWithServiceCache,
                device,
                address,
                disconnected_callback=lambda _client: on_disconnect(),
                max_attempts=1,
                timeout=self.connect_timeout,
            )
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Connect to {address} failed: {e}") from e

    async def disconnect(self, client: Any) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            raise TransportError(f"Disconnect failed: {e}") from e

    def get_service(self, client: Any, uuid: str) -> Optional[Any]:
        return client.services.get_service(uuid)

    def get_characteristic(self, service: Any, uuid: str) -> Optional[Any]:
        return service.get_characteristic(uuid)

    async def read(self, client: Any, characteristic: Any) -> bytes:
        try:
            return bytes(await client.read_gatt_char(characteristic))
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Read of {characteristic.uuid} failed: {e}") from e

    async def write(
        self, client: Any, characteristic: Any, data: bytes, with_response: bool = True
    ) -> None:
        try:
            await client.write_gatt_char(characteristic, data, response=with_response)
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Write to {characteristic.uuid} failed: {e}") from e

    async def subscribe(
        self, client: Any, characteristic: Any, on_notify: NotifyCallback
    ) -> bool:
        try:
            await client.start_notify(characteristic, lambda _char, data: on_notify(bytes(data)))
        except (BleakError, OSError) as e:
            logger.warning(f"Subscribe to {characteristic.uuid} failed: {e}")
            return False
        return True


async def scan_for_treadmills(timeout: float = 10.0) -> list:
    """One-off discovery listing every device with its advertised services.

    Returns:
        List of Advertisement records, strongest signal first
    """
    found = await BleakScanner.discover(timeout=timeout, return_adv=True)
    results = sorted(found.values(), key=lambda item: item[1].rssi, reverse=True)
    return [
        Advertisement(
            address=device.address,
            name=adv.local_name or device.name,
            service_uuids=tuple(adv.service_uuids or ()),
            device=device,
        )
        for device, adv in results
    ]
