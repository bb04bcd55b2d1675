"""
Two-port pyserial Bus for listening in on the console/motor wire.

One UART is wired to the console's transmit line (requests), the other to
the motor controller's transmit line (responses). Both are opened
non-blocking and are only ever read.
"""

import logging
from collections import deque
from typing import Deque, List, Optional

import serial

from .core import SNOOP_BAUDRATE
from .errors import TransportError
from .link import Bus

logger = logging.getLogger(__name__)


class SerialBus(Bus):
    """Bus backed by two pyserial ports."""

    def __init__(self, request_port: str, response_port: str, baudrate: int = SNOOP_BAUDRATE) -> None:
        self.ports = (request_port, response_port)
        self.baudrate = baudrate
        self._serials: List[Optional[serial.Serial]] = [None, None]
        self._pending: List[Deque[int]] = [deque(), deque()]

    @property
    def is_open(self) -> bool:
        return all(s is not None and s.is_open for s in self._serials)

    def open(self) -> None:
        try:
            for channel, port in enumerate(self.ports):
                if self._serials[channel] is None:
                    self._serials[channel] = serial.Serial(port, self.baudrate, timeout=0)
                    logger.debug(f"Opened {port} at {self.baudrate} baud")
        except serial.SerialException as e:
            self.close()
            raise TransportError(f"Could not open serial port: {e}") from e

    def close(self) -> None:
        for channel, ser in enumerate(self._serials):
            if ser is not None:
                try:
                    ser.close()
                except serial.SerialException as e:
                    logger.debug(f"Closing {self.ports[channel]} failed: {e}")
            self._serials[channel] = None
            self._pending[channel].clear()

    def _fill(self, channel: int) -> None:
        ser = self._serials[channel]
        if ser is None:
            raise TransportError(f"Serial port {self.ports[channel]} is not open")
        try:
            waiting = ser.in_waiting
            if waiting:
                self._pending[channel].extend(ser.read(waiting))
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Read from {self.ports[channel]} failed: {e}") from e

    def available(self, channel: int) -> int:
        if not self._pending[channel]:
            self._fill(channel)
        return len(self._pending[channel])

    def read_byte(self, channel: int) -> int:
        if not self._pending[channel]:
            self._fill(channel)
        if not self._pending[channel]:
            raise TransportError(f"No data on {self.ports[channel]}")
        return self._pending[channel].popleft()
