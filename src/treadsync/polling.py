"""
Round-robin opcode scheduler for the request/response console.
"""

import logging
from typing import Optional, Sequence

from .core import (
    CONSOLE_COMMAND_ORDER,
    CONSOLE_REQUEST_PREFIX,
    POLL_MAX_INTERVAL_MS,
    POLL_MIN_INTERVAL_MS,
)

logger = logging.getLogger(__name__)


def build_console_request(opcode: int) -> bytes:
    return bytes([CONSOLE_REQUEST_PREFIX, opcode, 0x00, 0x00, 0x00, 0x00])


class PollingScheduler:
    """Rotates through a fixed opcode sequence, one outstanding request at a time.

    Most responses arrive within min_interval_ms, but some get lost in
    transit. After max_interval_ms the next opcode is sent anyway and the
    miss is counted for diagnostics. The rotation always advances, so a
    lost response never stalls the cycle.
    """

    def __init__(
        self,
        command_order: Sequence[int] = CONSOLE_COMMAND_ORDER,
        min_interval_ms: int = POLL_MIN_INTERVAL_MS,
        max_interval_ms: int = POLL_MAX_INTERVAL_MS,
    ) -> None:
        if not command_order:
            raise ValueError("command_order must not be empty")
        self.command_order = tuple(command_order)
        self.min_interval_ms = min_interval_ms
        self.max_interval_ms = max_interval_ms
        self.reset()

    def reset(self) -> None:
        """Start a fresh cycle, e.g. after reconnecting."""
        self.index = 0
        self.last_sent_opcode: Optional[int] = None
        self.last_sent_at: Optional[int] = None
        self.awaiting_response = False
        self.consecutive_misses = 0
        self.total_misses = 0

    def maybe_send(self, now_ms: int) -> Optional[bytes]:
        """Return the next request frame if it is time to send one.

        Args:
            now_ms: Current time in milliseconds

        Returns:
            Six-byte request frame, or None when the gate is still closed
        """
        if self.last_sent_at is not None:
            since_last = now_ms - self.last_sent_at
            can_send = not self.awaiting_response and since_last >= self.min_interval_ms
            forced = since_last >= self.max_interval_ms
            if not (can_send or forced):
                return None

        if self.awaiting_response:
            self.consecutive_misses += 1
            self.total_misses += 1
            logger.warning(f"No response from opcode 0x{self.last_sent_opcode:02X}")

        opcode = self.command_order[self.index]
        logger.debug(f"Sending opcode 0x{opcode:02X} (idx={self.index})")

        self.last_sent_opcode = opcode
        self.last_sent_at = now_ms
        self.awaiting_response = True
        self.index = (self.index + 1) % len(self.command_order)
        return build_console_request(opcode)

    def on_response(self) -> Optional[int]:
        """Mark the outstanding request answered.

        Called for every response, including ones that later fail to
        decode, so a malformed frame does not trigger forced resends.

        Returns:
            The opcode the response pairs with, or None when no request was
            outstanding
        """
        outstanding = self.awaiting_response
        self.awaiting_response = False
        if not outstanding:
            return None
        self.consecutive_misses = 0
        return self.last_sent_opcode
