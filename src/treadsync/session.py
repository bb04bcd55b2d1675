"""
Session detection and delayed reset sequencing.

SessionDetector turns a noisy stream of status signals into exactly one
STARTED and one ENDED event per workout. ResetSequencer schedules the
best-effort console reset that follows a session end.
"""

import logging
from typing import Optional, Protocol

from .core import RESET_DELAY_MS
from .models import PendingReset, SessionEvent, SessionState, StatusSignal, TelemetrySample

logger = logging.getLogger(__name__)


class SessionSink(Protocol):
    """Receives session lifecycle and telemetry events from a device."""

    def on_session_started(self) -> None: ...

    def on_session_ended(self) -> None: ...

    def on_telemetry_updated(self, sample: TelemetrySample) -> None: ...


class SessionDetector:
    """Debounced session state derived from status signals.

    A status must be observed required_repeats + 1 times in a row before it
    can flip the session state. With the default of one repeat, a single
    flicker never starts or ends a session.
    """

    def __init__(self, required_repeats: int = 1) -> None:
        self.required_repeats = required_repeats
        self.state = SessionState()

    @property
    def active(self) -> bool:
        return self.state.active

    def observe(self, signal: StatusSignal) -> Optional[SessionEvent]:
        """Feed one status observation.

        Args:
            signal: Normalized status from a decoded frame

        Returns:
            STARTED or ENDED when this observation confirms a transition,
            None otherwise
        """
        state = self.state
        if signal == state.last_status:
            state.stable_repeat_count += 1
        else:
            state.stable_repeat_count = 0
            state.last_status = signal

        if state.stable_repeat_count < self.required_repeats:
            return None

        implied = signal.is_active
        if implied is None or implied == state.active:
            return None

        state.active = implied
        if implied:
            logger.info("Session started")
            return SessionEvent.STARTED
        logger.info(f"Session ended ({signal.value})")
        return SessionEvent.ENDED

    def reset(self) -> None:
        """Forget debounce history but keep the active flag."""
        self.state.stable_repeat_count = 0
        self.state.last_status = None


class ResetSequencer:
    """Fires a reset once per arm, delay_ms after the arm time.

    An explicit request() skips the delay and fires on the next poll().
    """

    def __init__(self, delay_ms: int = RESET_DELAY_MS) -> None:
        self.delay_ms = delay_ms
        self.pending = PendingReset()

    @property
    def is_pending(self) -> bool:
        return self.pending.requested

    def arm(self, now_ms: int) -> None:
        """Schedule a reset delay_ms from now. An explicit request stays due."""
        self.pending.armed_at = now_ms

    def request(self) -> None:
        self.pending.explicit = True

    def poll(self, now_ms: int) -> bool:
        """Return True exactly once when the pending reset is due.

        A single reset satisfies both an explicit request and an armed one.
        """
        pending = self.pending
        due = pending.explicit or (
            pending.armed_at is not None and now_ms - pending.armed_at >= self.delay_ms
        )
        if not due:
            return False
        self.pending = PendingReset()
        return True
