"""Millisecond interval timer used by every retry and polling policy."""

import time


def monotonic_ms() -> int:
    """Current monotonic clock in whole milliseconds."""
    return int(time.monotonic() * 1000)


class IntervalTimer:
    """Tracks whether an interval has elapsed since the last mark.

    Time is always passed in by the caller so the same timer works against
    the real clock and against a scripted clock in tests.
    """

    def __init__(self, default_interval_ms: int, start_ms: int = 0) -> None:
        self.default_interval_ms = default_interval_ms
        self.interval_ms = default_interval_ms
        self._last_mark_ms = start_ms

    def is_interval_up(self, now_ms: int) -> bool:
        """Return True once the interval has elapsed, then re-mark at now.

        A one-shot override from run_next_time_in() is consumed here and the
        default interval applies again afterwards.
        """
        if now_ms - self._last_mark_ms >= self.interval_ms:
            self.interval_ms = self.default_interval_ms
            self._last_mark_ms = now_ms
            return True
        return False

    def run_next_time_in(self, interval_ms: int, now_ms: int) -> None:
        """Fire once after interval_ms instead of the default interval."""
        self._last_mark_ms = now_ms
        self.interval_ms = interval_ms

    def reset(self, now_ms: int) -> None:
        self._last_mark_ms = now_ms

    def expire(self) -> None:
        """Make the next is_interval_up() call fire regardless of time."""
        self.interval_ms = 0

    def time_since_last(self, now_ms: int) -> int:
        return now_ms - self._last_mark_ms
