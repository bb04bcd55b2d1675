"""
In-memory session sink that keeps a history of completed workouts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .models import TelemetrySample

logger = logging.getLogger(__name__)

# (event name, latest sample); event is "started", "ended" or "telemetry"
Listener = Callable[[str, TelemetrySample], None]


@dataclass
class WorkoutSession:
    start: datetime
    stop: Optional[datetime] = None
    steps: int = 0
    start_steps: int = 0

    @property
    def duration_s(self) -> float:
        end = self.stop or datetime.now()
        return (end - self.start).total_seconds()


class SessionRecorder:
    """SessionSink recording workouts and fanning events out to listeners."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self.clock = clock
        self.sessions: List[WorkoutSession] = []
        self.current: Optional[WorkoutSession] = None
        self.latest = TelemetrySample()
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def on_session_started(self) -> None:
        self.current = WorkoutSession(start=self.clock(), start_steps=self.latest.steps)
        logger.info(f"Workout started at {self.current.start:%H:%M:%S}")
        self._emit("started")

    def on_session_ended(self) -> None:
        session = self.current
        if session is None:
            # Session began before we were listening
            session = WorkoutSession(start=self.clock(), start_steps=self.latest.steps)
        session.stop = self.clock()
        session.steps = max(0, self.latest.steps - session.start_steps)
        self.sessions.append(session)
        self.current = None
        logger.info(f"Workout ended: {session.steps} steps in {session.duration_s:.0f}s")
        self._emit("ended")

    def on_telemetry_updated(self, sample: TelemetrySample) -> None:
        self.latest = sample
        if self.current is not None:
            self.current.steps = max(0, sample.steps - self.current.start_steps)
        self._emit("telemetry")

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, self.latest)
            except Exception as e:
                logger.error(f"Listener error on {event}: {e}")
