"""
Value types shared by decoders, session detection and sinks.
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Optional


class StatusSignal(Enum):
    """Vendor status normalized for session detection."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    STANDBY = "standby"
    UNKNOWN = "unknown"

    @property
    def is_active(self) -> Optional[bool]:
        """Session state implied by this signal, None if it implies nothing."""
        if self is StatusSignal.RUNNING:
            return True
        if self is StatusSignal.UNKNOWN:
            return None
        return False


class SessionEvent(Enum):
    STARTED = "started"
    ENDED = "ended"


class DeviceKind(Enum):
    """The closed set of supported treadmill consoles."""

    FTMS = "ftms"
    PROPRIETARY = "proprietary"
    POLLING_CONSOLE = "polling_console"
    SERIAL_SNOOP = "serial_snoop"


class ConnectionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FOUND = "found"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    SUBSCRIBED = "subscribed"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class TelemetryUpdate:
    """Partial telemetry parsed from one frame. None means "not in this frame"."""

    distance_m: Optional[float] = None
    steps: Optional[int] = None
    duration_s: Optional[int] = None
    calories: Optional[int] = None
    speed_kph: Optional[float] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


@dataclass(frozen=True)
class TelemetrySample:
    """Accumulated telemetry for one device."""

    distance_m: float = 0.0
    steps: int = 0
    duration_s: int = 0
    calories: Optional[int] = None
    speed_kph: Optional[float] = None

    def merged(self, update: TelemetryUpdate) -> "TelemetrySample":
        """Return a copy with every field present in update replaced."""
        changes = {
            f.name: getattr(update, f.name)
            for f in fields(update)
            if getattr(update, f.name) is not None
        }
        if not changes:
            return self
        return replace(self, **changes)

    def as_dict(self) -> dict:
        return {
            "speed": self.speed_kph or 0.0,
            "distance": self.distance_m,
            "time": self.duration_s,
            "steps": self.steps,
            "calories": self.calories or 0,
        }


@dataclass(frozen=True)
class DecodedFrame:
    """Result of decoding one notification or response."""

    telemetry: TelemetryUpdate = field(default_factory=TelemetryUpdate)
    status: Optional[StatusSignal] = None
    raw_status: Optional[int] = None
    consumed: int = 0


@dataclass
class SessionState:
    active: bool = False
    stable_repeat_count: int = 0
    last_status: Optional[StatusSignal] = None


@dataclass
class PendingReset:
    """Delayed reset (armed_at) and explicit request, tracked independently."""

    armed_at: Optional[int] = None
    explicit: bool = False

    @property
    def requested(self) -> bool:
        return self.explicit or self.armed_at is not None


@dataclass(frozen=True)
class Advertisement:
    """One scan result as seen by a device's match policy."""

    address: str
    name: Optional[str] = None
    service_uuids: tuple = ()
    device: object = None
