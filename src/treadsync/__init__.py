"""
TreadSync - treadmill session bridge

Connects to treadmill consoles over Bluetooth LE or a tapped serial line,
decodes their telemetry and detects workout sessions.
"""

__version__ = "0.1.0"
__description__ = "Treadmill telemetry decoding and workout session detection"

from .controller import TreadmillController
from .devices import create_device
from .models import DeviceKind, StatusSignal, TelemetrySample
from .recorder import SessionRecorder

__all__ = [
    "TreadmillController",
    "SessionRecorder",
    "create_device",
    "DeviceKind",
    "StatusSignal",
    "TelemetrySample",
]
