"""
Binary decoders for the four supported treadmill protocols.

Every decoder turns one buffer into a DecodedFrame or raises DecodeError.
Decoders never touch session state: the status they return is fed to a
SessionDetector by the owning device.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .core import (
    METERS_PER_MILE,
    MPH_TO_KPH,
    MPS_MILLI_TO_KPH,
    OPCODE_CALORIES,
    OPCODE_DISTANCE,
    OPCODE_DURATION,
    OPCODE_SPEED,
    OPCODE_STATUS,
    OPCODE_STEPS,
    PROPRIETARY_METERS_PER_TENTH_UNIT,
    PROPRIETARY_SUB_ID,
    PROPRIETARY_SYNC,
    SNOOP_BUFFER_SIZE,
    SNOOP_SPEED_PREFIX,
    SNOOP_STEPS_PREFIX,
    STEPS_PER_METER,
)
from .errors import InvalidStatusFrame, TruncatedFrame, UnexpectedSync
from .models import DecodedFrame, StatusSignal, TelemetryUpdate

logger = logging.getLogger(__name__)


def hex_str(data: bytes) -> str:
    return " ".join(f"{b:02X}" for b in data)


def u16_le(b: bytes, off: int) -> int:
    return b[off] | (b[off + 1] << 8)


def u24_le(b: bytes, off: int) -> int:
    return b[off] | (b[off + 1] << 8) | (b[off + 2] << 16)


def u16_be(b: bytes, off: int) -> int:
    return (b[off] << 8) | b[off + 1]


def s16_le(b: bytes, off: int) -> int:
    v = u16_le(b, off)
    return v - 0x10000 if v & 0x8000 else v


def _require(data: bytes, needed: int, what: str) -> None:
    if len(data) < needed:
        raise TruncatedFrame(needed, len(data), what)


def estimate_console_mph(value: int) -> float:
    """Console speed calibration, measured against one LifeSpan unit."""
    return max(0.0, 0.00435 * value - 0.009)


# ---------------------------------------------------------------------------
# FTMS treadmill data (0x2ACD)
# ---------------------------------------------------------------------------

# (flag bit, field name, width in bytes), in the order fields appear on the wire
TREADMILL_DATA_FIELDS = (
    (0, "speed", 2),
    (1, "avg_speed", 2),
    (2, "distance", 3),
    (3, "incline", 2),
    (4, "elevation_gain", 2),
    (5, "pace", 2),
    (6, "avg_pace", 2),
    (7, "energy", 5),
    (8, "heart_rate", 1),
    (9, "mets", 1),
    (10, "elapsed_time", 2),
    (11, "remaining_time", 2),
    (12, "force", 2),
    (13, "power", 2),
)

UINT16_NOT_AVAILABLE = 0xFFFF


def _field_present(flags: int, bit: int) -> bool:
    # Bit 0 is inverted: speed is present when the bit is clear
    if bit == 0:
        return not flags & 0x0001
    return bool(flags & (1 << bit))


def decode_treadmill_data(data: bytes, last_distance_m: float = 0.0) -> DecodedFrame:
    """Decode an FTMS Treadmill Data notification.

    Args:
        data: Raw notification payload
        last_distance_m: Distance of the previous sample, used to decide
            whether the step estimate moves forward

    Returns:
        DecodedFrame with speed, distance, estimated steps, calories and
        elapsed time when present. Never carries a status.

    Raises:
        TruncatedFrame: If the flags announce more fields than the buffer holds
    """
    _require(data, 2, "treadmill data flags")
    flags = u16_le(data, 0)
    offset = 2

    raw: dict[str, bytes] = {}
    for bit, name, width in TREADMILL_DATA_FIELDS:
        if not _field_present(flags, bit):
            continue
        _require(data, offset + width, f"treadmill data field {name}")
        raw[name] = data[offset : offset + width]
        offset += width

    speed_kph = None
    distance_m = None
    steps = None
    calories = None
    duration_s = None

    if "speed" in raw:
        speed_kph = u16_le(raw["speed"], 0) * MPS_MILLI_TO_KPH
        logger.debug(f"Speed: {speed_kph:.2f} kph")

    if "distance" in raw:
        distance_m = float(u24_le(raw["distance"], 0))
        if distance_m > last_distance_m:
            steps = int(distance_m * STEPS_PER_METER)
        logger.debug(f"Distance: {distance_m:.0f} m, estimated steps: {steps}")

    if "incline" in raw:
        logger.debug(f"Incline: {s16_le(raw['incline'], 0) * 0.1:.1f}%")

    if "energy" in raw:
        total = u16_le(raw["energy"], 0)
        if total != UINT16_NOT_AVAILABLE:
            calories = total

    if "heart_rate" in raw:
        logger.debug(f"Heart rate: {raw['heart_rate'][0]} bpm")

    if "elapsed_time" in raw:
        elapsed = u16_le(raw["elapsed_time"], 0)
        if elapsed not in (0, UINT16_NOT_AVAILABLE):
            duration_s = elapsed

    if offset < len(data):
        logger.debug(f"Extra data after standard fields: {hex_str(data[offset:])}")

    return DecodedFrame(
        telemetry=TelemetryUpdate(
            distance_m=distance_m,
            steps=steps,
            duration_s=duration_s,
            calories=calories,
            speed_kph=speed_kph,
        ),
        consumed=offset,
    )


# ---------------------------------------------------------------------------
# FTMS machine status (0x2ADA)
# ---------------------------------------------------------------------------

MACHINE_STATUS_RESET = 0x02
MACHINE_STATUS_STOPPED = 0x03
MACHINE_STATUS_STARTED = 0x04


def decode_machine_status(data: bytes) -> DecodedFrame:
    """Decode a Fitness Machine Status notification.

    Only start/stop opcodes carry a session signal; speed or target change
    events decode to a frame without status.
    """
    _require(data, 1, "machine status")
    opcode = data[0]
    if opcode in (MACHINE_STATUS_RESET, MACHINE_STATUS_STOPPED):
        status = StatusSignal.STOPPED
    elif opcode == MACHINE_STATUS_STARTED:
        status = StatusSignal.RUNNING
    else:
        logger.debug(f"Machine status change ignored: 0x{opcode:02X}")
        status = None
    return DecodedFrame(status=status, raw_status=opcode, consumed=1)


# ---------------------------------------------------------------------------
# FTMS feature (0x2ACC)
# ---------------------------------------------------------------------------

COMMON_FEATURE_BITS = (
    "average_speed",
    "cadence",
    "total_distance",
    "inclination",
    "elevation_gain",
    "pace",
    "step_count",
    "resistance_level",
    "stride_count",
    "expended_energy",
    "heart_rate",
    "metabolic_equivalent",
    "elapsed_time",
    "remaining_time",
    "power_measurement",
    "force_on_belt",
    "user_data_retention",
)

TARGET_SETTING_BITS = (
    "speed_target",
    "inclination_target",
    "resistance_target",
    "power_target",
    "heart_rate_target",
    "targeted_expended_energy",
    "targeted_step_number",
    "targeted_stride_number",
    "targeted_distance",
    "targeted_training_time",
    "targeted_time_in_two_hr_zones",
    "targeted_time_in_three_hr_zones",
    "targeted_time_in_five_hr_zones",
    "indoor_bike_simulation",
    "wheel_circumference",
    "spin_down_control",
    "targeted_cadence",
)


@dataclass(frozen=True)
class MachineFeatures:
    common: frozenset
    target_settings: frozenset

    def supports(self, feature: str) -> bool:
        return feature in self.common or feature in self.target_settings


def _bits_to_names(mask: int, names: tuple) -> frozenset:
    return frozenset(name for bit, name in enumerate(names) if mask & (1 << bit))


def decode_machine_features(data: bytes) -> MachineFeatures:
    """Decode the Fitness Machine Feature characteristic."""
    _require(data, 4, "machine features")
    common = int.from_bytes(data[0:4], "little")
    target = int.from_bytes(data[4:8], "little") if len(data) >= 8 else 0
    return MachineFeatures(
        common=_bits_to_names(common, COMMON_FEATURE_BITS),
        target_settings=_bits_to_names(target, TARGET_SETTING_BITS),
    )


# ---------------------------------------------------------------------------
# Proprietary stream (FFF1)
#
#   02 51 03 0E 00 7C 00 03 00 2C 00 7E 00 00 00 00 00 D7 03
#   sync  st speed duration dist  ?     steps
# ---------------------------------------------------------------------------

PROPRIETARY_MIN_LENGTH = 6
PROPRIETARY_STATUS_IDX = 2
PROPRIETARY_SPEED_IDX = 3
PROPRIETARY_DURATION_IDX = 5
PROPRIETARY_DISTANCE_IDX = 7
PROPRIETARY_STEPS_IDX = 11

PROPRIETARY_STATUS_STARTING = 0x02
PROPRIETARY_STATUS_RUNNING = 0x03
PROPRIETARY_STATUS_PAUSING = 0x04
PROPRIETARY_STATUS_PAUSED = 0x0A
PROPRIETARY_STATUS_STANDBY = 0x00


def _proprietary_status(raw: int) -> Optional[StatusSignal]:
    if raw in (PROPRIETARY_STATUS_STARTING, PROPRIETARY_STATUS_RUNNING):
        return StatusSignal.RUNNING
    if raw == PROPRIETARY_STATUS_PAUSING:
        # Belt still slowing down; hold the current state
        return None
    if raw == PROPRIETARY_STATUS_PAUSED:
        return StatusSignal.PAUSED
    if raw == PROPRIETARY_STATUS_STANDBY:
        return StatusSignal.STANDBY
    return StatusSignal.STOPPED


def decode_proprietary(data: bytes) -> DecodedFrame:
    """Decode one frame of the vendor telemetry stream.

    Raises:
        TruncatedFrame: Fewer than 6 bytes
        UnexpectedSync: First byte is not 0x02
    """
    _require(data, PROPRIETARY_MIN_LENGTH, "proprietary frame")
    if data[0] != PROPRIETARY_SYNC:
        raise UnexpectedSync(f"expected sync 0x{PROPRIETARY_SYNC:02X}, got 0x{data[0]:02X}")
    if data[1] != PROPRIETARY_SUB_ID:
        logger.warning(f"Unexpected proprietary sub-id 0x{data[1]:02X}")

    raw_status = data[PROPRIETARY_STATUS_IDX]
    speed_kph = u16_le(data, PROPRIETARY_SPEED_IDX) / 10.0 * MPH_TO_KPH

    def _field(idx: int) -> Optional[int]:
        if len(data) < idx + 2:
            return None
        return u16_le(data, idx)

    duration_s = _field(PROPRIETARY_DURATION_IDX)
    distance_raw = _field(PROPRIETARY_DISTANCE_IDX)
    steps = _field(PROPRIETARY_STEPS_IDX)
    distance_m = (
        distance_raw / 10.0 * PROPRIETARY_METERS_PER_TENTH_UNIT
        if distance_raw is not None
        else None
    )

    return DecodedFrame(
        telemetry=TelemetryUpdate(
            distance_m=distance_m,
            steps=steps,
            duration_s=duration_s,
            speed_kph=speed_kph,
        ),
        status=_proprietary_status(raw_status),
        raw_status=raw_status,
        consumed=len(data),
    )


# ---------------------------------------------------------------------------
# Polling console responses (FFF1, paired with the opcode last written to FFF2)
# ---------------------------------------------------------------------------

CONSOLE_STATUS_STANDBY = 1
CONSOLE_STATUS_RUNNING = 3
CONSOLE_STATUS_SUMMARY_SCREEN = 4
CONSOLE_STATUS_PAUSED = 5

CONSOLE_STATUS_SIGNALS = {
    CONSOLE_STATUS_RUNNING: StatusSignal.RUNNING,
    CONSOLE_STATUS_PAUSED: StatusSignal.PAUSED,
    CONSOLE_STATUS_SUMMARY_SCREEN: StatusSignal.STOPPED,
    CONSOLE_STATUS_STANDBY: StatusSignal.STANDBY,
}


def decode_console_response(opcode: int, data: bytes) -> DecodedFrame:
    """Decode a console response for the opcode it answers.

    Args:
        opcode: The opcode of the request this response pairs with
        data: Raw notification payload

    Raises:
        TruncatedFrame: Payload too short for the opcode
        InvalidStatusFrame: Status response with non-zero bytes 3-4
    """
    if opcode == OPCODE_STATUS:
        _require(data, 5, "console status")
        raw_status = data[2]
        if data[3] or data[4]:
            raise InvalidStatusFrame(f"status response padding not zero: {hex_str(data)}")
        status = CONSOLE_STATUS_SIGNALS.get(raw_status, StatusSignal.UNKNOWN)
        return DecodedFrame(status=status, raw_status=raw_status, consumed=5)

    if opcode == OPCODE_DURATION:
        _require(data, 5, "console duration")
        hours, minutes, seconds = data[2], data[3], data[4]
        return DecodedFrame(
            telemetry=TelemetryUpdate(duration_s=hours * 3600 + minutes * 60 + seconds),
            consumed=5,
        )

    _require(data, 4, f"console response 0x{opcode:02X}")
    value = u16_be(data, 2)

    if opcode == OPCODE_STEPS:
        update = TelemetryUpdate(steps=value)
    elif opcode == OPCODE_CALORIES:
        update = TelemetryUpdate(calories=value)
    elif opcode == OPCODE_DISTANCE:
        update = TelemetryUpdate(distance_m=value / 100.0 * METERS_PER_MILE)
    elif opcode == OPCODE_SPEED:
        update = TelemetryUpdate(speed_kph=estimate_console_mph(value) * MPH_TO_KPH)
    else:
        logger.debug(f"No decoder for console opcode 0x{opcode:02X}")
        update = TelemetryUpdate()
    return DecodedFrame(telemetry=update, consumed=4)


# ---------------------------------------------------------------------------
# Passive serial snoop
# ---------------------------------------------------------------------------

SNOOP_SPEED_VALID = 10
SNOOP_SPEED_AT_REST = 50


class SnoopRequest(Enum):
    NONE = 0
    STEPS = 1
    SPEED = 2


def classify_request(frame: bytes) -> SnoopRequest:
    """Classify a console request by its literal prefix."""
    if frame.startswith(SNOOP_STEPS_PREFIX):
        return SnoopRequest.STEPS
    if frame.startswith(SNOOP_SPEED_PREFIX):
        return SnoopRequest.SPEED
    return SnoopRequest.NONE


def decode_speed_command(frame: bytes) -> DecodedFrame:
    """Decode the speed the console commands to the motor controller.

    A value of exactly 50 is the encoder-at-rest reading of the calibrated
    unit and means stopped; anything below is line noise.
    """
    _require(frame, 6, "speed command")
    if frame[3] != SNOOP_SPEED_VALID:
        return DecodedFrame(consumed=len(frame))
    value = frame[4] * 256 + frame[5]
    if value < SNOOP_SPEED_AT_REST:
        logger.debug(f"Ignoring speed value below rest sentinel: {value}")
        return DecodedFrame(consumed=len(frame))
    if value == SNOOP_SPEED_AT_REST:
        return DecodedFrame(
            telemetry=TelemetryUpdate(speed_kph=0.0),
            status=StatusSignal.STOPPED,
            raw_status=value,
            consumed=len(frame),
        )
    return DecodedFrame(
        telemetry=TelemetryUpdate(speed_kph=estimate_console_mph(value) * MPH_TO_KPH),
        status=StatusSignal.RUNNING,
        raw_status=value,
        consumed=len(frame),
    )


def decode_steps_response(frame: bytes) -> DecodedFrame:
    _require(frame, 5, "steps response")
    return DecodedFrame(
        telemetry=TelemetryUpdate(steps=frame[3] * 256 + frame[4]),
        consumed=len(frame),
    )


class ByteRing:
    """Fixed-size receive buffer; bytes past the end wrap to the start."""

    def __init__(self, size: int = SNOOP_BUFFER_SIZE) -> None:
        self.size = size
        self._buf = bytearray(size)
        self._count = 0
        self._raw = bytearray()

    def __len__(self) -> int:
        return self._count

    def push(self, byte: int) -> None:
        self._buf[self._count % self.size] = byte
        self._count += 1
        self._raw.append(byte)

    def frame(self) -> bytes:
        return bytes(self._buf[: min(self._count, self.size)])

    def raw(self) -> bytes:
        return bytes(self._raw)

    def clear(self) -> None:
        self._count = 0
        self._raw.clear()


class SerialSnoopDecoder:
    """Pairs console requests with motor-controller responses.

    The only state kept is which request was seen last, so a response is
    decoded only when it directly follows a recognized steps request.
    """

    def __init__(self, buffer_size: int = SNOOP_BUFFER_SIZE) -> None:
        self.requests = ByteRing(buffer_size)
        self.responses = ByteRing(buffer_size)
        self.last_request = SnoopRequest.NONE

    def process_request(self) -> Optional[DecodedFrame]:
        """Classify the request bytes gathered this tick, then clear them."""
        if not len(self.requests):
            return None
        raw = self.requests.raw()
        frame = self.requests.frame()
        self.requests.clear()
        logger.debug(f"REQ: {hex_str(raw)}")

        kind = classify_request(raw)
        if kind is SnoopRequest.SPEED:
            self.last_request = SnoopRequest.NONE
            return decode_speed_command(frame)
        self.last_request = kind
        return None

    def process_response(self) -> Optional[DecodedFrame]:
        """Decode the response bytes gathered this tick, then clear them."""
        if not len(self.responses):
            return None
        frame = self.responses.frame()
        logger.debug(f"RESP: {hex_str(self.responses.raw())}")
        self.responses.clear()

        if self.last_request is not SnoopRequest.STEPS:
            return None
        self.last_request = SnoopRequest.NONE
        return decode_steps_response(frame)
