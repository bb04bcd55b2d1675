"""
Core constants for treadmill connectivity and session detection.
"""

_BASE = "-0000-1000-8000-00805f9b34fb"


def sig_uuid(uuid16: int) -> str:
    """Build a full 128-bit UUID from a 16-bit SIG number."""
    return f"0000{uuid16:04x}{_BASE}"


# FTMS (Fitness Machine Service) UUIDs
FTMS_SERVICE_UUID = sig_uuid(0x1826)
FTMS_TREADMILL_DATA_UUID = sig_uuid(0x2ACD)
FTMS_STATUS_UUID = sig_uuid(0x2ADA)
FTMS_FEATURE_UUID = sig_uuid(0x2ACC)
FTMS_TREADMILL_FEATURE_UUID = sig_uuid(0x2ACE)
FTMS_CONTROL_POINT_UUID = sig_uuid(0x2AD9)

# Vendor service shared by the proprietary stream and the polling console
VENDOR_SERVICE_UUID = sig_uuid(0xFFF0)
VENDOR_NOTIFY_UUID = sig_uuid(0xFFF1)
VENDOR_WRITE_UUID = sig_uuid(0xFFF2)

# Control point payloads
CONTROL_REQUEST_CONTROL = bytes([0x00])
CONTROL_RESET = bytes([0x08, 0x01])

# Proprietary stream
PROPRIETARY_SYNC = 0x02
PROPRIETARY_SUB_ID = 0x51
PROPRIETARY_START_STREAM = bytes([0x02, 0x51, 0x0B, 0x03])

# Polling console opcodes
OPCODE_STEPS = 0x88
OPCODE_DURATION = 0x89
OPCODE_STATUS = 0x91
OPCODE_DISTANCE = 0x85
OPCODE_CALORIES = 0x87
OPCODE_SPEED = 0x82
CONSOLE_REQUEST_PREFIX = 0xA1
CONSOLE_NAME_PREFIX = "LifeSpan-TM"

# STEPS and STATUS are requested more often so session changes are seen quickly
CONSOLE_COMMAND_ORDER = (
    OPCODE_STEPS,
    OPCODE_STATUS,
    OPCODE_DURATION,
    OPCODE_STATUS,
    OPCODE_DISTANCE,
    OPCODE_STEPS,
    OPCODE_STATUS,
    OPCODE_CALORIES,
    OPCODE_STATUS,
    OPCODE_SPEED,
)

# Serial snoop request templates
SNOOP_STEPS_PREFIX = bytes([1, 3, 0, 15])
SNOOP_SPEED_PREFIX = bytes([1, 6, 0, 10])
SNOOP_BUFFER_SIZE = 10
SNOOP_BAUDRATE = 4800

# Timing (milliseconds)
RETRY_INTERVAL_MS = 5000
FOUND_CONNECT_DELAY_MS = 100
SCAN_DURATION_MS = 3000
RESET_DELAY_MS = 5000
RESTREAM_DELAY_MS = 1000
POLL_MIN_INTERVAL_MS = 300
POLL_MAX_INTERVAL_MS = 1400
TICK_INTERVAL_MS = 50

# Unit conversions
MPS_MILLI_TO_KPH = 0.0036
MPH_TO_KPH = 1.609344
METERS_PER_MILE = 1609.344
# Vendor calibration for the proprietary distance field
PROPRIETARY_METERS_PER_TENTH_UNIT = 16.0934
# Empirical steps per meter for devices that only report distance
STEPS_PER_METER = 1.7233

# Application metadata
__version__ = "0.1.0"
