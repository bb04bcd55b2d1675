"""Decoder tests against captured frames from real consoles."""

import pytest

from treadsync.core import (
    OPCODE_CALORIES,
    OPCODE_DISTANCE,
    OPCODE_DURATION,
    OPCODE_SPEED,
    OPCODE_STATUS,
    OPCODE_STEPS,
)
from treadsync.decoders import (
    ByteRing,
    SerialSnoopDecoder,
    SnoopRequest,
    classify_request,
    decode_console_response,
    decode_machine_features,
    decode_machine_status,
    decode_proprietary,
    decode_speed_command,
    decode_steps_response,
    decode_treadmill_data,
    estimate_console_mph,
)
from treadsync.errors import DecodeError, InvalidStatusFrame, TruncatedFrame, UnexpectedSync
from treadsync.models import StatusSignal

PROPRIETARY_SAMPLE = bytes.fromhex("02 51 03 0E 00 7C 00 03 00 2C 00 7E 00 00 00 00 00 D7 03".replace(" ", ""))


class TestTreadmillData:
    def test_speed_only(self):
        frame = decode_treadmill_data(bytes([0x00, 0x00, 0x58, 0x02]))
        assert frame.telemetry.speed_kph == pytest.approx(2.16)
        assert frame.consumed == 4
        assert frame.status is None

    def test_bit_zero_set_means_no_speed(self):
        frame = decode_treadmill_data(bytes([0x01, 0x00]))
        assert frame.telemetry.speed_kph is None
        assert frame.consumed == 2

    def test_speed_and_distance_estimates_steps(self):
        # flags: distance present (bit 2), speed present (bit 0 clear)
        data = bytes([0x04, 0x00, 0x58, 0x02, 0xE8, 0x03, 0x00])
        frame = decode_treadmill_data(data, last_distance_m=900.0)
        assert frame.telemetry.distance_m == 1000.0
        assert frame.telemetry.steps == int(1000 * 1.7233)
        assert frame.consumed == 7

    def test_distance_not_increasing_keeps_steps(self):
        data = bytes([0x05, 0x00, 0xE8, 0x03, 0x00])
        frame = decode_treadmill_data(data, last_distance_m=1000.0)
        assert frame.telemetry.distance_m == 1000.0
        assert frame.telemetry.steps is None

    def test_energy_and_elapsed_time(self):
        # bit 0 set (no speed), bit 7 energy, bit 10 elapsed time
        flags = 0x0001 | (1 << 7) | (1 << 10)
        data = flags.to_bytes(2, "little") + bytes([0x2A, 0x00, 0x05, 0x00, 0x00]) + (754).to_bytes(2, "little")
        frame = decode_treadmill_data(data)
        assert frame.telemetry.calories == 42
        assert frame.telemetry.duration_s == 754
        assert frame.consumed == 2 + 5 + 2

    def test_unavailable_energy_and_zero_elapsed_ignored(self):
        flags = 0x0001 | (1 << 7) | (1 << 10)
        data = flags.to_bytes(2, "little") + bytes([0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0x00, 0x00])
        frame = decode_treadmill_data(data)
        assert frame.telemetry.calories is None
        assert frame.telemetry.duration_s is None

    def test_skips_fields_before_elapsed_time(self):
        # incline (2), heart rate (1) and elapsed time (2)
        flags = 0x0001 | (1 << 3) | (1 << 8) | (1 << 10)
        data = flags.to_bytes(2, "little") + bytes([0x0A, 0x00, 0x80, 0x3C, 0x00])
        frame = decode_treadmill_data(data)
        assert frame.telemetry.duration_s == 60
        assert frame.consumed == 7

    def test_truncated_distance_raises(self):
        with pytest.raises(TruncatedFrame) as excinfo:
            decode_treadmill_data(bytes([0x04, 0x00, 0x58, 0x02, 0xE8]))
        assert excinfo.value.needed == 7
        assert excinfo.value.length == 5

    def test_missing_flags_raises(self):
        with pytest.raises(TruncatedFrame):
            decode_treadmill_data(b"\x00")


class TestMachineStatus:
    @pytest.mark.parametrize(
        "opcode,expected",
        [
            (0x02, StatusSignal.STOPPED),
            (0x03, StatusSignal.STOPPED),
            (0x04, StatusSignal.RUNNING),
            (0x05, None),
        ],
    )
    def test_opcodes(self, opcode, expected):
        frame = decode_machine_status(bytes([opcode, 0x01]))
        assert frame.status == expected
        assert frame.raw_status == opcode

    def test_empty_raises(self):
        with pytest.raises(TruncatedFrame):
            decode_machine_status(b"")


class TestMachineFeatures:
    def test_common_bits(self):
        features = decode_machine_features(bytes([0x44, 0x10, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00]))
        assert features.supports("total_distance")
        assert features.supports("step_count")
        assert features.supports("elapsed_time")
        assert features.supports("speed_target")
        assert not features.supports("heart_rate")

    def test_too_short(self):
        with pytest.raises(TruncatedFrame):
            decode_machine_features(bytes([0x44, 0x10]))


class TestProprietary:
    def test_sample_frame(self):
        frame = decode_proprietary(PROPRIETARY_SAMPLE)
        assert frame.status is StatusSignal.RUNNING
        assert frame.telemetry.steps == 126
        assert frame.telemetry.distance_m == pytest.approx(4.83, abs=0.01)
        assert frame.telemetry.duration_s == 124
        assert frame.telemetry.speed_kph == pytest.approx(1.4 * 1.609344)

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (0x02, StatusSignal.RUNNING),
            (0x04, None),
            (0x0A, StatusSignal.PAUSED),
            (0x00, StatusSignal.STANDBY),
            (0x01, StatusSignal.STOPPED),
        ],
    )
    def test_status_mapping(self, raw, expected):
        data = bytearray(PROPRIETARY_SAMPLE)
        data[2] = raw
        assert decode_proprietary(bytes(data)).status == expected

    def test_short_frame_has_no_optional_fields(self):
        frame = decode_proprietary(PROPRIETARY_SAMPLE[:6])
        assert frame.telemetry.duration_s is None
        assert frame.telemetry.distance_m is None
        assert frame.telemetry.steps is None
        assert frame.status is StatusSignal.RUNNING

    def test_too_short(self):
        with pytest.raises(TruncatedFrame):
            decode_proprietary(PROPRIETARY_SAMPLE[:5])

    def test_bad_sync(self):
        with pytest.raises(UnexpectedSync):
            decode_proprietary(b"\x03" + PROPRIETARY_SAMPLE[1:])


class TestConsoleResponse:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (3, StatusSignal.RUNNING),
            (5, StatusSignal.PAUSED),
            (4, StatusSignal.STOPPED),
            (1, StatusSignal.STANDBY),
            (9, StatusSignal.UNKNOWN),
        ],
    )
    def test_status(self, raw, expected):
        frame = decode_console_response(OPCODE_STATUS, bytes([0xA1, 0x91, raw, 0x00, 0x00]))
        assert frame.status is expected

    def test_status_with_dirty_padding_is_invalid(self):
        with pytest.raises(InvalidStatusFrame):
            decode_console_response(OPCODE_STATUS, bytes([0xA1, 0x91, 0x03, 0x00, 0x07]))

    def test_steps_big_endian(self):
        frame = decode_console_response(OPCODE_STEPS, bytes([0xA1, 0x88, 0x01, 0x2C]))
        assert frame.telemetry.steps == 300

    def test_duration(self):
        frame = decode_console_response(OPCODE_DURATION, bytes([0xA1, 0x89, 0x01, 0x02, 0x03]))
        assert frame.telemetry.duration_s == 3723

    def test_distance_hundredths_of_mile(self):
        frame = decode_console_response(OPCODE_DISTANCE, bytes([0xA1, 0x85, 0x00, 0x64]))
        assert frame.telemetry.distance_m == pytest.approx(1609.344)

    def test_calories(self):
        frame = decode_console_response(OPCODE_CALORIES, bytes([0xA1, 0x87, 0x00, 0x2A]))
        assert frame.telemetry.calories == 42

    def test_speed(self):
        frame = decode_console_response(OPCODE_SPEED, bytes([0xA1, 0x82, 0x01, 0x00]))
        assert frame.telemetry.speed_kph == pytest.approx(estimate_console_mph(256) * 1.609344)

    def test_speed_never_negative(self):
        assert estimate_console_mph(0) == 0.0

    def test_truncated(self):
        with pytest.raises(DecodeError):
            decode_console_response(OPCODE_STEPS, bytes([0xA1, 0x88, 0x01]))


class TestSerialSnoop:
    def test_classify(self):
        assert classify_request(bytes([1, 3, 0, 15, 0, 1])) is SnoopRequest.STEPS
        assert classify_request(bytes([1, 6, 0, 10, 0, 60])) is SnoopRequest.SPEED
        assert classify_request(bytes([1, 4, 0, 0])) is SnoopRequest.NONE

    def test_steps_response(self):
        frame = decode_steps_response(bytes([1, 3, 2, 1, 44, 0, 0]))
        assert frame.telemetry.steps == 300

    def test_speed_at_rest_is_stopped(self):
        frame = decode_speed_command(bytes([1, 6, 0, 10, 0, 50]))
        assert frame.status is StatusSignal.STOPPED
        assert frame.telemetry.speed_kph == 0.0

    def test_speed_below_rest_is_noise(self):
        frame = decode_speed_command(bytes([1, 6, 0, 10, 0, 20]))
        assert frame.status is None
        assert frame.telemetry.is_empty()

    def test_speed_above_rest_is_running(self):
        frame = decode_speed_command(bytes([1, 6, 0, 10, 1, 0]))
        assert frame.status is StatusSignal.RUNNING
        assert frame.telemetry.speed_kph > 0

    def test_request_then_response_pairs(self):
        decoder = SerialSnoopDecoder()
        for b in (1, 3, 0, 15, 0, 1):
            decoder.requests.push(b)
        assert decoder.process_request() is None
        for b in (1, 3, 2, 1, 44):
            decoder.responses.push(b)
        frame = decoder.process_response()
        assert frame.telemetry.steps == 300
        # The pairing is consumed
        for b in (1, 3, 2, 1, 44):
            decoder.responses.push(b)
        assert decoder.process_response() is None

    def test_speed_request_clears_pending_steps(self):
        decoder = SerialSnoopDecoder()
        for b in (1, 3, 0, 15):
            decoder.requests.push(b)
        decoder.process_request()
        for b in (1, 6, 0, 10, 0, 50):
            decoder.requests.push(b)
        assert decoder.process_request().status is StatusSignal.STOPPED
        for b in (1, 3, 2, 1, 44):
            decoder.responses.push(b)
        assert decoder.process_response() is None

    def test_ring_wraps(self):
        ring = ByteRing(4)
        for b in range(6):
            ring.push(b)
        assert len(ring) == 6
        assert ring.frame() == bytes([4, 5, 2, 3])
        assert ring.raw() == bytes(range(6))
        ring.clear()
        assert len(ring) == 0
