"""PollingScheduler rotation and pacing."""

import pytest

from treadsync.core import CONSOLE_COMMAND_ORDER, OPCODE_STATUS, OPCODE_STEPS
from treadsync.polling import PollingScheduler, build_console_request


def test_request_frame_layout():
    assert build_console_request(0x91) == bytes([0xA1, 0x91, 0x00, 0x00, 0x00, 0x00])


def test_first_send_is_immediate():
    scheduler = PollingScheduler()
    assert scheduler.maybe_send(0) == build_console_request(OPCODE_STEPS)
    assert scheduler.awaiting_response


def test_waits_for_min_interval_after_response():
    scheduler = PollingScheduler()
    scheduler.maybe_send(0)
    assert scheduler.on_response() == OPCODE_STEPS
    assert scheduler.maybe_send(299) is None
    assert scheduler.maybe_send(300) == build_console_request(OPCODE_STATUS)


def test_waits_for_response_until_max_interval():
    scheduler = PollingScheduler()
    scheduler.maybe_send(0)
    assert scheduler.maybe_send(1000) is None
    assert scheduler.maybe_send(1399) is None
    assert scheduler.maybe_send(1400) is not None
    assert scheduler.consecutive_misses == 1
    assert scheduler.total_misses == 1


def test_response_clears_miss_streak():
    scheduler = PollingScheduler()
    scheduler.maybe_send(0)
    scheduler.maybe_send(1400)
    scheduler.on_response()
    assert scheduler.consecutive_misses == 0
    assert scheduler.total_misses == 1


def test_index_advances_one_per_send_and_wraps():
    scheduler = PollingScheduler()
    now = 0
    sent = []
    for _ in range(len(CONSOLE_COMMAND_ORDER) + 2):
        frame = scheduler.maybe_send(now)
        sent.append(frame[1])
        scheduler.on_response()
        now += 300
    assert sent == list(CONSOLE_COMMAND_ORDER) + list(CONSOLE_COMMAND_ORDER[:2])


def test_unsolicited_response_pairs_with_nothing():
    scheduler = PollingScheduler()
    assert scheduler.on_response() is None
    scheduler.maybe_send(0)
    assert scheduler.on_response() == OPCODE_STEPS
    assert scheduler.on_response() is None


def test_reset_restarts_cycle():
    scheduler = PollingScheduler()
    scheduler.maybe_send(0)
    scheduler.reset()
    assert scheduler.index == 0
    assert not scheduler.awaiting_response
    assert scheduler.maybe_send(5) == build_console_request(OPCODE_STEPS)


def test_empty_order_rejected():
    with pytest.raises(ValueError):
        PollingScheduler(command_order=())
