"""Mailbox hand-off and characteristic capability helpers."""

import itertools
from types import SimpleNamespace

from treadsync.link import Mailbox, can_indicate, can_notify, can_write


def char(*props):
    return SimpleNamespace(uuid="test", properties=list(props))


class TestMailbox:
    def test_newer_payload_overwrites_unread_one(self):
        box = Mailbox()
        box.put(b"\x01")
        box.put(b"\x02")
        assert box.take() == b"\x02"
        assert box.take() is None
        assert box.overwritten == 1

    def test_take_after_take_does_not_count_overwrite(self):
        box = Mailbox()
        box.put(b"\x01")
        assert box.take() == b"\x01"
        box.put(b"\x02")
        assert box.overwritten == 0

    def test_clear_drops_payload(self):
        box = Mailbox()
        box.put(b"\x01")
        box.clear()
        assert box.take() is None

    def test_shared_sequence_orders_arrivals(self):
        arrivals = itertools.count()
        data, status = Mailbox(arrivals), Mailbox(arrivals)
        data.put(b"data")
        status.put(b"status")
        data.put(b"data2")

        stamped = sorted([data.take_stamped(), status.take_stamped()])
        assert [payload for _, payload in stamped] == [b"status", b"data2"]
        assert status.take_stamped() is None


class TestCapabilities:
    def test_indicate_counts_as_notifiable(self):
        indicate = char("indicate")
        assert can_indicate(indicate)
        assert can_notify(indicate)
        assert not can_write(indicate)

    def test_notify_only(self):
        notify = char("notify")
        assert can_notify(notify)
        assert not can_indicate(notify)

    def test_write_without_response(self):
        assert can_write(char("write-without-response"))
        assert not can_write(object())
