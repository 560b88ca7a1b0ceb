"""Tests for subscriber fan-out, catch-up and backpressure."""

import asyncio

import pytest

from conftest import XX_ABC, XX_DEF, fill, make_record
from seedlink_engine.config import RetentionPolicy
from seedlink_engine.fanout import END_OF_DATA, BackpressurePolicy, GapNotice, Subscriber
from seedlink_engine.protocol import (
    ConnectionClosed,
    ProtocolVariant,
    Record,
    SlowConsumerDisconnected,
    StartMode,
    StartPoint,
)
from seedlink_engine.record_log import StationLogs
from seedlink_engine.selector import Selector


def drain(subscriber: Subscriber) -> list:
    items = []
    while True:
        item = subscriber.get_nowait()
        if item is None:
            return items
        items.append(item)
        if item is END_OF_DATA:
            return items


def sequences(items) -> list[int]:
    return [i.sequence for i in items if isinstance(i, Record)]


class CountingSource:
    """Record store in front of a log that remembers each catch-up read."""

    def __init__(self, log):
        self.log = log
        self.reads = []

    def fetch(self, from_sequence=None, from_time=None, key=None, upto=None):
        self.reads.append((from_sequence, upto))
        return self.log.fetch(from_sequence, from_time, key, upto)

    def earliest_available(self, key=None):
        return self.log.earliest_available(key)

    def latest_available(self, key=None):
        return self.log.latest_available(key)


@pytest.fixture
def logs():
    return StationLogs(RetentionPolicy(max_records=100))


# ============================================================================
# CATCH-UP AND LIVE
# ============================================================================

class TestCatchUp:
    """Snapshot, catch-up and switch to live delivery"""

    def test_data_after_sequence_then_live(self, logs):
        """DATA 145 on a log holding 1..150 delivers 146..150, then live records"""
        fill(logs, 150)
        sub = Subscriber()
        cursor = logs.distributor(XX_ABC).subscribe(sub, start=StartPoint.after(145))
        assert cursor.sequence == 145
        assert sequences(drain(sub)) == [146, 147, 148, 149, 150]
        fill(logs, 2, first=151)
        assert sequences(drain(sub)) == [151, 152]

    def test_no_duplicates_when_appending_during_catchup(self, logs):
        fill(logs, 10)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub, start=StartPoint(StartMode.ALL))
        got = [sub.get_nowait().sequence for _ in range(3)]
        fill(logs, 5, first=11)
        got += sequences(drain(sub))
        assert got == list(range(1, 16))

    def test_two_subscribers_at_different_snapshots(self, logs):
        fill(logs, 10)
        first = Subscriber(name="first")
        logs.distributor(XX_ABC).subscribe(first, start=StartPoint(StartMode.ALL))
        fill(logs, 10, first=11)
        second = Subscriber(name="second")
        logs.distributor(XX_ABC).subscribe(second, start=StartPoint.after(15))
        fill(logs, 5, first=21)
        assert sequences(drain(first)) == list(range(1, 26))
        assert sequences(drain(second)) == list(range(16, 26))

    def test_next_skips_history(self, logs):
        fill(logs, 10)
        sub = Subscriber()
        cursor = logs.distributor(XX_ABC).subscribe(sub)
        assert cursor.sequence == 10
        assert drain(sub) == []
        fill(logs, 1, first=11)
        assert sequences(drain(sub)) == [11]

    def test_resume_at_latest(self, logs):
        fill(logs, 10)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub, start=StartPoint.after(10))
        assert drain(sub) == []

    def test_resume_beyond_latest(self, logs):
        fill(logs, 10)
        sub = Subscriber()
        cursor = logs.distributor(XX_ABC).subscribe(sub, start=StartPoint.after(500))
        assert cursor.sequence == 10
        fill(logs, 1, first=11)
        assert sequences(drain(sub)) == [11]

    def test_empty_log(self, logs):
        logs.add_station(XX_ABC)
        sub = Subscriber()
        cursor = logs.distributor(XX_ABC).subscribe(sub, start=StartPoint(StartMode.ALL))
        assert cursor.sequence == -1
        fill(logs, 2)
        assert sequences(drain(sub)) == [1, 2]

    def test_time_start(self, logs):
        fill(logs, 10)
        sub = Subscriber()
        start = StartPoint.at_time(make_record(8).start_time)
        logs.distributor(XX_ABC).subscribe(sub, start=start)
        assert sequences(drain(sub)) == [8, 9, 10]

    def test_selector_filters_catchup_and_live(self, logs):
        for seq in range(1, 7):
            logs.append(make_record(seq, channel="BHZ" if seq % 2 else "BHN"))
        sub = Subscriber()
        selector = Selector.compile(["BHZ"], ProtocolVariant.V3)
        logs.distributor(XX_ABC).subscribe(sub, selector, StartPoint(StartMode.ALL))
        logs.append(make_record(7))
        logs.append(make_record(8, channel="BHN"))
        assert sequences(drain(sub)) == [1, 3, 5, 7]
        assert sub.cursor(XX_ABC) == 7

    def test_catchup_reads_from_source(self):
        logs = StationLogs(RetentionPolicy(max_records=100), source_factory=CountingSource)
        fill(logs, 10)
        sub = Subscriber()
        distributor = logs.distributor(XX_ABC)
        distributor.subscribe(sub, start=StartPoint.after(5))
        assert sequences(drain(sub)) == [6, 7, 8, 9, 10]
        assert distributor.source.reads == [(6, 10)]
        fill(logs, 1, first=11)
        assert sequences(drain(sub)) == [11]
        assert len(distributor.source.reads) == 1

    def test_multiple_stations(self, logs):
        fill(logs, 3, XX_ABC)
        fill(logs, 3, XX_DEF)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub, start=StartPoint(StartMode.ALL))
        logs.distributor(XX_DEF).subscribe(sub, start=StartPoint(StartMode.ALL))
        items = drain(sub)
        assert len(items) == 6
        assert sub.stations == [XX_ABC, XX_DEF]
        for station in (XX_ABC, XX_DEF):
            assert [r.sequence for r in items if r.station == station] == [1, 2, 3]


# ============================================================================
# WINDOWS
# ============================================================================

class TestWindows:
    """FETCH and time windows end with END_OF_DATA"""

    def test_fetch_ends_after_catchup(self, logs):
        fill(logs, 5)
        sub = Subscriber()
        start = StartPoint(StartMode.SEQUENCE, sequence=2, fetch=True)
        logs.distributor(XX_ABC).subscribe(sub, start=start)
        items = drain(sub)
        assert sequences(items) == [3, 4, 5]
        assert items[-1] is END_OF_DATA

    def test_fetch_ignores_live_records(self, logs):
        fill(logs, 2)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub, start=StartPoint(StartMode.NEXT, fetch=True))
        fill(logs, 2, first=3)
        assert drain(sub) == [END_OF_DATA]

    def test_time_window_spans_live(self, logs):
        fill(logs, 5)
        sub = Subscriber()
        start = StartPoint.at_time(make_record(4).start_time, make_record(7).start_time)
        logs.distributor(XX_ABC).subscribe(sub, start=start)
        assert sequences(drain(sub)) == [4, 5]
        fill(logs, 3, first=6)
        items = drain(sub)
        assert sequences(items) == [6, 7]
        assert items[-1] is END_OF_DATA


# ============================================================================
# GAPS
# ============================================================================

class TestGaps:
    """Start points below the retained floor"""

    def test_gap_notice_with_earliest(self):
        logs = StationLogs(RetentionPolicy(max_records=10))
        fill(logs, 30)
        sub = Subscriber()
        cursor = logs.distributor(XX_ABC).subscribe(sub, start=StartPoint.after(4))
        notice = sub.get_nowait()
        assert notice == GapNotice(XX_ABC, 5, 21, "evicted")
        assert cursor.sequence == 20
        assert sequences(drain(sub)) == list(range(21, 31))

    def test_time_fallback_when_sequence_evicted(self):
        logs = StationLogs(RetentionPolicy(max_records=10))
        fill(logs, 30)
        sub = Subscriber()
        start = StartPoint.after(4, make_record(25).start_time)
        logs.distributor(XX_ABC).subscribe(sub, start=start)
        assert sequences(drain(sub)) == [25, 26, 27, 28, 29, 30]

    def test_start_before_first_published(self):
        """A station numbered from 1000 reports a gap for DATA 10"""
        logs = StationLogs(first_sequence=1000)
        key = make_record(1).key
        for n in range(3):
            logs.publish(key, make_record(n).start_time, make_record(n).payload)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub, start=StartPoint.after(10))
        items = drain(sub)
        assert items[0] == GapNotice(XX_ABC, 11, 1000, "evicted")
        assert sequences(items) == [1000, 1001, 1002]

    def test_renumbered_log(self):
        logs = StationLogs(allow_renumbering=True)
        fill(logs, 5)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub, start=StartPoint.after(2))
        assert sequences([sub.get_nowait()]) == [3]
        logs.append(make_record(1, channel="HHZ"))
        items = drain(sub)
        assert items[0] == GapNotice(XX_ABC, 4, None, "renumbered")
        assert sequences(items) == [1]


# ============================================================================
# BACKPRESSURE
# ============================================================================

class TestBackpressure:
    """Slow subscribers never stall the appender or other subscribers"""

    def test_drop_oldest(self, logs):
        logs.add_station(XX_ABC)
        slow = Subscriber(BackpressurePolicy.DROP_OLDEST, max_queue=5, name="slow")
        fast = Subscriber(name="fast")
        logs.distributor(XX_ABC).subscribe(slow)
        logs.distributor(XX_ABC).subscribe(fast)
        fill(logs, 12)
        assert slow.queued == 5
        assert slow.dropped == 7
        items = drain(slow)
        assert items[0] == GapNotice(XX_ABC, 1, 8, "dropped")
        assert sequences(items) == [8, 9, 10, 11, 12]
        assert sequences(drain(fast)) == list(range(1, 13))

    def test_dropped_records_are_not_held(self):
        """Records dropped from a full queue no longer defer retention"""
        logs = StationLogs(RetentionPolicy(max_records=5, high_water_factor=4.0))
        logs.add_station(XX_ABC)
        sub = Subscriber(BackpressurePolicy.DROP_OLDEST, max_queue=2, name="slow")
        logs.distributor(XX_ABC).subscribe(sub)
        fill(logs, 20)
        assert logs.log(XX_ABC).earliest_sequence == 16
        items = drain(sub)
        assert items[0] == GapNotice(XX_ABC, 1, 19, "dropped")
        assert sequences(items) == [19, 20]

    def test_disconnect(self, logs):
        logs.add_station(XX_ABC)
        slow = Subscriber(BackpressurePolicy.DISCONNECT, max_lag=5, name="slow")
        fast = Subscriber(BackpressurePolicy.DISCONNECT, max_lag=5, name="fast")
        logs.distributor(XX_ABC).subscribe(slow)
        logs.distributor(XX_ABC).subscribe(fast)
        for seq in range(1, 8):
            logs.append(make_record(seq))
            fast.get_nowait()
        with pytest.raises(SlowConsumerDisconnected):
            slow.get_nowait()
        assert len(logs.distributor(XX_ABC)) == 1
        fill(logs, 1, first=8)
        assert sequences(drain(fast)) == [8]

    def test_slow_subscriber_holds_retention(self):
        logs = StationLogs(RetentionPolicy(max_records=10, high_water_factor=3.0))
        fill(logs, 10)
        sub = Subscriber(max_queue=100)
        logs.distributor(XX_ABC).subscribe(sub, start=StartPoint(StartMode.ALL))
        sub.get_nowait()
        fill(logs, 5, first=11)
        assert logs.log(XX_ABC).earliest_sequence == 2
        assert sequences(drain(sub)) == list(range(2, 16))


# ============================================================================
# ASYNC DELIVERY
# ============================================================================

class TestAsyncGet:
    """await get() wakes on appends and on close"""

    async def test_get_waits_for_append(self, logs):
        logs.add_station(XX_ABC)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub)
        waiter = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        assert not waiter.done()
        fill(logs, 1)
        record = await asyncio.wait_for(waiter, 1)
        assert record.sequence == 1

    async def test_close_unblocks_get(self, logs):
        logs.add_station(XX_ABC)
        sub = Subscriber()
        logs.distributor(XX_ABC).subscribe(sub)
        waiter = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        sub.close()
        with pytest.raises(ConnectionClosed):
            await asyncio.wait_for(waiter, 1)
        assert len(logs.distributor(XX_ABC)) == 0

    async def test_unsubscribe_is_idempotent(self, logs):
        logs.add_station(XX_ABC)
        sub = Subscriber()
        distributor = logs.distributor(XX_ABC)
        distributor.subscribe(sub)
        distributor.unsubscribe(sub)
        distributor.unsubscribe(sub)
        assert sub.stations == []
