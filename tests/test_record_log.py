"""Tests for the per-station record log and its retention."""

import pytest

from conftest import XX_ABC, XX_DEF, fill, make_record
from seedlink_engine.config import RetentionPolicy
from seedlink_engine.protocol import GapDetected, SequenceRegression
from seedlink_engine.record_log import RecordLog, StationLogs


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_log(max_records=100, max_age=None, factor=2.0, **kwargs) -> RecordLog:
    return RecordLog(XX_ABC, RetentionPolicy(max_records, max_age, factor), **kwargs)


# ============================================================================
# APPEND
# ============================================================================

class TestAppend:
    """Ordering, duplicates and regressions"""

    def test_sequences_in_order(self):
        log = make_log()
        fill(log, 5)
        assert [r.sequence for r in log.read_from()] == [1, 2, 3, 4, 5]
        assert (log.earliest_sequence, log.latest_sequence) == (1, 5)

    def test_sequence_gaps_allowed(self):
        log = make_log()
        log.append(make_record(1))
        log.append(make_record(10))
        assert [r.sequence for r in log.read_from()] == [1, 10]

    def test_identical_duplicate_is_ignored(self):
        log = make_log()
        fill(log, 3)
        assert log.append(make_record(2)) is False
        assert len(log) == 3

    def test_regression_halts_log(self):
        log = make_log()
        fill(log, 3)
        with pytest.raises(SequenceRegression):
            log.append(make_record(2, channel="HHZ"))
        assert log.halted
        with pytest.raises(SequenceRegression):
            log.append(make_record(4))

    def test_resolve_clears_halt(self):
        log = make_log()
        fill(log, 3)
        with pytest.raises(SequenceRegression):
            log.append(make_record(1, channel="HHZ"))
        log.resolve()
        assert log.append(make_record(4))

    def test_resolve_with_reset_drops_history(self):
        log = make_log()
        fill(log, 3)
        with pytest.raises(SequenceRegression):
            log.append(make_record(1, channel="HHZ"))
        log.resolve(reset=True)
        assert len(log) == 0
        assert log.generation == 1
        assert log.append(make_record(1, channel="HHZ"))

    def test_renumbering_allowed(self):
        log = make_log(allow_renumbering=True)
        fill(log, 5)
        resets = []
        log.add_reset_listener(lambda: resets.append(True))
        log.append(make_record(1, channel="HHZ"))
        assert resets == [True]
        assert [r.sequence for r in log.read_from()] == [1]

    def test_wrong_station_rejected(self):
        with pytest.raises(ValueError):
            make_log().append(make_record(1, XX_DEF))


# ============================================================================
# RETENTION
# ============================================================================

class TestRetention:
    """Count and age eviction, holds and high water"""

    def test_count_bound(self):
        log = make_log(max_records=10)
        fill(log, 25)
        assert len(log) == 10
        assert log.earliest_sequence == 16
        assert log.evicted_through == 15
        assert log.latest_sequence == 25

    def test_latest_survives_full_eviction(self):
        clock = FakeClock()
        log = make_log(max_records=None, max_age=10.0, clock=clock)
        fill(log, 3)
        clock.now += 60
        assert log.expire() == 3
        assert len(log) == 0
        assert log.latest_sequence == 3

    def test_age_bound(self):
        clock = FakeClock()
        log = make_log(max_records=None, max_age=10.0, clock=clock)
        fill(log, 3)
        clock.now += 5
        fill(log, 2, first=4)
        clock.now += 6
        log.expire()
        assert [r.sequence for r in log.read_from()] == [4, 5]

    def test_hold_defers_eviction(self):
        log = make_log(max_records=10, factor=2.0)
        fill(log, 10)
        log.hold("reader", 3)
        fill(log, 5, first=11)
        assert log.earliest_sequence == 4
        assert len(log) == 12

    def test_high_water_overrides_hold(self):
        log = make_log(max_records=10, factor=2.0)
        fill(log, 10)
        log.hold("reader", 0)
        fill(log, 20, first=11)
        assert len(log) == 20
        assert log.earliest_sequence == 11

    def test_release(self):
        log = make_log(max_records=10)
        fill(log, 10)
        log.hold("reader", 0)
        fill(log, 2, first=11)
        assert len(log) == 12
        log.release("reader")
        log.expire()
        assert len(log) == 10

    def test_compaction_keeps_lookups(self):
        log = make_log(max_records=5)
        fill(log, 500)
        assert log.get(498).sequence == 498
        assert log.get(100) is None
        assert len(log._records) <= 10


# ============================================================================
# READERS
# ============================================================================

class TestReaders:
    """Lazy iteration, time filters and gap detection"""

    def test_read_from_sequence(self):
        log = make_log()
        fill(log, 10)
        assert [r.sequence for r in log.read_from(7)] == [7, 8, 9, 10]

    def test_upto(self):
        log = make_log()
        fill(log, 10)
        assert [r.sequence for r in log.read_from(3, upto=5)] == [3, 4, 5]

    def test_time_filter(self):
        log = make_log()
        fill(log, 10)
        start = make_record(6).start_time
        assert [r.sequence for r in log.read_from(time=start)] == [6, 7, 8, 9, 10]

    def test_key_filter(self):
        log = make_log()
        for seq in range(1, 7):
            log.append(make_record(seq, channel="BHZ" if seq % 2 else "BHN"))
        key = make_record(1).key
        assert [r.sequence for r in log.fetch(key=key)] == [1, 3, 5]

    def test_reader_sees_later_appends(self):
        log = make_log()
        fill(log, 3)
        reader = log.read_from(1)
        assert next(reader).sequence == 1
        fill(log, 2, first=4)
        assert [r.sequence for r in reader] == [2, 3, 4, 5]

    def test_start_below_floor_raises(self):
        log = make_log(max_records=10)
        fill(log, 30)
        with pytest.raises(GapDetected) as exc:
            log.read_from(5)
        assert exc.value.requested == 5
        assert exc.value.earliest == 21

    def test_start_below_first_sequence_raises(self):
        """A log that never evicted still has nothing before its first record"""
        log = make_log()
        fill(log, 5, first=50)
        with pytest.raises(GapDetected) as exc:
            log.read_from(10)
        assert (exc.value.requested, exc.value.earliest) == (10, 50)
        assert [r.sequence for r in log.read_from(50)] == list(range(50, 55))

    def test_reader_overtaken(self):
        log = make_log(max_records=5)
        fill(log, 5)
        reader = log.read_from(1)
        assert next(reader).sequence == 1
        fill(log, 10, first=6)
        with pytest.raises(GapDetected) as exc:
            next(reader)
        assert exc.value.requested == 2
        assert exc.value.earliest == 11

    def test_reader_of_renumbered_log(self):
        log = make_log(allow_renumbering=True)
        fill(log, 5)
        reader = log.read_from(1)
        next(reader)
        log.append(make_record(1, channel="HHZ"))
        with pytest.raises(GapDetected):
            next(reader)

    def test_streams(self):
        log = make_log()
        fill(log, 3)
        fill(log, 2, first=4, channel="BHN")
        streams = log.streams()
        assert len(streams) == 2
        assert streams[make_record(1).key] == (make_record(1).start_time, make_record(3).start_time)

    def test_available(self):
        log = make_log()
        log.append(make_record(1, channel="BHN"))
        fill(log, 3, first=2)
        key = make_record(2).key
        assert log.earliest_available(key) == 2
        assert log.latest_available(key) == 4
        assert log.earliest_available() == 1
        assert log.latest_available(make_record(1, channel="HHZ").key) is None


class TestResolveSequence:
    """Mapping 24-bit v3 sequences onto extended numbering"""

    def test_below_wrap(self):
        log = make_log()
        fill(log, 3, first=100)
        assert log.resolve_sequence(101) == 101

    def test_after_wrap(self):
        log = make_log()
        base = 1 << 24
        fill(log, 3, first=base + 1)
        assert log.resolve_sequence(2) == base + 2
        assert log.resolve_sequence(0xFFFFFF) == base - 1

    def test_empty_log(self):
        assert make_log().resolve_sequence(5) is None


# ============================================================================
# STATION REGISTRY
# ============================================================================

class TestStationLogs:
    """Per-station registry with append-then-publish"""

    def test_publish_assigns_sequences(self):
        logs = StationLogs(first_sequence=1)
        rec = make_record(99)
        first = logs.publish(rec.key, rec.start_time, rec.payload)
        second = logs.publish(rec.key, rec.start_time + 1, rec.payload)
        assert (first.sequence, second.sequence) == (1, 2)

    def test_stations_are_independent(self):
        logs = StationLogs()
        fill(logs, 3, XX_ABC)
        fill(logs, 1, XX_DEF, first=50)
        assert list(logs) == [XX_ABC, XX_DEF]
        assert logs.log(XX_ABC).latest_sequence == 3
        assert logs.log(XX_DEF).latest_sequence == 50

    def test_add_station_updates_description(self):
        logs = StationLogs()
        logs.add_station(XX_ABC)
        logs.add_station(XX_ABC, "Renamed")
        assert logs.log(XX_ABC).description == "Renamed"
        assert len(logs) == 1
        assert XX_ABC in logs
