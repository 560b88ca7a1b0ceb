"""Bounded per-station record log.

Each station owns one :class:`RecordLog` holding extended sequence numbers in
strictly increasing order. :class:`StationLogs` keeps the logs, one
:class:`~seedlink_engine.fanout.Distributor` per log, and orders every append
before the matching publish.
"""

from __future__ import annotations

import logging
import time as _time
from bisect import bisect_left
from operator import attrgetter
from typing import Callable, Iterator, Protocol

from .config import RetentionPolicy
from .fanout import Distributor
from .protocol import (
    V3_SEQ_MODULUS,
    GapDetected,
    Record,
    SequenceRegression,
    StationID,
    StreamKey,
)

logger = logging.getLogger(__name__)

_seq = attrgetter("sequence")


class RecordSource(Protocol):
    """Query interface of one station's record store (in-memory log or an archive).

    ``fetch`` raises :class:`GapDetected` when ``from_sequence`` is no longer
    available, with the earliest sequence that is.
    """

    def fetch(
        self,
        from_sequence: int | None = None,
        from_time: int | None = None,
        key: StreamKey | None = None,
        upto: int | None = None,
    ) -> Iterator[Record]: ...

    def earliest_available(self, key: StreamKey | None = None) -> int | None: ...

    def latest_available(self, key: StreamKey | None = None) -> int | None: ...


class RecordLog:
    """In-memory ring of records for one station.

    Single writer. Readers are lazy iterators that re-locate their position by
    sequence on every step, so appends and evictions never invalidate them;
    a reader overtaken by eviction raises :class:`GapDetected`.
    """

    def __init__(
        self,
        station: StationID,
        retention: RetentionPolicy | None = None,
        allow_renumbering: bool = False,
        clock: Callable[[], float] = _time.monotonic,
        description: str = "",
    ):
        self.station = station
        self.retention = retention or RetentionPolicy()
        self.allow_renumbering = allow_renumbering
        self.description = description
        self._clock = clock
        self._records: list[Record] = []
        self._arrivals: list[float] = []
        self._head = 0
        self._last_sequence: int | None = None
        self._evicted_through: int | None = None
        self._evicted_time: int | None = None
        self._generation = 0
        self._halted: SequenceRegression | None = None
        self._holds: dict[object, int] = {}
        self._high_water = False
        self._reset_listeners: list[Callable[[], None]] = []

    def __repr__(self) -> str:
        return (
            f"RecordLog({self.station}, records={len(self)}, "
            f"earliest={self.earliest_sequence}, latest={self.latest_sequence})"
        )

    def __len__(self) -> int:
        return len(self._records) - self._head

    @property
    def halted(self) -> bool:
        return self._halted is not None

    @property
    def earliest_sequence(self) -> int | None:
        return self._records[self._head].sequence if len(self) else None

    @property
    def latest_sequence(self) -> int | None:
        """Highest sequence ever appended (survives eviction of that record)."""
        return self._last_sequence

    @property
    def evicted_through(self) -> int | None:
        return self._evicted_through

    @property
    def earliest_time(self) -> int | None:
        return self._records[self._head].start_time if len(self) else None

    @property
    def latest_time(self) -> int | None:
        return self._records[-1].start_time if len(self) else None

    @property
    def generation(self) -> int:
        """Incremented whenever the log is renumbered."""
        return self._generation

    def add_reset_listener(self, callback: Callable[[], None]) -> None:
        self._reset_listeners.append(callback)

    def streams(self) -> dict[StreamKey, tuple[int, int]]:
        """Retained streams with their (earliest, latest) start times."""
        out: dict[StreamKey, tuple[int, int]] = {}
        for rec in self._records[self._head:]:
            first, last = out.get(rec.key, (rec.start_time, rec.start_time))
            out[rec.key] = (min(first, rec.start_time), max(last, rec.start_time))
        return out

    def get(self, sequence: int) -> Record | None:
        idx = bisect_left(self._records, sequence, lo=self._head, key=_seq)
        if idx < len(self._records) and self._records[idx].sequence == sequence:
            return self._records[idx]
        return None

    def append(self, record: Record) -> bool:
        """Append a record.

        Returns:
            True if stored, False if it repeats an already stored record.

        Raises:
            SequenceRegression: on an out-of-order sequence or while halted.
        """
        if self._halted is not None:
            raise SequenceRegression(
                f"{self.station}: log halted after sequence regression; resolve() required",
                self.station,
            )
        if record.station != self.station:
            raise ValueError(f"record for {record.station} appended to log of {self.station}")
        last = self._last_sequence
        if last is not None and record.sequence <= last:
            existing = self.get(record.sequence)
            if existing is not None and existing == record:
                logger.debug("%s: duplicate append of %d ignored", self.station, record.sequence)
                return False
            if self.allow_renumbering:
                logger.warning(
                    "%s: sequence %d after %d, renumbering log",
                    self.station, record.sequence, last,
                )
                self._reset()
            else:
                self._halted = SequenceRegression(
                    f"{self.station}: sequence {record.sequence} does not follow {last}",
                    self.station,
                )
                logger.error("%s; log halted", self._halted)
                raise self._halted
        self._records.append(record)
        self._arrivals.append(self._clock())
        self._last_sequence = record.sequence
        self.expire()
        return True

    def resolve(self, reset: bool = False) -> None:
        """Clear a halt after an operator decision; ``reset`` also drops the history."""
        if self._halted is not None:
            logger.info("%s: sequence regression resolved", self.station)
        self._halted = None
        if reset:
            self._reset()

    def _reset(self) -> None:
        self._records.clear()
        self._arrivals.clear()
        self._head = 0
        self._last_sequence = None
        self._evicted_through = None
        self._evicted_time = None
        self._generation += 1
        self._high_water = False
        for callback in list(self._reset_listeners):
            callback()

    def hold(self, holder: object, sequence: int) -> None:
        """Mark ``sequence`` as the last record ``holder`` has consumed."""
        self._holds[holder] = sequence

    def release(self, holder: object) -> None:
        self._holds.pop(holder, None)

    def min_hold(self) -> int | None:
        return min(self._holds.values()) if self._holds else None

    def expire(self, now: float | None = None) -> int:
        """Apply retention; returns the number of records evicted."""
        policy = self.retention
        now = self._clock() if now is None else now
        min_hold = self.min_hold()
        evicted = 0
        deferred = False
        while len(self):
            rec = self._records[self._head]
            age = now - self._arrivals[self._head]
            over_count = policy.max_records is not None and len(self) > policy.max_records
            too_old = policy.max_age is not None and age > policy.max_age
            if not (over_count or too_old):
                break
            if min_hold is not None and rec.sequence > min_hold:
                hard_count = policy.max_records is not None and (
                    len(self) > policy.max_records * policy.high_water_factor
                )
                hard_age = policy.max_age is not None and (
                    age > policy.max_age * policy.high_water_factor
                )
                if not (hard_count or hard_age):
                    deferred = True
                    if not self._high_water:
                        logger.warning(
                            "%s: retention deferred at %d by slow subscriber (%d records held)",
                            self.station, rec.sequence, len(self),
                        )
                        self._high_water = True
                    break
                logger.warning(
                    "%s: high water exceeded, evicting %d ahead of slow subscriber",
                    self.station, rec.sequence,
                )
            self._evict_head()
            evicted += 1
        if not deferred:
            self._high_water = False
        self._compact()
        return evicted

    def _evict_head(self) -> None:
        rec = self._records[self._head]
        self._head += 1
        self._evicted_through = rec.sequence
        self._evicted_time = rec.start_time

    def _compact(self) -> None:
        if self._head and self._head * 2 >= len(self._records):
            del self._records[:self._head]
            del self._arrivals[:self._head]
            self._head = 0

    def _check_gap(self, start: int | None, time: int | None) -> None:
        if start is not None:
            floor = self.earliest_sequence
            if floor is None:
                below = self._evicted_through is not None and start <= self._evicted_through
            else:
                below = start < floor
            if below:
                raise GapDetected(
                    f"{self.station}: sequence {start} is below the retained floor",
                    self.station, start, floor,
                )
            return
        if self._evicted_through is None:
            return
        if time is not None:
            oldest = self.earliest_time
            if (oldest is not None and time < oldest) or (
                oldest is None and time <= (self._evicted_time or 0)
            ):
                raise GapDetected(
                    f"{self.station}: time {time} is older than retained data",
                    self.station, None, self.earliest_sequence,
                )

    def read_from(
        self,
        start: int | None = None,
        *,
        time: int | None = None,
        key: StreamKey | None = None,
        upto: int | None = None,
    ) -> Iterator[Record]:
        """Iterate retained records in increasing sequence order.

        Args:
            start: First sequence wanted (inclusive); None means the earliest.
            time:  Only records with ``start_time >= time``.
            key:   Only records of this stream.
            upto:  Stop after this sequence.

        Raises:
            GapDetected: immediately if ``start`` (or ``time``) is older than
                the retained floor, or later if the reader is overtaken.
        """
        self._check_gap(start, time)
        return self._iterate(start, time, key, upto)

    def _iterate(
        self, start: int | None, time: int | None, key: StreamKey | None, upto: int | None
    ) -> Iterator[Record]:
        generation = self._generation
        next_seq = start
        while True:
            if self._generation != generation:
                raise GapDetected(f"{self.station}: log renumbered during read", self.station,
                                  next_seq, self.earliest_sequence)
            if next_seq is None:
                if not len(self):
                    return
                idx = self._head
            else:
                if self._evicted_through is not None and next_seq <= self._evicted_through:
                    raise GapDetected(
                        f"{self.station}: reader at {next_seq} overtaken by eviction",
                        self.station, next_seq, self.earliest_sequence,
                    )
                idx = bisect_left(self._records, next_seq, lo=self._head, key=_seq)
            if idx >= len(self._records):
                return
            rec = self._records[idx]
            if upto is not None and rec.sequence > upto:
                return
            next_seq = rec.sequence + 1
            if key is not None and rec.key != key:
                continue
            if time is not None and rec.start_time < time:
                continue
            yield rec

    def resolve_sequence(self, raw: int, modulus: int = V3_SEQ_MODULUS) -> int | None:
        """Map a truncated sequence onto this log's extended numbering.

        Picks the largest extended sequence not above the latest one whose low
        bits equal ``raw``; None if the log is empty or no such value exists.
        """
        last = self._last_sequence
        if last is None:
            return None
        candidate = last - ((last - raw) % modulus)
        return candidate if candidate >= 0 else None

    def fetch(
        self,
        from_sequence: int | None = None,
        from_time: int | None = None,
        key: StreamKey | None = None,
        upto: int | None = None,
    ) -> Iterator[Record]:
        return self.read_from(from_sequence, time=from_time, key=key, upto=upto)

    def earliest_available(self, key: StreamKey | None = None) -> int | None:
        if key is None:
            return self.earliest_sequence
        for rec in self._records[self._head:]:
            if rec.key == key:
                return rec.sequence
        return None

    def latest_available(self, key: StreamKey | None = None) -> int | None:
        if key is None:
            return self._records[-1].sequence if len(self) else None
        for rec in reversed(self._records[self._head:]):
            if rec.key == key:
                return rec.sequence
        return None


class StationLogs:
    """Registry of per-station logs and their distributors.

    Appends to different stations share nothing. Each append completes in the
    log before the record is offered to subscribers.
    ``source_factory`` wraps each new log in the store its catch-up reads use.
    """

    def __init__(
        self,
        retention: RetentionPolicy | None = None,
        allow_renumbering: bool = False,
        first_sequence: int = 0,
        clock: Callable[[], float] = _time.monotonic,
        source_factory: Callable[[RecordLog], RecordSource] | None = None,
    ):
        self.retention = retention or RetentionPolicy()
        self.allow_renumbering = allow_renumbering
        self.first_sequence = first_sequence
        self._clock = clock
        self._source_factory = source_factory
        self._logs: dict[StationID, RecordLog] = {}
        self._distributors: dict[StationID, Distributor] = {}

    def __contains__(self, station: object) -> bool:
        return station in self._logs

    def __iter__(self) -> Iterator[StationID]:
        return iter(sorted(self._logs))

    def __len__(self) -> int:
        return len(self._logs)

    def add_station(self, station: StationID, description: str = "") -> RecordLog:
        log = self._logs.get(station)
        if log is None:
            log = RecordLog(station, self.retention, self.allow_renumbering, self._clock,
                            description)
            self._logs[station] = log
            source = self._source_factory(log) if self._source_factory is not None else None
            self._distributors[station] = Distributor(log, source)
            logger.info("Added station %s", station)
        elif description:
            log.description = description
        return log

    def log(self, station: StationID) -> RecordLog:
        return self._logs[station]

    def distributor(self, station: StationID) -> Distributor:
        return self._distributors[station]

    def get(self, station: StationID) -> RecordLog | None:
        return self._logs.get(station)

    def append(self, record: Record) -> bool:
        """Append to the station's log, then offer the record to its subscribers."""
        log = self.add_station(record.station)
        added = log.append(record)
        if added:
            self._distributors[record.station].on_append(record)
        return added

    def publish(
        self, key: StreamKey, start_time: int, payload: bytes, version: int = 2
    ) -> Record:
        """Assign the station's next sequence to a payload and append it."""
        log = self.add_station(key.station)
        last = log.latest_sequence
        seq = self.first_sequence if last is None else last + 1
        record = Record(key, seq, start_time, payload, version)
        self.append(record)
        return record
