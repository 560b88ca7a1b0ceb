"""Fan-out of one station log to many subscribers.

A subscription takes a snapshot of the log's latest sequence. Records up to
the snapshot are read lazily from a record source, normally the log itself
(catch-up); records appended later are pushed into the subscriber's private
queue. Catch-up for a station is always drained before its queued live
records, so the switch neither repeats nor skips a sequence.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Union

from .protocol import (
    ConnectionClosed,
    Cursor,
    GapDetected,
    Record,
    SlowConsumerDisconnected,
    StartMode,
    StartPoint,
    StationID,
)
from .selector import MATCH_ALL, Selector

if TYPE_CHECKING:
    from .config import BackpressureConfig
    from .record_log import RecordLog, RecordSource

logger = logging.getLogger(__name__)


class BackpressurePolicy(enum.Enum):
    DROP_OLDEST = "drop_oldest"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class GapNotice:
    """Records of ``station`` were skipped.

    Attributes:
        first_missing: First sequence not delivered (None if only a time was known).
        resumed_at:    Sequence delivery continues from (None if not yet known).
        reason:        ``dropped`` (queue overflow), ``evicted`` (retention) or
                       ``renumbered`` (log reset).
    """

    station: StationID
    first_missing: int | None
    resumed_at: int | None
    reason: str = "dropped"


class _EndOfData:
    def __repr__(self) -> str:
        return "END_OF_DATA"


END_OF_DATA = _EndOfData()

Delivery = Union[Record, GapNotice, _EndOfData]


class _Feed:
    """One subscriber's attachment to one station."""

    def __init__(
        self,
        subscriber: Subscriber,
        distributor: Distributor,
        selector: Selector,
        start: StartPoint,
        snapshot: int | None,
    ):
        self.subscriber = subscriber
        self.distributor = distributor
        self.station = distributor.log.station
        self.selector = selector
        self.start = start
        self.snapshot = snapshot
        self.min_time = start.time if start.mode is StartMode.TIME else None
        self.catchup: Iterator[Record] | None = None
        self.cursor = -1
        self.window_passed = False
        self.live = not start.fetch

    @property
    def finished(self) -> bool:
        if not self.start.windowed or self.catchup is not None:
            return False
        return self.start.fetch or self.window_passed

    def accepts(self, record: Record) -> bool:
        if not self.selector.matches(record.key, record.format_code):
            return False
        if self.min_time is not None and record.start_time < self.min_time:
            return False
        end = self.start.end_time
        if end is not None and record.start_time > end:
            self.window_passed = True
            return False
        return True

    def restart(self, first: int | None) -> None:
        if first is None or self.snapshot is None or first > self.snapshot:
            self.catchup = None
            self.cursor = -1 if self.snapshot is None else self.snapshot
            return
        self.catchup = self.distributor.source.fetch(first, self.min_time, upto=self.snapshot)
        self.cursor = first - 1
        self.distributor.log.hold(self, self.cursor)


class Subscriber:
    """Private delivery queue of one session.

    ``offer()`` never blocks. With ``DROP_OLDEST`` the queue is bounded at
    ``max_queue`` and a :class:`GapNotice` precedes the next record of a station
    that lost records. With ``DISCONNECT`` a queue longer than ``max_lag``
    detaches the subscriber and ``get()`` raises
    :class:`SlowConsumerDisconnected`.
    """

    def __init__(
        self,
        policy: BackpressurePolicy = BackpressurePolicy.DROP_OLDEST,
        max_queue: int = 1000,
        max_lag: int = 10000,
        name: str = "subscriber",
    ):
        self.policy = policy
        self.max_queue = max_queue
        self.max_lag = max_lag
        self.name = name
        self.dropped = 0
        self._queue: deque[Record] = deque()
        self._feeds: dict[StationID, _Feed] = {}
        self._gaps: dict[StationID, GapNotice] = {}
        self._notices: deque[GapNotice] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False
        self._error: Exception | None = None

    @classmethod
    def from_config(cls, config: BackpressureConfig, name: str = "subscriber") -> Subscriber:
        return cls(config.policy, config.max_queue, config.max_lag, name)

    def __repr__(self) -> str:
        return (
            f"Subscriber({self.name!r}, policy={self.policy.value}, "
            f"queued={len(self._queue)}, stations={len(self._feeds)})"
        )

    @property
    def closed(self) -> bool:
        return self._closed or self._error is not None

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def stations(self) -> list[StationID]:
        return sorted(self._feeds)

    def cursor(self, station: StationID) -> int | None:
        feed = self._feeds.get(station)
        return feed.cursor if feed is not None else None

    def offer(self, record: Record) -> None:
        if self.closed:
            return
        if self.policy is BackpressurePolicy.DROP_OLDEST:
            if len(self._queue) >= self.max_queue:
                dropped = self._queue.popleft()
                self.dropped += 1
                feed = self._feeds.get(dropped.station)
                if feed is not None and feed.catchup is None:
                    # a dropped record is never delivered
                    feed.distributor.log.hold(feed, dropped.sequence)
                if dropped.station not in self._gaps:
                    self._gaps[dropped.station] = GapNotice(
                        dropped.station, dropped.sequence, None, "dropped"
                    )
                    logger.warning(
                        "%s: queue full, dropping %s records from %d",
                        self.name, dropped.station, dropped.sequence,
                    )
            self._queue.append(record)
        else:
            self._queue.append(record)
            if len(self._queue) > self.max_lag:
                self._fail(
                    SlowConsumerDisconnected(
                        f"{self.name}: {len(self._queue)} records behind, limit {self.max_lag}"
                    )
                )
                return
        self._wakeup.set()

    def notify(self, notice: GapNotice) -> None:
        if self.closed:
            return
        self._notices.append(notice)
        self._wakeup.set()

    def close(self) -> None:
        """Detach from every station and wake a pending :meth:`get`."""
        if self._closed:
            return
        self._closed = True
        self._detach_all()
        self._wakeup.set()

    def _fail(self, error: Exception) -> None:
        logger.warning("%s", error)
        self._error = error
        self._detach_all()
        self._wakeup.set()

    def _detach_all(self) -> None:
        for feed in list(self._feeds.values()):
            feed.distributor.unsubscribe(self)
        self._queue.clear()
        self._gaps.clear()
        self._notices.clear()

    async def get(self) -> Delivery:
        """Next record, gap notice, or END_OF_DATA.

        Raises:
            SlowConsumerDisconnected: the subscriber fell too far behind.
            ConnectionClosed: :meth:`close` was called.
        """
        while True:
            item = self.get_nowait()
            if item is not None:
                return item
            self._wakeup.clear()
            await self._wakeup.wait()

    def get_nowait(self) -> Delivery | None:
        """Like :meth:`get` but returns None instead of waiting."""
        if self._error is not None:
            raise self._error
        if self._closed:
            raise ConnectionClosed(f"{self.name} closed")
        if self._notices:
            return self._notices.popleft()
        for feed in list(self._feeds.values()):
            item = self._next_catchup(feed)
            if item is not None:
                return item
        if self._queue:
            head = self._queue[0]
            notice = self._gaps.pop(head.station, None)
            if notice is not None:
                return GapNotice(notice.station, notice.first_missing, head.sequence, notice.reason)
            self._queue.popleft()
            self._delivered(head)
            return head
        if self._feeds and all(f.finished for f in self._feeds.values()):
            return END_OF_DATA
        return None

    def _next_catchup(self, feed: _Feed) -> Record | GapNotice | None:
        while feed.catchup is not None:
            try:
                rec = next(feed.catchup)
            except StopIteration:
                feed.catchup = None
                if feed.finished:
                    feed.live = False
                    logger.debug("%s: window for %s complete", self.name, feed.station)
                return None
            except GapDetected as e:
                logger.warning(
                    "%s: catch-up of %s overtaken at %s, resuming at %s",
                    self.name, feed.station, e.requested, e.earliest,
                )
                feed.restart(e.earliest)
                return GapNotice(feed.station, e.requested, e.earliest, "evicted")
            if feed.accepts(rec):
                self._delivered(rec)
                return rec
            feed.cursor = rec.sequence
        return None

    def _delivered(self, record: Record) -> None:
        feed = self._feeds.get(record.station)
        if feed is not None:
            feed.cursor = record.sequence
            feed.distributor.log.hold(feed, record.sequence)


class Distributor:
    """Subscriber registry for one :class:`~seedlink_engine.record_log.RecordLog`.

    Live records come from the log. Catch-up reads go to ``source``, the log
    itself unless another store (e.g. an archive in front of it) is given.
    """

    def __init__(self, log: RecordLog, source: RecordSource | None = None):
        self.log = log
        self.source: RecordSource = log if source is None else source
        self._feeds: dict[Subscriber, _Feed] = {}
        log.add_reset_listener(self._on_reset)

    def __repr__(self) -> str:
        return f"Distributor({self.log.station}, subscribers={len(self._feeds)})"

    def __len__(self) -> int:
        return len(self._feeds)

    @property
    def subscribers(self) -> list[Subscriber]:
        return list(self._feeds)

    def subscribe(
        self,
        subscriber: Subscriber,
        selector: Selector = MATCH_ALL,
        start: StartPoint = StartPoint(),
    ) -> Cursor:
        """Attach ``subscriber`` and plan its catch-up.

        Returns the cursor delivery starts after. A start point below the
        retained floor is answered with a :class:`GapNotice` (the first item
        the subscriber receives) and catch-up from the earliest record.
        """
        if subscriber.closed:
            raise ConnectionClosed(f"{subscriber.name} closed")
        self.unsubscribe(subscriber)
        log = self.log
        station = log.station
        snapshot = log.latest_sequence
        feed = _Feed(subscriber, self, selector, start, snapshot)
        feed.cursor = -1 if snapshot is None else snapshot

        if snapshot is not None:
            if start.mode in (StartMode.ALL, StartMode.TIME):
                self._plan_catchup(feed, None)
            elif start.mode is StartMode.SEQUENCE and start.sequence is not None:
                first = start.sequence + 1
                earliest = log.earliest_sequence
                if start.sequence > snapshot:
                    logger.info(
                        "%s: resume point %d for %s is beyond latest %d, starting with next record",
                        subscriber.name, start.sequence, station, snapshot,
                    )
                elif start.sequence == snapshot:
                    feed.cursor = snapshot
                elif start.time is not None and earliest is not None and first < earliest:
                    logger.info(
                        "%s: sequence %d for %s no longer retained, using start time",
                        subscriber.name, first, station,
                    )
                    feed.min_time = start.time
                    self._plan_catchup(feed, None)
                else:
                    self._plan_catchup(feed, first)

        subscriber._feeds[station] = feed
        self._feeds[subscriber] = feed
        log.hold(feed, feed.cursor)
        subscriber._wakeup.set()
        logger.debug(
            "%s subscribed to %s (%s, snapshot %s)", subscriber.name, station, start.mode.value,
            snapshot,
        )
        return Cursor(station, feed.cursor, None)

    def _plan_catchup(self, feed: _Feed, first: int | None) -> None:
        try:
            feed.catchup = self.source.fetch(first, feed.min_time, upto=feed.snapshot)
        except GapDetected as e:
            logger.warning(
                "%s: %s requested %s below retained floor, resuming at %s",
                feed.subscriber.name, feed.station, e.requested, e.earliest,
            )
            feed.subscriber.notify(GapNotice(feed.station, e.requested, e.earliest, "evicted"))
            feed.restart(e.earliest)
            return
        base = first if first is not None else self.source.earliest_available()
        feed.cursor = base - 1 if base is not None else feed.snapshot

    def on_append(self, record: Record) -> None:
        """Offer a freshly appended record to every matching subscriber."""
        for feed in list(self._feeds.values()):
            if not feed.live:
                continue
            if feed.snapshot is not None and record.sequence <= feed.snapshot:
                continue
            if feed.accepts(record):
                feed.subscriber.offer(record)
            elif feed.finished:
                feed.live = False
                feed.subscriber._wakeup.set()

    def unsubscribe(self, subscriber: Subscriber) -> None:
        feed = self._feeds.pop(subscriber, None)
        if feed is None:
            return
        self.log.release(feed)
        if subscriber._feeds.get(feed.station) is feed:
            del subscriber._feeds[feed.station]
        logger.debug("%s unsubscribed from %s", subscriber.name, feed.station)

    def _on_reset(self) -> None:
        for feed in self._feeds.values():
            self.log.release(feed)
            feed.snapshot = None
            feed.catchup = None
            feed.subscriber.notify(
                GapNotice(feed.station, feed.cursor + 1, None, "renumbered")
            )
            feed.cursor = -1
