"""SQLite-backed cursor persistence for resuming streams across restarts."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from .protocol import Cursor, StationID

logger = logging.getLogger(__name__)

CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cursors (
    server   TEXT    NOT NULL,
    network  TEXT    NOT NULL,
    station  TEXT    NOT NULL,
    sequence INTEGER NOT NULL,
    time     INTEGER,
    PRIMARY KEY (server, network, station)
);
"""


class CursorStore:
    """Last delivered position per (server, station).

    One store may hold cursors for several servers; ``server`` names the
    namespace this instance reads and writes.

    Example::

        store = CursorStore("cursors.db", server="geofon.gfz.de:18000")
        client = SeedLinkClient("geofon.gfz.de", cursor_store=store)
    """

    def __init__(self, path: str | Path = ":memory:", server: str = ""):
        self.path = str(path)
        self.server = server
        self._conn: sqlite3.Connection | None = sqlite3.connect(self.path)
        with self._conn:
            self._conn.executescript(CREATE_SCHEMA_SQL)
        logger.debug("Opened cursor store %s [%s]", self.path, server)

    def __repr__(self) -> str:
        return f"CursorStore({self.path!r}, server={self.server!r})"

    def __enter__(self) -> CursorStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ValueError("Cursor store is closed")
        return self._conn

    def load(self, station: StationID) -> Cursor | None:
        row = self.conn.execute(
            "SELECT sequence, time FROM cursors WHERE server = ? AND network = ? AND station = ?",
            (self.server, station.network, station.station),
        ).fetchone()
        if row is None:
            return None
        return Cursor(station, row[0], row[1])

    def save(self, cursor: Cursor) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO cursors (server, network, station, sequence, time)"
                " VALUES (?, ?, ?, ?, ?)"
                " ON CONFLICT (server, network, station)"
                " DO UPDATE SET sequence = excluded.sequence, time = excluded.time",
                (self.server, cursor.station.network, cursor.station.station,
                 cursor.sequence, cursor.time),
            )

    def delete(self, station: StationID) -> bool:
        with self.conn:
            deleted = self.conn.execute(
                "DELETE FROM cursors WHERE server = ? AND network = ? AND station = ?",
                (self.server, station.network, station.station),
            ).rowcount
        return deleted > 0

    def all(self) -> dict[StationID, Cursor]:
        rows = self.conn.execute(
            "SELECT network, station, sequence, time FROM cursors WHERE server = ?"
            " ORDER BY network, station",
            (self.server,),
        ).fetchall()
        out = {}
        for network, station, sequence, time in rows:
            sid = StationID(network, station)
            out[sid] = Cursor(sid, sequence, time)
        return out

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
