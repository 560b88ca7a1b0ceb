"""Tests for the SQLite cursor store."""

import pytest

from seedlink_engine.cursor_store import CursorStore
from seedlink_engine.protocol import Cursor, StationID

ABC = StationID("XX", "ABC")
DEF = StationID("XX", "DEF")


@pytest.fixture
def store():
    with CursorStore(server="geofon:18000") as s:
        yield s


class TestCursorStore:
    """load / save / delete per (server, station)"""

    def test_missing(self, store):
        assert store.load(ABC) is None

    def test_save_and_update(self, store):
        store.save(Cursor(ABC, 10, 1000))
        store.save(Cursor(ABC, 11, None))
        assert store.load(ABC) == Cursor(ABC, 11, None)

    def test_all(self, store):
        store.save(Cursor(DEF, 2))
        store.save(Cursor(ABC, 1))
        assert list(store.all()) == [ABC, DEF]

    def test_delete(self, store):
        store.save(Cursor(ABC, 1))
        assert store.delete(ABC)
        assert not store.delete(ABC)
        assert store.load(ABC) is None

    def test_servers_are_separate(self, tmp_path):
        path = tmp_path / "cursors.db"
        with CursorStore(path, server="a") as a:
            a.save(Cursor(ABC, 5))
        with CursorStore(path, server="b") as b:
            assert b.load(ABC) is None
        with CursorStore(path, server="a") as a:
            assert a.load(ABC).sequence == 5

    def test_closed(self):
        s = CursorStore()
        s.close()
        s.close()
        with pytest.raises(ValueError):
            s.load(ABC)
