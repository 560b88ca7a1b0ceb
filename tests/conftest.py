"""Shared fixtures: miniSEED record builders and running servers.

The async ``server`` fixture runs inside the test's event loop; the
``server_thread`` fixture runs a server on its own loop in a background
thread so the blocking client can talk to it.
"""

from __future__ import annotations

import asyncio
import struct
import threading

import pytest

from seedlink_engine.config import RetentionPolicy, ServerConfig
from seedlink_engine.protocol import Record, StationID, StreamKey
from seedlink_engine.server import SeedLinkServer
from seedlink_engine.time_utils import timestring_to_ustime, ustime_to_btime

BASE_TIME = timestring_to_ustime("2024-03-01T00:00:00Z")
XX_ABC = StationID("XX", "ABC")
XX_DEF = StationID("XX", "DEF")


def make_mseed2(
    network: str = "XX",
    station: str = "ABC",
    location: str = "00",
    channel: str = "BHZ",
    start: int = BASE_TIME,
    seq: int = 1,
    size: int = 512,
) -> bytes:
    """A miniSEED 2 record with a valid fixed header and zero data."""
    header = (
        f"{seq % 1000000:06d}".encode("ascii")
        + b"D "
        + station.ljust(5).encode("ascii")
        + location.ljust(2).encode("ascii")
        + channel.ljust(3).encode("ascii")
        + network.ljust(2).encode("ascii")
    )
    year, doy, hour, minute, second, fract = ustime_to_btime(start)
    header += struct.pack(">HHBBBBH", year, doy, hour, minute, second, 0, fract)
    return header.ljust(size, b"\0")


def make_record(
    seq: int,
    station: StationID = XX_ABC,
    channel: str = "BHZ",
    location: str = "00",
    start: int | None = None,
) -> Record:
    """Record ``seq`` of a station; start times advance one second per sequence."""
    if start is None:
        start = BASE_TIME + seq * 1_000_000
    payload = make_mseed2(station.network, station.station, location, channel, start, seq)
    return Record(StreamKey(station, location, channel, "D"), seq, start, payload)


def fill(target, count: int, station: StationID = XX_ABC, first: int = 1, **kwargs) -> None:
    """Append records ``first .. first + count - 1`` to a server or StationLogs."""
    for seq in range(first, first + count):
        target.append(make_record(seq, station, **kwargs))


class ServerThread:
    """A SeedLinkServer running on a private event loop in a daemon thread."""

    def __init__(self, config: ServerConfig):
        self.server = SeedLinkServer(config)
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, daemon=True)

    @property
    def port(self) -> int:
        return self.server.port

    def start(self) -> None:
        self._thread.start()
        self.run(self.server.start())

    def run(self, coro, timeout: float = 5.0):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, fn, *args):
        """Run a plain function on the server's loop and return its result."""

        async def _call():
            return fn(*args)

        return self.run(_call())

    def append(self, record: Record) -> bool:
        return self.call(self.server.append, record)

    def disconnect_all(self, then=None) -> None:
        """Abort every client transport, as a network failure would.

        Returns once the aborted sessions have let go of their subscriptions;
        ``then`` runs on the server loop at that point, before any reconnect
        can subscribe again.
        """

        async def _abort():
            tasks = [c.task for c in self.server._connections if c.task is not None]
            for conn in list(self.server._connections):
                conn.abort()
            if tasks:
                await asyncio.wait(tasks, timeout=2.0)
            if then is not None:
                then()

        self.run(_abort())

    def stop(self) -> None:
        try:
            self.run(self.server.close())
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(5)
            self.loop.close()


def _config(**overrides) -> ServerConfig:
    settings = dict(
        host="127.0.0.1",
        port=0,
        stations={"XX_ABC": "Test station ABC", "XX_DEF": "Test station DEF"},
        retention=RetentionPolicy(max_records=100),
        handshake_timeout=5.0,
        write_timeout=5.0,
    )
    settings.update(overrides)
    return ServerConfig(**settings)


@pytest.fixture
def server_config():
    """Factory for test server configs on an ephemeral localhost port."""
    return _config


@pytest.fixture
async def server():
    """A running server with stations XX_ABC and XX_DEF."""
    async with SeedLinkServer(_config()) as srv:
        yield srv


@pytest.fixture
def server_thread():
    """A running server in a background thread (for the blocking client)."""
    st = ServerThread(_config())
    st.start()
    yield st
    st.stop()
