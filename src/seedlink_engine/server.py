"""asyncio SeedLink server hosting many concurrent sessions.

Each connection runs a command task; a streaming session adds a pump task
that moves records from its :class:`~seedlink_engine.fanout.Subscriber` to the
socket. Sessions share only :class:`~seedlink_engine.record_log.StationLogs`.

Example::

    server = SeedLinkServer(ServerConfig(port=18000))
    async with server:
        server.publish(key, start_time, payload)
        await server.serve_forever()
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import time
from dataclasses import replace

from .codec import CommandDecoder, encode_info, encode_line, encode_record
from .config import ServerConfig
from .fanout import END_OF_DATA, GapNotice, Subscriber
from .info import (
    ConnectionInfo,
    ServerInfo,
    StationInfo,
    filter_stations,
    gap_json,
    gap_xml,
    info_error_json,
    info_json,
    info_xml,
)
from .protocol import (
    CommandRejected,
    ConnectionClosed,
    HandshakeFailed,
    ProtocolError,
    ProtocolVariant,
    Record,
    SequenceRegression,
    SlowConsumerDisconnected,
    StartMode,
    StationID,
    StreamKey,
)
from .record_log import RecordLog, StationLogs
from .session import (
    Action,
    CloseSession,
    Reply,
    SendInfo,
    ServerSession,
    SessionState,
    StartStreaming,
    StationRequest,
)

logger = logging.getLogger(__name__)

READ_SIZE = 4096


def _now_ustime() -> int:
    return int(time.time() * 1_000_000)


class _Connection:
    """Transport, session and delivery state of one client."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        session: ServerSession,
        subscriber: Subscriber,
        host: str,
        port: int,
        write_timeout: float,
    ):
        self.reader = reader
        self.writer = writer
        self.session = session
        self.subscriber = subscriber
        self.host = host
        self.port = port
        self.write_timeout = write_timeout
        self.connected = _now_ustime()
        self.sent = 0
        self.task: asyncio.Task | None = None
        self.pump: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.session.name

    async def send(self, data: bytes) -> None:
        async with self._write_lock:
            self.writer.write(data)
            async with asyncio.timeout(self.write_timeout):
                await self.writer.drain()

    def abort(self, discard: bool = False) -> None:
        """Close the transport; the command task then sees EOF.

        With ``discard`` unsent data is dropped instead of flushed.
        """
        if discard:
            self.writer.transport.abort()
        elif not self.writer.is_closing():
            self.writer.close()


class SeedLinkServer:
    """SeedLink v3/v4 server over a shared set of station logs.

    Args:
        config: Server settings; defaults listen on port 18000.
        logs:   Existing log registry to serve, e.g. shared with an ingest task.
    """

    def __init__(self, config: ServerConfig | None = None, logs: StationLogs | None = None):
        self.config = config or ServerConfig()
        self.logs = logs or StationLogs(self.config.retention, self.config.allow_renumbering)
        for name, description in self.config.stations.items():
            self.logs.add_station(StationID.parse(name), description)
        self.started = _now_ustime()
        self._server: asyncio.Server | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._connections: set[_Connection] = set()
        self._expire_task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return (
            f"SeedLinkServer({self.config.host}:{self.port}, stations={len(self.logs)}, "
            f"connections={len(self._connections)})"
        )

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self.config.port

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def add_station(self, station: StationID, description: str = "") -> RecordLog:
        return self.logs.add_station(station, description)

    def append(self, record: Record) -> bool:
        """Append a record with its own sequence number and publish it.

        Raises:
            SequenceRegression: the station's log is halted.
        """
        try:
            return self.logs.append(record)
        except SequenceRegression:
            logger.error("Append to %s rejected, station log halted", record.station)
            raise

    def publish(
        self, key: StreamKey, start_time: int, payload: bytes, version: int = 2
    ) -> Record:
        """Assign the next sequence number of the station and publish."""
        return self.logs.publish(key, start_time, payload, version)

    def append_threadsafe(self, record: Record) -> concurrent.futures.Future:
        """Append from a thread other than the server's event loop."""
        if self._loop is None:
            raise RuntimeError("server is not running")

        async def _append() -> bool:
            return self.append(record)

        return asyncio.run_coroutine_threadsafe(_append(), self._loop)

    async def start(self) -> None:
        if self._server is not None:
            logger.warning("SeedLink server already running")
            return
        self._loop = asyncio.get_running_loop()
        self._server = await asyncio.start_server(
            self._handle_connection,
            host=self.config.host,
            port=self.config.port,
            reuse_address=True,
        )
        self.started = _now_ustime()
        if self.config.retention.max_age is not None:
            self._expire_task = asyncio.create_task(self._expire_loop())
        logger.info("SeedLink server listening on %s:%d", self.config.host, self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def close(self) -> None:
        """Stop accepting, close every session and wait for their tasks."""
        if self._server is None:
            return
        logger.info("Stopping SeedLink server...")
        self._server.close()
        if self._expire_task is not None:
            self._expire_task.cancel()
            await asyncio.gather(self._expire_task, return_exceptions=True)
            self._expire_task = None
        tasks = []
        for conn in list(self._connections):
            conn.subscriber.close()
            conn.abort(discard=True)
            if conn.task is not None:
                conn.task.cancel()
                tasks.append(conn.task)
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.config.write_timeout)
            if pending:
                logger.warning("%d connection(s) did not finish closing", len(pending))
        await self._server.wait_closed()
        self._server = None
        logger.info("SeedLink server stopped")

    async def __aenter__(self) -> SeedLinkServer:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _expire_loop(self) -> None:
        interval = max(self.config.retention.max_age / 4, 0.1)
        while True:
            await asyncio.sleep(interval)
            for station in self.logs:
                self.logs.log(station).expire()

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername") or ("unknown", 0)
        host, port = peer[0], peer[1]
        name = f"{host}:{port}"
        max_conn = self.config.max_connections
        if max_conn is not None and len(self._connections) >= max_conn:
            logger.warning("Refusing %s: connection limit %d reached", name, max_conn)
            writer.close()
            return

        session = ServerSession(lambda: list(self.logs), self.config, name)
        subscriber = Subscriber.from_config(self.config.backpressure, name)
        conn = _Connection(reader, writer, session, subscriber, host, port,
                           self.config.write_timeout)
        conn.task = asyncio.current_task()
        self._connections.add(conn)
        logger.info("New connection from %s", name)
        try:
            await self._command_loop(conn)
        except asyncio.CancelledError:
            logger.debug("Connection handler cancelled for %s", name)
            raise
        except HandshakeFailed as e:
            logger.warning("Handshake with %s failed: %s", name, e)
            session.fail(e)
            await self._send_error(conn, CommandRejected(str(e), "UNSUPPORTED"))
        except ProtocolError as e:
            logger.warning("Protocol error from %s: %s", name, e)
            streaming = session.streaming
            session.fail(e)
            if not streaming:
                await self._send_error(conn, CommandRejected(str(e), "UNEXPECTED"))
        except asyncio.TimeoutError:
            logger.info("%s timed out in state %s", name, session.state.value)
            session.fail(ConnectionClosed("timeout"))
        except (ConnectionError, OSError) as e:
            logger.info("Connection to %s lost: %s", name, e)
            session.fail(e)
        finally:
            await self._close_connection(conn)

    async def _command_loop(self, conn: _Connection) -> None:
        session = conn.session
        decoder = CommandDecoder()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.handshake_timeout
        while session.is_open:
            if session.streaming:
                timeout = self.config.idle_timeout
            else:
                timeout = deadline - loop.time()
                if timeout <= 0:
                    raise asyncio.TimeoutError()
            data = await asyncio.wait_for(conn.reader.read(READ_SIZE), timeout)
            if not data:
                logger.info("%s closed the connection", conn.name)
                return
            for cmd in decoder.decode_all(data):
                for action in session.handle(cmd):
                    await self._perform(conn, action)
                if not session.is_open:
                    return

    async def _perform(self, conn: _Connection, action: Action) -> None:
        if isinstance(action, Reply):
            await conn.send(b"".join(encode_line(line) for line in action.lines))
        elif isinstance(action, SendInfo):
            await self._send_info(conn, action)
        elif isinstance(action, StartStreaming):
            for request in action.requests:
                self._subscribe(conn, request)
            if conn.pump is None:
                conn.pump = asyncio.create_task(self._pump(conn))
        elif isinstance(action, CloseSession):
            logger.info("%s requested close (%s)", conn.name, action.reason)
            conn.session.transition(SessionState.CLOSING)

    def _subscribe(self, conn: _Connection, request: StationRequest) -> None:
        log = self.logs.get(request.station)
        if log is None:
            logger.info("%s: station %s has no log, nothing to stream", conn.name,
                        request.station)
            return
        start = request.start
        if request.truncated and start.sequence is not None:
            extended = log.resolve_sequence(start.sequence)
            if extended is None:
                logger.info("%s: %s has no sequence %06X, starting with next record",
                            conn.name, request.station, start.sequence)
                start = replace(start, mode=StartMode.NEXT, sequence=None)
            else:
                start = replace(start, sequence=extended)
        cursor = self.logs.distributor(request.station).subscribe(
            conn.subscriber, request.selector, start
        )
        logger.info("%s: streaming %s after %d", conn.name, request.station, cursor.sequence)

    async def _pump(self, conn: _Connection) -> None:
        session = conn.session
        variant = session.variant
        try:
            while True:
                item = await conn.subscriber.get()
                if item is END_OF_DATA:
                    logger.info("%s: end of requested data", conn.name)
                    await conn.send(b"END" if variant is ProtocolVariant.V3 else b"END\r\n")
                    if session.is_open:
                        session.transition(SessionState.CLOSING)
                    conn.abort()
                    return
                if isinstance(item, GapNotice):
                    logger.warning(
                        "%s: gap in %s from %s (%s), continuing at %s",
                        conn.name, item.station, item.first_missing, item.reason,
                        item.resumed_at,
                    )
                    await self._send_gap(conn, item)
                    continue
                await conn.send(encode_record(variant, item, self.config.record_size))
                conn.sent += 1
        except ConnectionClosed:
            return
        except SlowConsumerDisconnected as e:
            logger.warning("Disconnecting slow consumer %s: %s", conn.name, e)
            session.fail(e)
            conn.abort()
        except ProtocolError as e:
            logger.error("%s: cannot send record: %s", conn.name, e)
            session.fail(e)
            conn.abort()
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            logger.info("%s: write failed: %s", conn.name, e)
            session.fail(ConnectionClosed(str(e) or "write timeout"))
            conn.abort()

    async def _send_info(self, conn: _Connection, action: SendInfo) -> None:
        variant = conn.session.variant
        info = self.info_snapshot(action.item, action.pattern)
        if variant is ProtocolVariant.V4:
            if action.error is not None:
                text = info_error_json(info, *action.error)
            else:
                text = info_json(action.item, info)
            data = encode_info(variant, text, action.error is not None)
        else:
            data = encode_info(variant, info_xml(action.item, info),
                               record_size=self.config.record_size)
        await conn.send(data)

    async def _send_gap(self, conn: _Connection, notice: GapNotice) -> None:
        """Report skipped records in-band as an unsolicited INFO packet."""
        variant = conn.session.variant
        info = self.info_snapshot()
        args = (info, notice.station, notice.first_missing, notice.resumed_at, notice.reason)
        if variant is ProtocolVariant.V4:
            data = encode_info(variant, gap_json(*args))
        else:
            data = encode_info(variant, gap_xml(*args), record_size=self.config.record_size)
        await conn.send(data)

    def info_snapshot(self, item: str = "ID", pattern: str | None = None) -> ServerInfo:
        """Current server state for an INFO response."""
        info = ServerInfo(
            software=self.config.software,
            organization=self.config.organization,
            started=self.started,
            capabilities=self._capabilities(),
        )
        if item in ("STATIONS", "STREAMS"):
            stations = [
                StationInfo.from_log(self.logs.log(s), with_streams=item == "STREAMS")
                for s in self.logs
            ]
            info.stations = filter_stations(stations, pattern)
        elif item == "CONNECTIONS":
            info.connections = [
                ConnectionInfo(
                    host=c.host,
                    port=c.port,
                    connected=c.connected,
                    protocol=f"{c.session.variant.value}",
                    useragent=c.session.useragent,
                    state=c.session.state.value,
                    stations=[str(s) for s in c.subscriber.stations],
                    sent=c.sent,
                )
                for c in sorted(self._connections, key=lambda c: c.connected)
            ]
        return info

    def _capabilities(self) -> list[str]:
        banner = ServerSession(lambda: (), self.config).banner()[0]
        return banner.split("::", 1)[1].split()

    async def _send_error(self, conn: _Connection, error: CommandRejected) -> None:
        try:
            await conn.send(encode_line(conn.session.error_line(error)))
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            logger.debug("Could not send error to %s: %s", conn.name, e)

    async def _close_connection(self, conn: _Connection) -> None:
        # closing the subscriber first wakes a pump parked in get()
        conn.subscriber.close()
        if conn.pump is not None and conn.pump is not asyncio.current_task():
            conn.pump.cancel()
            await asyncio.wait({conn.pump}, timeout=self.config.write_timeout)
        conn.session.close()
        conn.abort()
        try:
            async with asyncio.timeout(self.config.write_timeout):
                await conn.writer.wait_closed()
        except asyncio.TimeoutError:
            logger.info("%s: peer not reading, discarding unsent data", conn.name)
            conn.abort(discard=True)
        except (ConnectionError, OSError) as e:
            logger.debug("Error closing %s: %s", conn.name, e)
        self._connections.discard(conn)
        logger.info("Connection closed: %s (%d records sent)", conn.name, conn.sent)


