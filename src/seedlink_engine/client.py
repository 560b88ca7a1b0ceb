"""SeedLink v3/v4 client with resumable streaming."""

from __future__ import annotations

import logging
import socket
import time
from collections import deque
from collections.abc import Generator
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Iterable

from .codec import NEED_MORE_DATA, Command, Frame, Line, ResponseDecoder, encode_command
from .codec import start_point_command
from .info import parse_info
from .protocol import (
    DEFAULT_PORT,
    V3_RECORD_SIZE,
    V3_SEQ_MODULUS,
    Capabilities,
    CommandRejected,
    ConnectionClosed,
    Cursor,
    GapDetected,
    HandshakeFailed,
    InfoPacket,
    ProtocolError,
    ProtocolVariant,
    Record,
    SeedLinkError,
    StartMode,
    StartPoint,
    StationID,
    StreamUnavailable,
    Subscription,
    UnsupportedVersion,
)
from .selector import Selector
from .session import Session, SessionState

if TYPE_CHECKING:
    from .cursor_store import CursorStore

logger = logging.getLogger(__name__)

RECV_SIZE = 65536


def _unwrap_near(raw: int | None, ref: int) -> int | None:
    """Extend a 24-bit sequence to the first value not below ``ref``."""
    return None if raw is None else ref + (raw - ref) % V3_SEQ_MODULUS


@dataclass
class RetryPolicy:
    """Reconnect schedule: exponential backoff, bounded attempts.

    Attributes:
        max_attempts:  Consecutive failed attempts before giving up (None: never).
        initial_delay: Seconds before the first reconnect.
        max_delay:     Upper bound on the delay.
        multiplier:    Growth factor per attempt.
    """

    max_attempts: int | None = 5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt > self.max_attempts


def parse_banner(lines: list[str]) -> tuple[str, Capabilities, list[tuple[int, int]]]:
    """Parse the HELLO reply into (server id, capabilities, offered versions).

    The first line looks like ``SeedLink v4.0 (impl) :: SLPROTO:4.0 SLPROTO:3.1 ...``.
    """
    if not lines or not lines[0].startswith("SeedLink"):
        raise HandshakeFailed(f"Unexpected HELLO reply: {lines[:1]!r}")
    raw = lines[0]
    head, _, caps_str = raw.partition("::")
    tokens = caps_str.split()
    versions: list[tuple[int, int]] = []
    for token in tokens:
        if token.startswith("SLPROTO:"):
            major, _, minor = token[len("SLPROTO:"):].partition(".")
            try:
                versions.append((int(major), int(minor or 0)))
            except ValueError:
                logger.debug("Ignoring malformed capability %s", token)
    if not versions:
        banner_version = head.split()[1] if len(head.split()) > 1 else "v3.0"
        major, _, minor = banner_version.lstrip("v").partition(".")
        try:
            versions.append((int(major), int(minor or 0)))
        except ValueError:
            versions.append((3, 0))
    known = {"MULTISTATION", "BATCH", "INFO:JSON"}
    caps = Capabilities(
        version=max(versions),
        multistation="MULTISTATION" in tokens or max(versions)[0] >= 4,
        extended_sequence=max(versions)[0] >= 4,
        batch="BATCH" in tokens,
        info_json="INFO:JSON" in tokens,
        extras=frozenset(t for t in tokens if t not in known and not t.startswith("SLPROTO:")),
    )
    return raw, caps, sorted(versions, reverse=True)


class SeedLinkClient:
    """SeedLink client for one server.

    Call :meth:`select` once per station, then iterate :meth:`records`. The
    client remembers a :class:`Cursor` per station; after a transport failure
    it reconnects with backoff and resumes each station after its cursor.

    Args:
        host:          Server hostname or IP address.
        port:          Server TCP port (18000 by default).
        timeout:       Seconds without any data before the connection is
                       considered dead. None means block indefinitely.
        protocol:      Require 4 or 3; None picks the best the server offers.
        keepalive:     Seconds of silence after which ``INFO ID`` is sent while
                       streaming. None disables keepalives.
        retry:         Reconnect policy for :meth:`records`.
        gap_policy:    ``"accept"`` reports gaps through ``on_notice`` and keeps
                       streaming; ``"abort"`` raises :class:`GapDetected`.
        on_notice:     Called with :class:`GapDetected` or
                       :class:`StreamUnavailable` notices.
        on_info:       Called with parsed INFO documents received while streaming.
        cursor_store:  Persists cursors; stored cursors are default start points.
        close_timeout: Seconds :meth:`close` waits for the server to finish.
        useragent:     v4 USERAGENT string.

    Attributes:
        server_id:    Raw first line of the HELLO reply, or None.
        organization: Second line of the HELLO reply, or None.
        capabilities: Capabilities parsed from the HELLO reply.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = DEFAULT_PORT,
        timeout: float | None = 120.0,
        protocol: int | None = None,
        keepalive: float | None = None,
        retry: RetryPolicy | None = None,
        gap_policy: str = "accept",
        on_notice: Callable[[SeedLinkError], None] | None = None,
        on_info: Callable[[dict[str, Any]], None] | None = None,
        cursor_store: CursorStore | None = None,
        close_timeout: float = 10.0,
        useragent: str = "seedlink-engine",
        record_size: int = V3_RECORD_SIZE,
    ):
        if protocol not in (None, 3, 4):
            raise ValueError(f"protocol must be 3, 4 or None, not {protocol!r}")
        if gap_policy not in ("accept", "abort"):
            raise ValueError(f"gap_policy must be 'accept' or 'abort', not {gap_policy!r}")
        self._host = host
        self._port = port
        self._timeout = timeout
        self._protocol = protocol
        self._keepalive = keepalive
        self._retry = retry or RetryPolicy()
        self._gap_policy = gap_policy
        self._on_notice = on_notice
        self._on_info = on_info
        self._cursor_store = cursor_store
        self._close_timeout = close_timeout
        self._useragent = useragent
        self._record_size = record_size
        self._sock: socket.socket | None = None
        self._decoder = ResponseDecoder(ProtocolVariant.V3, record_size)
        self._pending: deque[Frame] = deque()
        self._info_chunks: list[bytes] = []
        self._last_recv = 0.0
        self._last_send = 0.0
        self.session = Session(ProtocolVariant.V3, f"{host}:{port}")
        self.server_id: str | None = None
        self.organization: str | None = None
        self.capabilities: Capabilities | None = None
        self.server_versions: list[tuple[int, int]] = []
        self._subscriptions: dict[StationID | None, Subscription] = {}
        self._selectors: dict[StationID | None, Selector] = {}
        self._cursors: dict[StationID, Cursor] = {}
        self._reported: dict[StationID, int | None] = {}

    @classmethod
    def from_server_string(cls, server: str, **kwargs: Any) -> SeedLinkClient:
        """Create a client from ``host:port``, ``host@port``, ``[ipv6]:port``, ``host`` or ''."""
        host = "localhost"
        port = DEFAULT_PORT
        server = server.strip()
        if server:
            normalized = server.replace("@", ":")
            if normalized.startswith("["):
                bracket_end = normalized.find("]")
                if bracket_end < 0:
                    raise ValueError(f"Missing closing bracket in server string: {server!r}")
                host = normalized[1:bracket_end] or "localhost"
                remainder = normalized[bracket_end + 1:]
                if remainder.startswith(":") and remainder[1:]:
                    try:
                        port = int(remainder[1:])
                    except ValueError:
                        raise ValueError(f"Invalid port in server string: {server!r}") from None
            else:
                parts = normalized.rsplit(":", 1)
                host = parts[0] or "localhost"
                if len(parts) == 2 and parts[1]:
                    try:
                        port = int(parts[1])
                    except ValueError:
                        raise ValueError(f"Invalid port in server string: {server!r}") from None
        return cls(host, port, **kwargs)

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    @property
    def is_streaming(self) -> bool:
        return self.session.streaming

    @property
    def variant(self) -> ProtocolVariant:
        return self.session.variant

    @property
    def cursors(self) -> dict[StationID, Cursor]:
        """Last delivered position per station (a copy)."""
        return dict(self._cursors)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def __repr__(self) -> str:
        state = self.session.state.value if self._sock is not None else "disconnected"
        return f"SeedLinkClient({self._host!r}, {self._port}, {state})"

    def __enter__(self) -> SeedLinkClient:
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def connect(self) -> None:
        """Open the connection and negotiate the protocol version.

        Raises:
            HandshakeFailed: transport failure or unexpected HELLO reply.
            UnsupportedVersion: the required protocol version is not offered.
        """
        if self._sock is not None:
            raise SeedLinkError("Already connected")
        self._open_socket()
        self.session = Session(ProtocolVariant.V3, f"{self._host}:{self._port}")
        self._decoder = ResponseDecoder(ProtocolVariant.V3, self._record_size)
        self._pending.clear()
        self._info_chunks.clear()
        try:
            self._handshake()
        except (ConnectionClosed, ProtocolError, CommandRejected) as e:
            self._drop_connection(e)
            raise HandshakeFailed(f"Handshake with {self._host}:{self._port} failed: {e}") from e
        except HandshakeFailed as e:
            self._drop_connection(e)
            raise

    def _open_socket(self) -> None:
        try:
            infos = socket.getaddrinfo(self._host, self._port, socket.AF_UNSPEC,
                                       socket.SOCK_STREAM)
        except OSError as e:
            raise HandshakeFailed(f"Could not resolve address: {self._host}:{self._port}") from e
        last_err: OSError | None = None
        for af, socktype, proto, _canonname, sockaddr in infos:
            sock = socket.socket(af, socktype, proto)
            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                sock.settimeout(self._poll_interval())
                sock.connect(sockaddr)
                self._sock = sock
                break
            except OSError as e:
                last_err = e
                sock.close()
        else:
            raise HandshakeFailed(f"Could not connect to {self._host}:{self._port}") from last_err
        self._last_recv = self._last_send = time.monotonic()
        logger.debug("Connected to %s:%d", self._host, self._port)

    def _poll_interval(self) -> float | None:
        intervals = [t for t in (self._timeout, self._keepalive) if t is not None]
        return min(intervals) if intervals else None

    def _handshake(self) -> None:
        self._send(Command("HELLO"))
        lines = [self._expect_line().text, self._expect_line().text]
        self.server_id, caps, versions = parse_banner(lines)
        self.organization = lines[1]
        self.server_versions = versions
        self.session.transition(SessionState.NEGOTIATED)
        v4 = next((v for v in versions if v[0] == 4), None)
        v3 = next((v for v in versions if v[0] == 3), None)
        if self._protocol == 4 and v4 is None:
            raise UnsupportedVersion(f"{self._host}:{self._port} does not offer SeedLink v4")
        if self._protocol == 3 and v3 is None:
            raise UnsupportedVersion(f"{self._host}:{self._port} does not offer SeedLink v3")
        use_v4 = v4 is not None and self._protocol != 3
        if use_v4:
            line = self._command(Command("SLPROTO", (f"{v4[0]}.{v4[1]}",)))
            if not line.is_ok:
                raise HandshakeFailed(f"SLPROTO refused: {line.text}")
            self.session.switch_variant(ProtocolVariant.V4)
            self._decoder.variant = ProtocolVariant.V4
            if self._useragent:
                self._command(Command("USERAGENT", (self._useragent.replace(" ", "_"),)))
        version = v4 if use_v4 else (v3 or max(versions))
        self.capabilities = replace(
            caps, version=version, extended_sequence=use_v4, info_json=use_v4 and caps.info_json
        )
        self.session.lock_version(self.capabilities)
        logger.info(
            "Connected to %s:%d, SeedLink %d.%d", self._host, self._port, version[0], version[1]
        )

    def close(self) -> None:
        """End the session gracefully and close the socket.

        While streaming, END is sent and the connection is drained until the
        server closes it or ``close_timeout`` expires; otherwise BYE is sent.
        """
        if self._sock is None:
            self.session.close()
            return
        try:
            if self.session.streaming:
                self._send(Command("END"))
                self._drain(self._close_timeout)
            elif self.session.is_open:
                self._send(Command("BYE"))
        except (ConnectionClosed, OSError) as e:
            logger.debug("Error during close of %s:%d: %s", self._host, self._port, e)
        finally:
            self._close_socket()
            self.session.close()

    def _drain(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        assert self._sock is not None
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug("Close timeout after %.1fs, forcing close", timeout)
                return
            self._sock.settimeout(remaining)
            try:
                chunk = self._sock.recv(RECV_SIZE)
            except socket.timeout:
                continue
            if not chunk:
                return

    def _close_socket(self) -> None:
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            finally:
                try:
                    self._sock.close()
                finally:
                    self._sock = None

    def _drop_connection(self, error: Exception | None = None) -> None:
        """Abandon a broken connection without protocol exchange."""
        self._close_socket()
        if error is not None:
            self.session.fail(error)
        self.session.close()
        self._decoder.reset()
        self._pending.clear()
        self._info_chunks.clear()

    def _send(self, cmd: Command) -> None:
        if self._sock is None:
            raise ConnectionClosed("Not connected")
        logger.debug("-> %s", cmd)
        try:
            self._sock.sendall(encode_command(cmd))
        except OSError as e:
            raise ConnectionClosed(f"Send to {self._host}:{self._port} failed: {e}") from e
        self._last_send = time.monotonic()

    def _recv_chunk(self) -> bytes:
        if self._sock is None:
            raise ConnectionClosed("Not connected")
        while True:
            try:
                chunk = self._sock.recv(RECV_SIZE)
            except socket.timeout:
                now = time.monotonic()
                if self._timeout is not None and now - self._last_recv >= self._timeout:
                    raise ConnectionClosed(
                        f"No data from {self._host}:{self._port} for {self._timeout:.1f}s"
                    ) from None
                if (
                    self.session.streaming
                    and self._keepalive is not None
                    and now - max(self._last_send, self._last_recv) >= self._keepalive
                ):
                    logger.debug("Sending keepalive")
                    self._send(Command("INFO", ("ID",)))
                continue
            except OSError as e:
                raise ConnectionClosed(f"Receive from {self._host}:{self._port} failed: {e}") from e
            if not chunk:
                raise ConnectionClosed("Connection closed by server")
            self._last_recv = time.monotonic()
            return chunk

    def _read_frame(self) -> Frame:
        if self._pending:
            return self._pending.popleft()
        frame = self._decoder.decode()
        while frame is NEED_MORE_DATA:
            frame = self._decoder.decode(self._recv_chunk())
        return frame

    def _expect_line(self) -> Line:
        """Next text line; data frames arriving meanwhile are kept for later."""
        stash: list[Frame] = []
        while True:
            frame = self._decoder.decode()
            while frame is NEED_MORE_DATA:
                frame = self._decoder.decode(self._recv_chunk())
            if isinstance(frame, Line):
                self._pending.extend(stash)
                return frame
            if not self.session.streaming:
                raise ProtocolError(f"Unexpected {type(frame).__name__} while awaiting a reply")
            stash.append(frame)

    def _command(self, cmd: Command) -> Line:
        self._send(cmd)
        line = self._expect_line()
        if line.is_error:
            raise CommandRejected(
                f"{cmd.verb} rejected by server: {line.message}", line.error_code or "GENERIC"
            )
        return line

    def info(self, item: str = "ID", pattern: str | None = None) -> dict[str, Any]:
        """Request an INFO document (before streaming) and parse it.

        Returns the parsed XML (v3) or JSON (v4) as nested dicts.
        """
        if self.session.streaming:
            raise SeedLinkError("INFO requests are only available before streaming")
        if self._sock is None:
            self.connect()
        args = (item.upper(),) if pattern is None else (item.upper(), pattern)
        self._send(Command("INFO", args))
        chunks: list[bytes] = []
        while True:
            frame = self._read_frame()
            if isinstance(frame, Line):
                if frame.is_error:
                    raise CommandRejected(f"INFO {item} rejected: {frame.message}",
                                          frame.error_code or "GENERIC")
                logger.debug("Ignoring line during INFO: %s", frame.text)
                continue
            if not isinstance(frame, InfoPacket):
                raise ProtocolError("Data packet received in reply to INFO")
            chunks.append(frame.payload)
            if frame.last:
                break
        doc = parse_info(self.session.variant, b"".join(chunks))
        if frame.error:
            error = doc.get("error", {})
            raise CommandRejected(error.get("message", "INFO failed"),
                                  error.get("code", "GENERIC"))
        return doc

    def select(
        self,
        station: StationID | str | None,
        patterns: Iterable[str] = (),
        start: StartPoint | None = None,
    ) -> Subscription:
        """Subscribe to a station.

        Args:
            station:  ``StationID``, ``"NET_STA"``/``"NET.STA"``, or None for a
                      v3 uni-station session.
            patterns: SELECT patterns; empty selects every stream.
            start:    Start point; defaults to the stored cursor, else NEXT.

        Raises:
            InvalidPattern: a pattern does not compile (nothing is sent).
            CommandRejected: the server refused a command.
        """
        if self._sock is None:
            self.connect()
        if isinstance(station, str):
            station = StationID.parse(station)
        patterns = tuple(patterns)
        variant = self.session.variant
        if station is None and variant is ProtocolVariant.V4:
            raise ValueError("SeedLink v4 requires a station")
        if self.session.streaming and variant is ProtocolVariant.V3:
            raise SeedLinkError("v3 sessions cannot change selection while streaming")
        selector = Selector.compile(patterns, variant)
        if start is not None:
            if station is not None:
                self._cursors.pop(station, None)
        else:
            start = StartPoint()
            if station is not None and self._cursor_store is not None:
                stored = self._cursor_store.load(station)
                if stored is not None:
                    self._cursors[station] = stored
        sub = Subscription(station, patterns, start)
        self._subscriptions[station] = sub
        self._selectors[station] = selector
        self._issue(sub, self._resume_point(sub))
        return sub

    def _resume_point(self, sub: Subscription) -> StartPoint:
        if sub.station is None:
            cursor = next(iter(self._cursors.values()), None) if len(self._cursors) == 1 else None
        else:
            cursor = self._cursors.get(sub.station)
        if cursor is None:
            return sub.start
        return replace(cursor.start_point(), end_time=sub.start.end_time, fetch=sub.start.fetch)

    def _issue(self, sub: Subscription, start: StartPoint) -> None:
        variant = self.session.variant
        if self.session.state in (SessionState.HANDSHAKE, SessionState.NEGOTIATED):
            self.session.transition(SessionState.SELECTING)
        if sub.station is not None:
            if variant is ProtocolVariant.V4:
                self._command(Command("STATION", (str(sub.station),)))
            else:
                self._command(Command("STATION", (sub.station.station, sub.station.network)))
        patterns = sub.patterns or (("*",) if variant is ProtocolVariant.V4 else ())
        if variant is ProtocolVariant.V4:
            if patterns:
                self._command(Command("SELECT", patterns))
        else:
            for pattern in patterns:
                self._command(Command("SELECT", (pattern,)))
        data = start_point_command(variant, start)
        if sub.station is None:
            self._send(data)
            self._enter_streaming()
        else:
            self._command(data)
        logger.debug("Selected %s from %s", sub.station or "default station", start.mode.value)

    def stream(self) -> None:
        """Send END to start (or extend) the data flow of every selected station."""
        if self.session.streaming and self.session.variant is ProtocolVariant.V3:
            return
        if not self._subscriptions:
            raise SeedLinkError("No stations selected")
        if not self.session.streaming:
            self._check_start_gaps()
        self._send(self._end_command())
        self._enter_streaming()

    def _end_command(self) -> Command:
        """END, or ENDFETCH for a v4 session in which every station is fetched."""
        fetches = [s.start.fetch for s in self._subscriptions.values()]
        if self.session.variant is ProtocolVariant.V4 and any(fetches):
            if all(fetches):
                return Command("ENDFETCH")
            logger.warning("v4 cannot mix fetched and streamed stations, streaming all")
        return Command("END")

    def _enter_streaming(self) -> None:
        if not self.session.streaming:
            self.session.transition(SessionState.STREAMING)
        self._decoder.streaming = True

    def _resume(self) -> None:
        """Connect and re-issue every subscription from its cursor."""
        if not self._subscriptions:
            raise SeedLinkError("No stations selected")
        if self._sock is None:
            self.connect()
        self._check_start_gaps()
        for sub in self._subscriptions.values():
            self._issue(sub, self._resume_point(sub))
        if not self.session.streaming:
            self._send(self._end_command())
            self._enter_streaming()

    def _wanted(self, station: StationID) -> int | None:
        """First sequence the next request for ``station`` asks for, if known."""
        cursor = self._cursors.get(station)
        if cursor is not None:
            return cursor.sequence + 1
        sub = self._subscriptions.get(station)
        if sub is None or sub.start.mode is not StartMode.SEQUENCE:
            return None
        return None if sub.start.sequence is None else sub.start.sequence + 1

    def _check_start_gaps(self) -> None:
        """Compare requested sequences with the server's retained range."""
        if not any(s is not None and self._wanted(s) is not None for s in self._subscriptions):
            return
        try:
            doc = self.info("STATIONS")
        except CommandRejected as e:
            logger.debug("Cannot check retained range: %s", e)
            return
        for entry in doc.get("station", []):
            if "id" in entry:
                station = StationID.parse(entry["id"])
                earliest = entry.get("start_seq")
            else:
                station = StationID(entry.get("network", ""), entry.get("name", ""))
                earliest = entry.get("begin_seq")
            wanted = self._wanted(station) if station in self._subscriptions else None
            if wanted is None or not isinstance(earliest, int):
                continue
            if self.session.variant is ProtocolVariant.V3:
                ahead = (earliest - wanted) % V3_SEQ_MODULUS
                if not 0 < ahead < V3_SEQ_MODULUS // 2:
                    continue
                earliest = wanted + ahead
            elif earliest <= wanted:
                continue
            self._gap(GapDetected(
                f"{station}: records {wanted}..{earliest - 1} are no longer available",
                station, wanted, earliest,
            ))

    def _gap(self, gap: GapDetected) -> None:
        station = gap.station
        if station is not None:
            if station in self._reported and self._reported[station] == gap.earliest:
                logger.debug("%s: gap up to %s already reported", station, gap.earliest)
                return
            self._reported[station] = gap.earliest
        logger.warning("%s", gap)
        if self._gap_policy == "abort":
            raise gap
        self._notify(gap)

    def _notify(self, notice: SeedLinkError) -> None:
        if self._on_notice is not None:
            self._on_notice(notice)

    def records(self) -> Generator[Record, None, None]:
        """Yield records until the server ends the stream.

        Reconnects transparently on transport failure. Closing the generator
        closes the client.

        Raises:
            StreamUnavailable: reconnect attempts are exhausted.
            GapDetected: with ``gap_policy="abort"``.
        """
        attempt = 0
        try:
            while True:
                try:
                    if not self.session.streaming:
                        if attempt or self._sock is None:
                            self._resume()
                        else:
                            self.stream()
                    for record in self._stream_frames():
                        attempt = 0
                        yield record
                    return
                except (ConnectionClosed, HandshakeFailed, ProtocolError) as e:
                    if isinstance(e, UnsupportedVersion):
                        raise
                    self._drop_connection(e)
                    attempt += 1
                    if self._retry.exhausted(attempt):
                        lost = StreamUnavailable(
                            f"{self._host}:{self._port} unavailable after "
                            f"{attempt - 1} reconnect attempts: {e}"
                        )
                        self._notify(lost)
                        raise lost from e
                    delay = self._retry.delay(attempt)
                    logger.warning(
                        "Connection lost (%s), reconnecting in %.1fs (attempt %d)",
                        e, delay, attempt,
                    )
                    time.sleep(delay)
        finally:
            self.close()

    def _stream_frames(self) -> Generator[Record, None, None]:
        while True:
            frame = self._read_frame()
            if isinstance(frame, Record):
                record = self._track(frame)
                if record is not None:
                    yield record
            elif isinstance(frame, InfoPacket):
                self._info_chunks.append(frame.payload)
                if frame.last:
                    payload = b"".join(self._info_chunks)
                    self._info_chunks.clear()
                    self._handle_info(payload)
            elif frame.is_end:
                logger.info("End of data from %s:%d", self._host, self._port)
                self.session.transition(SessionState.CLOSING)
                return
            elif frame.is_error:
                logger.warning("Server error while streaming: %s", frame.text)
            else:
                logger.debug("Ignoring line while streaming: %s", frame.text)

    def _handle_info(self, payload: bytes) -> None:
        try:
            doc = parse_info(self.session.variant, payload)
        except ValueError as e:
            logger.warning("Unparseable INFO document while streaming: %s", e)
            return
        gap = doc.get("gap")
        if isinstance(gap, dict):
            self._server_gap(gap)
            return
        if self._on_info is not None:
            self._on_info(doc)
        else:
            logger.debug("INFO while streaming: %s", doc)

    def _server_gap(self, entry: dict[str, Any]) -> None:
        """Turn a server gap report into a :class:`GapDetected` notice."""
        try:
            station = StationID.parse(entry["station"])
        except (KeyError, ValueError) as e:
            logger.warning("Malformed gap report %s: %s", entry, e)
            return
        first, resume = entry.get("first_seq"), entry.get("resume_seq")
        if self.session.variant is ProtocolVariant.V3:
            ref = self._wanted(station)
            if ref is not None:
                first = _unwrap_near(first, ref)
                resume = _unwrap_near(resume, ref)
        reason = entry.get("reason", "dropped")
        self._gap(GapDetected(
            f"{station}: server skipped records from {first} ({reason}), resuming at {resume}",
            station, first, resume,
        ))

    def _track(self, record: Record) -> Record | None:
        """Unwrap the sequence, drop duplicates, advance the cursor."""
        station = record.station
        cursor = self._cursors.get(station)
        seq = record.sequence
        if cursor is not None:
            seq = self._extend(record, cursor)
            if seq is None:
                logger.debug("Dropping duplicate %s record %d", station, record.sequence)
                return None
            if seq > cursor.sequence + 1 and self._unfiltered(station):
                self._gap(GapDetected(
                    f"{station}: records {cursor.sequence + 1}..{seq - 1} skipped",
                    station, cursor.sequence + 1, seq,
                ))
        reported = self._reported.get(station)
        if reported is not None and reported <= seq:
            del self._reported[station]
        if seq != record.sequence:
            record = record.with_sequence(seq)
        new = Cursor(station, seq, record.start_time)
        self._cursors[station] = new
        if self._cursor_store is not None:
            self._cursor_store.save(new)
        return record

    def _extend(self, record: Record, cursor: Cursor) -> int | None:
        """Extended sequence of ``record`` relative to ``cursor``, None for a duplicate.

        v3 carries 24 bits. A raw value less than half the sequence space ahead
        of the cursor (modulo 2**24) moves forward, across a wrap if needed.
        Anything else is a step back: a stale duplicate, or a renumbering when
        the record time is newer. v4 sequences are used as is, with the same
        rule for a step back.
        """
        prev = cursor.sequence
        later = cursor.time is None or record.start_time >= cursor.time
        if self.session.variant is ProtocolVariant.V3:
            ahead = (record.sequence - prev) % V3_SEQ_MODULUS
            if ahead == 0:
                return None
            if ahead < V3_SEQ_MODULUS // 2:
                return prev + ahead
            if not later:
                return None
            logger.warning("%s: sequence went back from %06X to %06X, server renumbered",
                           record.station, prev % V3_SEQ_MODULUS, record.sequence)
            return prev - prev % V3_SEQ_MODULUS + V3_SEQ_MODULUS + record.sequence
        if record.sequence == prev:
            return None
        if record.sequence < prev:
            if not later:
                return None
            logger.warning("%s: sequence went back from %d to %d, server renumbered",
                           record.station, prev, record.sequence)
        return record.sequence

    def _unfiltered(self, station: StationID) -> bool:
        selector = self._selectors.get(station, self._selectors.get(None))
        return selector is not None and selector.empty
