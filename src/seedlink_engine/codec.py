"""Wire codec for SeedLink v3 and v4.

Commands are ASCII lines terminated by CR, LF or CRLF. Data travels as binary
packets:

* v3: ``SL`` + 6 hex digit sequence + fixed-size miniSEED record. INFO responses
  use ``SLINFO *`` (more to come) or ``SLINFO  `` (last) headers.
* v4: ``SE`` + 2 char format + ``<u32`` payload length + ``<u64`` sequence +
  ``u8`` station id length + ``NET_STA`` + payload. INFO responses are ``JI``
  (ok) or ``JE`` (error) packets with sequence 0.

All decoders are incremental: feed whatever bytes arrived and they return one
decoded item or :data:`NEED_MORE_DATA`, keeping partial frames buffered.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Union

from .protocol import (
    MAX_COMMAND_LEN,
    RECORD_TYPES,
    V3_HEADER_LEN,
    V3_INFO_SIGNATURE,
    V3_RECORD_SIZE,
    V3_SEQ_MODULUS,
    V3_SIGNATURE,
    V4_HEADER_LEN,
    V4_INFO_ERROR,
    V4_INFO_OK,
    V4_SIGNATURE,
    CommandRejected,
    InfoPacket,
    ProtocolError,
    ProtocolVariant,
    Record,
    StartMode,
    StartPoint,
    StationID,
    StreamKey,
)
from .time_utils import (
    btime_to_ustime,
    datetime_to_ustime,
    timestring_to_ustime,
    ustime_to_timestring,
    ustime_to_v3_timestring,
    v3_timestring_to_ustime,
)

logger = logging.getLogger(__name__)

V4_HEADER = struct.Struct("<2s2sIQB")
MS2_BTIME = struct.Struct(">HHBBBBH")
MS2_BTIME_LE = struct.Struct("<HHBBBBH")
MS3_FIXED = struct.Struct("<2sBBIHHBBBBdIIBBHI")

# Server reply lines (banner, CAT listing) are not bounded by MAX_COMMAND_LEN.
MAX_RESPONSE_LINE = 8192

V3_VERBS = frozenset(
    {"HELLO", "CAT", "STATION", "SELECT", "DATA", "FETCH", "TIME", "END", "BYE", "INFO", "BATCH"}
)
V4_VERBS = frozenset(
    {"HELLO", "SLPROTO", "USERAGENT", "STATION", "SELECT", "DATA", "END", "ENDFETCH", "BYE", "INFO"}
)


class _NeedMoreData:
    _instance: _NeedMoreData | None = None

    def __new__(cls) -> _NeedMoreData:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NEED_MORE_DATA"

    def __bool__(self) -> bool:
        return False


NEED_MORE_DATA = _NeedMoreData()


@dataclass(frozen=True)
class Command:
    """One command line: upper-case verb plus whitespace-free arguments."""

    verb: str
    args: tuple[str, ...] = ()

    def __str__(self) -> str:
        return " ".join((self.verb, *self.args))


@dataclass(frozen=True)
class Line:
    """A text line sent by the server (OK, ERROR, END, banner, CAT output)."""

    text: str

    @property
    def is_ok(self) -> bool:
        return self.text == "OK"

    @property
    def is_error(self) -> bool:
        return self.text == "ERROR" or self.text.startswith("ERROR ")

    @property
    def is_end(self) -> bool:
        return self.text == "END"

    @property
    def error_code(self) -> str | None:
        """v4 error code, e.g. ``ARGUMENTS``; None for bare v3 ``ERROR``."""
        if not self.is_error:
            return None
        parts = self.text.split(None, 2)
        return parts[1] if len(parts) > 1 else None

    @property
    def message(self) -> str:
        parts = self.text.split(None, 2)
        return parts[2] if len(parts) > 2 else self.text


Frame = Union[Line, InfoPacket, Record]


class MSeedHeader(NamedTuple):
    network: str
    station: str
    location: str
    channel: str
    record_type: str
    start_time: int
    version: int

    def stream_key(self, record_type: str | None = None) -> StreamKey:
        return StreamKey(
            StationID(self.network, self.station),
            self.location,
            self.channel,
            record_type or self.record_type,
        )


def encode_command(cmd: Command) -> bytes:
    """Serialize a command as ``VERB arg ...\\r\\n``."""
    if not cmd.verb.isascii() or not cmd.verb.isalpha() or cmd.verb != cmd.verb.upper():
        raise ValueError(f"Invalid command verb: {cmd.verb!r}")
    for arg in cmd.args:
        if not arg or not arg.isascii() or any(c.isspace() for c in arg):
            raise ValueError(f"Invalid command argument: {arg!r}")
    line = str(cmd).encode("ascii") + b"\r\n"
    if len(line) - 2 > MAX_COMMAND_LEN:
        raise ValueError(f"Command length {len(line) - 2} exceeds {MAX_COMMAND_LEN}")
    return line


def encode_line(text: str) -> bytes:
    return text.encode("ascii") + b"\r\n"


class CommandDecoder:
    """Incremental command-line decoder used by the server side.

    A line longer than ``max_length`` raises :class:`ProtocolError`; it is
    never truncated or silently dropped.
    """

    def __init__(self, max_length: int = MAX_COMMAND_LEN):
        self._max_length = max_length
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buf)

    def decode(self, data: bytes = b"") -> Command | _NeedMoreData:
        if data:
            self._buf += data
        while True:
            end = _find_eol(self._buf)
            if end < 0:
                if len(self._buf) > self._max_length:
                    self._buf.clear()
                    raise ProtocolError(f"Command line exceeds {self._max_length} bytes")
                return NEED_MORE_DATA
            if end > self._max_length:
                self._buf.clear()
                raise ProtocolError(f"Command line exceeds {self._max_length} bytes")
            raw = bytes(self._buf[:end])
            consumed = end + 1
            if self._buf[end:end + 2] == b"\r\n":
                consumed += 1
            del self._buf[:consumed]
            try:
                text = raw.decode("ascii")
            except UnicodeDecodeError:
                self._buf.clear()
                raise ProtocolError("Command line contains non-ASCII bytes") from None
            parts = text.split()
            if not parts:
                continue
            return Command(parts[0].upper(), tuple(parts[1:]))

    def decode_all(self, data: bytes = b"") -> list[Command]:
        out: list[Command] = []
        cmd = self.decode(data)
        while cmd is not NEED_MORE_DATA:
            out.append(cmd)
            cmd = self.decode()
        return out


def _find_eol(buf: bytearray) -> int:
    positions = [p for p in (buf.find(b"\r"), buf.find(b"\n")) if p >= 0]
    return min(positions) if positions else -1


def parse_start_point(variant: ProtocolVariant, cmd: Command) -> StartPoint:
    """Interpret the arguments of DATA, FETCH, or TIME.

    Raises:
        CommandRejected: with code ``ARGUMENTS`` for malformed arguments.
    """
    try:
        if variant is ProtocolVariant.V3:
            return _parse_v3_start(cmd)
        return _parse_v4_start(cmd)
    except ValueError as e:
        raise CommandRejected(f"{cmd.verb}: {e}", "ARGUMENTS") from e


def _parse_v3_start(cmd: Command) -> StartPoint:
    args = cmd.args
    if cmd.verb == "TIME":
        if not 1 <= len(args) <= 2:
            raise ValueError("expected start time and optional end time")
        start = v3_timestring_to_ustime(args[0])
        end = v3_timestring_to_ustime(args[1]) if len(args) == 2 else None
        return StartPoint(StartMode.TIME, time=start, end_time=end)
    if cmd.verb not in ("DATA", "FETCH"):
        raise ValueError(f"{cmd.verb} does not take a start point")
    if len(args) > 2:
        raise ValueError("too many arguments")
    fetch = cmd.verb == "FETCH"
    if not args:
        return StartPoint(StartMode.NEXT, fetch=fetch)
    seq = int(args[0], 16)
    if not 0 <= seq < V3_SEQ_MODULUS:
        raise ValueError("sequence number out of range")
    time = v3_timestring_to_ustime(args[1]) if len(args) == 2 else None
    return StartPoint(StartMode.SEQUENCE, sequence=seq, time=time, fetch=fetch)


def _parse_v4_start(cmd: Command) -> StartPoint:
    args = cmd.args
    if cmd.verb != "DATA":
        raise ValueError(f"{cmd.verb} does not take a start point")
    if len(args) > 3:
        raise ValueError("too many arguments")
    if not args:
        return StartPoint(StartMode.NEXT)
    times = [_parse_v4_time(a) for a in args[1:]]
    start = times[0] if times else None
    end = times[1] if len(times) > 1 else None
    token = args[0].upper()
    if token in ("ALL", "NEXT"):
        if start is not None:
            return StartPoint(StartMode.TIME, time=start, end_time=end)
        return StartPoint(StartMode.ALL if token == "ALL" else StartMode.NEXT)
    if not token.isdigit():
        raise ValueError(f"invalid sequence number {args[0]!r}")
    return StartPoint(StartMode.SEQUENCE, sequence=int(token), time=start, end_time=end)


def _parse_v4_time(text: str) -> int:
    if not text.endswith("Z"):
        raise ValueError(f"time must be UTC with a Z suffix: {text!r}")
    return timestring_to_ustime(text)


def start_point_command(variant: ProtocolVariant, start: StartPoint) -> Command:
    """Build the DATA/FETCH/TIME command that requests ``start``."""
    if variant is ProtocolVariant.V3:
        if start.mode in (StartMode.TIME, StartMode.ALL):
            args = [ustime_to_v3_timestring(start.time or 0)]
            if start.end_time is not None:
                args.append(ustime_to_v3_timestring(start.end_time))
            return Command("TIME", tuple(args))
        verb = "FETCH" if start.fetch else "DATA"
        if start.mode is StartMode.SEQUENCE:
            args = [f"{start.sequence % V3_SEQ_MODULUS:06X}"]
            if start.time is not None:
                args.append(ustime_to_v3_timestring(start.time))
            return Command(verb, tuple(args))
        return Command(verb)

    if start.mode is StartMode.SEQUENCE:
        args = [str(start.sequence)]
    elif start.mode is StartMode.NEXT and start.time is None and start.end_time is None:
        return Command("DATA")
    else:
        args = ["ALL" if start.mode is not StartMode.NEXT else "NEXT"]
    if start.time is not None:
        args.append(_v4_timestring(start.time))
        if start.end_time is not None:
            args.append(_v4_timestring(start.end_time))
    return Command("DATA", tuple(args))


def _v4_timestring(ustime: int) -> str:
    return ustime_to_timestring(ustime)


def peek_mseed_header(payload: bytes) -> MSeedHeader:
    """Identify a miniSEED 2 or 3 record from its fixed header.

    Only identification fields are read; the record stays opaque otherwise.

    Raises:
        ValueError: if the payload is not a recognizable miniSEED record.
    """
    if payload[:2] == b"MS" and len(payload) >= MS3_FIXED.size and payload[2] == 3:
        return _peek_mseed3(payload)
    return _peek_mseed2(payload)


def _peek_mseed2(payload: bytes) -> MSeedHeader:
    if len(payload) < 48:
        raise ValueError("payload shorter than a miniSEED 2 fixed header")
    seq_field = payload[0:6]
    if payload[6:7] not in (b"D", b"R", b"Q", b"M") or not all(
        chr(b).isdigit() or b == 0x20 for b in seq_field
    ):
        raise ValueError("not a miniSEED 2 data record")
    try:
        station = payload[8:13].decode("ascii").strip()
        location = payload[13:15].decode("ascii").strip()
        channel = payload[15:18].decode("ascii").strip()
        network = payload[18:20].decode("ascii").strip()
    except UnicodeDecodeError:
        raise ValueError("non-ASCII miniSEED identifiers") from None
    year, doy, hour, minute, second, _unused, fract = MS2_BTIME.unpack_from(payload, 20)
    if not 1900 <= year <= 2100:
        year, doy, hour, minute, second, _unused, fract = MS2_BTIME_LE.unpack_from(payload, 20)
    if not 1900 <= year <= 2100 or not 1 <= doy <= 366:
        raise ValueError("invalid miniSEED 2 start time")
    if not network or not station:
        raise ValueError("missing network or station code")
    record_type = "L" if channel == "LOG" else "D"
    start = btime_to_ustime(year, doy, hour, minute, second, fract)
    return MSeedHeader(network, station, location, channel, record_type, start, 2)


def _peek_mseed3(payload: bytes) -> MSeedHeader:
    (
        _sig, _ver, _flags, nanosecond, year, doy, hour, minute, second,
        _encoding, _rate, _nsamples, _crc, _pubver, sid_len, _extra_len, _data_len,
    ) = MS3_FIXED.unpack_from(payload, 0)
    sid_raw = payload[MS3_FIXED.size:MS3_FIXED.size + sid_len]
    if len(sid_raw) != sid_len:
        raise ValueError("truncated miniSEED 3 source identifier")
    sid = sid_raw.decode("ascii", errors="replace")
    if sid.startswith("FDSN:"):
        sid = sid[len("FDSN:"):]
    parts = sid.split("_")
    if len(parts) != 6:
        raise ValueError(f"unsupported source identifier {sid!r}")
    net, sta, loc, band, source, subsource = parts
    dt = datetime(year, 1, 1, hour, minute, second, tzinfo=timezone.utc) + timedelta(
        days=doy - 1, microseconds=nanosecond // 1000
    )
    return MSeedHeader(net, sta, loc, band + source + subsource, "D", datetime_to_ustime(dt), 3)


def _parse_v3_packet(
    buf: bytes | bytearray, record_size: int
) -> tuple[Record | InfoPacket, int] | None:
    """Return (frame, bytes consumed) or None if the frame is incomplete."""
    if len(buf) < V3_HEADER_LEN:
        return None
    header = bytes(buf[:V3_HEADER_LEN])
    if header[:2] != V3_SIGNATURE:
        raise ProtocolError(f"Invalid packet signature: {header[:2]!r}")
    total = V3_HEADER_LEN + record_size
    if len(buf) < total:
        return None
    payload = bytes(buf[V3_HEADER_LEN:total])
    if header[:6] == V3_INFO_SIGNATURE:
        return InfoPacket(payload, last=header[7:8] != b"*"), total
    try:
        seq = int(header[2:8].decode("ascii"), 16)
    except (UnicodeDecodeError, ValueError):
        raise ProtocolError(f"Invalid sequence number field: {header[2:8]!r}") from None
    try:
        ms = peek_mseed_header(payload)
    except ValueError as e:
        raise ProtocolError(f"Unrecognized record in packet {seq:06X}: {e}") from e
    return Record(ms.stream_key(), seq, ms.start_time, payload, ms.version), total


def _parse_v4_packet(buf: bytes | bytearray) -> tuple[Record | InfoPacket, int] | None:
    if len(buf) < V4_HEADER_LEN:
        return None
    signature, fmt_raw, length, seq, sid_len = V4_HEADER.unpack_from(bytes(buf[:V4_HEADER_LEN]))
    if signature != V4_SIGNATURE:
        raise ProtocolError(f"Invalid packet signature: {signature!r}")
    try:
        fmt = fmt_raw.decode("ascii")
    except UnicodeDecodeError:
        raise ProtocolError(f"Invalid format code: {fmt_raw!r}") from None
    if length == 0:
        raise ProtocolError("Missing packet payload")
    total = V4_HEADER_LEN + sid_len + length
    if len(buf) < total:
        return None
    sid = bytes(buf[V4_HEADER_LEN:V4_HEADER_LEN + sid_len])
    payload = bytes(buf[V4_HEADER_LEN + sid_len:total])
    if fmt in (V4_INFO_OK, V4_INFO_ERROR):
        return InfoPacket(payload, last=True, error=fmt == V4_INFO_ERROR), total
    if fmt[0] not in "23" or fmt[1] not in RECORD_TYPES:
        raise ProtocolError(f"Unsupported format code: {fmt!r}")
    try:
        station = StationID.parse(sid.decode("ascii"))
    except (UnicodeDecodeError, ValueError):
        raise ProtocolError(f"Invalid station identifier: {sid!r}") from None
    try:
        ms = peek_mseed_header(payload)
        key = StreamKey(station, ms.location, ms.channel, fmt[1])
        start_time = ms.start_time
    except ValueError:
        logger.debug("Packet %d for %s has no readable miniSEED header", seq, station)
        key = StreamKey(station, "", "", fmt[1])
        start_time = 0
    return Record(key, seq, start_time, payload, int(fmt[0])), total


class PacketDecoder:
    """Incremental decoder for data and INFO packets of one protocol variant."""

    def __init__(self, variant: ProtocolVariant, record_size: int = V3_RECORD_SIZE):
        self.variant = variant
        self.record_size = record_size
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buf)

    def decode(self, data: bytes = b"") -> Record | InfoPacket | _NeedMoreData:
        if data:
            self._buf += data
        if self.variant is ProtocolVariant.V3:
            result = _parse_v3_packet(self._buf, self.record_size)
        else:
            result = _parse_v4_packet(self._buf)
        if result is None:
            return NEED_MORE_DATA
        frame, consumed = result
        del self._buf[:consumed]
        return frame


def encode_record(
    variant: ProtocolVariant, record: Record, record_size: int = V3_RECORD_SIZE
) -> bytes:
    """Serialize a record as a v3 or v4 data packet."""
    if variant is ProtocolVariant.V3:
        if len(record.payload) != record_size:
            raise ProtocolError(
                f"Payload of {len(record.payload)} bytes does not match record size {record_size}"
            )
        seq = f"{record.sequence % V3_SEQ_MODULUS:06X}".encode("ascii")
        return V3_SIGNATURE + seq + record.payload
    if not record.payload:
        raise ProtocolError("Missing packet payload")
    sid = str(record.station).encode("ascii")
    header = V4_HEADER.pack(
        V4_SIGNATURE,
        record.format_code.encode("ascii"),
        len(record.payload),
        record.sequence,
        len(sid),
    )
    return header + sid + record.payload


def encode_info(
    variant: ProtocolVariant,
    text: str,
    error: bool = False,
    record_size: int = V3_RECORD_SIZE,
) -> bytes:
    """Serialize an INFO document as one (v4) or more (v3) packets."""
    payload = text.encode("utf-8")
    if variant is ProtocolVariant.V4:
        if not payload:
            raise ValueError("empty INFO payload")
        fmt = V4_INFO_ERROR if error else V4_INFO_OK
        return V4_HEADER.pack(V4_SIGNATURE, fmt.encode("ascii"), len(payload), 0, 0) + payload
    chunks = [payload[i:i + record_size] for i in range(0, len(payload), record_size)] or [b""]
    out = bytearray()
    for n, chunk in enumerate(chunks):
        flag = b" " if n == len(chunks) - 1 else b"*"
        out += V3_INFO_SIGNATURE + b" " + flag + chunk.ljust(record_size, b"\0")
    return bytes(out)


class ResponseDecoder:
    """Client-side decoder splitting server output into lines and packets.

    During the handshake the server answers with text lines (and, for INFO,
    packets). Once ``streaming`` is set, v3 output is only packets and ``END``;
    v4 may still interleave reply lines, which never start with ``SE``.
    """

    def __init__(
        self,
        variant: ProtocolVariant = ProtocolVariant.V3,
        record_size: int = V3_RECORD_SIZE,
    ):
        self.variant = variant
        self.record_size = record_size
        self.streaming = False
        self._buf = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buf)

    def reset(self) -> None:
        self._buf.clear()
        self.streaming = False

    def decode(self, data: bytes = b"") -> Frame | _NeedMoreData:
        if data:
            self._buf += data
        while self._buf:
            kind = self._classify()
            if kind is None:
                return NEED_MORE_DATA
            if kind == "packet":
                if self.variant is ProtocolVariant.V3:
                    result = _parse_v3_packet(self._buf, self.record_size)
                else:
                    result = _parse_v4_packet(self._buf)
                if result is None:
                    return NEED_MORE_DATA
                frame, consumed = result
                del self._buf[:consumed]
                return frame
            if kind == "end":
                del self._buf[:3]
                while self._buf[:1] in (b"\r", b"\n"):
                    del self._buf[:1]
                return Line("END")
            line = self._take_line()
            if line is None:
                return NEED_MORE_DATA
            if line:
                return Line(line)
        return NEED_MORE_DATA

    def _classify(self) -> str | None:
        buf = bytes(self._buf[:V3_HEADER_LEN])
        if self.variant is ProtocolVariant.V4:
            if buf.startswith(V4_SIGNATURE):
                return "packet"
            if len(buf) < len(V4_SIGNATURE) and V4_SIGNATURE.startswith(buf):
                return None
            return "line"
        if self.streaming:
            if buf.startswith(V3_SIGNATURE):
                return "packet"
            if buf.startswith(b"END"):
                return "end"
            if len(buf) < 3 and (V3_SIGNATURE.startswith(buf) or b"END".startswith(buf)):
                return None
            raise ProtocolError(f"Unexpected bytes in data stream: {buf!r}")
        if buf.startswith(V3_INFO_SIGNATURE):
            return "packet"
        if len(buf) < len(V3_INFO_SIGNATURE) and V3_INFO_SIGNATURE.startswith(buf):
            eol = _find_eol(self._buf)
            return "line" if eol >= 0 else None
        return "line"

    def _take_line(self) -> str | None:
        end = _find_eol(self._buf)
        if end < 0:
            if len(self._buf) > MAX_RESPONSE_LINE:
                raise ProtocolError(f"Response line exceeds {MAX_RESPONSE_LINE} bytes")
            return None
        raw = bytes(self._buf[:end])
        consumed = end + 1
        if self._buf[end:end + 2] == b"\r\n":
            consumed += 1
        del self._buf[:consumed]
        return raw.decode("ascii", errors="replace").strip()
