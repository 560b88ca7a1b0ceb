"""SeedLink protocol constants, data model, and error taxonomy."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace

DEFAULT_PORT = 18000

# Command lines longer than this are a framing error, never truncated.
MAX_COMMAND_LEN = 255

# v3 framing: "SL" + 6 hex digits, then a fixed-size record
V3_SIGNATURE = b"SL"
V3_INFO_SIGNATURE = b"SLINFO"
V3_HEADER_LEN = 8
V3_RECORD_SIZE = 512
V3_SEQ_BITS = 24
V3_SEQ_MODULUS = 1 << V3_SEQ_BITS

# v4 framing: "SE" + format(2) + payload len(u32) + seq(u64) + station id len(u8)
V4_SIGNATURE = b"SE"
V4_HEADER_LEN = 17
V4_SEQ_MODULUS = 1 << 64

# SEED record type letters carried in a StreamKey
RECORD_TYPES = frozenset("DECTLO")

# v4 INFO packet format codes
V4_INFO_OK = "JI"
V4_INFO_ERROR = "JE"

SUPPORTED_VERSIONS: tuple[tuple[int, int], ...] = ((4, 0), (3, 1))


class ProtocolVariant(enum.Enum):
    """Wire dialect selected once per session."""

    V3 = 3
    V4 = 4

    @property
    def seq_modulus(self) -> int:
        return V3_SEQ_MODULUS if self is ProtocolVariant.V3 else V4_SEQ_MODULUS


@dataclass(frozen=True, order=True)
class StationID:
    """Network and station code pair, e.g. ``StationID("XX", "ABC")``."""

    network: str
    station: str

    def __post_init__(self) -> None:
        if not self.network or not self.station:
            raise ValueError("network and station codes must be non-empty")
        object.__setattr__(self, "network", self.network.upper())
        object.__setattr__(self, "station", self.station.upper())

    @classmethod
    def parse(cls, text: str) -> StationID:
        """Parse ``NET_STA`` (v4 wire form) or ``NET.STA``."""
        sep = "_" if "_" in text else "."
        net, _, sta = text.strip().partition(sep)
        if not net or not sta:
            raise ValueError(f"Invalid station identifier: {text!r}")
        return cls(net, sta)

    def __str__(self) -> str:
        return f"{self.network}_{self.station}"


@dataclass(frozen=True, order=True)
class StreamKey:
    """The unit of selection: station, location, channel, record type."""

    station: StationID
    location: str
    channel: str
    record_type: str = "D"

    @property
    def stream_id(self) -> str:
        """v4 stream identifier, ``LOC_B_S_SS`` for three-letter channels."""
        if len(self.channel) == 3:
            return f"{self.location}_{'_'.join(self.channel)}"
        return f"{self.location}_{self.channel}"

    def __str__(self) -> str:
        return f"{self.station}_{self.stream_id}.{self.record_type}"


@dataclass(frozen=True)
class Record:
    """One immutable data record as stored in a log and sent on the wire.

    Attributes:
        key:        Stream the record belongs to.
        sequence:   Extended (unwrapped) sequence number within the station.
        start_time: Epoch microseconds of the first sample.
        payload:    Opaque miniSEED bytes.
        version:    miniSEED major version (2 or 3), used for the v4 format code.
    """

    key: StreamKey
    sequence: int
    start_time: int
    payload: bytes = field(repr=False)
    version: int = 2

    @property
    def station(self) -> StationID:
        return self.key.station

    @property
    def format_code(self) -> str:
        return f"{self.version}{self.key.record_type}"

    def with_sequence(self, sequence: int) -> Record:
        return replace(self, sequence=sequence)


@dataclass(frozen=True)
class InfoPacket:
    """A chunk of an INFO response (XML for v3, JSON for v4)."""

    payload: bytes
    last: bool = True
    error: bool = False


@dataclass(frozen=True)
class Capabilities:
    """Capability set negotiated for one session; immutable afterwards."""

    version: tuple[int, int] = (3, 1)
    multistation: bool = True
    extended_sequence: bool = False
    batch: bool = False
    info_json: bool = False
    extras: frozenset[str] = frozenset()

    @property
    def variant(self) -> ProtocolVariant:
        return ProtocolVariant.V4 if self.version[0] >= 4 else ProtocolVariant.V3

    def tokens(self) -> list[str]:
        out = [f"SLPROTO:{self.version[0]}.{self.version[1]}"]
        if self.multistation:
            out.append("MULTISTATION")
        if self.batch:
            out.append("BATCH")
        if self.info_json:
            out.append("INFO:JSON")
        out.extend(sorted(self.extras))
        return out


class StartMode(enum.Enum):
    NEXT = "next"
    ALL = "all"
    SEQUENCE = "sequence"
    TIME = "time"


@dataclass(frozen=True)
class StartPoint:
    """Where a subscription begins.

    ``SEQUENCE`` resumes *after* ``sequence`` (the cursor of the last delivered
    record). ``TIME`` delivers records whose start time is at or after ``time``.
    ``end_time`` closes a time window; ``fetch`` ends the stream after catch-up.
    """

    mode: StartMode = StartMode.NEXT
    sequence: int | None = None
    time: int | None = None
    end_time: int | None = None
    fetch: bool = False

    @classmethod
    def after(cls, sequence: int, time: int | None = None) -> StartPoint:
        return cls(StartMode.SEQUENCE, sequence=sequence, time=time)

    @classmethod
    def at_time(cls, time: int, end_time: int | None = None) -> StartPoint:
        return cls(StartMode.TIME, time=time, end_time=end_time)

    @property
    def windowed(self) -> bool:
        return self.fetch or self.end_time is not None


@dataclass(frozen=True)
class Cursor:
    """Last delivered position for a station; the resume key."""

    station: StationID
    sequence: int
    time: int | None = None

    def advance(self, record: Record) -> Cursor:
        return Cursor(self.station, record.sequence, record.start_time)

    def start_point(self) -> StartPoint:
        return StartPoint.after(self.sequence, self.time)


@dataclass(frozen=True)
class Subscription:
    """Selection request for one station (``None`` means v3 uni-station)."""

    station: StationID | None
    patterns: tuple[str, ...] = ()
    start: StartPoint = StartPoint()


class SeedLinkError(Exception):
    """Base class for every error raised by this package."""


class ProtocolError(SeedLinkError):
    """Malformed frame or command; fatal to the session."""


class UnknownStation(ProtocolError):
    """STATION named no known station while strict mode is on."""


class HandshakeFailed(SeedLinkError):
    """Transport failure or capability mismatch during the handshake."""


class UnsupportedVersion(HandshakeFailed):
    """The peer does not speak a required protocol version."""


class InvalidPattern(SeedLinkError):
    """Malformed SELECT or STATION pattern; the selection may be retried."""


class CommandRejected(SeedLinkError):
    """Non-fatal refusal of a single command (answered with ERROR).

    Attributes:
        code: v4 error code (``UNSUPPORTED``, ``ARGUMENTS``, ``UNEXPECTED``, ...).
    """

    def __init__(self, message: str, code: str = "GENERIC"):
        super().__init__(message)
        self.code = code


class SequenceRegression(SeedLinkError):
    """Out-of-order append; the station's log stops accepting records."""

    def __init__(self, message: str, station: StationID | None = None):
        super().__init__(message)
        self.station = station


class GapDetected(SeedLinkError):
    """Requested or implied start point is no longer available.

    Non-fatal: the caller may resume from ``earliest`` or give up.

    Attributes:
        station:   Station the gap belongs to.
        requested: First sequence the caller wanted.
        earliest:  First sequence that is actually available (None if empty).
    """

    def __init__(
        self,
        message: str,
        station: StationID | None = None,
        requested: int | None = None,
        earliest: int | None = None,
    ):
        super().__init__(message)
        self.station = station
        self.requested = requested
        self.earliest = earliest


class SlowConsumerDisconnected(SeedLinkError):
    """A subscriber exceeded the configured lag and was detached."""


class StreamUnavailable(SeedLinkError):
    """Reconnect attempts are exhausted; the stream is permanently lost."""


class ConnectionClosed(SeedLinkError):
    """The peer closed the transport."""


V4_ERROR_DESCRIPTIONS: dict[str, str] = {
    "GENERIC": "Generic error",
    "UNSUPPORTED": "Command not recognized or not supported",
    "UNEXPECTED": "Command not expected",
    "UNAUTHORIZED": "Client is not authorized to use the command",
    "LIMIT": "Limit exceeded",
    "ARGUMENTS": "Incorrect command arguments",
    "AUTH": "Authentication failed",
    "INTERNAL": "Internal error",
}
