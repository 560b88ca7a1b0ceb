"""Session state machine and the server-side command interpreter.

:class:`Session` holds the protocol state shared by both roles. The client
engine drives one directly; the server wraps it in :class:`ServerSession`,
which turns each decoded :class:`~seedlink_engine.codec.Command` into a list
of actions for the connection handler to carry out.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Union

from .codec import V3_VERBS, V4_VERBS, Command, parse_start_point
from .config import ServerConfig
from .info import INFO_ITEMS
from .protocol import (
    V4_ERROR_DESCRIPTIONS,
    Capabilities,
    CommandRejected,
    InvalidPattern,
    ProtocolError,
    ProtocolVariant,
    StartMode,
    StartPoint,
    StationID,
    UnknownStation,
    UnsupportedVersion,
)
from .selector import MATCH_ALL, Selector, StationPattern

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    HANDSHAKE = "handshake"
    NEGOTIATED = "negotiated"
    SELECTING = "selecting"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.HANDSHAKE: frozenset(
        {SessionState.NEGOTIATED, SessionState.SELECTING, SessionState.CLOSING,
         SessionState.ERRORED}
    ),
    SessionState.NEGOTIATED: frozenset(
        {SessionState.SELECTING, SessionState.CLOSING, SessionState.ERRORED}
    ),
    SessionState.SELECTING: frozenset(
        {SessionState.STREAMING, SessionState.CLOSING, SessionState.ERRORED}
    ),
    SessionState.STREAMING: frozenset({SessionState.CLOSING, SessionState.ERRORED}),
    SessionState.ERRORED: frozenset({SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class Session:
    """Protocol state of one connection.

    The variant may change only until it is locked; after that the codec
    bound to this session never switches dialect.
    """

    def __init__(self, variant: ProtocolVariant = ProtocolVariant.V3, name: str = "session"):
        self.name = name
        self.state = SessionState.HANDSHAKE
        self.variant = variant
        self.version_locked = False
        self.capabilities: Capabilities | None = None
        self.error: Exception | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {self.state.value}, v{self.variant.value})"

    @property
    def is_open(self) -> bool:
        return self.state not in (
            SessionState.CLOSING, SessionState.CLOSED, SessionState.ERRORED
        )

    @property
    def streaming(self) -> bool:
        return self.state is SessionState.STREAMING

    def transition(self, new: SessionState) -> None:
        if new is self.state:
            return
        if new not in _TRANSITIONS[self.state]:
            raise ProtocolError(
                f"{self.name}: illegal transition {self.state.value} -> {new.value}"
            )
        logger.debug("%s: %s -> %s", self.name, self.state.value, new.value)
        self.state = new

    def switch_variant(self, variant: ProtocolVariant) -> None:
        if self.version_locked and variant is not self.variant:
            raise ProtocolError(f"{self.name}: protocol version already locked")
        self.variant = variant

    def lock_version(self, capabilities: Capabilities | None = None) -> None:
        if not self.version_locked:
            self.version_locked = True
            logger.debug("%s: protocol v%d locked", self.name, self.variant.value)
        if capabilities is not None:
            self.capabilities = capabilities

    def fail(self, error: Exception) -> None:
        """Enter ERRORED; closing follows."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED, SessionState.ERRORED):
            return
        self.error = error
        self.transition(SessionState.ERRORED)

    def close(self) -> None:
        """Walk through CLOSING to CLOSED; safe to call repeatedly."""
        if self.state is SessionState.CLOSED:
            return
        if self.state is not SessionState.CLOSING:
            self.transition(SessionState.CLOSING)
        self.transition(SessionState.CLOSED)


@dataclass(frozen=True)
class StationRequest:
    """An armed station: what to stream and where to start.

    ``truncated`` marks a v3 sequence that carries only the low 24 bits and
    must be mapped onto the log's extended numbering.
    """

    station: StationID
    selector: Selector = MATCH_ALL
    start: StartPoint = StartPoint()
    truncated: bool = False


@dataclass(frozen=True)
class Reply:
    lines: tuple[str, ...]


@dataclass(frozen=True)
class SendInfo:
    item: str
    pattern: str | None = None
    error: tuple[str, str] | None = None


@dataclass(frozen=True)
class StartStreaming:
    requests: tuple[StationRequest, ...]


@dataclass(frozen=True)
class CloseSession:
    reason: str = ""


Action = Union[Reply, SendInfo, StartStreaming, CloseSession]


@dataclass
class _Pending:
    """Selection in progress between STATION and DATA."""

    stations: list[StationID] | None
    selector: Selector = MATCH_ALL
    has_select: bool = False
    patterns: list[str] = field(default_factory=list)


class ServerSession(Session):
    """Interprets client commands for one server connection.

    Args:
        known_stations: Callable returning the stations currently served.
        config:         Server configuration (versions, strict mode, banner).
        name:           Label used in log messages, e.g. the peer address.
    """

    def __init__(
        self,
        known_stations: Callable[[], Iterable[StationID]],
        config: ServerConfig | None = None,
        name: str = "client",
    ):
        super().__init__(ProtocolVariant.V3, name)
        self.config = config or ServerConfig()
        self._known = known_stations
        self.batch = False
        self.useragent = ""
        self.stations_used = False
        self._current: _Pending | None = None
        self._armed: dict[StationID, StationRequest] = {}
        self.active: dict[StationID, StationRequest] = {}

    @property
    def verbs(self) -> frozenset[str]:
        if self.variant is ProtocolVariant.V4:
            return V4_VERBS
        if not self.version_locked and self.config.v4_enabled:
            return V3_VERBS | {"SLPROTO"}
        return V3_VERBS

    def handle(self, cmd: Command) -> list[Action]:
        """Interpret one command.

        Raises:
            ProtocolError: fatal violations (including :class:`UnknownStation`).
            UnsupportedVersion: SLPROTO asked for a version not offered.
        """
        if not self.is_open:
            raise ProtocolError(f"{self.name}: command {cmd.verb} on a closed session")
        logger.debug("%s: <- %s", self.name, cmd)
        try:
            if cmd.verb not in self.verbs:
                raise CommandRejected(f"Unknown command {cmd.verb}", "UNSUPPORTED")
            handler = getattr(self, f"_cmd_{cmd.verb.lower()}")
            return handler(cmd)
        except InvalidPattern as e:
            return self._reject(cmd, CommandRejected(str(e), "ARGUMENTS"))
        except CommandRejected as e:
            return self._reject(cmd, e)

    def _reject(self, cmd: Command, e: CommandRejected) -> list[Action]:
        logger.info("%s: %s rejected: %s", self.name, cmd.verb, e)
        if self.variant is ProtocolVariant.V3 and (self.streaming or self._suppressed(cmd)):
            return []
        return [Reply((self.error_line(e),))]

    def error_line(self, e: CommandRejected | Exception) -> str:
        if self.variant is ProtocolVariant.V3:
            return "ERROR"
        code = getattr(e, "code", "GENERIC")
        message = str(e) or V4_ERROR_DESCRIPTIONS.get(code, "")
        return f"ERROR {code} {message}"

    def _suppressed(self, cmd: Command) -> bool:
        return self.batch and cmd.verb in ("STATION", "SELECT", "DATA", "FETCH", "TIME")

    def _ok(self, cmd: Command) -> list[Action]:
        return [] if self._suppressed(cmd) else [Reply(("OK",))]

    def _enter_selecting(self) -> None:
        if not self.version_locked:
            v4 = self.variant is ProtocolVariant.V4
            version = max(
                (v for v in self.config.versions if (v[0] >= 4) == v4), default=(3, 1)
            )
            self.lock_version(
                Capabilities(
                    version=version,
                    multistation=True,
                    extended_sequence=v4,
                    batch=not v4,
                    info_json=v4,
                )
            )
        if self.state in (SessionState.HANDSHAKE, SessionState.NEGOTIATED):
            self.transition(SessionState.SELECTING)

    def _not_while_streaming(self, cmd: Command) -> None:
        if self.streaming and self.variant is ProtocolVariant.V3:
            raise CommandRejected(f"{cmd.verb} not allowed while streaming", "UNEXPECTED")

    def banner(self) -> list[str]:
        major, minor = self.config.versions[0]
        caps = [f"SLPROTO:{v[0]}.{v[1]}" for v in self.config.versions]
        caps += ["MULTISTATION", "BATCH"]
        if self.config.v4_enabled:
            caps.append("INFO:JSON")
        return [
            f"SeedLink v{major}.{minor} ({self.config.software}) :: {' '.join(caps)}",
            self.config.organization,
        ]

    def _cmd_hello(self, cmd: Command) -> list[Action]:
        if self.state is SessionState.HANDSHAKE:
            self.transition(SessionState.NEGOTIATED)
        return [Reply(tuple(self.banner()))]

    def _cmd_slproto(self, cmd: Command) -> list[Action]:
        if self.version_locked:
            raise ProtocolError(f"{self.name}: SLPROTO after the protocol version was locked")
        if len(cmd.args) != 1:
            raise CommandRejected("SLPROTO takes one version argument", "ARGUMENTS")
        try:
            major, _, minor = cmd.args[0].partition(".")
            version = (int(major), int(minor or 0))
        except ValueError:
            raise CommandRejected(f"Invalid version {cmd.args[0]!r}", "ARGUMENTS") from None
        if version not in self.config.versions:
            raise UnsupportedVersion(f"Protocol version {cmd.args[0]} is not supported")
        self.switch_variant(ProtocolVariant.V4 if version[0] >= 4 else ProtocolVariant.V3)
        self._enter_selecting()
        logger.info("%s: negotiated protocol %d.%d", self.name, *version)
        return [Reply(("OK",))]

    def _cmd_useragent(self, cmd: Command) -> list[Action]:
        self.useragent = " ".join(cmd.args)
        self._enter_selecting()
        return [Reply(("OK",))]

    def _cmd_cat(self, cmd: Command) -> list[Action]:
        self._not_while_streaming(cmd)
        self._enter_selecting()
        lines = []
        for station in sorted(self._known()):
            lines.append(f"{station.network:<2} {station.station:<5}")
        lines.append("END")
        return [Reply(tuple(lines))]

    def _cmd_batch(self, cmd: Command) -> list[Action]:
        self._not_while_streaming(cmd)
        self._enter_selecting()
        self.batch = True
        return [Reply(("OK",))]

    def _cmd_station(self, cmd: Command) -> list[Action]:
        self._not_while_streaming(cmd)
        self._enter_selecting()
        pattern = StationPattern.parse(self.variant, cmd.args)
        resolved = pattern.resolve(self._known())
        if not resolved:
            if self.config.strict_stations:
                raise UnknownStation(f"Unknown station {pattern}")
            logger.info("%s: station %s unknown, it will match no records", self.name, pattern)
        self._current = _Pending(resolved)
        self.stations_used = True
        return self._ok(cmd)

    def _cmd_select(self, cmd: Command) -> list[Action]:
        self._not_while_streaming(cmd)
        self._enter_selecting()
        if self._current is None:
            if self.variant is ProtocolVariant.V4:
                raise CommandRejected("SELECT without STATION", "UNEXPECTED")
            self._current = _Pending(None)
        if not cmd.args:
            if self.variant is ProtocolVariant.V4:
                raise CommandRejected("SELECT requires a pattern", "ARGUMENTS")
            self._current.selector = MATCH_ALL
            self._current.has_select = True
            return self._ok(cmd)
        compiled = Selector.compile(cmd.args, self.variant)
        self._current.selector = self._current.selector | compiled
        self._current.has_select = True
        return self._ok(cmd)

    def _cmd_data(self, cmd: Command) -> list[Action]:
        self._not_while_streaming(cmd)
        self._enter_selecting()
        start = parse_start_point(self.variant, cmd)
        truncated = self.variant is ProtocolVariant.V3 and start.mode is StartMode.SEQUENCE
        current = self._current
        if self.variant is ProtocolVariant.V4:
            if current is None:
                raise CommandRejected("DATA without STATION", "UNEXPECTED")
            if not current.has_select:
                raise CommandRejected("SELECT required before DATA", "ARGUMENTS")
        if current is None or current.stations is None:
            return self._start_unistation(current, start, truncated)
        for station in current.stations:
            self._armed[station] = StationRequest(station, current.selector, start, truncated)
        self._current = None
        return self._ok(cmd)

    _cmd_fetch = _cmd_data
    _cmd_time = _cmd_data

    def _start_unistation(
        self, current: _Pending | None, start: StartPoint, truncated: bool
    ) -> list[Action]:
        station = self._default_station()
        selector = current.selector if current is not None else MATCH_ALL
        self._current = None
        requests: tuple[StationRequest, ...] = ()
        if station is not None:
            requests = (StationRequest(station, selector, start, truncated),)
        return self._start(requests)

    def _default_station(self) -> StationID | None:
        if self.config.default_station:
            return StationID.parse(self.config.default_station)
        known = list(self._known())
        if len(known) == 1:
            return known[0]
        if self.config.strict_stations:
            raise UnknownStation("No default station for a uni-station session")
        logger.info("%s: uni-station request without a default station", self.name)
        return None

    def _start(self, requests: tuple[StationRequest, ...]) -> list[Action]:
        for req in requests:
            self.active[req.station] = req
        if self.state is not SessionState.STREAMING:
            self.transition(SessionState.STREAMING)
            logger.info(
                "%s: streaming %d station(s)", self.name, len(requests)
            )
        return [StartStreaming(requests)]

    def _cmd_end(self, cmd: Command) -> list[Action]:
        fetch = cmd.verb == "ENDFETCH"
        if self._armed:
            armed = tuple(
                replace(r, start=replace(r.start, fetch=True)) if fetch else r
                for r in self._armed.values()
            )
            self._armed.clear()
            self._current = None
            self._enter_selecting()
            return self._start(armed)
        if self.streaming:
            return [CloseSession(cmd.verb)]
        if self.stations_used:
            self._enter_selecting()
            return self._start(())
        raise CommandRejected("No stations selected", "UNEXPECTED")

    _cmd_endfetch = _cmd_end

    def _cmd_bye(self, cmd: Command) -> list[Action]:
        return [CloseSession("BYE")]

    def _cmd_info(self, cmd: Command) -> list[Action]:
        if not cmd.args or len(cmd.args) > 2:
            raise CommandRejected("INFO takes an item and an optional station pattern",
                                  "ARGUMENTS")
        self._enter_selecting()
        item = cmd.args[0].upper()
        pattern = cmd.args[1] if len(cmd.args) > 1 else None
        if item not in INFO_ITEMS[self.variant]:
            if self.variant is ProtocolVariant.V4:
                return [SendInfo(item, pattern, ("ARGUMENTS", f"Unknown INFO item {item}"))]
            raise CommandRejected(f"Unknown INFO item {item}", "ARGUMENTS")
        return [SendInfo(item, pattern)]
