"""Stream selection: SELECT and STATION patterns compiled into matchers.

v3 SELECT patterns look like ``[!][LL]CCC[.T]`` (``BH?``, ``00BHZ.D``,
``!LOG``); v4 patterns look like ``[!]LOC_B_S_SS[.FMT]`` (``00_B_H_?``,
``*.2D``). Globs ``*`` and ``?`` match case-sensitively.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Iterable, Sequence

from .protocol import InvalidPattern, ProtocolVariant, StationID, StreamKey

# A station with no SELECT receives every stream. Kept as a named policy so the
# behaviour is a decision, not an accident of an empty list.
EMPTY_SELECTION_MATCHES_ALL = True

_CODE_GLOB = re.compile(r"^[A-Za-z0-9?*\-]*$")
_STREAM_GLOB = re.compile(r"^[A-Za-z0-9?*\-_]*$")
_TYPE_GLOB = re.compile(r"^[DECTLO?*]$")
_FORMAT_GLOB = re.compile(r"^[0-9?*]?[DECTLO?*]$")


@dataclass(frozen=True)
class SelectPattern:
    """One compiled SELECT argument.

    Attributes:
        text:     Pattern as given by the client.
        exclude:  True for ``!`` patterns.
        location: Location glob (v3 only; ``*`` when omitted).
        channel:  Channel glob (v3 only).
        stream:   Stream id glob ``LOC_B_S_SS`` (v4 only).
        fmt:      Record type (v3) or format code (v4) glob.
    """

    text: str
    exclude: bool = False
    location: str = "*"
    channel: str = "*"
    stream: str | None = None
    fmt: str = "*"

    @classmethod
    def parse(cls, variant: ProtocolVariant, text: str) -> SelectPattern:
        if not text:
            raise InvalidPattern("Empty selector")
        body = text
        exclude = body.startswith("!")
        if exclude:
            body = body[1:]
        if variant is ProtocolVariant.V4:
            return cls._parse_v4(text, body, exclude)
        return cls._parse_v3(text, body, exclude)

    @classmethod
    def _parse_v3(cls, text: str, body: str, exclude: bool) -> SelectPattern:
        body, dot, rtype = body.partition(".")
        if dot and not _TYPE_GLOB.match(rtype):
            raise InvalidPattern(f"Invalid record type in selector {text!r}")
        if not body or not _CODE_GLOB.match(body):
            raise InvalidPattern(f"Invalid selector {text!r}")
        if len(body) <= 3:
            location, channel = "*", body
        elif len(body) == 5:
            location, channel = body[:2], body[2:]
            if location == "--":
                location = ""
        else:
            raise InvalidPattern(f"Selector {text!r} is not [LL]CCC")
        return cls(text, exclude, location, channel, None, rtype if dot else "*")

    @classmethod
    def _parse_v4(cls, text: str, body: str, exclude: bool) -> SelectPattern:
        body, colon, _filter = body.partition(":")
        if colon:
            if exclude:
                raise InvalidPattern(f"Exclusion selector {text!r} cannot have a filter")
            raise InvalidPattern(f"Filters are not supported: {text!r}")
        body, dot, fmt = body.partition(".")
        if dot and not _FORMAT_GLOB.match(fmt):
            raise InvalidPattern(f"Invalid format in selector {text!r}")
        if not body:
            body = "*"
        if not _STREAM_GLOB.match(body):
            raise InvalidPattern(f"Invalid selector {text!r}")
        return cls(text, exclude, stream=body, fmt=fmt if dot else "*")

    def matches(self, key: StreamKey, format_code: str | None = None) -> bool:
        if self.stream is not None:
            if not fnmatchcase(key.stream_id, self.stream):
                return False
        elif not (
            fnmatchcase(key.location, self.location) and fnmatchcase(key.channel, self.channel)
        ):
            return False
        return self._matches_format(key, format_code)

    def _matches_format(self, key: StreamKey, format_code: str | None) -> bool:
        if self.fmt == "*":
            return True
        if len(self.fmt) == 2:
            if format_code is None:
                return fnmatchcase(key.record_type, self.fmt[1])
            return fnmatchcase(format_code, self.fmt)
        return fnmatchcase(key.record_type, self.fmt)


@dataclass(frozen=True)
class Selector:
    """Union of inclusion patterns minus any exclusion pattern."""

    includes: tuple[SelectPattern, ...] = ()
    excludes: tuple[SelectPattern, ...] = ()

    @classmethod
    def compile(
        cls, patterns: Iterable[str], variant: ProtocolVariant = ProtocolVariant.V3
    ) -> Selector:
        """Compile pattern strings; raises :class:`InvalidPattern` on the first bad one."""
        includes: list[SelectPattern] = []
        excludes: list[SelectPattern] = []
        for text in patterns:
            pat = SelectPattern.parse(variant, text)
            (excludes if pat.exclude else includes).append(pat)
        return cls(tuple(includes), tuple(excludes))

    @property
    def empty(self) -> bool:
        return not self.includes and not self.excludes

    @property
    def patterns(self) -> tuple[str, ...]:
        return tuple(p.text for p in self.includes + self.excludes)

    def matches(self, key: StreamKey, format_code: str | None = None) -> bool:
        if any(p.matches(key, format_code) for p in self.excludes):
            return False
        if not self.includes:
            return EMPTY_SELECTION_MATCHES_ALL
        return any(p.matches(key, format_code) for p in self.includes)

    def __or__(self, other: Selector) -> Selector:
        if not isinstance(other, Selector):
            return NotImplemented
        return Selector(self.includes + other.includes, self.excludes + other.excludes)


MATCH_ALL = Selector()


@dataclass(frozen=True)
class StationPattern:
    """STATION argument: v3 ``STATION sta [net]`` or v4 ``STATION NET_STA``."""

    network: str
    station: str

    @classmethod
    def parse(cls, variant: ProtocolVariant, args: Sequence[str]) -> StationPattern:
        if variant is ProtocolVariant.V4 and len(args) == 1:
            net, sep, sta = args[0].partition("_")
            if not sep:
                raise InvalidPattern(f"Station {args[0]!r} is not NET_STA")
        elif len(args) == 1:
            net, sta = "*", args[0]
        elif len(args) == 2:
            sta, net = args
        else:
            raise InvalidPattern("STATION takes a station code and an optional network")
        for code in (net, sta):
            if not code or not _CODE_GLOB.match(code):
                raise InvalidPattern(f"Invalid station pattern {' '.join(args)!r}")
        return cls(net, sta)

    @property
    def is_literal(self) -> bool:
        return not any(c in "*?" for c in self.network + self.station)

    def matches(self, station: StationID) -> bool:
        return fnmatchcase(station.network, self.network) and fnmatchcase(
            station.station, self.station
        )

    def resolve(self, known: Iterable[StationID]) -> list[StationID]:
        """Known stations matching this pattern, sorted."""
        return sorted(s for s in known if self.matches(s))

    def __str__(self) -> str:
        return f"{self.network}_{self.station}"
