"""Server configuration dataclasses and YAML loading."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any

import yaml

from .fanout import BackpressurePolicy
from .protocol import DEFAULT_PORT, SUPPORTED_VERSIONS, V3_RECORD_SIZE

logger = logging.getLogger(__name__)


@dataclass
class RetentionPolicy:
    """How much history each station log keeps.

    Attributes:
        max_records:       Count bound, or None.
        max_age:           Age bound in seconds since append, or None.
        high_water_factor: Eviction held back by a slow subscriber is deferred
                           at most up to this multiple of either bound.
    """

    max_records: int | None = 10000
    max_age: float | None = None
    high_water_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_records is None and self.max_age is None:
            raise ValueError("retention needs max_records and/or max_age")
        if self.max_records is not None and self.max_records < 1:
            raise ValueError("max_records must be positive")
        if self.max_age is not None and self.max_age <= 0:
            raise ValueError("max_age must be positive")
        if self.high_water_factor < 1.0:
            raise ValueError("high_water_factor must be >= 1.0")


@dataclass
class BackpressureConfig:
    """Per-subscriber queue policy.

    ``DROP_OLDEST`` bounds the queue at ``max_queue`` records; ``DISCONNECT``
    detaches a subscriber whose queue lags by more than ``max_lag`` records.
    """

    policy: BackpressurePolicy = BackpressurePolicy.DROP_OLDEST
    max_queue: int = 1000
    max_lag: int = 10000

    def __post_init__(self) -> None:
        if isinstance(self.policy, str):
            self.policy = BackpressurePolicy(self.policy.lower())
        if self.max_queue < 1 or self.max_lag < 1:
            raise ValueError("max_queue and max_lag must be positive")


@dataclass
class ServerConfig:
    """Everything a :class:`~seedlink_engine.server.SeedLinkServer` needs.

    ``stations`` pre-registers stations as ``{"NET_STA": "description"}``.
    ``versions`` lists the protocol versions offered, newest first.
    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    software: str = "seedlink-engine"
    organization: str = "SeedLink engine"
    versions: tuple[tuple[int, int], ...] = SUPPORTED_VERSIONS
    strict_stations: bool = False
    default_station: str | None = None
    record_size: int = V3_RECORD_SIZE
    handshake_timeout: float = 30.0
    idle_timeout: float | None = None
    write_timeout: float = 30.0
    max_connections: int | None = None
    allow_renumbering: bool = False
    stations: dict[str, str] = field(default_factory=dict)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    backpressure: BackpressureConfig = field(default_factory=BackpressureConfig)

    def __post_init__(self) -> None:
        self.versions = tuple(_parse_version(v) for v in self.versions)
        if not self.versions:
            raise ValueError("at least one protocol version must be enabled")
        for v in self.versions:
            if v not in SUPPORTED_VERSIONS:
                raise ValueError(f"unsupported protocol version {v[0]}.{v[1]}")

    @property
    def v4_enabled(self) -> bool:
        return any(v[0] == 4 for v in self.versions)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerConfig:
        """Build a config from plain data, e.g. a parsed YAML mapping.

        Raises:
            ValueError: on unknown keys or invalid values.
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown server config keys: {', '.join(sorted(unknown))}")
        if isinstance(data.get("retention"), dict):
            data["retention"] = RetentionPolicy(**data["retention"])
        if isinstance(data.get("backpressure"), dict):
            data["backpressure"] = BackpressureConfig(**data["backpressure"])
        if "versions" in data:
            data["versions"] = tuple(data["versions"])
        try:
            return cls(**data)
        except TypeError as e:
            raise ValueError(f"invalid server config: {e}") from e


def _parse_version(value: Any) -> tuple[int, int]:
    if isinstance(value, (int, float, str)):
        major, _, minor = str(value).partition(".")
        return int(major), int(minor or 0)
    major, minor = value
    return int(major), int(minor)


def load_config(path: str, section: str | None = None) -> ServerConfig:
    """Load a :class:`ServerConfig` from a YAML file.

    Args:
        path:    YAML file path.
        section: Optional top-level key holding the server settings.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if section:
        if section not in data:
            raise ValueError(f"section {section!r} not found in {path}")
        data = data[section]
    logger.debug("Loaded server config from %s", path)
    return ServerConfig.from_dict(data)
