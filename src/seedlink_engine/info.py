"""INFO documents: v3 XML and v4 JSON builders and parsers."""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any

from .protocol import V3_SEQ_MODULUS, ProtocolVariant, StationID, StreamKey
from .time_utils import ustime_to_datetime, ustime_to_timestring

if TYPE_CHECKING:
    from .record_log import RecordLog

INFO_ITEMS: dict[ProtocolVariant, tuple[str, ...]] = {
    ProtocolVariant.V3: ("ID", "CAPABILITIES", "STATIONS", "STREAMS", "CONNECTIONS"),
    ProtocolVariant.V4: ("ID", "CAPABILITIES", "FORMATS", "STATIONS", "STREAMS", "CONNECTIONS"),
}

# Attributes parsed as hex (v3 sequence numbers) or int in INFO XML.
# Everything else stays as str (including time strings).
_INFO_HEX_ATTRS: set[str] = {"begin_seq", "end_seq", "current_seq", "first_seq", "resume_seq"}
_INFO_INT_ATTRS: set[str] = {"port", "txcount", "totBytes", "sequence_gaps"}

_FORMATS: dict[str, Any] = {
    "2": {
        "mimetype": "application/vnd.fdsn.mseed",
        "subformat": {
            "D": "data/timeseries",
            "E": "event detection",
            "C": "calibration",
            "T": "timing exception",
            "L": "log",
            "O": "opaque",
        },
    },
    "3": {
        "mimetype": "application/vnd.fdsn.mseed3",
        "subformat": {"D": "data/timeseries"},
    },
}


@dataclass
class StreamInfo:
    key: StreamKey
    start_time: int
    end_time: int
    version: int = 2


@dataclass
class StationInfo:
    station: StationID
    description: str = ""
    begin_seq: int | None = None
    end_seq: int | None = None
    streams: list[StreamInfo] = field(default_factory=list)

    @classmethod
    def from_log(cls, log: RecordLog, with_streams: bool = False) -> StationInfo:
        streams = []
        if with_streams:
            streams = [StreamInfo(k, s, e) for k, (s, e) in sorted(log.streams().items())]
        return cls(log.station, log.description, log.earliest_sequence, log.latest_sequence,
                   streams)


@dataclass
class ConnectionInfo:
    host: str
    port: int
    connected: int
    protocol: str
    useragent: str = ""
    state: str = ""
    stations: list[str] = field(default_factory=list)
    sent: int = 0


@dataclass
class ServerInfo:
    """Snapshot of server state rendered into an INFO response."""

    software: str
    organization: str
    started: int
    capabilities: list[str] = field(default_factory=list)
    stations: list[StationInfo] = field(default_factory=list)
    connections: list[ConnectionInfo] = field(default_factory=list)


def filter_stations(stations: list[StationInfo], pattern: str | None) -> list[StationInfo]:
    """Keep stations whose ``NET_STA`` id matches a glob."""
    if not pattern:
        return stations
    return [s for s in stations if fnmatchcase(str(s.station), pattern)]


def _v3_time(ustime: int) -> str:
    dt = ustime_to_datetime(ustime)
    return dt.strftime("%Y/%m/%d %H:%M:%S") + f".{dt.microsecond // 100:04d}"


def _v3_seq(seq: int | None) -> str:
    return "000000" if seq is None else f"{seq % V3_SEQ_MODULUS:06X}"


def info_xml(item: str, info: ServerInfo) -> str:
    """Render a v3 INFO response."""
    root = ET.Element(
        "seedlink",
        software=info.software,
        organization=info.organization,
        started=_v3_time(info.started),
    )
    if item == "CAPABILITIES":
        for cap in info.capabilities:
            ET.SubElement(root, "capability", name=cap)
    elif item in ("STATIONS", "STREAMS"):
        for st in info.stations:
            el = ET.SubElement(
                root,
                "station",
                name=st.station.station,
                network=st.station.network,
                description=st.description,
                begin_seq=_v3_seq(st.begin_seq),
                end_seq=_v3_seq(st.end_seq),
                stream_check="enabled",
            )
            if item == "STREAMS":
                for s in st.streams:
                    ET.SubElement(
                        el,
                        "stream",
                        location=s.key.location,
                        seedname=s.key.channel,
                        type=s.key.record_type,
                        begin_time=_v3_time(s.start_time),
                        end_time=_v3_time(s.end_time),
                        begin_recno="0",
                        end_recno="0",
                        gap_check="disabled",
                        gap_treshold="0",
                    )
    elif item == "CONNECTIONS":
        for c in info.connections:
            ET.SubElement(
                root,
                "connection",
                host=c.host,
                port=str(c.port),
                ctime=_v3_time(c.connected),
                protocol=c.protocol,
                useragent=c.useragent,
                state=c.state,
                stations=" ".join(c.stations),
                txcount=str(c.sent),
            )
    return '<?xml version="1.0"?>\n' + ET.tostring(root, encoding="unicode")


def info_json(item: str, info: ServerInfo) -> str:
    """Render a v4 INFO response."""
    doc: dict[str, Any] = {"software": info.software, "organization": info.organization}
    if item == "ID":
        doc["started"] = ustime_to_timestring(info.started)
    elif item == "CAPABILITIES":
        doc["capability"] = list(info.capabilities)
    elif item == "FORMATS":
        doc["format"] = _FORMATS
    elif item in ("STATIONS", "STREAMS"):
        stations = []
        for st in info.stations:
            entry: dict[str, Any] = {
                "id": str(st.station),
                "description": st.description,
                "start_seq": st.begin_seq,
                "end_seq": st.end_seq,
            }
            if item == "STREAMS":
                entry["stream"] = [
                    {
                        "id": s.key.stream_id,
                        "format": str(s.version),
                        "subformat": s.key.record_type,
                        "origin": "native",
                        "start_time": ustime_to_timestring(s.start_time),
                        "end_time": ustime_to_timestring(s.end_time),
                    }
                    for s in st.streams
                ]
            stations.append(entry)
        doc["station"] = stations
    elif item == "CONNECTIONS":
        doc["client"] = [
            {
                "address": c.host,
                "port": c.port,
                "connected": ustime_to_timestring(c.connected),
                "protocol": c.protocol,
                "useragent": c.useragent,
                "state": c.state,
                "station": c.stations,
                "sent": c.sent,
            }
            for c in info.connections
        ]
    return json.dumps(doc)


def info_error_json(info: ServerInfo, code: str, message: str) -> str:
    return json.dumps(
        {
            "software": info.software,
            "organization": info.organization,
            "error": {"code": code, "message": message},
        }
    )


def gap_xml(
    info: ServerInfo,
    station: StationID,
    first_missing: int | None,
    resumed_at: int | None,
    reason: str,
) -> str:
    """Unsolicited v3 INFO telling a streaming client that records were skipped."""
    root = ET.Element(
        "seedlink",
        software=info.software,
        organization=info.organization,
        started=_v3_time(info.started),
    )
    attrs = {"station": str(station), "reason": reason}
    if first_missing is not None:
        attrs["first_seq"] = _v3_seq(first_missing)
    if resumed_at is not None:
        attrs["resume_seq"] = _v3_seq(resumed_at)
    ET.SubElement(root, "gap", attrs)
    return '<?xml version="1.0"?>\n' + ET.tostring(root, encoding="unicode")


def gap_json(
    info: ServerInfo,
    station: StationID,
    first_missing: int | None,
    resumed_at: int | None,
    reason: str,
) -> str:
    """Unsolicited v4 INFO telling a streaming client that records were skipped."""
    return json.dumps(
        {
            "software": info.software,
            "organization": info.organization,
            "gap": {
                "station": str(station),
                "first_seq": first_missing,
                "resume_seq": resumed_at,
                "reason": reason,
            },
        }
    )


def typed_attrs(element: ET.Element) -> dict[str, Any]:
    """Convert an XML element's attributes to a dict with typed values.

    Sequence attributes are hex in v3 INFO and become ints; counters become
    ints; everything else stays a string.
    """
    out: dict[str, Any] = {}
    for key, value in element.attrib.items():
        if key in _INFO_HEX_ATTRS:
            try:
                out[key] = int(value, 16)
            except ValueError:
                out[key] = value
        elif key in _INFO_INT_ATTRS:
            try:
                out[key] = int(value)
            except ValueError:
                out[key] = value
        else:
            out[key] = value
    return out


def parse_info_xml(xml_string: str) -> dict[str, Any]:
    """Parse a v3 INFO XML document into nested dicts."""
    root = ET.fromstring(xml_string)
    result = typed_attrs(root)
    caps = root.findall("capability")
    if caps:
        result["capability"] = [c.get("name") for c in caps]
    stations = root.findall("station")
    if stations:
        result["station"] = []
        for st in stations:
            info = typed_attrs(st)
            streams = st.findall("stream")
            if streams:
                info["stream"] = [typed_attrs(s) for s in streams]
            result["station"].append(info)
    conns = root.findall("connection")
    if conns:
        result["connection"] = [typed_attrs(c) for c in conns]
    error = root.find("error")
    if error is not None:
        result["error"] = typed_attrs(error)
    gap = root.find("gap")
    if gap is not None:
        result["gap"] = typed_attrs(gap)
    return result


def parse_info(variant: ProtocolVariant, payload: bytes) -> dict[str, Any]:
    """Decode a reassembled INFO payload (NUL padding is ignored).

    Raises:
        ValueError: the payload is not a valid INFO document.
    """
    text = payload.rstrip(b"\0").decode("utf-8")
    if variant is ProtocolVariant.V4:
        return json.loads(text)
    try:
        return parse_info_xml(text)
    except ET.ParseError as e:
        raise ValueError(f"Malformed INFO XML: {e}") from e
