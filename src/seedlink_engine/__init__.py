"""
SeedLink v3/v4 protocol engine: client, server framework and record log.

SeedLink is the TCP protocol used in seismology to stream miniSEED records
from data centers and acquisition systems, typically on port 18000.

Quick start (client)::

    from seedlink_engine import SeedLinkClient

    with SeedLinkClient("geofon.gfz.de", 18000) as client:
        client.select("GE_WLF", ["BH?"])
        for record in client.records():
            print(record.key, record.sequence, len(record.payload))

Quick start (server)::

    import asyncio
    from seedlink_engine import SeedLinkServer, ServerConfig, StationID

    async def serve():
        async with SeedLinkServer(ServerConfig(port=18000)) as server:
            server.add_station(StationID("XX", "ABC"))
            await server.serve_forever()

    asyncio.run(serve())

Command-line client::

    seedlink-engine [host:port] -s GE_WLF:BHZ
"""

from .cli import main
from .client import RetryPolicy, SeedLinkClient
from .config import BackpressureConfig, RetentionPolicy, ServerConfig, load_config
from .cursor_store import CursorStore
from .fanout import BackpressurePolicy, Distributor, GapNotice, Subscriber
from .protocol import (
    Capabilities,
    CommandRejected,
    ConnectionClosed,
    Cursor,
    GapDetected,
    HandshakeFailed,
    InvalidPattern,
    ProtocolError,
    ProtocolVariant,
    Record,
    SeedLinkError,
    SequenceRegression,
    SlowConsumerDisconnected,
    StartMode,
    StartPoint,
    StationID,
    StreamKey,
    StreamUnavailable,
    Subscription,
    UnknownStation,
    UnsupportedVersion,
)
from .record_log import RecordLog, StationLogs
from .selector import Selector
from .server import SeedLinkServer
from .time_utils import timestring_to_ustime, ustime_to_timestring

__version__ = "1.0.0"
__all__ = [
    "BackpressureConfig",
    "BackpressurePolicy",
    "Capabilities",
    "CommandRejected",
    "ConnectionClosed",
    "Cursor",
    "CursorStore",
    "Distributor",
    "GapDetected",
    "GapNotice",
    "HandshakeFailed",
    "InvalidPattern",
    "ProtocolError",
    "ProtocolVariant",
    "Record",
    "RecordLog",
    "RetentionPolicy",
    "RetryPolicy",
    "SeedLinkClient",
    "SeedLinkError",
    "SeedLinkServer",
    "Selector",
    "SequenceRegression",
    "ServerConfig",
    "SlowConsumerDisconnected",
    "StartMode",
    "StartPoint",
    "StationID",
    "StationLogs",
    "StreamKey",
    "StreamUnavailable",
    "Subscriber",
    "Subscription",
    "UnknownStation",
    "UnsupportedVersion",
    "load_config",
    "main",
    "timestring_to_ustime",
    "ustime_to_timestring",
]
