"""Command-line SeedLink client and server launcher."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import yaml

from .client import RetryPolicy, SeedLinkClient
from .config import load_config
from .protocol import Record, SeedLinkError, StartPoint, StationID
from .server import SeedLinkServer
from .time_utils import timestring_to_ustime, ustime_to_timestring


def _print_record(record: Record) -> None:
    print(
        f"  RECORD {record.key} seq={record.sequence} "
        f"start={ustime_to_timestring(record.start_time)} "
        f"format={record.format_code} bytes={len(record.payload)}"
    )


def _fmt(v: Any) -> str:
    """Format value for display; use '-' for None."""
    if v is None:
        return "-"
    return str(v)


def _print_info_stations(info: dict[str, Any]) -> None:
    """Print STATIONS/STREAMS info as a table (v3 and v4 documents)."""
    print(f"Server: {_fmt(info.get('software'))} ({_fmt(info.get('organization'))})")
    stations = info.get("station") or []
    if not stations:
        print("\nNo stations.")
        return
    print()
    print(f"{'Station':<12}  {'First seq':>12}  {'Last seq':>12}  Description")
    print("-" * 12 + "  " + "-" * 12 + "  " + "-" * 12 + "  " + "-" * 20)
    for st in stations:
        if "id" in st:
            name, first, last = st["id"], st.get("start_seq"), st.get("end_seq")
        else:
            name = f"{st.get('network', '')}_{st.get('name', '')}"
            first, last = st.get("begin_seq"), st.get("end_seq")
        print(f"{name:<12}  {_fmt(first):>12}  {_fmt(last):>12}  {_fmt(st.get('description'))}")
        for s in st.get("stream") or []:
            stream_id = s.get("id") or f"{s.get('location', '')}_{s.get('seedname', '')}"
            print(f"    {stream_id:<20} {_fmt(s.get('begin_time', s.get('start_time')))} - "
                  f"{_fmt(s.get('end_time'))}")
    print(f"\n{len(stations)} stations")


def _parse_selection(text: str) -> tuple[StationID, list[str]]:
    """Parse ``NET_STA[:PATTERN[,PATTERN...]]``."""
    station, _, patterns = text.partition(":")
    return StationID.parse(station), [p for p in patterns.replace(",", " ").split() if p]


def _parse_time(text: str | None) -> int | None:
    if text is None:
        return None
    try:
        return timestring_to_ustime(text)
    except ValueError:
        raise SystemExit(f"Error: invalid time {text!r}") from None


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _serve(path: str, section: str | None) -> None:
    config = load_config(path, section)
    async with SeedLinkServer(config) as server:
        print(f"Serving {len(server.logs)} stations on {config.host}:{server.port}")
        await server.serve_forever()


def _stream(client: SeedLinkClient, args: Any) -> int:
    start_time = _parse_time(args.start)
    end_time = _parse_time(args.end)
    start = None
    if start_time is not None:
        start = StartPoint.at_time(start_time, end_time)
    elif end_time is not None:
        raise SystemExit("Error: --end requires --start")

    if args.stations:
        for text in args.stations:
            station, patterns = _parse_selection(text)
            client.select(station, patterns, start)
    else:
        client.select(None, args.select or [], start)

    count = 0
    for record in client.records():
        _print_record(record)
        count += 1
        if args.count and count >= args.count:
            break
    print(f"{count} records received")
    return 0


def main(argv: list[str] | None = None) -> int:
    """``seedlink-engine`` entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="SeedLink v3/v4 client; with --serve, a SeedLink server.",
    )
    parser.add_argument(
        "server",
        nargs="?",
        default="",
        help="Server address as host:port, host@port, or host (default: localhost:18000)",
    )
    parser.add_argument(
        "-s", "--station",
        dest="stations",
        action="append",
        metavar="NET_STA[:PATTERNS]",
        help="Station to stream, with optional comma separated SELECT patterns (repeatable)",
    )
    parser.add_argument(
        "-S", "--select",
        action="append",
        metavar="PATTERN",
        help="SELECT pattern for a v3 uni-station session (no --station)",
    )
    parser.add_argument("--start", metavar="TIME", help="Start time, e.g. 2024-01-01T00:00:00Z")
    parser.add_argument("--end", metavar="TIME", help="End time of a time window")
    parser.add_argument("-c", "--count", type=int, default=0,
                        help="Stop after this many records (default: unlimited)")
    parser.add_argument("-p", "--protocol", type=int, choices=(3, 4), default=None,
                        help="Require protocol version 3 or 4 (default: best available)")
    parser.add_argument("--timeout", type=float, default=120.0,
                        help="Seconds without data before reconnecting (default: 120)")
    parser.add_argument("--keepalive", type=float, default=None,
                        help="Send INFO ID after this many idle seconds (default: off)")
    parser.add_argument("--retries", type=int, default=5,
                        help="Reconnect attempts before giving up (default: 5)")
    parser.add_argument("--cursor-db", metavar="PATH", default=None,
                        help="SQLite file persisting stream positions between runs")
    parser.add_argument("-i", "--info", metavar="ITEM", default=None,
                        help="Request INFO (ID, CAPABILITIES, STATIONS, STREAMS, CONNECTIONS)")
    parser.add_argument("-m", "--match", metavar="GLOB", default=None,
                        help="Station glob for --info STATIONS/STREAMS")
    parser.add_argument("--serve", metavar="CONFIG", default=None,
                        help="Run a server configured from a YAML file")
    parser.add_argument("--section", default=None, help="Section of the YAML config to use")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log verbosity (-v info, -vv debug)")
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.serve:
        try:
            asyncio.run(_serve(args.serve, args.section))
        except KeyboardInterrupt:
            print()
        except (OSError, ValueError, yaml.YAMLError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    store = None
    try:
        if args.cursor_db:
            from .cursor_store import CursorStore

            store = CursorStore(args.cursor_db, server=args.server or "localhost")
        client = SeedLinkClient.from_server_string(
            args.server,
            timeout=args.timeout,
            protocol=args.protocol,
            keepalive=args.keepalive,
            retry=RetryPolicy(max_attempts=args.retries),
            cursor_store=store,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    try:
        client.connect()
        print(f"Server: {client.server_id}")
        if args.info:
            doc = client.info(args.info, args.match)
            if args.info.upper() in ("STATIONS", "STREAMS"):
                _print_info_stations(doc)
            else:
                print(json.dumps(doc, indent=2))
            return 0
        return _stream(client, args)
    except (SeedLinkError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print()
        return 0
    finally:
        client.close()
        if store is not None:
            store.close()
        print("Disconnected.")


if __name__ == "__main__":
    sys.exit(main())
