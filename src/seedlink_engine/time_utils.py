"""Epoch microsecond time conversion utilities."""

import re
from datetime import datetime, timezone, timedelta

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ustime_to_timestring(ustime: int) -> str:
    """Convert epoch microseconds to an ISO 8601 UTC string.

    Args:
        ustime: Epoch time in microseconds.

    Returns:
        String in ``YYYY-MM-DDThh:mm:ss.ssssssZ`` format.
    """
    dt = ustime_to_datetime(ustime)
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{dt.microsecond:06d}Z"


def ustime_to_datetime(ustime: int) -> datetime:
    sec = ustime // 1_000_000
    frac = ustime % 1_000_000
    return _EPOCH + timedelta(seconds=sec, microseconds=frac)


def datetime_to_ustime(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - _EPOCH
    return delta.days * 86_400_000_000 + delta.seconds * 1_000_000 + delta.microseconds


def _normalize_timestring(timestring: str) -> str:
    """Normalize a datetime string to strict ISO 8601 for fromisoformat().

    Handles:
      - Single-digit month/day (2026-2-9 → 2026-02-09)
      - Single-digit hour/minute/second (0:1:1 → 00:01:01)
      - Space separator instead of T (2026-02-09 16:00 → 2026-02-09T16:00)
      - Z suffix → +00:00
      - Date-only strings (2026-02-09 → 2026-02-09T00:00:00)
    """
    s = timestring.strip()

    m = re.match(r"^(\d{4})-(\d{1,2})-(\d{1,2})(.*)", s)
    if m:
        s = f"{m.group(1)}-{int(m.group(2)):02d}-{int(m.group(3)):02d}{m.group(4)}"

    s = re.sub(r"^(\d{4}-\d{2}-\d{2})\s+(\d)", r"\1T\2", s)

    m = re.match(r"^(\d{4}-\d{2}-\d{2}T)(\d{1,2}):(\d{1,2}):(\d{1,2})(.*)", s)
    if m:
        s = f"{m.group(1)}{int(m.group(2)):02d}:{int(m.group(3)):02d}:{int(m.group(4)):02d}{m.group(5)}"

    s = s.replace("Z", "+00:00")

    if re.match(r"^\d{4}-\d{2}-\d{2}$", s):
        s += "T00:00:00"

    return s


def timestring_to_ustime(timestring: str) -> int:
    """Convert a datetime string to epoch microseconds.

    Accepts ISO 8601 strings and relaxed variants:
      - ``2025-02-06T10:30:00.123456Z``
      - ``2025-2-6T10:30:00`` (single-digit month/day)
      - ``2025-02-06 10:30:00`` (space instead of T)
      - ``2025-02-06`` (date only, midnight UTC)
      - Timezone ``Z``, ``+00:00``, or omitted (treated as UTC)

    SeedLink v3 comma-separated times (``2025,2,6,10,30,0``) are accepted too.

    Raises:
        ValueError: if the string is not a recognizable time.
    """
    if "," in timestring:
        return v3_timestring_to_ustime(timestring)
    return datetime_to_ustime(datetime.fromisoformat(_normalize_timestring(timestring)))


def ustime_to_v3_timestring(ustime: int) -> str:
    """Format epoch microseconds as a SeedLink v3 ``Y,M,D,h,m,s`` string."""
    dt = ustime_to_datetime(ustime)
    return f"{dt.year},{dt.month:02d},{dt.day:02d},{dt.hour:02d},{dt.minute:02d},{dt.second:02d}"


def v3_timestring_to_ustime(timestring: str) -> int:
    """Parse a SeedLink v3 ``Y,M,D,h,m,s`` time (trailing fields optional)."""
    parts = timestring.strip().split(",")
    if not 1 <= len(parts) <= 6:
        raise ValueError(f"Invalid SeedLink time: {timestring!r}")
    try:
        fields = [int(p) for p in parts]
    except ValueError:
        raise ValueError(f"Invalid SeedLink time: {timestring!r}") from None
    fields += [1, 1, 0, 0, 0][len(fields) - 1:]
    year, month, day, hour, minute, second = fields[:6]
    return datetime_to_ustime(
        datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    )


def btime_to_ustime(
    year: int, doy: int, hour: int, minute: int, second: int, fract: int
) -> int:
    """Convert a SEED BTIME (``fract`` in 0.0001 s units) to epoch microseconds."""
    dt = datetime(year, 1, 1, tzinfo=timezone.utc) + timedelta(
        days=doy - 1, hours=hour, minutes=minute, seconds=second, microseconds=fract * 100
    )
    return datetime_to_ustime(dt)


def ustime_to_btime(ustime: int) -> tuple[int, int, int, int, int, int]:
    """Inverse of :func:`btime_to_ustime`; sub-100µs precision is dropped."""
    dt = ustime_to_datetime(ustime)
    doy = dt.timetuple().tm_yday
    return dt.year, doy, dt.hour, dt.minute, dt.second, dt.microsecond // 100
