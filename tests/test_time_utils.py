"""Tests for epoch microsecond time conversions."""

from datetime import datetime, timezone

import pytest

from seedlink_engine.time_utils import (
    btime_to_ustime,
    datetime_to_ustime,
    timestring_to_ustime,
    ustime_to_btime,
    ustime_to_timestring,
    ustime_to_v3_timestring,
    v3_timestring_to_ustime,
)

T0 = 1_709_251_200_000_000  # 2024-03-01T00:00:00Z


class TestTimestrings:
    """ISO 8601 and relaxed variants"""

    @pytest.mark.parametrize(
        "text",
        [
            "2024-03-01T00:00:00Z",
            "2024-03-01T00:00:00+00:00",
            "2024-3-1T0:0:0",
            "2024-03-01 00:00:00",
            "2024-03-01",
        ],
    )
    def test_accepted_forms(self, text):
        assert timestring_to_ustime(text) == T0

    def test_fraction(self):
        assert timestring_to_ustime("2024-03-01T00:00:01.500000Z") == T0 + 1_500_000

    def test_format(self):
        assert ustime_to_timestring(T0 + 123) == "2024-03-01T00:00:00.000123Z"

    def test_invalid(self):
        with pytest.raises(ValueError):
            timestring_to_ustime("yesterday")

    def test_naive_datetime_is_utc(self):
        assert datetime_to_ustime(datetime(2024, 3, 1)) == T0
        assert datetime_to_ustime(datetime(2024, 3, 1, tzinfo=timezone.utc)) == T0


class TestV3Times:
    """Comma separated SeedLink v3 times"""

    def test_full(self):
        assert v3_timestring_to_ustime("2024,3,1,0,0,10") == T0 + 10_000_000

    def test_trailing_fields_optional(self):
        assert v3_timestring_to_ustime("2024,3,1") == T0
        assert v3_timestring_to_ustime("2024") == timestring_to_ustime("2024-01-01")

    def test_via_timestring(self):
        assert timestring_to_ustime("2024,03,01,00,00,00") == T0

    def test_format(self):
        assert ustime_to_v3_timestring(T0 + 61_000_000) == "2024,03,01,00,01,01"

    @pytest.mark.parametrize("text", ["", "2024,x", "1,2,3,4,5,6,7", "2024,13,1"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            v3_timestring_to_ustime(text)


class TestBtime:
    """SEED BTIME conversion"""

    def test_day_of_year(self):
        assert ustime_to_btime(T0) == (2024, 61, 0, 0, 0, 0)

    def test_inverse(self):
        ustime = T0 + 3_723_456_700
        assert btime_to_ustime(*ustime_to_btime(ustime)) == ustime
