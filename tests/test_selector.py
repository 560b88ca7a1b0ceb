"""Tests for SELECT and STATION pattern matching."""

import pytest

from seedlink_engine.protocol import InvalidPattern, ProtocolVariant, StationID, StreamKey
from seedlink_engine.selector import MATCH_ALL, SelectPattern, Selector, StationPattern

V3 = ProtocolVariant.V3
V4 = ProtocolVariant.V4
ABC = StationID("XX", "ABC")


def key(location="00", channel="BHZ", record_type="D"):
    return StreamKey(ABC, location, channel, record_type)


class TestV3Patterns:
    """v3 [!][LL]CCC[.T] selectors"""

    def test_channel_glob_any_location(self):
        sel = Selector.compile(["BH?"], V3)
        assert sel.matches(key("00", "BHZ"))
        assert sel.matches(key("10", "BHN"))
        assert not sel.matches(key("00", "HHZ"))

    def test_location_and_channel(self):
        sel = Selector.compile(["10BHZ"], V3)
        assert sel.matches(key("10", "BHZ"))
        assert not sel.matches(key("00", "BHZ"))

    def test_empty_location(self):
        sel = Selector.compile(["--BHZ"], V3)
        assert sel.matches(key("", "BHZ"))
        assert not sel.matches(key("00", "BHZ"))

    def test_record_type(self):
        sel = Selector.compile(["BHZ.D"], V3)
        assert sel.matches(key(record_type="D"))
        assert not sel.matches(key(record_type="E"))

    def test_exclusion_only(self):
        sel = Selector.compile(["!LOG"], V3)
        assert sel.matches(key(channel="BHZ"))
        assert not sel.matches(key(channel="LOG", record_type="L"))

    def test_exclusion_wins_over_inclusion(self):
        sel = Selector.compile(["BH?", "!BHN"], V3)
        assert sel.matches(key(channel="BHZ"))
        assert not sel.matches(key(channel="BHN"))

    def test_case_sensitive(self):
        assert not Selector.compile(["bhz"], V3).matches(key(channel="BHZ"))

    @pytest.mark.parametrize("text", ["", "!", "BHZZ", "BH Z", "BHZ.X", "ABCDEFG"])
    def test_invalid(self, text):
        with pytest.raises(InvalidPattern):
            SelectPattern.parse(V3, text)


class TestV4Patterns:
    """v4 [!]LOC_B_S_SS[.FMT] selectors"""

    def test_stream_glob(self):
        sel = Selector.compile(["00_B_H_?"], V4)
        assert sel.matches(key("00", "BHZ"))
        assert not sel.matches(key("10", "BHZ"))

    def test_format(self):
        sel = Selector.compile(["*.2D"], V4)
        assert sel.matches(key(), "2D")
        assert not sel.matches(key(), "3D")

    def test_format_falls_back_to_record_type(self):
        sel = Selector.compile(["*.2E"], V4)
        assert sel.matches(key(record_type="E"))
        assert not sel.matches(key(record_type="D"))

    def test_filter_rejected(self):
        with pytest.raises(InvalidPattern, match="not supported"):
            SelectPattern.parse(V4, "*:native")

    def test_excluded_filter_rejected(self):
        with pytest.raises(InvalidPattern, match="Exclusion"):
            SelectPattern.parse(V4, "!*:native")


class TestSelector:
    """Union and empty-selection semantics"""

    def test_empty_matches_everything(self):
        assert MATCH_ALL.empty
        assert MATCH_ALL.matches(key(channel="LOG"))

    def test_union(self):
        sel = Selector.compile(["BHZ"], V3) | Selector.compile(["HHZ"], V3)
        assert sel.matches(key(channel="HHZ"))
        assert sel.patterns == ("BHZ", "HHZ")

    def test_compile_stops_at_first_bad_pattern(self):
        with pytest.raises(InvalidPattern):
            Selector.compile(["BHZ", "??????"], V3)


class TestStationPattern:
    """STATION argument parsing and resolution"""

    KNOWN = [StationID("XX", "ABC"), StationID("XX", "DEF"), StationID("YY", "ABC")]

    def test_v3_station_without_network(self):
        pattern = StationPattern.parse(V3, ["ABC"])
        assert pattern.resolve(self.KNOWN) == [StationID("XX", "ABC"), StationID("YY", "ABC")]

    def test_v3_station_and_network(self):
        pattern = StationPattern.parse(V3, ["ABC", "YY"])
        assert pattern.resolve(self.KNOWN) == [StationID("YY", "ABC")]
        assert pattern.is_literal

    def test_v4_glob(self):
        pattern = StationPattern.parse(V4, ["XX_*"])
        assert not pattern.is_literal
        assert pattern.resolve(self.KNOWN) == [StationID("XX", "ABC"), StationID("XX", "DEF")]
        assert str(pattern) == "XX_*"

    def test_v4_requires_underscore(self):
        with pytest.raises(InvalidPattern):
            StationPattern.parse(V4, ["XXABC"])

    def test_too_many_arguments(self):
        with pytest.raises(InvalidPattern):
            StationPattern.parse(V3, ["A", "B", "C"])
