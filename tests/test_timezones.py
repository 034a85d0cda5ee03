"""Unit tests for wall-clock/UTC conversion."""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from processor.timezones import (
    DateParseError,
    TimestampPolicy,
    format_utc_z,
    local_date_string,
    local_wall_clock_to_utc,
    parse_date_parts,
    parse_iso_datetime,
    pick_nearest,
    resolve_timestamp,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestLocalWallClockToUtc:
    """Test cases for local_wall_clock_to_utc."""

    def test_summer_time_toronto(self):
        assert local_wall_clock_to_utc("2026-07-15 10:30", "America/Toronto") == utc(2026, 7, 15, 14, 30)

    def test_mislabelled_z_suffix_is_ignored(self):
        value = "2026-07-15T10:30:00.000Z"
        assert local_wall_clock_to_utc(value, "America/Toronto") == utc(2026, 7, 15, 14, 30)

    def test_winter_time_toronto(self):
        assert local_wall_clock_to_utc("2026-01-15T10:30", "America/Toronto") == utc(2026, 1, 15, 15, 30)

    def test_day_daylight_saving_starts(self):
        assert local_wall_clock_to_utc("2026-03-08 12:00", "America/Toronto") == utc(2026, 3, 8, 16, 0)

    def test_day_daylight_saving_ends(self):
        assert local_wall_clock_to_utc("2026-11-01 12:00", "America/Toronto") == utc(2026, 11, 1, 17, 0)

    def test_date_only_is_midnight(self):
        assert local_wall_clock_to_utc("2026-07-15", "America/Toronto") == utc(2026, 7, 15, 4, 0)

    def test_other_zone(self):
        assert local_wall_clock_to_utc("2026-07-01 09:00", "Europe/London") == utc(2026, 7, 1, 8, 0)

    @pytest.mark.parametrize("value", [
        "2026-01-15 06:00",
        "2026-04-20 18:45",
        "2026-07-15 10:30",
        "2026-10-31 23:59",
        "2026-12-31 00:00",
        "2026-03-08 03:30",
        "2026-03-08 05:00",
    ])
    def test_round_trip_through_zone(self, value):
        tz = ZoneInfo("America/Toronto")
        instant = local_wall_clock_to_utc(value, "America/Toronto")
        rendered = instant.astimezone(tz).replace(tzinfo=None)
        assert rendered == parse_date_parts(value)

    def test_result_is_aware_utc(self):
        instant = local_wall_clock_to_utc("2026-07-15 10:30", "America/Toronto")
        assert instant.utcoffset() == timedelta(0)


class TestParseDateParts:
    """Test cases for parse_date_parts."""

    @pytest.mark.parametrize("value,expected", [
        ("2026-07-15", datetime(2026, 7, 15)),
        ("2026-07-15T10:30", datetime(2026, 7, 15, 10, 30)),
        ("2026-07-15 10:30:45", datetime(2026, 7, 15, 10, 30, 45)),
        ("2026-07-15T10:30:45.123Z", datetime(2026, 7, 15, 10, 30, 45)),
        ("  2026-07-15T10:30Z  ", datetime(2026, 7, 15, 10, 30)),
    ])
    def test_accepted_shapes(self, value, expected):
        assert parse_date_parts(value) == expected

    @pytest.mark.parametrize("value", ["", "15/07/2026", "2026-13-01", "2026-02-30", "yesterday"])
    def test_rejected_values(self, value):
        with pytest.raises(DateParseError):
            parse_date_parts(value)


class TestTimestampPolicy:
    """Test cases for the timestamp policy."""

    def test_parse_is_case_insensitive(self):
        assert TimestampPolicy.parse(" UTC ") is TimestampPolicy.UTC
        assert TimestampPolicy.parse("local") is TimestampPolicy.LOCAL

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown timestamp policy"):
            TimestampPolicy.parse("bogus")

    def test_utc_policy_trusts_value(self):
        instant = resolve_timestamp("2026-07-15T10:30:00.000Z", "America/Toronto", TimestampPolicy.UTC)
        assert instant == utc(2026, 7, 15, 10, 30)

    def test_local_policy_converts(self):
        instant = resolve_timestamp("2026-07-15T10:30:00.000Z", "America/Toronto", TimestampPolicy.LOCAL)
        assert instant == utc(2026, 7, 15, 14, 30)


class TestHelpers:
    """Test cases for formatting and matching helpers."""

    def test_format_utc_z(self):
        assert format_utc_z(utc(2026, 7, 15, 14, 30)) == "2026-07-15T14:30:00Z"

    def test_parse_iso_datetime(self):
        assert parse_iso_datetime("2026-07-15T14:30:00Z") == utc(2026, 7, 15, 14, 30)
        assert parse_iso_datetime("2026-07-15T10:30:00-04:00") == utc(2026, 7, 15, 14, 30)
        assert parse_iso_datetime("2026-07-15T14:30:00") == utc(2026, 7, 15, 14, 30)
        assert parse_iso_datetime("") is None
        assert parse_iso_datetime("not a date") is None

    def test_pick_nearest_within_tolerance(self):
        target = utc(2026, 7, 15, 14, 30)
        candidates = [utc(2026, 7, 15, 14, 40), utc(2026, 7, 15, 14, 25), None, utc(2026, 7, 15, 16, 0)]

        nearest = pick_nearest(candidates, target, timedelta(minutes=15), key=lambda c: c)

        assert nearest == utc(2026, 7, 15, 14, 25)

    def test_pick_nearest_outside_tolerance(self):
        target = utc(2026, 7, 15, 14, 30)
        nearest = pick_nearest([utc(2026, 7, 15, 15, 30)], target, timedelta(minutes=15), key=lambda c: c)
        assert nearest is None

    def test_pick_nearest_tie_keeps_first(self):
        target = utc(2026, 7, 15, 14, 30)
        candidates = [("a", utc(2026, 7, 15, 14, 20)), ("b", utc(2026, 7, 15, 14, 40))]

        nearest = pick_nearest(candidates, target, timedelta(minutes=15), key=lambda c: c[1])

        assert nearest[0] == "a"

    def test_local_date_string(self):
        # 02:00 UTC is still the previous evening in Toronto
        now = utc(2026, 3, 10, 2, 0)
        assert local_date_string(now, "America/Toronto") == "2026-03-09"
        assert local_date_string(now, "America/Toronto", offset_days=1) == "2026-03-10"
