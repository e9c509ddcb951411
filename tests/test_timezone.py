"""
Tests for date and time helpers.
"""
from datetime import datetime, timedelta, timezone

import pytest

from iptv_ingest.utils.timezone import (
    DateFormatError,
    convert_to_timezone,
    ensure_utc,
    from_unix_timestamp,
    parse_iso8601_to_utc,
    parse_local_datetime,
    parse_xmltv_time,
)
from tests.conftest import utc


class TestParseXmltvTime:

    def test_with_offset(self):
        assert parse_xmltv_time("20080715003000 -0600") == utc(2008, 7, 15, 6, 30)

    def test_without_offset(self):
        assert parse_xmltv_time("20080715003000") == utc(2008, 7, 15, 0, 30)

    def test_glued_offset(self):
        assert parse_xmltv_time("20080715003000+0100") == utc(2008, 7, 14, 23, 30)

    def test_without_seconds(self):
        assert parse_xmltv_time("200807150030 +0000") == utc(2008, 7, 15, 0, 30)

    def test_invalid(self):
        with pytest.raises(DateFormatError):
            parse_xmltv_time("yesterday")


class TestOtherFormats:

    def test_iso8601_z(self):
        assert parse_iso8601_to_utc("2025-10-09T00:00:00Z") == utc(2025, 10, 9)

    def test_iso8601_offset(self):
        assert parse_iso8601_to_utc("2025-10-09T01:00:00+01:00") == utc(2025, 10, 9)

    def test_unix_timestamp_string(self):
        assert from_unix_timestamp("1704132000") == utc(2024, 1, 1, 18)

    def test_unix_timestamp_invalid(self):
        with pytest.raises(DateFormatError):
            from_unix_timestamp("soon")

    def test_local_datetime(self):
        # London is on GMT+1 in July
        assert parse_local_datetime("2024-07-01 18:00:00", "Europe/London") == utc(2024, 7, 1, 17)

    def test_local_datetime_unknown_zone(self):
        with pytest.raises(DateFormatError):
            parse_local_datetime("2024-07-01 18:00:00", "Mars/Olympus")

    def test_ensure_utc(self):
        naive = datetime(2024, 1, 1, 12)
        plus_two = datetime(2024, 1, 1, 12, tzinfo=timezone(timedelta(hours=2)))

        assert ensure_utc(naive) == utc(2024, 1, 1, 12)
        assert ensure_utc(plus_two).tzinfo == timezone.utc
        assert ensure_utc(plus_two) == utc(2024, 1, 1, 10)

    def test_convert_to_timezone(self):
        assert convert_to_timezone(utc(2024, 1, 1, 12), "UTC") == "2024-01-01T12:00:00+00:00"
        assert convert_to_timezone(utc(2024, 1, 1, 12), "Asia/Tokyo") == "2024-01-01T21:00:00+09:00"
