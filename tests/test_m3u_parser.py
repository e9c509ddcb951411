"""
Tests for the M3U parser.
"""
import pytest

from iptv_ingest.exceptions import ParseError
from iptv_ingest.services.m3u_parser_service import parse_attributes, parse_m3u, split_extinf


BBC_ONE = '#EXTM3U\n#EXTINF:-1 tvg-id="bbc1" group-title="News",BBC One\nhttp://x/bbc1.m3u8\n'


class TestParseM3U:
    """EXTINF/URL pairing and drop accounting."""

    def test_single_channel(self):
        result = parse_m3u(BBC_ONE)

        assert len(result.records) == 1
        record = result.records[0]
        assert record.name == "BBC One"
        assert record.group == "News"
        assert record.tvg_id == "bbc1"
        assert record.url == "http://x/bbc1.m3u8"
        assert record.duration == -1
        assert result.dropped.total == 0

    def test_every_extinf_with_url_yields_one_record(self):
        content = "\n".join([
            "#EXTM3U",
            "#EXTINF:-1,One",
            "http://x/1",
            "#EXTINF:-1,Two",
            "#EXTVLCOPT:http-user-agent=Foo",
            "http://x/2",
            "#EXTINF:-1,Three",
            "http://x/3",
        ])
        result = parse_m3u(content)

        assert [r.name for r in result.records] == ["One", "Two", "Three"]
        assert [r.url for r in result.records] == ["http://x/1", "http://x/2", "http://x/3"]

    def test_orphaned_extinf_lines_are_counted(self):
        content = "#EXTM3U\n#EXTINF:-1,A\n#EXTINF:-1,B\nhttp://x/b\n#EXTINF:-1,C\n"
        result = parse_m3u(content)

        assert [r.name for r in result.records] == ["B"]
        assert result.dropped.reasons["orphan_extinf"] == 2

    def test_url_without_extinf_is_dropped(self):
        result = parse_m3u("#EXTM3U\nhttp://x/a\n#EXTINF:-1,B\nhttp://x/b\n")

        assert [r.name for r in result.records] == ["B"]
        assert result.dropped.reasons["missing_extinf"] == 1

    def test_record_without_name_is_dropped(self):
        result = parse_m3u("#EXTM3U\n#EXTINF:-1,\nhttp://x/a\n#EXTINF:-1,B\nhttp://x/b\n")

        assert len(result.records) == 1
        assert result.dropped.reasons["missing_name"] == 1

    def test_name_falls_back_to_tvg_name(self):
        result = parse_m3u('#EXTM3U\n#EXTINF:-1 tvg-name="Foo",\nhttp://x/foo\n')

        assert result.records[0].name == "Foo"

    def test_header_epg_urls(self):
        content = '#EXTM3U url-tvg="http://e/guide.xml.gz,http://e/other.xml"\n#EXTINF:-1,A\nhttp://x/a\n'
        result = parse_m3u(content)

        assert result.epg_urls == ["http://e/guide.xml.gz", "http://e/other.xml"]

    def test_extgrp_used_when_no_group_title(self):
        result = parse_m3u("#EXTM3U\n#EXTINF:-1,A\n#EXTGRP:Sports\nhttp://x/a\n")

        assert result.records[0].group == "Sports"

    def test_catchup_attributes(self):
        content = (
            '#EXTM3U\n#EXTINF:-1 catchup="shift" catchup-days="7" '
            'catchup-source="?utc={utc}",Archive\nhttp://x/a\n'
        )
        record = parse_m3u(content).records[0]

        assert record.catchup == "shift"
        assert record.catchup_days == 7
        assert record.catchup_source == "?utc={utc}"

    def test_bytes_with_bom(self):
        result = parse_m3u(b"\xef\xbb\xbf#EXTM3U\r\n#EXTINF:-1,A\r\nhttp://x/a\r\n")

        assert [r.name for r in result.records] == ["A"]

    def test_latin1_fallback(self):
        result = parse_m3u("#EXTM3U\n#EXTINF:-1,Télé\nhttp://x/a\n".encode("latin-1"))

        assert result.records[0].name == "Télé"

    def test_no_usable_records_raises(self):
        with pytest.raises(ParseError) as exc_info:
            parse_m3u("#EXTM3U\n#EXTINF:-1,A\n")

        assert exc_info.value.kind == ParseError.EMPTY

    def test_blank_input_is_empty_result(self):
        result = parse_m3u("   \n\n")

        assert result.records == []


class TestExtinfHelpers:
    """Attribute and display-name splitting."""

    def test_comma_inside_quoted_attribute(self):
        head, name = split_extinf('#EXTINF:-1 tvg-name="News, Weather" group-title="UK",BBC News')

        assert name == "BBC News"
        assert parse_attributes(head)["tvg-name"] == "News, Weather"

    def test_name_may_contain_commas(self):
        _, name = split_extinf('#EXTINF:-1 tvg-id="x",Rock, Paper, Scissors')

        assert name == "Rock, Paper, Scissors"

    def test_attribute_quoting_styles(self):
        attributes = parse_attributes("-1 tvg-id='single' TVG-LOGO=http://x/logo.png group-title=\"Double\"")

        assert attributes == {
            "tvg-id": "single",
            "tvg-logo": "http://x/logo.png",
            "group-title": "Double",
        }

    def test_first_attribute_wins(self):
        assert parse_attributes('tvg-id="a" tvg-id="b"') == {"tvg-id": "a"}
