"""
M3U / M3U8 playlist parser

Line-oriented: every #EXTINF line pairs with the next URL line. Unknown
directives are skipped, malformed attributes are dropped, and orphaned
metadata lines are counted rather than failing the whole playlist.
"""
import logging
import re

from iptv_ingest.exceptions import ParseError
from iptv_ingest.services.fetch_types import M3UParseResult, M3URecord


logger = logging.getLogger(__name__)

_ATTRIBUTE_PATTERN = re.compile(
    r'([A-Za-z0-9_-]+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^\s"\',]+))'
)
_DURATION_PATTERN = re.compile(r'^\s*(-?\d+(?:\.\d+)?)')
_EPG_HEADER_ATTRIBUTES = ("url-tvg", "x-tvg-url", "tvg-url")


def decode_playlist(raw: bytes) -> str:
    """Decode playlist bytes as UTF-8 (BOM tolerated), falling back to latin-1"""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("Playlist is not valid UTF-8, decoding as latin-1")
        return raw.decode("latin-1", "ignore")


def parse_m3u(content: str | bytes) -> M3UParseResult:
    """
    Parse M3U playlist text into intermediate channel records

    Args:
        content: Playlist text or raw bytes

    Returns:
        M3UParseResult with records, EPG URLs announced in the header,
        and per-reason drop counts

    Raises:
        ParseError: If the input is non-empty but yields no channel record
    """
    text = decode_playlist(content) if isinstance(content, bytes) else content
    text = text.lstrip("\ufeff")

    result = M3UParseResult()
    pending: tuple[int, str] | None = None
    pending_group: str | None = None
    saw_content = False

    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        saw_content = True

        if line.startswith("#"):
            upper = line.upper()
            if upper.startswith("#EXTINF:"):
                if pending is not None:
                    _drop_orphan(result, pending[0])
                pending = (line_number, line)
                pending_group = None
            elif upper.startswith("#EXTM3U"):
                result.epg_urls.extend(_parse_header_epg_urls(line))
            elif upper.startswith("#EXTGRP:"):
                pending_group = line.split(":", 1)[1].strip() or None
            # Any other directive or comment is ignored
            continue

        if pending is None:
            logger.debug("Line %s: URL without #EXTINF, skipping", line_number)
            result.dropped.add("missing_extinf")
            continue

        record = _build_record(pending[1], line, pending_group)
        pending = None
        pending_group = None
        if record is None:
            result.dropped.add("missing_name")
            continue
        result.records.append(record)

    if pending is not None:
        _drop_orphan(result, pending[0])

    if saw_content and not result.records:
        raise ParseError("Playlist contains no valid channel records", kind=ParseError.EMPTY)

    logger.info(
        "M3U parsing complete: %s records, %s dropped",
        len(result.records),
        result.dropped.total,
    )
    return result


def _drop_orphan(result: M3UParseResult, line_number: int) -> None:
    logger.warning("Line %s: #EXTINF without a following URL line, discarded", line_number)
    result.dropped.add("orphan_extinf")


def _parse_header_epg_urls(line: str) -> list[str]:
    attributes = parse_attributes(line[len("#EXTM3U"):])
    urls: list[str] = []
    for key in _EPG_HEADER_ATTRIBUTES:
        for url in (attributes.get(key) or "").split(","):
            url = url.strip()
            if url and url not in urls:
                urls.append(url)
    return urls


def split_extinf(line: str) -> tuple[str, str]:
    """
    Split an #EXTINF line into its attribute section and display name

    The name starts after the first comma that is not inside a quoted value.
    """
    body = line.split(":", 1)[1] if ":" in line else ""
    quote: str | None = None
    for index, char in enumerate(body):
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'" and index > 0 and body[index - 1] == "=":
            quote = char
        elif char == ",":
            return body[:index], body[index + 1:].strip()
    # Unterminated quote: fall back to the last comma
    if "," in body:
        head, name = body.rsplit(",", 1)
        return head, name.strip()
    return body, ""


def parse_attributes(section: str) -> dict[str, str]:
    """Extract key="value" pairs; anything unparsable is dropped"""
    attributes: dict[str, str] = {}
    for match in _ATTRIBUTE_PATTERN.finditer(section):
        key = match.group(1).lower()
        value = next((group for group in match.groups()[1:] if group is not None), "")
        attributes.setdefault(key, value.strip())
    return attributes


def _build_record(extinf: str, url: str, extgrp: str | None) -> M3URecord | None:
    head, name = split_extinf(extinf)
    attributes = parse_attributes(head)

    name = name or attributes.get("tvg-name", "")
    if not name:
        logger.debug("Dropping record for %s: no display name", url)
        return None

    duration_match = _DURATION_PATTERN.match(head)
    duration = int(float(duration_match.group(1))) if duration_match else -1

    catchup_days = None
    if attributes.get("catchup-days"):
        try:
            catchup_days = int(attributes["catchup-days"])
        except ValueError:
            logger.debug("Ignoring non-numeric catchup-days %r", attributes["catchup-days"])

    return M3URecord(
        name=name,
        url=url,
        group=attributes.get("group-title") or extgrp,
        logo=attributes.get("tvg-logo") or None,
        tvg_id=attributes.get("tvg-id") or None,
        tvg_name=attributes.get("tvg-name") or None,
        duration=duration,
        catchup=attributes.get("catchup") or None,
        catchup_days=catchup_days,
        catchup_source=attributes.get("catchup-source") or None,
        attributes=attributes,
    )
