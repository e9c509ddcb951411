from datetime import datetime
from typing import Optional
import asyncio
import gzip
import io
import logging

from lxml import etree # type: ignore

from iptv_ingest.services.fetch_types import GuideChannel, GuidePayload, RawProgram
from iptv_ingest.utils.timezone import DateFormatError, parse_xmltv_time

logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"


def parse_xmltv(source: bytes | str, time_from: Optional[datetime] = None, time_to: Optional[datetime] = None) -> GuidePayload:
    """
    Parse an XMLTV guide and return channels and programmes

    Elements are processed incrementally and released as soon as they are read,
    so multi-day guides do not need to be held as a full tree.

    Args:
        source: Raw XMLTV bytes (optionally gzip-compressed) or a file path
        time_from: Optional start of time window (UTC)
        time_to: Optional end of time window (UTC)

    Returns:
        GuidePayload with channels and programmes (times already in UTC)

    Raises:
        etree.XMLSyntaxError: If XML is unrecoverably malformed
        OSError: If a file path can't be read
    """
    stream = _open_source(source)
    channels: list[GuideChannel] = []
    programs: list[RawProgram] = []
    skipped = 0

    try:
        context = etree.iterparse(stream, events=("end",), tag=("channel", "programme"), recover=True, huge_tree=True)
        for _, element in context:
            if element.tag == "channel":
                channel = _parse_channel(element)
                if channel:
                    channels.append(channel)
            else:
                program = _parse_single_program(element, time_from, time_to)
                if program:
                    programs.append(program)
                else:
                    skipped += 1
            element.clear()
            while element.getprevious() is not None:
                del element.getparent()[0]
    except etree.XMLSyntaxError as e:
        logger.error(f"  XML parsing error: {e}")
        raise
    finally:
        stream.close()

    logger.info(
        "XMLTV parsing complete: %s channels, %s programs (%s skipped or outside window)",
        len(channels),
        len(programs),
        skipped,
    )
    return GuidePayload(channels=channels, programs=programs)


def _open_source(source: bytes | str) -> io.BufferedIOBase:
    if isinstance(source, bytes):
        if source[:2] == _GZIP_MAGIC:
            logger.debug("  Guide payload is gzip-compressed")
            return gzip.GzipFile(fileobj=io.BytesIO(source))
        return io.BytesIO(source)

    with open(source, "rb") as handle:
        magic = handle.read(2)
    if magic == _GZIP_MAGIC:
        return gzip.open(source, "rb")
    return open(source, "rb")


def _parse_channel(channel: etree._Element) -> Optional[GuideChannel]:
    """Extract one channel element"""
    channel_key = channel.get('id')
    if not channel_key:
        logger.debug("Skipping channel with missing ID attribute")
        return None

    display_names = [
        name.text.strip()
        for name in channel.findall('display-name')
        if name.text and name.text.strip()
    ]

    icon_url = None
    icon_elem = channel.find('icon')
    if icon_elem is not None:
        icon_url = icon_elem.get('src') or None

    return GuideChannel(
        channel_key=channel_key,
        display_names=display_names,
        icon_url=icon_url,
    )


def _parse_single_program(programme: etree._Element, time_from: Optional[datetime], time_to: Optional[datetime]) -> Optional[RawProgram]:
    """Parse single programme element"""
    channel_key = programme.get('channel')
    start_str = programme.get('start')
    stop_str = programme.get('stop')

    if not channel_key or not start_str or not stop_str:
        return None

    try:
        start_time = parse_xmltv_time(start_str)
        stop_time = parse_xmltv_time(stop_str)
    except DateFormatError:
        return None

    if not _overlaps_window(start_time, stop_time, time_from, time_to):
        return None

    return RawProgram(
        channel_key=channel_key,
        title=_get_text(programme, 'title'),
        start=start_time,
        stop=stop_time,
        description=_get_text(programme, 'desc'),
    )


def _overlaps_window(start: datetime, stop: datetime, time_from: Optional[datetime], time_to: Optional[datetime]) -> bool:
    """Check if a programme intersects the specified window"""
    if time_from and stop <= time_from:
        return False

    if time_to and start > time_to:
        return False

    return True


def _get_text(element: etree._Element, tag: str, default: Optional[str] = None) -> Optional[str]:
    """Safely extract text from XML element"""
    child = element.find(tag)
    if child is None or not child.text:
        return default
    return child.text.strip()


async def parse_xmltv_async(
    source: bytes | str,
    time_from: Optional[datetime] = None,
    time_to: Optional[datetime] = None,
    *,
    parse_timeout_seconds: int | None = None
) -> GuidePayload:
    """
    Parse an XMLTV guide asynchronously with timeout protection.

    Parsing is offloaded to the thread pool to avoid blocking the event loop.

    Args:
        source: Raw XMLTV bytes or a file path
        time_from: Start of time window
        time_to: End of time window

    Keyword Args:
        parse_timeout_seconds: Timeout in seconds for parsing (0/None disables timeout)

    Raises:
        ValueError: If parsing times out
        etree.XMLSyntaxError: If XML is unrecoverably malformed
    """
    effective_timeout = parse_timeout_seconds if parse_timeout_seconds and parse_timeout_seconds > 0 else None
    timeout_display = f"{effective_timeout}s" if effective_timeout else "disabled"

    loop = asyncio.get_running_loop()
    logger.debug("Offloading XML parsing to thread pool executor (timeout: %s)...", timeout_display)
    parse_task = loop.run_in_executor(None, parse_xmltv, source, time_from, time_to)
    try:
        if effective_timeout:
            return await asyncio.wait_for(parse_task, timeout=effective_timeout)
        return await parse_task
    except asyncio.TimeoutError:
        logger.error("XML parsing timed out after %s", timeout_display)
        raise ValueError("XML parsing timed out - guide may be too large or malformed")
