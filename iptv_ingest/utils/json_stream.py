"""
Incremental JSON decoding

Xtream Codes panels answer `get_live_streams` with a single JSON array that can
hold tens of thousands of objects. Items are decoded one by one as text
arrives so callers can consume records before the body ends.
"""
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any
import json
import logging


logger = logging.getLogger(__name__)

_WHITESPACE = " \t\n\r"
_COMPACT_THRESHOLD = 1 << 16


def _skip_whitespace(buffer: str, pos: int) -> int:
    while pos < len(buffer) and buffer[pos] in _WHITESPACE:
        pos += 1
    return pos


async def iter_json_array(chunks: AsyncIterable[str]) -> AsyncIterator[Any]:
    """
    Yield the elements of a top-level JSON array from a stream of text chunks

    Object-shaped bodies (some panels key streams by id) yield their values.
    `null` or an empty body yields nothing.

    Raises:
        ValueError: If the body is not valid JSON or ends inside the array
    """
    decoder = json.JSONDecoder()
    source = chunks.__aiter__()
    buffer = ""
    pos = 0
    exhausted = False
    in_array = False

    async def fill() -> bool:
        nonlocal buffer, pos, exhausted
        if exhausted:
            return False
        try:
            chunk = await source.__anext__()
        except StopAsyncIteration:
            exhausted = True
            return False
        if pos > _COMPACT_THRESHOLD:
            buffer = buffer[pos:]
            pos = 0
        buffer += chunk
        return True

    while True:
        pos = _skip_whitespace(buffer, pos)
        if pos >= len(buffer):
            if await fill():
                continue
            if in_array:
                raise ValueError("JSON array truncated before closing bracket")
            return

        if not in_array:
            if buffer[pos] == "[":
                in_array = True
                pos += 1
                continue
            # Not an array: read the remainder and decode in one go
            while await fill():
                pass
            data = json.loads(buffer[pos:])
            if isinstance(data, dict):
                for value in data.values():
                    yield value
            elif isinstance(data, list):
                for value in data:
                    yield value
            elif data is not None:
                logger.debug("Ignoring scalar JSON body of type %s", type(data).__name__)
            return

        char = buffer[pos]
        if char == "]":
            return
        if char == ",":
            pos += 1
            continue

        try:
            item, end = decoder.raw_decode(buffer, pos)
        except json.JSONDecodeError:
            if await fill():
                continue
            raise

        # A number or literal touching the buffer edge may still be incomplete
        if end >= len(buffer) and await fill():
            continue

        pos = end
        yield item
