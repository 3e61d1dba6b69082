"""Record parsers for multi-record byte streams.

Input is consumed chunk by chunk into a single buffer; each complete
record is decoded and handed to the process function, which is awaited
before the next record is handled. Only the unterminated tail of the
input is retained between chunks.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from typing import Any

from cachepipe.errors import ParseError
from cachepipe.streams import Chunk, iterate_chunks
from cachepipe.utils import maybe_await

logger = logging.getLogger(__name__)

NEWLINE = 0x0A
NUL = 0x00

ProcessFn = Callable[[str], Awaitable[Any] | Any]


def _decode(data: bytes | bytearray) -> str:
    try:
        return bytes(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"Record is not valid UTF-8: {e}") from e


async def field_parser(
    ins: AsyncIterable[Chunk] | Iterable[Chunk],
    process: ProcessFn,
    separator: int,
) -> int:
    """Parse a multi-field input stream.

    Args:
        ins: Async (or sync) iterable of input chunks
        process: Called once per field, in input order; may be async.
            A field is only processed after the previous one has settled.
        separator: The byte separating fields, e.g. newline or 0x0

    Returns:
        Number of fields processed

    Raises:
        ParseError: If a field is not valid UTF-8
        Exception: Whatever ``process`` raised; no further fields are
            processed and the input is closed
    """
    sep = bytes([separator])
    buffer = bytearray()
    count = 0
    chunks = iterate_chunks(ins)
    try:
        async for chunk in chunks:
            if not chunk:
                continue
            buffer += chunk
            start = 0
            while True:
                end = buffer.find(sep, start)
                if end == -1:
                    break
                await maybe_await(process(_decode(buffer[start:end])))
                count += 1
                start = end + 1
            # Keep only the unterminated tail
            del buffer[:start]
        # Trailing field without a separator
        if buffer:
            await maybe_await(process(_decode(buffer)))
            count += 1
    except BaseException:
        aclose = getattr(ins, "aclose", None)
        if aclose is not None:
            try:
                await maybe_await(aclose())
            except Exception as e:
                # The first error wins
                logger.warning("Closing input after error failed: %s: %s", type(e).__name__, e)
        raise
    finally:
        await chunks.aclose()
    logger.debug("Parsed %d records", count)
    return count


async def line_parser(ins: AsyncIterable[Chunk] | Iterable[Chunk], process: ProcessFn) -> int:
    """Parse a multi-line text stream, calling process once per line."""
    return await field_parser(ins, process, NEWLINE)
