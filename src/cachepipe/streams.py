"""Byte stream primitives for pipeline steps.

A step writes its output to a sink (``write(data)`` / ``close()``) and
reads its input from a readable (an async iterator of ``bytes`` that can
be paused, resumed and detached with ``aclose()``).

- Channel: in-memory pipe, both sink and readable
- FileSink: cache file writer, committed atomically on close
- TeeStream: a Channel that also writes every chunk to a FileSink
- FileReadable: chunked reader over an existing cache file
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import threading
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from pathlib import Path
from typing import IO, Any, Protocol, runtime_checkable

from cachepipe.errors import CacheIOError, StreamClosedError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

Chunk = bytes | str


@runtime_checkable
class Sink(Protocol):
    """Write side of a stream."""

    async def write(self, data: Chunk) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class Readable(Protocol):
    """Read side of a stream."""

    def __aiter__(self) -> AsyncIterator[bytes]: ...

    def pause(self) -> None: ...

    def resume(self) -> None: ...

    async def aclose(self) -> None: ...


def to_bytes(data: Chunk) -> bytes:
    """Encode text chunks as UTF-8."""
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


async def iterate_chunks(ins: AsyncIterable[Chunk] | Iterable[Chunk]) -> AsyncIterator[bytes]:
    """Iterate over an async or sync source of chunks as bytes."""
    if isinstance(ins, AsyncIterable):
        async for chunk in ins:
            yield to_bytes(chunk)
    else:
        for chunk in ins:
            yield to_bytes(chunk)


async def read_all(ins: AsyncIterable[Chunk]) -> bytes:
    """Drain a readable into a single bytes value."""
    return b"".join([chunk async for chunk in iterate_chunks(ins)])


class _EndOfStream:
    pass


class _Failure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


_EOS = _EndOfStream()


class Channel:
    """In-memory pipe between a producer and a single consumer.

    Data written before ``close()`` or ``fail()`` is always delivered
    before the end-of-stream or the error. Once the consumer detaches
    with ``aclose()`` further writes are silently dropped.
    """

    def __init__(self, max_chunks: int = 0) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(max_chunks)
        self._flowing = asyncio.Event()
        self._flowing.set()
        self._closed = False
        self._detached = False
        self._ended = False

    @property
    def closed(self) -> bool:
        """True once the write side has been closed or failed."""
        return self._closed

    @property
    def detached(self) -> bool:
        """True once the reader has gone away."""
        return self._detached

    def pause(self) -> None:
        """Hold the reader until resume() is called."""
        self._flowing.clear()

    def resume(self) -> None:
        self._flowing.set()

    async def write(self, data: Chunk) -> None:
        if self._detached:
            return
        if self._closed:
            raise StreamClosedError("write after close")
        data = to_bytes(data)
        if data:
            await self._queue.put(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(_EOS)

    async def fail(self, error: BaseException) -> None:
        """End the stream with an error, raised to the reader in order."""
        if self._closed:
            return
        self._closed = True
        if not self._detached:
            await self._queue.put(_Failure(error))

    async def aclose(self) -> None:
        """Detach the reader and discard anything still queued."""
        self._detached = True
        self._flowing.set()
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        if self._ended or self._detached:
            raise StopAsyncIteration
        await self._flowing.wait()
        item = await self._queue.get()
        if isinstance(item, _EndOfStream):
            self._ended = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._ended = True
            raise item.error
        return item


class FileSink:
    """Writes a cache file through a temporary file in the same directory.

    The target path only appears once ``close()`` has flushed every byte
    and renamed the temporary file into place; ``abort()`` discards it.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._file: IO[bytes] | None = None
        self._tmp_path: str | None = None
        self._done = False

    def _open(self) -> None:
        fd, self._tmp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
        )
        self._file = os.fdopen(fd, "wb")

    async def open(self) -> FileSink:
        try:
            await asyncio.to_thread(self._open)
        except OSError as e:
            raise CacheIOError.from_os_error(e, str(self.path)) from e
        logger.debug("Opened cache file for writing: %s", self.path)
        return self

    async def write(self, data: Chunk) -> None:
        if self._done:
            raise StreamClosedError(f"write after close: {self.path}")
        if self._file is None:
            await self.open()
        data = to_bytes(data)
        if not data:
            return
        try:
            await asyncio.to_thread(self._file.write, data)
        except OSError as e:
            raise CacheIOError.from_os_error(e, str(self.path)) from e

    def _commit(self) -> None:
        self._file.flush()
        os.fsync(self._file.fileno())
        self._file.close()
        os.replace(self._tmp_path, self.path)

    async def close(self) -> None:
        if self._done:
            return
        if self._file is None:
            await self.open()
        self._done = True
        try:
            await asyncio.to_thread(self._commit)
        except OSError as e:
            await self._discard()
            raise CacheIOError.from_os_error(e, str(self.path)) from e
        logger.debug("Committed cache file: %s", self.path)

    async def _discard(self) -> None:
        if self._file is not None and not self._file.closed:
            self._file.close()
        if self._tmp_path is not None:
            try:
                await asyncio.to_thread(os.unlink, self._tmp_path)
            except FileNotFoundError:
                pass

    async def abort(self) -> None:
        """Discard the partially written file."""
        if self._done:
            return
        self._done = True
        await self._discard()
        logger.debug("Discarded partial cache file: %s", self.path)


class TeeStream(Channel):
    """A Channel whose writes are also persisted to a cache file."""

    def __init__(self, sink: FileSink, max_chunks: int = 0) -> None:
        super().__init__(max_chunks)
        self.sink = sink

    async def write(self, data: Chunk) -> None:
        if self.closed:
            raise StreamClosedError("write after close")
        data = to_bytes(data)
        await self.sink.write(data)
        await super().write(data)

    async def close(self) -> None:
        if self.closed:
            return
        try:
            await self.sink.close()
        except CacheIOError as e:
            await super().fail(e)
            raise
        await super().close()

    async def fail(self, error: BaseException) -> None:
        if self.closed:
            return
        await self.sink.abort()
        await super().fail(error)


class FileReadable:
    """Chunked async reader over a cache file.

    The file is opened on first read, so a file removed after the cache
    check surfaces as a missing-file CacheIOError from iteration.

    Reads and the final close run in worker threads under one lock, so
    closing waits for a read still in flight after its caller was
    cancelled.
    """

    def __init__(self, path: str | Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.path = Path(path)
        self.chunk_size = chunk_size
        self._file: IO[bytes] | None = None
        self._lock = threading.Lock()
        self._flowing = asyncio.Event()
        self._flowing.set()
        self._finished = False

    def pause(self) -> None:
        self._flowing.clear()

    def resume(self) -> None:
        self._flowing.set()

    def _read(self) -> bytes:
        with self._lock:
            if self._finished:
                return b""
            if self._file is None:
                self._file = self.path.open("rb")
            return self._file.read(self.chunk_size)

    def _close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    async def aclose(self) -> None:
        self._finished = True
        self._flowing.set()
        await asyncio.to_thread(self._close)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        if self._finished:
            raise StopAsyncIteration
        await self._flowing.wait()
        try:
            data = await asyncio.to_thread(self._read)
        except OSError as e:
            await self.aclose()
            raise CacheIOError.from_os_error(e, str(self.path)) from e
        if not data:
            await self.aclose()
            raise StopAsyncIteration
        return data
