"""Pipeline step results.

A StepResult encapsulates one invocation of a pipeline step: where its
cache file lives, whether that file already exists, and how to produce
the step's output when it doesn't. Results are created per invocation
and are single use.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cachepipe.config import CachePipeConfig, get_config
from cachepipe.errors import CacheIOError, NoResultAvailable, PipelineError
from cachepipe.streams import Channel, FileReadable, FileSink, Readable, Sink, TeeStream, read_all
from cachepipe.utils import ensure_dir_for_file, maybe_await, mime_type_for, resolve_path

if TYPE_CHECKING:
    from fastapi.responses import Response

logger = logging.getLogger(__name__)

StepFn = Callable[[Any, Sink, Readable | None], Awaitable[None] | None]


class ResultState(Enum):
    """Lifecycle of a step result."""

    START = "start"
    CHECK_CACHE = "check_cache"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    READY = "ready"


class StepResult:
    """The outcome of invoking one pipeline step.

    Attributes:
        path: Resolved cache file path, or None if the step isn't cached
        ext: Cache file extension
        mime_type: MIME type of the result content
        state: Current lifecycle state
        hit: True if the result was served from the cache file
    """

    def __init__(
        self,
        path: str | Path | None,
        vars: Any = None,
        fn: StepFn | None = None,
        upstream: Callable[[], StepResult] | None = None,
        *,
        config: CachePipeConfig | None = None,
        label: str | None = None,
    ) -> None:
        """Construct a new step result.

        Args:
            path: Cache file path template, resolved against vars; taken
                as-is when vars is None. None if the step's results
                aren't cached
            vars: Invocation variables, used to resolve the path template
                and passed to the step function
            fn: The step function
            upstream: Returns the result of the preceding step; only
                called on a cache miss
            config: Settings; defaults to the global configuration
            label: Name used in log messages
        """
        self._config = config if config is not None else get_config()
        self.path: Path | None = None
        self.ext = ""
        self.mime_type = self._config.default_mime_type
        if path:
            # Without vars the path is already resolved
            self.path = Path(resolve_path(path, vars) if vars is not None else path)
            self.ext = self.path.suffix
            self.mime_type = mime_type_for(
                self.path,
                self._config.mime_types,
                self._config.default_mime_type,
            )
        self._vars = vars
        self._fn = fn
        self._upstream = upstream
        self._task: asyncio.Task[None] | None = None
        self.state = ResultState.START
        self.hit = False
        self.label = label or (getattr(fn, "__name__", None) if fn else None) or "step"

    def __repr__(self) -> str:
        return f"StepResult({self.label!r}, path={self.path!r}, state={self.state.value})"

    def to_json(self) -> str | None:
        """Serialize the result as its cache file path."""
        return str(self.path) if self.path else None

    @classmethod
    def from_json(cls, json: str, *, config: CachePipeConfig | None = None) -> StepResult:
        """Rebuild a result from to_json() output.

        The result can only serve the existing cache file.
        """
        return cls(Path(json), config=config, label="cached")

    async def cached(self) -> bool:
        """Test whether a cached result exists on disk."""
        if self.path is None:
            return False
        return await asyncio.to_thread(self.path.is_file)

    async def _output(self) -> Channel:
        """Prepare the sink the step function writes to.

        With a cache path, a tee that writes to the cache file and
        forwards the same data through its readable side; otherwise a
        plain pass-through channel.
        """
        max_chunks = self._config.max_buffered_chunks
        if self.path is None:
            return Channel(max_chunks)
        try:
            await ensure_dir_for_file(self.path)
        except OSError as e:
            raise CacheIOError.from_os_error(e, str(self.path)) from e
        sink = await FileSink(self.path).open()
        return TeeStream(sink, max_chunks)

    async def _run(self, outs: Channel, ins: Readable | None, started: asyncio.Event) -> None:
        """Run the step function, then close its output."""
        try:
            pending = self._fn(self._vars, outs, ins)
            # The function has its streams; the upstream may now flow
            started.set()
            await maybe_await(pending)
        except Exception as e:
            logger.error("Step '%s' failed: %s: %s", self.label, type(e).__name__, e)
            await outs.fail(e)
        else:
            try:
                await outs.close()
            except CacheIOError as e:
                logger.error("Step '%s' failed to write cache file: %s", self.label, e)
        finally:
            started.set()
            if not outs.closed:
                await outs.fail(PipelineError(f"Step '{self.label}' was cancelled"))
            if ins is not None:
                await ins.aclose()

    async def readable(self) -> Readable:
        """Return a readable stream on the step result's data.

        If the result is cached then a stream on the cache file is
        returned and upstream steps are never invoked. Otherwise the
        upstream result is opened (recursively), the step function is
        started and the stream it writes to is returned.

        Raises:
            NoResultAvailable: If there is no cached result and no step
                function to compute one
            PipelineError: If called more than once
        """
        if self.state is not ResultState.START:
            raise PipelineError(f"readable() already called on {self!r}")

        self.state = ResultState.CHECK_CACHE
        if await self.cached():
            self.state = ResultState.CACHE_HIT
            self.hit = True
            logger.debug("Cache hit for step '%s': %s", self.label, self.path)
            readable = FileReadable(self.path, self._config.chunk_size)
            self.state = ResultState.READY
            return readable

        self.state = ResultState.CACHE_MISS
        if self._fn is None:
            raise NoResultAvailable(f"No cached or computable result for {self!r}")
        logger.debug("Cache miss for step '%s': %s", self.label, self.path)

        # Open a readable stream on the input, if any, and hold it paused
        # until the step function has been started.
        ins: Readable | None = None
        if self._upstream is not None:
            ins = await self._upstream().readable()
            ins.pause()

        try:
            outs = await self._output()
        except CacheIOError:
            if ins is not None:
                await ins.aclose()
            raise

        started = asyncio.Event()
        self._task = asyncio.create_task(self._run(outs, ins, started))
        await started.wait()
        if ins is not None:
            ins.resume()

        self.state = ResultState.READY
        return outs

    async def wait(self) -> None:
        """Wait for the step function, if one was started, to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def pipe(self, outs: Sink) -> None:
        """Copy the result's data to a sink, then close it."""
        ins = await self.readable()
        try:
            async for chunk in ins:
                await outs.write(chunk)
        finally:
            await ins.aclose()
        await outs.close()

    async def read(self) -> bytes:
        """Read the whole result into memory."""
        ins = await self.readable()
        try:
            return await read_all(ins)
        finally:
            await ins.aclose()

    async def send(self, headers: dict[str, str] | None = None) -> Response:
        """Build an HTTP response streaming the result; see cachepipe.http."""
        from cachepipe.http import send_result

        return await send_result(self, headers)
