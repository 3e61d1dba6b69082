"""Error types raised by cachepipe.

All errors derive from PipelineError so callers can catch the whole
family at the pipeline boundary. Errors raised while wrapping a
caller-supplied function are chained to the original exception.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all cachepipe errors."""


class ParseError(PipelineError):
    """A record could not be decoded (bad UTF-8 or invalid JSON)."""


class HookError(PipelineError):
    """A pre- or post-processing hook raised."""


class OperationError(PipelineError):
    """A transformer operation raised."""


class CachePathError(PipelineError):
    """A cache path template could not be resolved."""


class StreamClosedError(PipelineError):
    """Data was written to a sink after it was closed."""


class NoResultAvailable(PipelineError):
    """A step result could not produce any readable stream.

    Not a failure: HTTP delivery reports it as an empty response.
    """


class CacheIOError(PipelineError):
    """Filesystem failure while opening, reading or writing a cache file."""

    def __init__(self, message: str, path: str | None = None, *, missing: bool = False) -> None:
        super().__init__(message)
        self.path = path
        self.missing = missing

    @classmethod
    def from_os_error(cls, err: OSError, path: str | None = None) -> CacheIOError:
        """Wrap an OSError, flagging file-not-found conditions."""
        return cls(
            f"{type(err).__name__}: {err}",
            path=path,
            missing=isinstance(err, FileNotFoundError),
        )
