"""Deliver step results as HTTP responses.

Responses are fastapi (starlette) responses, so a route can return
them directly:

    @app.get("/feeds/{account}/{feed}")
    async def get_feed(account: str, feed: str):
        return await respond(invoke_feed, account, feed)

Status codes:
- 204 if the pipeline has no content or the result is empty
- 404 if the cache file went missing before any data was sent
- 500 for any other failure before any data was sent
A failure after data has been sent ends the response body early.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, Any

from fastapi.responses import Response, StreamingResponse

from cachepipe.errors import CacheIOError, NoResultAvailable
from cachepipe.pipeline.result import StepResult

if TYPE_CHECKING:
    from cachepipe.pipeline.step import PipelineInvoker
    from cachepipe.streams import Readable

logger = logging.getLogger(__name__)


def error_status(error: BaseException) -> int:
    """Status code for a failure before any data was sent."""
    if isinstance(error, CacheIOError) and error.missing:
        return 404
    if isinstance(error, FileNotFoundError):
        return 404
    return 500


async def _first_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    async for chunk in chunks:
        if chunk:
            return chunk
    return None


async def _body(first: bytes, ins: Readable, label: str) -> AsyncIterator[bytes]:
    try:
        yield first
        async for chunk in ins:
            if chunk:
                yield chunk
    except Exception as e:
        # Too late to send an error status; end the response early
        logger.error("Sending %s failed after write started: %s", label, e)
    finally:
        await ins.aclose()


async def send_result(result: StepResult, headers: Mapping[str, str] | None = None) -> Response:
    """Build a response streaming a step result.

    The first chunk of the result is read before the response is built,
    so the status code reflects whether any content exists.

    Args:
        result: The step result
        headers: Response headers; the media type defaults to the
            result's MIME type
    """
    try:
        ins = await result.readable()
    except NoResultAvailable:
        # Unable to open a stream, indicate an empty response
        return Response(status_code=204)
    except Exception as e:
        logger.error("Opening %r failed: %s", result, e)
        return Response(status_code=error_status(e))

    try:
        first = await _first_chunk(ins.__aiter__())
    except Exception as e:
        logger.error("Sending %r failed: %s", result, e)
        await ins.aclose()
        return Response(status_code=error_status(e))

    if first is None:
        await ins.aclose()
        return Response(status_code=204)

    headers = dict(headers or {})
    media_type = None
    if not any(key.lower() == "content-type" for key in headers):
        media_type = result.mime_type
    return StreamingResponse(
        _body(first, ins, repr(result)),
        headers=headers,
        media_type=media_type,
    )


async def respond(
    invoke: PipelineInvoker,
    *args: Any,
    headers: Mapping[str, str] | None = None,
    **kwargs: Any,
) -> Response:
    """Invoke a pipeline and deliver its result as a response."""
    result = await invoke(*args, **kwargs)
    if not isinstance(result, StepResult):
        # NO_CONTENT, or a post function that returned no result
        return Response(status_code=204)
    return await send_result(result, headers)
