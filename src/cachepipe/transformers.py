"""Multi-record stream transformers.

A transformer parses records from an input stream, runs each through
pre hooks, the operation and post hooks, and writes the result to an
output sink, one line per output value.

Operations can tag their results explicitly:
    TextLine("x")          -> written verbatim
    EncodeAsJSON({"y": 1}) -> written as {"y":1}
Untagged strings are treated as TextLine, any other value as
EncodeAsJSON, and None writes nothing.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cachepipe.errors import HookError, OperationError, ParseError
from cachepipe.parsers import NEWLINE, NUL, field_parser
from cachepipe.streams import Chunk, Sink
from cachepipe.utils import maybe_await

if TYPE_CHECKING:
    from cachepipe.pipeline.hook import HookRegistry

logger = logging.getLogger(__name__)

OperationFn = Callable[[Any], Awaitable[Any] | Any]

# Returned by a record decoder for records that produce no output
SKIP = object()


@dataclass(frozen=True)
class TextLine:
    """Output value written as-is."""

    text: str


@dataclass(frozen=True)
class EncodeAsJSON:
    """Output value written as compact JSON."""

    value: Any


Output = TextLine | EncodeAsJSON


def as_output(value: Any) -> Output | None:
    """Tag an operation result for serialization."""
    if value is None or isinstance(value, (TextLine, EncodeAsJSON)):
        return value
    if isinstance(value, str):
        return TextLine(value)
    return EncodeAsJSON(value)


def as_json_output(value: Any) -> Output | None:
    """Tag an operation result that is always JSON encoded unless tagged."""
    if value is None or isinstance(value, (TextLine, EncodeAsJSON)):
        return value
    return EncodeAsJSON(value)


def encode_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def render(output: Output) -> str:
    """Render a tagged output value as a single output line."""
    if isinstance(output, TextLine):
        return output.text + "\n"
    try:
        return encode_json(output.value) + "\n"
    except (TypeError, ValueError) as e:
        raise OperationError(f"Result is not JSON serializable: {e}") from e


async def _run_transform(
    ins: AsyncIterable[Chunk] | Iterable[Chunk],
    outs: Sink,
    op: OperationFn,
    ns: str | None,
    name: str | None,
    vars: Any,
    *,
    separator: int,
    multi_value: bool,
    hooks: HookRegistry | None,
    decode: Callable[[str], Any] | None = None,
    tag: Callable[[Any], Output | None] = as_output,
) -> int:
    # Lookup pre- and post- processor call hooks
    if hooks is not None:
        pre_hooks = hooks.compose(ns, "pre", name)
        post_hooks = hooks.compose(ns, "post", name)
    else:
        pre_hooks = post_hooks = None
    label = f"{ns}.{name}" if ns and name else (name or getattr(op, "__name__", "op"))
    written = 0

    async def write(value: Any) -> None:
        nonlocal written
        output = tag(value)
        if output is not None:
            await outs.write(render(output))
            written += 1

    async def process(record: str) -> None:
        if decode is not None:
            value = decode(record)
            if value is SKIP:
                return
        else:
            value = record
        if pre_hooks is not None:
            try:
                value = await maybe_await(pre_hooks(value, vars))
            except Exception as e:
                raise HookError(f"Pre-process hook failed for {label}: {e}") from e
        try:
            result = await maybe_await(op(value))
        except Exception as e:
            raise OperationError(f"Operation {label} failed: {e}") from e
        if post_hooks is not None:
            try:
                result = await maybe_await(post_hooks(result, vars))
            except Exception as e:
                raise HookError(f"Post-process hook failed for {label}: {e}") from e
        if result is None:
            return
        if multi_value and isinstance(result, (list, tuple)):
            for item in result:
                await write(item)
        else:
            await write(result)

    records = await field_parser(ins, process, separator)
    logger.debug("Transform %s: %d records in, %d lines out", label, records, written)
    return written


async def record_transformer(
    ins: AsyncIterable[Chunk] | Iterable[Chunk],
    outs: Sink,
    op: OperationFn,
    ns: str | None = None,
    name: str | None = None,
    vars: Any = None,
    *,
    multi_value: bool = False,
    separator: int = NUL,
    hooks: HookRegistry | None = None,
) -> int:
    """Multi-record input transformer.

    Extracts each record from the input, processes it with op and writes
    the result to the output sink.

    Args:
        ins: A readable input stream
        outs: A sink for the output
        op: Processing operation, sync or async; invoked once per record
        ns: Namespace for operation hook calls
        name: Name for operation hook calls
        vars: Context variables passed to hook calls
        multi_value: If True, op is one-to-many and a returned list is
            written as one output line per item
        separator: The record separator byte; defaults to 0x0
        hooks: Registry to look up operation hooks in

    Returns:
        Number of output lines written
    """
    return await _run_transform(
        ins,
        outs,
        op,
        ns,
        name,
        vars,
        separator=separator,
        multi_value=multi_value,
        hooks=hooks,
    )


async def line_transformer(
    ins: AsyncIterable[Chunk] | Iterable[Chunk],
    outs: Sink,
    op: OperationFn,
    ns: str | None = None,
    name: str | None = None,
    vars: Any = None,
    multi_value: bool = False,
    *,
    hooks: HookRegistry | None = None,
) -> int:
    """Multi-line input transformer; see record_transformer()."""
    return await record_transformer(
        ins,
        outs,
        op,
        ns,
        name,
        vars,
        multi_value=multi_value,
        separator=NEWLINE,
        hooks=hooks,
    )


def _decode_json_line(line: str) -> Any:
    # Skip empty lines
    if not line:
        return SKIP
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON line: {e}") from e


async def jsonl_transformer(
    ins: AsyncIterable[Chunk] | Iterable[Chunk],
    outs: Sink,
    op: OperationFn,
    ns: str | None = None,
    name: str | None = None,
    vars: Any = None,
    *,
    hooks: HookRegistry | None = None,
) -> int:
    """JSON lines transformer.

    Each non-empty input line is parsed as JSON and passed to op; hooks
    see the decoded values. Results are always written as JSON.
    """
    return await _run_transform(
        ins,
        outs,
        op,
        ns,
        name,
        vars,
        separator=NEWLINE,
        multi_value=False,
        hooks=hooks,
        decode=_decode_json_line,
        tag=as_json_output,
    )
