"""cachepipe - disk-memoized streaming data pipelines."""

from cachepipe.errors import (
    CacheIOError,
    CachePathError,
    HookError,
    NoResultAvailable,
    OperationError,
    ParseError,
    PipelineError,
    StreamClosedError,
)
from cachepipe.parsers import field_parser, line_parser
from cachepipe.pipeline import (
    NO_CONTENT,
    HookRegistry,
    HookStage,
    Pipeline,
    PipelineInvoker,
    ResultState,
    Step,
    StepResult,
)
from cachepipe.transformers import (
    EncodeAsJSON,
    TextLine,
    jsonl_transformer,
    line_transformer,
    record_transformer,
)

__all__ = [
    "CacheIOError",
    "CachePathError",
    "EncodeAsJSON",
    "HookError",
    "HookRegistry",
    "HookStage",
    "NO_CONTENT",
    "NoResultAvailable",
    "OperationError",
    "ParseError",
    "Pipeline",
    "PipelineError",
    "PipelineInvoker",
    "ResultState",
    "Step",
    "StepResult",
    "StreamClosedError",
    "TextLine",
    "field_parser",
    "jsonl_transformer",
    "line_parser",
    "line_transformer",
    "record_transformer",
]
