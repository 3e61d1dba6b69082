"""Disk-memoized multi-step pipelines.

This package implements the step/pipeline engine:
- Pipeline: builder for an ordered sequence of steps
- StepResult: per-invocation outcome of a step, served from its cache
  file when present, otherwise computed and teed to the cache file
- HookRegistry: pre/post hooks around transformer operations
"""

from cachepipe.pipeline.hook import HookRegistry, HookStage
from cachepipe.pipeline.result import ResultState, StepResult
from cachepipe.pipeline.step import NO_CONTENT, Pipeline, PipelineInvoker, Step, StepStatus

__all__ = [
    "HookRegistry",
    "HookStage",
    "NO_CONTENT",
    "Pipeline",
    "PipelineInvoker",
    "ResultState",
    "Step",
    "StepResult",
    "StepStatus",
]
