"""Multi-step data processing pipelines.

A pipeline is an ordered sequence of steps. Each step has a processing
function and, optionally, a cache path template. Invoking the pipeline
evaluates the last step; a step whose cache file exists is served from
that file, otherwise its input is taken from the preceding step, which
is evaluated the same way. Repeated invocations with the same arguments
therefore only recompute from the most recent cached step onwards.

Example:
    pipeline = (
        Pipeline("/var/cache/feeds", namespace="feeds")
        .init(lambda account, feed: {"account": account, "feed": feed})
        .open(download_feed, "{account}/{feed}/raw.jsonl")
        .transform(normalize, "normalize", "{account}/{feed}/normal.jsonl", kind="jsonl")
    )
    invoke = pipeline.done()
    result = await invoke("acme", "news")
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from cachepipe.config import CachePipeConfig, get_config
from cachepipe.errors import PipelineError
from cachepipe.parsers import NEWLINE, NUL
from cachepipe.pipeline.hook import HookRegistry
from cachepipe.pipeline.result import StepFn, StepResult
from cachepipe.streams import Readable, Sink
from cachepipe.transformers import jsonl_transformer, record_transformer
from cachepipe.utils import maybe_await

logger = logging.getLogger(__name__)

TransformKind = Literal["lines", "jsonl", "records"]


class _NoContent:
    """Returned by an init function when a request has no content."""

    _instance: _NoContent | None = None

    def __new__(cls) -> _NoContent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_CONTENT"


NO_CONTENT = _NoContent()


def _default_init(*args: Any, **kwargs: Any) -> dict[str, Any]:
    return dict(kwargs)


def _default_post(vars: Any, result: StepResult) -> StepResult:
    return result


@dataclass(frozen=True)
class Step:
    """A pipeline processing step.

    Attributes:
        index: Position of the step in its pipeline
        fn: The step function, called as fn(vars, outs, ins)
        cache_path: Cache file path template, or None if the step's
            results aren't cached
        name: Step name for logs and status output
    """

    index: int
    fn: StepFn
    cache_path: str | None = None
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or getattr(self.fn, "__name__", None) or f"step{self.index}"


@dataclass(frozen=True)
class StepStatus:
    """Cache status of one step for a given set of invocation variables."""

    index: int
    name: str
    path: Path | None
    cached: bool


class PipelineInvoker:
    """Callable returned by Pipeline.done().

    Calling it runs the pipeline's init function with the call arguments
    and returns the (post-processed) result of the last step, or
    NO_CONTENT.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        steps: Sequence[Step],
        post: Callable[[Any, StepResult], Any],
    ) -> None:
        self.pipeline = pipeline
        self._steps = tuple(steps)
        self._post = post

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    async def vars(self, *args: Any, **kwargs: Any) -> Any:
        """Generate invocation variables by applying the init function."""
        vars = await maybe_await(self.pipeline._init(*args, **kwargs))
        return {} if vars is None else vars

    def result(self, index: int, vars: Any, config: CachePipeConfig | None = None) -> StepResult:
        """Build the result for the step at index.

        The result reaches its upstream lazily, through the step at
        index - 1.
        """
        if config is None:
            config = self.pipeline.config
        step = self._steps[index]
        upstream = functools.partial(self.result, index - 1, vars, config) if index > 0 else None
        return StepResult(
            self.pipeline.cache_path(step.cache_path, config),
            vars,
            step.fn,
            upstream,
            config=config,
            label=step.label,
        )

    async def __call__(self, *args: Any, **kwargs: Any) -> Any:
        vars = await self.vars(*args, **kwargs)
        # No content associated with the request
        if vars is NO_CONTENT:
            logger.debug("Pipeline init returned no content")
            return NO_CONTENT
        # Invoke the last step; it delegates to preceding steps as necessary
        result = self.result(len(self._steps) - 1, vars)
        return await maybe_await(self._post(vars, result))

    async def plan(self, *args: Any, **kwargs: Any) -> list[StepStatus] | _NoContent:
        """Report each step's cache path and whether it is cached.

        Nothing is computed; only the init function is run.
        """
        vars = await self.vars(*args, **kwargs)
        if vars is NO_CONTENT:
            return NO_CONTENT
        statuses = []
        for index in range(len(self._steps)):
            result = self.result(index, vars)
            statuses.append(StepStatus(index, self._steps[index].label, result.path, await result.cached()))
        return statuses


class Pipeline:
    """A multi-step data processing pipeline builder."""

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        *,
        namespace: str = "",
        hooks: HookRegistry | None = None,
        config: CachePipeConfig | None = None,
    ) -> None:
        """Construct a new pipeline.

        Args:
            cache_dir: The directory relative cache paths are resolved
                against; defaults to the configured cache_dir
            namespace: Hook namespace for the pipeline's transform steps
            hooks: Hook registry; a new empty registry if not given
            config: Settings; defaults to the global configuration
        """
        self._cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.namespace = namespace
        self.hooks = hooks if hooks is not None else HookRegistry()
        self._config = config
        self._steps: list[Step] = []
        self._init: Callable[..., Any] = _default_init

    @property
    def config(self) -> CachePipeConfig:
        return self._config if self._config is not None else get_config()

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(self._steps)

    def cache_path(self, template: str | None, config: CachePipeConfig | None = None) -> str | None:
        """Join a cache path template to the pipeline's cache directory."""
        if not template:
            return None
        if self._cache_dir is not None:
            cache_dir = self._cache_dir
        else:
            cache_dir = (config if config is not None else self.config).cache_dir
        return str(Path(cache_dir) / template)

    def init(self, fn: Callable[..., Any]) -> Pipeline:
        """Set the pipeline init function.

        Called once at the start of every invocation with the invocation
        arguments; returns the invocation variables, or NO_CONTENT.
        """
        self._init = fn
        return self

    def open(self, fn: StepFn, cache_path: str | None = None, *, name: str | None = None) -> Pipeline:
        """Open the pipeline with its first step.

        A synonym for step(); the first step receives no input stream.
        """
        return self.step(fn, cache_path, name=name)

    def step(self, fn: StepFn, cache_path: str | None = None, *, name: str | None = None) -> Pipeline:
        """Add a processing step to the pipeline.

        Args:
            fn: The step function, called as fn(vars, outs, ins) where
                vars are the invocation variables, outs is the sink to
                write the step's output to and ins is a readable stream
                of the preceding step's output (None for the first step).
                The output is closed when fn returns.
            cache_path: Cache file path template, resolved against the
                invocation variables. The step's output is written to
                this file, and later invocations resolving to the same
                path read the file instead of running the step. If
                omitted the step's results aren't cached.
            name: Step name for logs and status output
        """
        self._steps.append(Step(len(self._steps), fn, cache_path, name))
        return self

    def transform(
        self,
        op: Callable[[Any], Any],
        name: str,
        cache_path: str | None = None,
        *,
        kind: TransformKind = "lines",
        multi_value: bool = False,
        separator: int | None = None,
    ) -> Pipeline:
        """Add a step transforming the preceding step's output record by record.

        The operation's hooks are looked up under the pipeline namespace
        and the given name.

        Args:
            op: The transformer operation
            name: Operation name, used for hook lookup
            cache_path: Cache file path template
            kind: 'lines', 'jsonl' or 'records'
            multi_value: Write list results as one line per item
                (lines and records only)
            separator: Record separator byte for 'records'

        Raises:
            ValueError: If kind is unknown, or separator is given for
                'lines' or 'jsonl'
        """
        if kind not in ("lines", "jsonl", "records"):
            raise ValueError(f"Unknown transform kind: {kind}")
        if separator is not None and kind != "records":
            raise ValueError(f"separator only applies to 'records' transforms, not '{kind}'")
        if kind == "lines":
            separator = NEWLINE
        elif separator is None:
            separator = NUL

        async def transform_step(vars: Any, outs: Sink, ins: Readable | None) -> None:
            if ins is None:
                raise PipelineError(f"Transform step '{name}' has no input")
            if kind == "jsonl":
                await jsonl_transformer(ins, outs, op, self.namespace, name, vars, hooks=self.hooks)
            else:
                await record_transformer(
                    ins,
                    outs,
                    op,
                    self.namespace,
                    name,
                    vars,
                    multi_value=multi_value,
                    separator=separator,
                    hooks=self.hooks,
                )

        return self.step(transform_step, cache_path, name=name)

    def done(self, fn: Callable[[Any, StepResult], Any] = _default_post) -> PipelineInvoker:
        """Indicate that the pipeline is complete.

        Args:
            fn: Modifies or annotates the result returned by the
                pipeline; passed (vars, result)

        Returns:
            A function for invoking the pipeline

        Raises:
            PipelineError: If the pipeline has no steps
        """
        if not self._steps:
            raise PipelineError("Pipeline must have at least one processing step")
        logger.debug(
            "Pipeline %s: %s",
            self.namespace or "<unnamed>",
            " → ".join(step.label for step in self._steps),
        )
        return PipelineInvoker(self, self._steps, fn)

