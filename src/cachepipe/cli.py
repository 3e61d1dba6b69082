"""cachepipe CLI for running configured pipelines - Tyro implementation."""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Annotated, Any

import attrs
import tyro
from rich import print
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cachepipe.config import CONFIG_FILE_NAME, CachePipeConfig, clear_config_instance, get_config
from cachepipe.errors import PipelineError
from cachepipe.pipeline import NO_CONTENT, Pipeline, PipelineInvoker, StepResult


# Subcommand definitions using attrs
@attrs.define
class Run:
    """Run a named pipeline and write its result to stdout."""

    name: Annotated[str, tyro.conf.Positional]
    """Pipeline name, as configured under 'pipelines'."""

    var: Annotated[list[str], tyro.conf.arg(aliases=["-v"])] = attrs.Factory(list)
    """Invocation arguments as key=value pairs."""


@attrs.define
class Status:
    """Show each step's cache file and whether it is cached."""

    name: Annotated[str, tyro.conf.Positional]
    """Pipeline name, as configured under 'pipelines'."""

    var: Annotated[list[str], tyro.conf.arg(aliases=["-v"])] = attrs.Factory(list)
    """Invocation arguments as key=value pairs."""

    json: bool = False
    """Output status as JSON."""


@attrs.define
class ShowConfig:
    """Show the effective configuration."""


Command = (
    Annotated[Run, tyro.conf.subcommand(name="run")]
    | Annotated[Status, tyro.conf.subcommand(name="status")]
    | Annotated[ShowConfig, tyro.conf.subcommand(name="config")]
)


def setup_logging() -> None:
    """Configure logging with 100-character text width."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)-20s - %(levelname)-8s - %(message).100s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def parse_vars(pairs: list[str]) -> dict[str, str]:
    """Parse key=value arguments.

    Raises:
        ValueError: If an argument has no '='
    """
    result: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected key=value, got '{pair}'")
        key, value = pair.split("=", 1)
        result[key.strip()] = value
    return result


def load_invoker(config: CachePipeConfig, name: str) -> PipelineInvoker:
    """Import a configured pipeline and register configured hooks on it.

    Raises:
        KeyError: If no pipeline is configured under name
        TypeError: If the import path doesn't name a pipeline
    """
    target = config.load_pipeline(name)
    if isinstance(target, Pipeline):
        target = target.done()
    if not isinstance(target, PipelineInvoker):
        raise TypeError(f"Pipeline '{name}' is a {type(target).__name__}, not a Pipeline")
    config.register_hooks(target.pipeline.hooks)
    return target


async def run_pipeline(invoke: PipelineInvoker, kwargs: dict[str, Any], out: Any) -> bool:
    """Invoke a pipeline and copy its result to a binary stream.

    Returns:
        False if the pipeline produced no content
    """
    result = await invoke(**kwargs)
    if result is NO_CONTENT:
        return False
    if not isinstance(result, StepResult):
        out.write(json.dumps(result, default=str).encode("utf-8") + b"\n")
        return True
    ins = await result.readable()
    try:
        async for chunk in ins:
            out.write(chunk)
    finally:
        await ins.aclose()
    out.flush()
    await result.wait()
    return True


def handle_run(config: CachePipeConfig, cmd: Run) -> None:
    """Handle the run subcommand."""
    try:
        invoke = load_invoker(config, cmd.name)
        kwargs = parse_vars(cmd.var)
        produced = asyncio.run(run_pipeline(invoke, kwargs, sys.stdout.buffer))
    except Exception as e:
        print(f"[red]Error:[/red] {escape(str(e))}", file=sys.stderr)
        sys.exit(1)
    if not produced:
        print(f"[yellow]Pipeline '{cmd.name}' has no content for these arguments[/yellow]", file=sys.stderr)
        sys.exit(1)


def show_status(config: CachePipeConfig, cmd: Status) -> None:
    """Handle the status subcommand."""
    try:
        invoke = load_invoker(config, cmd.name)
        kwargs = parse_vars(cmd.var)
        statuses = asyncio.run(invoke.plan(**kwargs))
    except (KeyError, TypeError, ValueError, ImportError, PipelineError) as e:
        print(f"[red]Error:[/red] {escape(str(e))}", file=sys.stderr)
        sys.exit(1)

    if statuses is NO_CONTENT:
        print(f"[yellow]Pipeline '{cmd.name}' has no content for these arguments[/yellow]")
        return

    if cmd.json:
        data = [
            {
                "index": status.index,
                "name": status.name,
                "path": str(status.path) if status.path else None,
                "cached": status.cached,
            }
            for status in statuses
        ]
        sys.stdout.write(json.dumps(data, indent=2) + "\n")
        return

    console = Console()
    table = Table(title=f"Pipeline: {cmd.name}")
    table.add_column("#", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Cache file")
    table.add_column("Status")
    for status in statuses:
        if status.path is None:
            state = "[dim]not cached[/dim]"
        elif status.cached:
            state = "[green]hit[/green]"
        else:
            state = "[yellow]miss[/yellow]"
        table.add_row(str(status.index), status.name, str(status.path or "-"), state)
    console.print(table)


def show_config(config: CachePipeConfig) -> None:
    """Handle the config subcommand."""
    console = Console()
    table = Table(title="cachepipe configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("config_path", str(config.config_path or "-"))
    table.add_row("cache_dir", str(config.cache_dir))
    table.add_row("debug", str(config.debug))
    table.add_row("chunk_size", str(config.chunk_size))
    table.add_row("max_buffered_chunks", str(config.max_buffered_chunks))
    table.add_row("default_mime_type", config.default_mime_type)
    for ext, mime_type in sorted(config.mime_types.items()):
        table.add_row(escape(f"mime_types[{ext}]"), mime_type)
    for entry in config.hooks:
        table.add_row("hook", f"{entry.namespace}.{entry.stage}-{entry.name} → {entry.hook}")
    for name, path in sorted(config.pipelines.items()):
        table.add_row(escape(f"pipelines[{name}]"), path)
    console.print(table)


def main(
    cmd: Annotated[Command, tyro.conf.arg(name="")],
    *,
    config_dir: Annotated[Path | None, tyro.conf.arg(help="Configuration directory")] = None,
) -> None:
    """cachepipe - disk-memoized streaming pipelines."""
    setup_logging()

    if config_dir is not None:
        os.environ["CACHEPIPE_CONFIG_DIR"] = str(config_dir)
        clear_config_instance()
        if not (config_dir / CONFIG_FILE_NAME).exists():
            print(f"[yellow]No {CONFIG_FILE_NAME} in {config_dir}, using defaults[/yellow]", file=sys.stderr)

    config = get_config()

    if isinstance(cmd, Run):
        handle_run(config, cmd)

    elif isinstance(cmd, Status):
        show_status(config, cmd)

    elif isinstance(cmd, ShowConfig):
        show_config(config)


def entry_point() -> None:
    """Entry point for the cachepipe command."""
    tyro.cli(main)


if __name__ == "__main__":
    entry_point()
