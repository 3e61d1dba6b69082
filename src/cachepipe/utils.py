"""Small collaborators used by the pipeline engine.

- Cache path template resolution against invocation variables
- MIME type lookup by file extension
- Directory creation for cache files
"""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from cachepipe.errors import CachePathError

# MIME types for cache files, keyed by extension
MIME_TYPES: dict[str, str] = {
    ".json": "application/json",
    ".jsonl": "application/x-jsonlines",
    ".zip": "application/zip",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")


async def maybe_await(value: Any) -> Any:
    """Await value if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


def _lookup(vars: Any, expr: str) -> Any:
    value = vars
    for part in expr.strip().split("."):
        if isinstance(value, Mapping):
            if part not in value:
                raise KeyError(part)
            value = value[part]
        elif hasattr(value, part):
            value = getattr(value, part)
        else:
            raise KeyError(part)
    return value


def resolve_path(template: str | Path, vars: Any = None) -> str:
    """Resolve a cache path template against invocation variables.

    Placeholders take the form ``{name}`` or ``{a.b}``; dotted names walk
    nested mappings or attributes.

    Args:
        template: Path template, e.g. ``"feeds/{account}/{feed}.jsonl"``
        vars: Invocation variables (mapping or object)

    Returns:
        The resolved path

    Raises:
        CachePathError: If a placeholder names an unknown variable
    """
    template = str(template)
    vars = {} if vars is None else vars

    def replace(match: re.Match[str]) -> str:
        expr = match.group(1)
        try:
            value = _lookup(vars, expr)
        except KeyError as e:
            raise CachePathError(f"Unknown variable '{expr}' in cache path '{template}'") from e
        return str(value)

    return _PLACEHOLDER.sub(replace, template)


def mime_type_for(
    path: str | Path,
    extra: Mapping[str, str] | None = None,
    default: str = DEFAULT_MIME_TYPE,
) -> str:
    """Return the MIME type for a cache file path."""
    ext = Path(path).suffix.lower()
    if extra and ext in extra:
        return extra[ext]
    return MIME_TYPES.get(ext, default)


async def ensure_dir_for_file(path: str | Path) -> None:
    """Create the parent directory of path if it doesn't exist."""
    parent = Path(path).parent
    await asyncio.to_thread(parent.mkdir, parents=True, exist_ok=True)
