"""Transformer operation hooks.

Hooks are organized as <namespace>.<stage>-<name>, where:
- namespace groups commonly named hooks across multiple pipelines; it is
  given when a pipeline is created
- stage is either 'pre' or 'post'
- name is the operation name, given when a step is defined

A hook is called as ``hook(value, vars)`` and returns the new value;
it may be sync or async.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from enum import Enum
from typing import Any

from cachepipe.utils import maybe_await

logger = logging.getLogger(__name__)

HookFn = Callable[[Any, Any], Any]


class HookStage(str, Enum):
    """Point at which a hook intercepts a transformer operation."""

    PRE = "pre"  # Before the operation, receives its input
    POST = "post"  # After the operation, receives its result


def identity(value: Any, vars: Any = None) -> Any:
    """Hook composite used when no hooks are registered."""
    return value


class HookRegistry:
    """Registry of transformer operation hooks.

    Populated at startup, then only read while pipelines run.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, dict[str, list[HookFn]]] = defaultdict(dict)

    @staticmethod
    def _key(stage: HookStage | str, name: str) -> str:
        return f"{HookStage(stage).value}-{name}"

    def register(self, ns: str, stage: HookStage | str, name: str, hook: HookFn) -> None:
        """Register a transformer operation hook.

        Args:
            ns: The hook namespace
            stage: The step stage, i.e. 'pre' or 'post'
            name: The operation name
            hook: The hook function

        Raises:
            ValueError: If stage is not 'pre' or 'post'
        """
        key = self._key(stage, name)
        self._hooks[ns].setdefault(key, []).append(hook)
        logger.debug("Registered hook %s.%s: %s", ns, key, getattr(hook, "__name__", hook))

    def hook(self, ns: str, stage: HookStage | str, name: str) -> Callable[[HookFn], HookFn]:
        """Decorator form of register().

        Example:
            @registry.hook("feeds", "post", "normalize")
            def add_timestamp(record, vars):
                ...
        """

        def decorator(fn: HookFn) -> HookFn:
            self.register(ns, stage, name, fn)
            return fn

        return decorator

    def hooks(self, ns: str, stage: HookStage | str, name: str) -> tuple[HookFn, ...]:
        """Return the hooks registered for an operation, in registration order."""
        return tuple(self._hooks.get(ns, {}).get(self._key(stage, name), ()))

    def compose(self, ns: str | None, stage: HookStage | str, name: str | None) -> HookFn:
        """Return a single function invoking all hooks for an operation.

        - No hooks: the identity function
        - One hook: that hook
        - Several hooks: an async function calling each in registration
          order, passing each result to the next hook
        """
        if ns is None or name is None:
            return identity
        hooks = self.hooks(ns, stage, name)
        if not hooks:
            return identity
        if len(hooks) == 1:
            return hooks[0]

        async def call_hooks(value: Any, vars: Any = None) -> Any:
            for hook in hooks:
                value = await maybe_await(hook(value, vars))
            return value

        return call_hooks

    def clear(self) -> None:
        """Remove all registered hooks (for testing)."""
        self._hooks.clear()

    def __len__(self) -> int:
        return sum(len(hooks) for ns in self._hooks.values() for hooks in ns.values())
