"""In-process command handlers.

A handler replaces a real executable when the interpreter runs a command
whose name matches a registered pattern. Handlers receive a
HandlerContext with the command's stdio streams, environment and
working directory, plus the arguments after the command name.
"""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, TextIO

import structlog

from commkit.shell.models import MatchMode, compile_regex, match_pattern

logger = structlog.get_logger(__name__)


class DevNull(io.TextIOBase):
    """Text stream that discards writes and is always at EOF."""

    def readable(self) -> bool:
        return True

    def writable(self) -> bool:
        return True

    def read(self, size: int | None = -1) -> str:
        return ""

    def readline(self, size: int | None = -1) -> str:
        return ""

    def write(self, s: str) -> int:
        return len(s)

    def close(self) -> None:
        pass


@dataclass
class HandlerContext:
    """Execution context passed to a handler.

    Attributes:
        name: Command name the handler was matched for.
        stdin: Input stream of the command.
        stdout: Output stream of the command.
        stderr: Error stream of the command.
        env: Environment of the command.
        dir: Working directory of the command.
        cancel: Event set when the run is cancelled.
    """

    name: str = ""
    stdin: TextIO = field(default_factory=lambda: io.StringIO(""))
    stdout: TextIO = field(default_factory=io.StringIO)
    stderr: TextIO = field(default_factory=io.StringIO)
    env: dict[str, str] = field(default_factory=dict)
    dir: str = ""
    cancel: threading.Event | None = None


Handler = Callable[[HandlerContext, list[str]], "int | None"]


@dataclass
class HandlerEntry:
    """A registered handler and how it is matched."""

    pattern: str
    handler: Handler
    match_mode: MatchMode = MatchMode.EXACT
    priority: int = 0
    description: str = ""

    def matches(self, name: str) -> bool:
        return match_pattern(self.pattern, name, self.match_mode)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "match_mode": self.match_mode.value,
            "priority": self.priority,
            "description": self.description,
        }


class HandlerRegistry:
    """Registry mapping command names to in-process handlers.

    Entries are tried from the highest priority down; entries with equal
    priority are tried in registration order.
    """

    def __init__(self) -> None:
        self._entries: list[HandlerEntry] = []
        self._lock = threading.RLock()

    def register(
        self,
        pattern: str,
        handler: Handler,
        priority: int = 0,
        match_mode: MatchMode = MatchMode.EXACT,
        description: str = "",
    ) -> HandlerRegistry:
        """Register a handler.

        Args:
            pattern: Pattern for command names.
            handler: Callable invoked instead of the executable.
            priority: Higher priorities are tried first.
            match_mode: How the pattern is compared to names.
            description: Human-readable description.

        Returns:
            The registry, for chaining.

        Raises:
            ValueError: If a regex pattern does not compile.
        """
        if match_mode is MatchMode.REGEX:
            compile_regex(pattern)
        entry = HandlerEntry(pattern, handler, match_mode, priority, description)
        with self._lock:
            self._entries.append(entry)
            self._entries.sort(key=lambda e: -e.priority)
        return self

    def match(self, name: str) -> Handler | None:
        """Find the handler for a command name, or None."""
        with self._lock:
            for entry in self._entries:
                if entry.matches(name):
                    return entry.handler
        return None

    def list(self) -> list[HandlerEntry]:
        with self._lock:
            return list(self._entries)

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.count()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def copy(self) -> HandlerRegistry:
        """Return an independent registry with the same entries."""
        registry = HandlerRegistry()
        with self._lock:
            registry._entries = list(self._entries)
        return registry


def match_handler(registry: HandlerRegistry | None, name: str) -> Handler | None:
    """Look up name in registry, tolerating a missing registry."""
    if registry is None:
        return None
    return registry.match(name)


def call_handler(handler: Handler, ctx: HandlerContext, args: list[str]) -> int:
    """Invoke a handler and normalize its exit status."""
    logger.debug("handler_dispatched", command=ctx.name, args=len(args))
    status = handler(ctx, args)
    return 0 if status is None else int(status)
