"""Data models for the gosh shell subsystem.

Provides enums and dataclasses shared by the extractor, the security
checker, the interpreter and the output protocol.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from typing import Any


class CommandSource(Enum):
    """Syntactic context a command was found in."""

    DIRECT = "direct"  # Top level or plain list member
    PIPELINE = "pipeline"  # Segment of a multi-command pipeline
    CMD_SUBST = "command_substitution"  # $(...) or backticks
    PROC_SUBST = "process_substitution"  # <(...) or >(...)
    SUBSHELL = "subshell"  # ( ... )
    TEST = "test"  # if/while condition, [ ], test
    CONTROL = "control_flow"  # if/for/while bodies

    def nest(self, inner: CommandSource) -> CommandSource:
        """Return the source of a construct nested inside this one.

        Substitutions and subshells always win and stick: once inside one,
        pipelines, tests and loop bodies keep the enclosing tag.
        """
        if inner in _STICKY_SOURCES:
            return inner
        if self in _STICKY_SOURCES:
            return self
        return inner


_STICKY_SOURCES = frozenset(
    {CommandSource.CMD_SUBST, CommandSource.PROC_SUBST, CommandSource.SUBSHELL}
)


class MatchMode(Enum):
    """How a pattern is compared against a command name or argument."""

    EXACT = "exact"
    PREFIX = "prefix"
    GLOB = "glob"
    REGEX = "regex"


@lru_cache(maxsize=256)
def compile_regex(pattern: str) -> re.Pattern[str]:
    """Compile a regex pattern, raising ValueError when it is invalid."""
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ValueError(f"invalid regex pattern {pattern!r}: {e}") from e


def match_pattern(pattern: str, value: str, mode: MatchMode) -> bool:
    """Check whether value matches pattern under the given mode."""
    if mode is MatchMode.EXACT:
        return value == pattern
    if mode is MatchMode.PREFIX:
        return value.startswith(pattern)
    if mode is MatchMode.GLOB:
        return fnmatch.fnmatchcase(value, pattern)
    if mode is MatchMode.REGEX:
        return compile_regex(pattern).search(value) is not None
    raise ValueError(f"unknown match mode: {mode!r}")


@dataclass(frozen=True)
class ExtractedCommand:
    """One simple-command invocation found in a script."""

    name: str
    args: list[str] = field(default_factory=list)
    envs: list[str] = field(default_factory=list)  # "KEY=VALUE" prefixes
    source: CommandSource = CommandSource.DIRECT
    position: int = 0  # Offset in the source text


@dataclass(frozen=True)
class ArgMatcher:
    """Matches one argument of a command.

    Attributes:
        position: Zero-based argument index, or -1 to match any argument.
        pattern: Pattern compared against the argument.
        mode: How the pattern is compared.
    """

    position: int
    pattern: str
    mode: MatchMode = MatchMode.EXACT

    def __post_init__(self) -> None:
        if self.mode is MatchMode.REGEX:
            compile_regex(self.pattern)

    def matches(self, args: list[str]) -> bool:
        if self.position < 0:
            return any(match_pattern(self.pattern, arg, self.mode) for arg in args)
        if self.position >= len(args):
            return False
        return match_pattern(self.pattern, args[self.position], self.mode)


@dataclass(frozen=True)
class CommandRule:
    """A blacklist or whitelist rule.

    A rule matches a command when the name matches, every argument
    matcher matches, and the command's source is one of the source
    filter entries (an empty filter accepts any source).

    Attributes:
        pattern: Pattern for the command name.
        mode: How the name pattern is compared.
        args_filter: Argument matchers, all of which must match.
        source_filter: Sources the rule is restricted to.
    """

    pattern: str
    mode: MatchMode = MatchMode.EXACT
    args_filter: tuple[ArgMatcher, ...] = ()
    source_filter: tuple[CommandSource, ...] = ()

    def __post_init__(self) -> None:
        if self.mode is MatchMode.REGEX:
            compile_regex(self.pattern)

    def with_args_filter(self, *matchers: ArgMatcher) -> CommandRule:
        """Return a copy of this rule with the argument matchers added."""
        return replace(self, args_filter=self.args_filter + tuple(matchers))

    def with_source_filter(self, *sources: CommandSource) -> CommandRule:
        """Return a copy of this rule restricted to the given sources."""
        return replace(self, source_filter=self.source_filter + tuple(sources))

    def matches(self, command: ExtractedCommand) -> bool:
        if not match_pattern(self.pattern, command.name, self.mode):
            return False
        if self.source_filter and command.source not in self.source_filter:
            return False
        return all(matcher.matches(command.args) for matcher in self.args_filter)

    def __str__(self) -> str:
        return self.pattern


class CommandOutputKind(Enum):
    """Kind of payload carried by captured command output."""

    TEXT = "text"
    VARS = "vars"
    JSON = "json"


@dataclass
class CommandOutput:
    """Parsed result of a command's captured stdout.

    Attributes:
        kind: Which payload was detected.
        text: The captured text, always the unmodified input.
        json: Decoded JSON value when kind is JSON.
        vars: Parsed variables when kind is VARS.
    """

    kind: CommandOutputKind
    text: str
    json: Any = None
    vars: dict[str, str] | None = None
