"""Command extraction from shell syntax trees.

Parses a script with bashlex and flattens it into the ordered list of
simple commands it would invoke. Each command is tagged with the
syntactic context it was found in so that security rules can be scoped
by origin. Nothing is executed.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any

import bashlex
import structlog
from bashlex.errors import ParsingError

from commkit.shell.errors import ShellParseError
from commkit.shell.models import CommandSource, ExtractedCommand

logger = structlog.get_logger(__name__)

# Commands whose only purpose is evaluating a condition
TEST_COMMANDS = frozenset({"[", "[[", "test"})

# Reserved words that open a condition or a body inside compound commands
_CONDITION_WORDS = frozenset({"if", "elif", "while", "until"})
_BODY_WORDS = frozenset({"then", "else", "do"})

# The word of a ${name:-word} style expansion
_EXPANSION_WORD_RE = re.compile(
    r"#?(?:[A-Za-z_][A-Za-z0-9_]*|[0-9]+|[@*#?$!-])(?::?[-=+?])(?P<word>.*)",
    re.DOTALL,
)
_SUBSTITUTION_MARKERS = ("$(", "`")


def is_blank_script(text: str) -> bool:
    """Check whether text holds nothing but whitespace and comments."""
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return False
    return True


def parse_script(text: str) -> list[Any]:
    """Parse shell text into bashlex nodes.

    Args:
        text: Script or command line.

    Returns:
        Top-level bashlex nodes, empty for blank or comment-only text.

    Raises:
        ShellParseError: If the text is not valid shell syntax.
    """
    if is_blank_script(text):
        return []
    try:
        nodes = bashlex.parse(text)
    except (ParsingError, NotImplementedError) as e:
        raise ShellParseError(f"parse command: {e}", source_text=text) from e
    logger.debug("script_parsed", nodes=len(nodes))
    return list(nodes)


def has_substitution(text: str) -> bool:
    """Check whether text may contain a command substitution."""
    return any(marker in text for marker in _SUBSTITUTION_MARKERS)


def parse_word(word: str) -> tuple[str, list[Any]]:
    """Parse a bare word on its own, as the argument of a no-op command.

    bashlex leaves the inside of ${...} unparsed, so the word of an
    expansion like ${X:-$(cmd)} is parsed again with this.

    Returns:
        The text that was parsed and its nodes. The word starts at
        offset 2 of the text.
    """
    text = ": " + word
    return text, parse_script(text)


def expansion_word(value: str) -> str | None:
    """Word of a ${name<op>word} expansion body, None when it has no operator."""
    match = _EXPANSION_WORD_RE.fullmatch(value)
    return match.group("word") if match else None


def _children(node: Any) -> Iterator[Any]:
    yield from getattr(node, "parts", None) or []
    output = getattr(node, "output", None)
    if hasattr(output, "kind"):
        yield output


class CommandExtractor:
    """Extracts simple commands from shell scripts.

    Commands are emitted depth-first, left to right. The commands inside
    a substitution come right after the command that references them,
    so `echo $(echo $(rm -rf /))` yields echo, echo, rm.
    """

    def extract(self, text: str) -> list[ExtractedCommand]:
        """Parse text and extract every command it invokes.

        Args:
            text: Script or command line.

        Returns:
            Ordered list of extracted commands.

        Raises:
            ShellParseError: If the text is not valid shell syntax, or
                if a here-document body holds a command substitution.
        """
        return self.extract_nodes(parse_script(text))

    def extract_nodes(self, nodes: list[Any]) -> list[ExtractedCommand]:
        """Extract commands from already parsed bashlex nodes."""
        commands: list[ExtractedCommand] = []
        for node in nodes:
            self._visit(node, CommandSource.DIRECT, commands)
        return commands

    def _visit(self, node: Any, source: CommandSource, out: list[ExtractedCommand]) -> None:
        kind = node.kind
        if kind == "command":
            self._visit_command(node, source, out)
        elif kind == "pipeline":
            segments = [p for p in node.parts if p.kind not in ("pipe", "reservedword")]
            inner = source.nest(CommandSource.PIPELINE) if len(segments) > 1 else source
            for segment in segments:
                self._visit(segment, inner, out)
        elif kind == "list":
            for part in node.parts:
                self._visit(part, source, out)
        elif kind == "compound":
            self._visit_compound(node, source, out)
        elif kind in ("if", "while", "until"):
            self._visit_clauses(node, source, out)
        elif kind == "for":
            self._visit_for(node, source, out)
        elif kind == "function":
            self._visit(node.body, source, out)
        elif kind in ("operator", "reservedword", "pipe"):
            return
        else:
            self._visit_substitutions(node, source, out)

    def _visit_command(self, node: Any, source: CommandSource, out: list[ExtractedCommand]) -> None:
        envs: list[str] = []
        words: list[str] = []
        for part in node.parts:
            if part.kind == "assignment":
                envs.append(part.word)
            elif part.kind == "word" and part.word:
                words.append(part.word)

        if words:
            name = words[0]
            command_source = source.nest(CommandSource.TEST) if name in TEST_COMMANDS else source
            out.append(
                ExtractedCommand(
                    name=name,
                    args=words[1:],
                    envs=envs,
                    source=command_source,
                    position=node.pos[0],
                )
            )

        for part in node.parts:
            self._visit_substitutions(part, source, out)

    def _visit_compound(self, node: Any, source: CommandSource, out: list[ExtractedCommand]) -> None:
        items = node.list
        opener = items[0].word if items and items[0].kind == "reservedword" else "{"
        inner = source.nest(CommandSource.SUBSHELL) if opener == "(" else source
        for item in items:
            self._visit(item, inner, out)
        for redirect in getattr(node, "redirects", None) or []:
            self._visit_substitutions(redirect, source, out)

    def _visit_clauses(self, node: Any, source: CommandSource, out: list[ExtractedCommand]) -> None:
        role = CommandSource.TEST
        for part in node.parts:
            if part.kind == "reservedword":
                if part.word in _CONDITION_WORDS:
                    role = CommandSource.TEST
                elif part.word in _BODY_WORDS:
                    role = CommandSource.CONTROL
                continue
            self._visit(part, source.nest(role), out)

    def _visit_for(self, node: Any, source: CommandSource, out: list[ExtractedCommand]) -> None:
        in_body = False
        for part in node.parts:
            if part.kind == "reservedword":
                if part.word == "do":
                    in_body = True
                elif part.word == "done":
                    in_body = False
                continue
            if in_body:
                self._visit(part, source.nest(CommandSource.CONTROL), out)
            elif part.kind == "word":
                self._visit_substitutions(part, source, out)

    def _visit_substitutions(self, node: Any, source: CommandSource, out: list[ExtractedCommand]) -> None:
        if node.kind == "redirect" and getattr(node, "heredoc", None) is not None:
            _check_heredoc(node)
        for child in _children(node):
            if child.kind == "commandsubstitution":
                self._visit(child.command, source.nest(CommandSource.CMD_SUBST), out)
            elif child.kind == "processsubstitution":
                self._visit(child.command, source.nest(CommandSource.PROC_SUBST), out)
            elif child.kind == "parameter":
                self._visit_expansion(child, source, out)
            else:
                self._visit_substitutions(child, source, out)

    def _visit_expansion(self, node: Any, source: CommandSource, out: list[ExtractedCommand]) -> None:
        word = expansion_word(node.value)
        if word is None or not has_substitution(word):
            return
        _, nodes = parse_word(word)
        for parsed in nodes:
            self._visit_substitutions(parsed, source, out)


def _check_heredoc(redirect: Any) -> None:
    # A quoted delimiter turns expansion off inside the body
    delimiter = redirect.output.word
    if any(q in delimiter for q in "'\"\\"):
        return
    if has_substitution(redirect.heredoc.value):
        raise ShellParseError(
            "command substitution in a here-document is not supported",
            source_text=redirect.heredoc.value,
        )


def extract_commands(text: str) -> list[ExtractedCommand]:
    """Extract commands from text with a default extractor."""
    return CommandExtractor().extract(text)
