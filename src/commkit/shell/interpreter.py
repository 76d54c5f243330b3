"""Embedded shell interpreter over bashlex syntax trees.

Runs the subset of POSIX sh that scripts handed to gosh rely on:
- Lists (;, &&, ||), pipelines and negation
- if/elif/else, for, while and until with break/continue
- { } groups, ( ) subshells and functions with positional parameters
- Parameter and command substitution, quoting, field splitting, globbing
- File redirections through a pluggable open handler
- A small set of builtins

Every other command goes to the exec handler, which decides whether
to run a registered handler or a real executable.
"""

from __future__ import annotations

import copy
import glob
import io
import os
import re
import shutil
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import IO, Any, TextIO

import structlog

from commkit.shell.errors import (
    CommandCancelledError,
    CommandExecutionError,
    ShellError,
)
from commkit.shell.extractor import TEST_COMMANDS, has_substitution, parse_script, parse_word
from commkit.shell.handlers import DevNull, HandlerContext
from commkit.shell.models import CommandSource
from commkit.shell.process import close_pipe, stream_process

logger = structlog.get_logger(__name__)

ExecHandler = Callable[[HandlerContext, list[str], CommandSource], int]
OpenHandler = Callable[[str, str], IO[str]]

__all__ = [
    "ExecHandler",
    "OpenHandler",
    "ShellInterpreter",
    "default_exec_handler",
    "default_open_handler",
    "parse_script",
]

_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_SPECIAL_PARAMS = "0123456789@*#?$!-"
_PARAM_EXPR_RE = re.compile(
    r"(?P<length>#?)(?P<name>[A-Za-z_][A-Za-z0-9_]*|[0-9]+|[@*#?$!-])"
    r"(?:(?P<op>:?[-=+?])(?P<word>.*))?",
    re.DOTALL,
)
_IFS_RE = re.compile(r"[ \t\n]+")
_GLOB_CHARS = frozenset("*?[")
_DOUBLE_QUOTE_ESCAPES = frozenset('$`"\\\n')
_NULL_DEVICES = frozenset({os.devnull, "/dev/null"})
# Expansions that give one field per positional parameter inside double quotes
_ALL_PARAMS = ("$@", "${@}")
# Exit status of a stage that wrote to a pipe nobody reads
_SIGPIPE_STATUS = 128 + 13


def default_open_handler(path: str, mode: str) -> IO[str]:
    """Open a redirection target; the null device never touches disk."""
    if path in _NULL_DEVICES:
        return DevNull()
    return open(path, mode, encoding="utf-8")


def default_exec_handler(kill_timeout: float | None) -> ExecHandler:
    """Build an exec handler that runs real executables.

    Args:
        kill_timeout: Seconds before a process is killed.

    Returns:
        Exec handler returning the process exit status.
    """

    def run_executable(ctx: HandlerContext, argv: list[str], source: CommandSource) -> int:
        path = _lookup_executable(argv[0], ctx)
        if path is None:
            ctx.stderr.write(f"{argv[0]}: command not found\n")
            return 127
        return stream_process(
            [path, *argv[1:]],
            stdin=ctx.stdin,
            stdout=ctx.stdout,
            stderr=ctx.stderr,
            cwd=ctx.dir or None,
            env=ctx.env,
            timeout=kill_timeout,
            cancel=ctx.cancel,
        )

    return run_executable


def _lookup_executable(name: str, ctx: HandlerContext) -> str | None:
    if os.sep in name or (os.altsep and os.altsep in name):
        path = name if os.path.isabs(name) else os.path.join(ctx.dir, name)
        return path if os.path.isfile(path) and os.access(path, os.X_OK) else None
    return shutil.which(name, path=ctx.env.get("PATH", os.defpath))


class _ExitSignal(Exception):
    def __init__(self, status: int):
        super().__init__(status)
        self.status = status


class _ReturnSignal(_ExitSignal):
    pass


class _LoopSignal(Exception):
    def __init__(self, kind: str):
        super().__init__(kind)
        self.kind = kind


class _Fields:
    """Accumulates the fields produced by expanding one word."""

    def __init__(self) -> None:
        self.fields: list[str] = []
        self.current: list[str] = []
        self.keep = False
        self.globbable = False

    def literal(self, text: str, quoted: bool = False) -> None:
        self.current.append(text)
        if quoted:
            self.keep = True

    def split(self, text: str) -> None:
        pieces = _IFS_RE.split(text)
        self.current.append(pieces[0])
        for piece in pieces[1:]:
            self.flush()
            self.current.append(piece)

    def spread(self, values: list[str]) -> None:
        """Add one quoted field per value, the way "$@" expands."""
        if not values:
            if not "".join(self.current):
                self.keep = False
            return
        self.current.append(values[0])
        for value in values[1:]:
            self.keep = True
            self.flush()
            self.current.append(value)
        self.keep = True

    def flush(self) -> None:
        value = "".join(self.current)
        if value or self.keep:
            self.fields.append(value)
        self.current = []
        self.keep = False


_Builtin = Callable[["ShellInterpreter", list[str]], int]
_BUILTINS: dict[str, _Builtin] = {}


def _builtin(*names: str) -> Callable[[_Builtin], _Builtin]:
    def register(func: _Builtin) -> _Builtin:
        for name in names:
            _BUILTINS[name] = func
        return func

    return register


class ShellInterpreter:
    """Interpreter for one script.

    The interpreter keeps the shell state (variables, functions, working
    directory, last status) for a single run. Subshells, pipeline stages
    and command substitutions run in shallow copies of it.

    Args:
        text: Script text the nodes were parsed from.
        env: Initial exported environment.
        dir: Working directory, defaults to the process cwd.
        exec_handler: Runs commands that are not functions or builtins.
        open_handler: Opens redirection targets.
        stdin: Script input stream.
        stdout: Script output stream.
        stderr: Script error stream.
        cancel: Event that aborts the run when set.
        errexit: Whether a failing command ends the script (sh -e).
    """

    def __init__(
        self,
        text: str,
        *,
        env: dict[str, str],
        exec_handler: ExecHandler,
        dir: str | None = None,
        open_handler: OpenHandler | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        cancel: threading.Event | None = None,
        errexit: bool = True,
    ):
        self.text = text
        self.vars: dict[str, str] = dict(env)
        self.exported: set[str] = set(env)
        self.cwd = os.path.abspath(dir or os.getcwd())
        self.exec_handler = exec_handler
        self.open_handler = open_handler or default_open_handler
        self.stdin: TextIO = stdin if stdin is not None else io.StringIO("")
        self.stdout: TextIO = stdout if stdout is not None else io.StringIO()
        self.stderr: TextIO = stderr if stderr is not None else io.StringIO()
        self.cancel = cancel
        self.errexit = errexit
        self.functions: dict[str, Any] = {}
        self.positional: list[str] = []
        self.status = 0
        self.source = CommandSource.DIRECT
        self._no_errexit = 0
        self._subst_status: int | None = None
        self.loop_depth = 0
        self.current_command = ""

    def run(self, nodes: list[Any]) -> None:
        """Run parsed nodes to completion.

        Raises:
            CommandExecutionError: If the script ends with a non-zero status.
            CommandCancelledError: If the cancel event was set.
        """
        try:
            for node in nodes:
                self._run_statement(node)
        except _ExitSignal as sig:
            self.status = sig.status
        if self.status != 0:
            raise CommandExecutionError(f"exit status {self.status}", exit_status=self.status)

    # Statements

    def _run_statement(self, node: Any) -> int:
        status = self._run_node(node)
        if node.kind in ("command", "compound") or (
            node.kind == "pipeline" and not _is_negated(node)
        ):
            self._errexit_check(status)
        return status

    def _errexit_check(self, status: int) -> None:
        if status != 0 and self.errexit and not self._no_errexit:
            raise _ExitSignal(status)

    @contextmanager
    def _errexit_suppressed(self) -> Iterator[None]:
        self._no_errexit += 1
        try:
            yield
        finally:
            self._no_errexit -= 1

    @contextmanager
    def _nested_source(self, inner: CommandSource) -> Iterator[None]:
        saved = self.source
        self.source = saved.nest(inner)
        try:
            yield
        finally:
            self.source = saved

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise CommandCancelledError("execution cancelled")

    def _run_node(self, node: Any) -> int:
        kind = node.kind
        if kind == "command":
            self._run_command(node)
        elif kind == "list":
            self._run_parts(node.parts)
        elif kind == "pipeline":
            self._run_pipeline(node)
        elif kind == "compound":
            self._run_compound(node)
        elif kind == "if":
            self._run_if(node)
        elif kind == "for":
            self._run_for(node)
        elif kind in ("while", "until"):
            self._run_loop(node)
        elif kind == "function":
            self.functions[node.name.word] = node.body
            self.status = 0
        elif kind not in ("operator", "reservedword", "pipe"):
            raise ShellError(f"unsupported shell construct: {kind}")
        return self.status

    def _run_parts(self, parts: list[Any]) -> None:
        items = [p for p in parts if p.kind != "reservedword"]
        operator = None
        for index, part in enumerate(items):
            if part.kind == "operator":
                operator = part.op
                continue
            if operator == "&&" and self.status != 0:
                continue
            if operator == "||" and self.status == 0:
                continue
            following = items[index + 1] if index + 1 < len(items) else None
            if following is not None and following.kind == "operator" and following.op in ("&&", "||"):
                with self._errexit_suppressed():
                    self._run_node(part)
            else:
                self._run_statement(part)

    def _run_sequence(self, nodes: list[Any]) -> None:
        self.status = 0
        self._run_parts(nodes)

    def _run_condition(self, nodes: list[Any]) -> int:
        with self._nested_source(CommandSource.TEST), self._errexit_suppressed():
            self._run_sequence(nodes)
        return self.status

    def _run_body(self, nodes: list[Any]) -> int:
        with self._nested_source(CommandSource.CONTROL):
            self._run_sequence(nodes)
        return self.status

    # Compound commands

    def _child(
        self,
        source: CommandSource,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> ShellInterpreter:
        child = copy.copy(self)
        child.vars = dict(self.vars)
        child.exported = set(self.exported)
        child.functions = dict(self.functions)
        child.positional = list(self.positional)
        child.source = source
        if stdin is not None:
            child.stdin = stdin
        if stdout is not None:
            child.stdout = stdout
        return child

    def _run_in_child(self, child: ShellInterpreter, nodes: list[Any]) -> int:
        try:
            child._run_parts(nodes)
        except _ExitSignal as sig:
            child.status = sig.status
        return child.status

    def _run_pipeline(self, node: Any) -> None:
        negate = False
        stages = []
        for part in node.parts:
            if part.kind == "reservedword" and part.word == "!":
                negate = True
            elif part.kind != "pipe":
                stages.append(part)

        if len(stages) == 1:
            if negate:
                with self._errexit_suppressed():
                    self._run_node(stages[0])
            else:
                self._run_node(stages[0])
        else:
            self.status = self._run_stages(stages)

        if negate:
            self.status = 0 if self.status else 1

    def _run_stages(self, stages: list[Any]) -> int:
        """Run pipeline stages at the same time, joined by OS pipes.

        Each stage closes its pipe ends when it finishes, so a producer
        whose reader is gone fails with a broken pipe (status 141) instead
        of running forever.
        """
        source = self.source.nest(CommandSource.PIPELINE)
        count = len(stages)
        statuses = [0] * count
        errors: list[BaseException | None] = [None] * count
        threads = []
        stdin: TextIO = self.stdin
        for index, stage in enumerate(stages):
            pipes: list[IO[str]] = [stdin] if index > 0 else []
            if index == count - 1:
                stdout, reader = self.stdout, None
            else:
                read_fd, write_fd = os.pipe()
                reader = open(read_fd, encoding="utf-8", errors="replace")
                stdout = open(write_fd, "w", encoding="utf-8", buffering=1)
                pipes.append(stdout)
            child = self._child(source, stdin=stdin, stdout=stdout)
            thread = threading.Thread(
                target=self._run_stage,
                args=(child, stage, index, statuses, errors, pipes),
                daemon=True,
            )
            threads.append(thread)
            thread.start()
            stdin = reader

        for thread in threads:
            thread.join()
        for error in errors:
            if error is not None:
                raise error
        return statuses[-1]

    def _run_stage(
        self,
        child: ShellInterpreter,
        stage: Any,
        index: int,
        statuses: list[int],
        errors: list[BaseException | None],
        pipes: list[IO[str]],
    ) -> None:
        try:
            statuses[index] = self._run_in_child(child, [stage])
        except BrokenPipeError:
            statuses[index] = _SIGPIPE_STATUS
        except Exception as e:
            errors[index] = e
        finally:
            for pipe in pipes:
                close_pipe(pipe)

    def _run_compound(self, node: Any) -> None:
        items = node.list
        opener = items[0].word if items and items[0].kind == "reservedword" else "{"
        body = [item for item in items if item.kind != "reservedword"]
        with self._redirected(getattr(node, "redirects", None) or []):
            if opener == "(":
                child = self._child(self.source.nest(CommandSource.SUBSHELL))
                self.status = self._run_in_child(child, body)
            else:
                self._run_parts(body)

    def _run_if(self, node: Any) -> None:
        groups: list[tuple[str, list[Any]]] = []
        for part in node.parts:
            if part.kind == "reservedword" and part.word in ("if", "then", "elif", "else", "fi"):
                groups.append((part.word, []))
            elif groups:
                groups[-1][1].append(part)

        index = 0
        while index < len(groups):
            keyword, nodes = groups[index]
            if keyword in ("if", "elif"):
                if self._run_condition(nodes) == 0:
                    self._run_body(groups[index + 1][1])
                    return
                index += 2
            elif keyword == "else":
                self._run_body(nodes)
                return
            else:
                index += 1
        self.status = 0

    def _run_for(self, node: Any) -> None:
        name = ""
        items: list[str] = []
        has_items = False
        body: list[Any] = []
        state = ""
        for part in node.parts:
            if part.kind == "reservedword":
                if part.word in ("for", "in", "do"):
                    state = part.word
                    has_items = has_items or part.word == "in"
                continue
            if state == "for" and part.kind == "word" and not name:
                name = part.word
            elif state == "in" and part.kind == "word":
                items.extend(self._expand_word(part))
            elif state == "do":
                body.append(part)

        if not has_items:
            items = list(self.positional)
        last = 0
        for value in items:
            self._check_cancel()
            self.vars[name] = value
            last, stop = self._run_iteration(body)
            if stop:
                break
        self.status = last

    def _run_loop(self, node: Any) -> None:
        condition: list[Any] = []
        body: list[Any] = []
        target = condition
        for part in node.parts:
            if part.kind == "reservedword":
                if part.word == "do":
                    target = body
                continue
            target.append(part)

        until = node.kind == "until"
        last = 0
        while True:
            self._check_cancel()
            status = self._run_condition(condition)
            if (status == 0) == until:
                break
            last, stop = self._run_iteration(body)
            if stop:
                break
        self.status = last

    def _run_iteration(self, body: list[Any]) -> tuple[int, bool]:
        """Run one loop body; returns its status and whether to break."""
        self.loop_depth += 1
        try:
            return self._run_body(body), False
        except _LoopSignal as sig:
            return 0, sig.kind == "break"
        finally:
            self.loop_depth -= 1

    # Simple commands

    def _run_command(self, node: Any) -> None:
        self._check_cancel()
        self._subst_status = None
        assignments: list[tuple[str, str]] = []
        argv: list[str] = []
        redirects: list[Any] = []
        for part in node.parts:
            if part.kind == "assignment":
                assignments.append(self._expand_assignment(part))
            elif part.kind == "word":
                argv.extend(self._expand_word(part))
            elif part.kind == "redirect":
                redirects.append(part)

        if not argv:
            for key, value in assignments:
                self.vars[key] = value
            with self._redirected(redirects):
                pass
            self.status = self._subst_status or 0
            return

        with self._redirected(redirects):
            self.status = self._dispatch(argv, dict(assignments))

    def _dispatch(self, argv: list[str], assignments: dict[str, str]) -> int:
        name = argv[0]
        if name in self.functions:
            return self._call_function(name, argv[1:])
        builtin = _BUILTINS.get(name)
        if builtin is not None:
            self.current_command = name
            return builtin(self, argv[1:])

        env = self.environ()
        env.update(assignments)
        ctx = HandlerContext(
            name=name,
            stdin=self.stdin,
            stdout=self.stdout,
            stderr=self.stderr,
            env=env,
            dir=self.cwd,
            cancel=self.cancel,
        )
        source = self.source.nest(CommandSource.TEST) if name in TEST_COMMANDS else self.source
        return self.exec_handler(ctx, argv, source)

    def _call_function(self, name: str, args: list[str]) -> int:
        saved = self.positional
        self.positional = list(args)
        try:
            self._run_node(self.functions[name])
        except _ReturnSignal as sig:
            self.status = sig.status
        finally:
            self.positional = saved
        return self.status

    def environ(self) -> dict[str, str]:
        """Exported variables, as passed to executables."""
        return {key: self.vars[key] for key in self.exported if key in self.vars}

    # Redirections

    @contextmanager
    def _redirected(self, redirects: list[Any]) -> Iterator[None]:
        if not redirects:
            yield
            return
        saved = (self.stdin, self.stdout, self.stderr)
        opened: list[IO[str]] = []
        try:
            for redirect in redirects:
                self._apply_redirect(redirect, opened)
            yield
        finally:
            for stream in opened:
                stream.close()
            self.stdin, self.stdout, self.stderr = saved

    def _apply_redirect(self, redirect: Any, opened: list[IO[str]]) -> None:
        rtype = redirect.type
        fd = getattr(redirect, "input", None)
        target = redirect.output
        if getattr(redirect, "heredoc", None) is not None or rtype.startswith("<<"):
            raise ShellError("here-documents are not supported")

        if isinstance(target, int) or (rtype == ">&" and target.word.isdigit()):
            number = target if isinstance(target, int) else int(target.word)
            streams = {0: self.stdin, 1: self.stdout, 2: self.stderr}
            if number not in streams:
                raise ShellError(f"bad file descriptor: {number}")
            self._set_fd(1 if fd is None else fd, streams[number])
            return

        path = self._expand_string(target)
        if not os.path.isabs(path) and path not in _NULL_DEVICES:
            path = os.path.join(self.cwd, path)

        if rtype == "<":
            stream = self.open_handler(path, "r")
            opened.append(stream)
            self._set_fd(0 if fd is None else fd, stream)
        elif rtype in (">", ">|", ">>"):
            stream = self.open_handler(path, "a" if rtype == ">>" else "w")
            opened.append(stream)
            self._set_fd(1 if fd is None else fd, stream)
        elif rtype in ("&>", ">&", "&>>"):
            stream = self.open_handler(path, "a" if rtype == "&>>" else "w")
            opened.append(stream)
            self.stdout = self.stderr = stream
        else:
            raise ShellError(f"unsupported redirection: {rtype}")

    def _set_fd(self, fd: int, stream: Any) -> None:
        if fd == 0:
            self.stdin = stream
        elif fd == 1:
            self.stdout = stream
        elif fd == 2:
            self.stderr = stream
        else:
            raise ShellError(f"unsupported file descriptor: {fd}")

    # Expansion

    def _expand_word(self, node: Any) -> list[str]:
        fields = self._expand(node.pos[0], node.pos[1], node, split=True)
        return self._glob(fields)

    def _expand_string(self, node: Any) -> str:
        return " ".join(self._expand(node.pos[0], node.pos[1], node, split=False).fields)

    def _expand_assignment(self, node: Any) -> tuple[str, str]:
        start, end = node.pos
        raw = self.text[start:end]
        name, _, _ = raw.partition("=")
        append = name.endswith("+")
        if append:
            name = name[:-1]
        value_start = start + len(raw.partition("=")[0]) + 1
        value = "".join(self._expand(value_start, end, node, split=False).fields)
        if append:
            value = self.vars.get(name, "") + value
        return name, value

    def _expand(self, start: int, end: int, node: Any, *, split: bool) -> _Fields:
        substitutions = {sub.pos[0]: sub for sub in _find_substitutions(node)}
        fields = _Fields()
        text = self.text
        in_double = False
        i = start
        while i < end:
            c = text[i]
            if c == "'" and not in_double:
                close = text.index("'", i + 1)
                fields.literal(text[i + 1:close], quoted=True)
                i = close + 1
            elif c == '"':
                in_double = not in_double
                if in_double:
                    fields.keep = True
                i += 1
            elif in_double and split and text.startswith(_ALL_PARAMS, i):
                fields.spread(self.positional)
                i += 2 if text.startswith("$@", i) else 4
            elif c == "\\":
                following = text[i + 1] if i + 1 < end else ""
                if in_double and following not in _DOUBLE_QUOTE_ESCAPES:
                    fields.literal("\\")
                    i += 1
                elif following == "\n":
                    i += 2
                else:
                    fields.literal(following, quoted=True)
                    i += 2
            elif c in "$`" or (c in "<>" and i in substitutions):
                value, i = self._expand_dollar(i, end, node, substitutions)
                if value is None:
                    fields.literal(c)
                    i += 1
                elif in_double or not split:
                    fields.literal(value, quoted=in_double)
                else:
                    fields.split(value)
            elif c == "~" and i == start and not in_double:
                home_end = i + 1
                while home_end < end and text[home_end] not in "/:":
                    home_end += 1
                user = text[i + 1:home_end]
                home = self.vars.get("HOME", os.path.expanduser("~"))
                fields.literal(os.path.expanduser("~" + user) if user else home)
                i = home_end
            else:
                if not in_double and c in _GLOB_CHARS:
                    fields.globbable = True
                fields.literal(c)
                i += 1
        fields.flush()
        return fields

    def _expand_dollar(
        self, i: int, end: int, node: Any, substitutions: dict[int, Any]
    ) -> tuple[str | None, int]:
        text = self.text
        sub = substitutions.get(i)
        if sub is not None:
            if sub.kind == "processsubstitution":
                raise ShellError("process substitution is not supported")
            return self._command_substitution(sub), sub.pos[1]
        if text[i] != "$":
            return None, i
        if text.startswith("$((", i):
            raise ShellError("arithmetic expansion is not supported")
        if text.startswith("${", i):
            close = _matching_brace(text, i + 2, end)
            return self._parameter_expression(i + 2, close, node), close + 1
        match = _NAME_RE.match(text, i + 1, end)
        if match is not None:
            return self.vars.get(match.group(), ""), match.end()
        if i + 1 < end and text[i + 1] in _SPECIAL_PARAMS:
            return self._special_param(text[i + 1]), i + 2
        return None, i

    def _parameter_expression(self, start: int, end: int, node: Any) -> str:
        match = _PARAM_EXPR_RE.fullmatch(self.text, start, end)
        if match is None:
            raise ShellError(f"bad substitution: ${{{self.text[start:end]}}}")
        name = match.group("name")
        value = self._lookup(name)
        if match.group("length"):
            return str(len(value or ""))
        op = match.group("op")
        if not op:
            return value or ""

        unset = value is None or (op.startswith(":") and value == "")

        def word() -> str:
            raw = self.text[match.start("word"):end]
            if has_substitution(raw):
                return self._expand_parsed_word(raw)
            return "".join(self._expand(match.start("word"), end, node, split=False).fields)

        kind = op[-1]
        if kind == "-":
            return word() if unset else value or ""
        if kind == "=":
            if unset:
                self.vars[name] = word()
            return self.vars.get(name, "")
        if kind == "+":
            return "" if unset else word()
        if unset:
            raise ShellError(f"{name}: {word() or 'parameter null or not set'}")
        return value or ""

    def _expand_parsed_word(self, raw: str) -> str:
        text, nodes = parse_word(raw)
        saved = self.text
        self.text = text
        try:
            return "".join(self._expand(2, len(text), nodes[0], split=False).fields)
        finally:
            self.text = saved

    def _lookup(self, name: str) -> str | None:
        if name in self.vars:
            return self.vars[name]
        if (len(name) == 1 and name in _SPECIAL_PARAMS) or name.isdigit():
            return self._special_param(name)
        return None

    def _special_param(self, name: str) -> str:
        if name == "?":
            return str(self.status)
        if name == "#":
            return str(len(self.positional))
        if name in "@*":
            return " ".join(self.positional)
        if name == "$":
            return str(os.getpid())
        if name == "-":
            return "e" if self.errexit else ""
        if name == "0":
            return "gosh"
        if name.isdigit():
            index = int(name) - 1
            return self.positional[index] if index < len(self.positional) else ""
        return ""

    def _command_substitution(self, node: Any) -> str:
        out = io.StringIO()
        child = self._child(
            self.source.nest(CommandSource.CMD_SUBST),
            stdin=io.StringIO(""),
            stdout=out,
        )
        child._no_errexit = 0
        self._subst_status = self._run_in_child(child, [node.command])
        return out.getvalue().rstrip("\n")

    def _glob(self, fields: _Fields) -> list[str]:
        if not fields.globbable:
            return fields.fields
        expanded: list[str] = []
        for field in fields.fields:
            matches = sorted(glob.glob(field, root_dir=self.cwd)) if _has_glob(field) else []
            expanded.extend(matches or [field])
        return expanded


def _has_glob(value: str) -> bool:
    return any(c in _GLOB_CHARS for c in value)


def _is_negated(node: Any) -> bool:
    return any(p.kind == "reservedword" and p.word == "!" for p in node.parts)


def _find_substitutions(node: Any) -> Iterator[Any]:
    for part in getattr(node, "parts", None) or []:
        if part.kind in ("commandsubstitution", "processsubstitution"):
            yield part
        else:
            yield from _find_substitutions(part)


def _matching_brace(text: str, start: int, end: int) -> int:
    depth = 1
    i = start
    while i < end:
        if text.startswith("${", i):
            depth += 1
            i += 2
            continue
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ShellError("bad substitution: missing '}'")


# Builtins


@_builtin("true", ":")
def _true(shell: ShellInterpreter, args: list[str]) -> int:
    return 0


@_builtin("false")
def _false(shell: ShellInterpreter, args: list[str]) -> int:
    return 1


@_builtin("echo")
def _echo(shell: ShellInterpreter, args: list[str]) -> int:
    newline = True
    escapes = False
    while args and args[0] in ("-n", "-e", "-E", "-ne", "-en"):
        flag = args.pop(0)
        if "n" in flag:
            newline = False
        if "e" in flag[1:]:
            escapes = True
        if flag == "-E":
            escapes = False
    text = " ".join(args)
    if escapes:
        text = (
            text.replace("\\\\", "\0")
            .replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace("\0", "\\")
        )
    shell.stdout.write(text + ("\n" if newline else ""))
    return 0


@_builtin("cd")
def _cd(shell: ShellInterpreter, args: list[str]) -> int:
    target = args[0] if args else shell.vars.get("HOME", os.path.expanduser("~"))
    if target == "-":
        target = shell.vars.get("OLDPWD", shell.cwd)
    path = os.path.normpath(os.path.join(shell.cwd, target))
    if not os.path.isdir(path):
        shell.stderr.write(f"cd: {target}: No such file or directory\n")
        return 1
    shell.vars["OLDPWD"] = shell.cwd
    shell.cwd = path
    shell.vars["PWD"] = path
    return 0


@_builtin("pwd")
def _pwd(shell: ShellInterpreter, args: list[str]) -> int:
    shell.stdout.write(shell.cwd + "\n")
    return 0


@_builtin("export")
def _export(shell: ShellInterpreter, args: list[str]) -> int:
    for arg in args:
        name, sep, value = arg.partition("=")
        if sep:
            shell.vars[name] = value
        shell.exported.add(name)
    return 0


@_builtin("unset")
def _unset(shell: ShellInterpreter, args: list[str]) -> int:
    for name in args:
        if name in ("-v", "-f"):
            continue
        shell.vars.pop(name, None)
        shell.exported.discard(name)
        shell.functions.pop(name, None)
    return 0


@_builtin("exit")
def _exit(shell: ShellInterpreter, args: list[str]) -> int:
    raise _ExitSignal(int(args[0]) if args else shell.status)


@_builtin("return")
def _return(shell: ShellInterpreter, args: list[str]) -> int:
    raise _ReturnSignal(int(args[0]) if args else shell.status)


@_builtin("break", "continue")
def _loop_control(shell: ShellInterpreter, args: list[str]) -> int:
    if not shell.loop_depth:
        return 0
    raise _LoopSignal(shell.current_command)


@_builtin("shift")
def _shift(shell: ShellInterpreter, args: list[str]) -> int:
    count = int(args[0]) if args else 1
    if count > len(shell.positional):
        return 1
    shell.positional = shell.positional[count:]
    return 0


@_builtin("set")
def _set(shell: ShellInterpreter, args: list[str]) -> int:
    for index, arg in enumerate(args):
        if arg == "--":
            shell.positional = args[index + 1:]
            break
        if arg == "-e":
            shell.errexit = True
        elif arg == "+e":
            shell.errexit = False
        else:
            logger.debug("set_option_ignored", option=arg)
    return 0
