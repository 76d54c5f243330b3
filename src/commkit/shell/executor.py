"""Script execution through the embedded gosh interpreter.

The executor ties the layers together:
1. Parse the script once
2. Extract its commands and check them against the configured rules
3. Run it, checking every command again with its expanded arguments
   before dispatching to a registered handler or a real executable
4. Optionally parse the captured output with the output protocol
"""

from __future__ import annotations

import io
import threading
from collections.abc import Mapping
from typing import Any, TextIO

import structlog

from commkit.logging import script_context
from commkit.shell.command import (
    OSType,
    PasswordInput,
    build_environ,
    current_os,
    input_sudo_password,
    instrument_sudo_command,
    is_sudo_command,
    run_command_with_input,
)
from commkit.shell.config import GoshConfig
from commkit.shell.errors import ShellError, UnsupportedOSError
from commkit.shell.extractor import CommandExtractor
from commkit.shell.handlers import HandlerContext, call_handler
from commkit.shell.interpreter import (
    ShellInterpreter,
    default_exec_handler,
    default_open_handler,
    parse_script,
)
from commkit.shell.models import CommandOutput, CommandSource, ExtractedCommand, MatchMode
from commkit.shell.output import parse_command_output
from commkit.shell.zenity import zenity_handler

logger = structlog.get_logger(__name__)

# Shell selectors that mean the embedded interpreter
EMBEDDED_SHELLS = frozenset({"", "gosh"})


class GoshExecutor:
    """Runs scripts through the embedded interpreter.

    An executor holds only configuration, so one instance can run many
    scripts, including concurrently.

    Example:
        executor = GoshExecutor(GoshConfig().with_blacklist_simple("rm"))
        out = io.StringIO()
        executor.run("echo hello", stdout=out)
    """

    def __init__(self, config: GoshConfig | None = None):
        self.config = config or GoshConfig()
        self._checker = self.config.security_checker()
        self._extractor = CommandExtractor()
        self._launch = default_exec_handler(self.config.kill_timeout)

    def run(
        self,
        script: str,
        *,
        dir: str | None = None,
        vars: Mapping[str, Any] | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Run a script, streaming its output.

        Args:
            script: Script text.
            dir: Working directory, defaults to the process cwd.
            vars: Variables layered over the process environment.
            stdin: Input stream, empty by default.
            stdout: Output stream, discarded by default.
            stderr: Error stream, discarded by default.
            cancel: Event that aborts the run when set.

        Raises:
            ShellParseError: If the script is not valid shell syntax.
            SecurityCheckError: If a command violates the configured rules.
            CommandExecutionError: If the script fails, times out or is
                cancelled.
        """
        with script_context(script):
            try:
                nodes = parse_script(script)
                if self.config.precheck and self._checker.has_rules:
                    self._checker.check(self._extractor.extract_nodes(nodes))

                ShellInterpreter(
                    script,
                    env=build_environ(vars),
                    dir=dir,
                    exec_handler=self._exec,
                    open_handler=default_open_handler,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    cancel=cancel,
                ).run(nodes)
            except ShellError as e:
                logger.debug("gosh_run_failed", error=str(e), code=e.error_code)
                raise

    def _exec(self, ctx: HandlerContext, argv: list[str], source: CommandSource) -> int:
        self._checker.check_command(ExtractedCommand(name=argv[0], args=argv[1:], source=source))
        handler = self.config.handlers.match(argv[0])
        if handler is not None:
            return call_handler(handler, ctx, argv[1:])
        return self._launch(ctx, argv, source)


def run_gosh_command(
    vars: Mapping[str, Any] | None,
    dir: str | None,
    cmd: str,
    password_input: PasswordInput | None = None,
    *,
    config: GoshConfig | None = None,
    cancel: threading.Event | None = None,
) -> CommandOutput:
    """Run a script and parse its combined output.

    stdout and stderr share one buffer, which is parsed with the output
    protocol once the script finishes. When the command uses sudo and the
    password callback returns a non-empty password, the password is fed
    on stdin and sudo is told to read it from there.

    Args:
        vars: Variables layered over the process environment.
        dir: Working directory.
        cmd: Script text.
        password_input: Callback returning the sudo password.
        config: Executor configuration, the defaults when None.
        cancel: Event that aborts the run when set.

    Returns:
        CommandOutput parsed from the captured text.
    """
    stdin = io.StringIO("")
    if password_input is not None and is_sudo_command(cmd):
        password = input_sudo_password(password_input)
        if password:
            stdin = io.StringIO(password + "\n")
            cmd = instrument_sudo_command(cmd)

    config = (config or GoshConfig()).with_handler(
        "zenity", zenity_handler, mode=MatchMode.EXACT, description="GUI dialogs"
    )
    buffer = io.StringIO()
    GoshExecutor(config).run(cmd, dir=dir, vars=vars, stdin=stdin, stdout=buffer, stderr=buffer, cancel=cancel)
    return parse_command_output(buffer.getvalue())


def run_shell_command(
    vars: Mapping[str, Any] | None,
    dir: str | None,
    sh: str,
    cmd: str,
) -> CommandOutput:
    """Run a script with the embedded interpreter or a named shell.

    Args:
        vars: Variables layered over the process environment.
        dir: Working directory.
        sh: Empty or "gosh" for the embedded interpreter, else a shell
            executable that receives the script on stdin.
        cmd: Script text.

    Raises:
        UnsupportedOSError: For external shells on Windows.
    """
    if sh in EMBEDDED_SHELLS:
        return run_gosh_command(vars, dir, cmd)
    os_type = current_os()
    if os_type is OSType.WINDOWS:
        raise UnsupportedOSError(os_type.value)
    return run_command_with_input(vars, dir, sh, input=cmd)
