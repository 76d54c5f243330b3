"""External commands, sudo and admin helpers.

These run real OS processes rather than the embedded interpreter, and
return trimmed stdout as TEXT output.
"""

from __future__ import annotations

import os
import re
import sys
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

import structlog

from commkit.shell.errors import CommandExecutionError, UnsupportedOSError
from commkit.shell.models import CommandOutput, CommandOutputKind
from commkit.shell.output import to_string
from commkit.shell.process import run_process

logger = structlog.get_logger(__name__)

PasswordInput = Callable[[], str]

_SUDO_RE = re.compile(r"(?:^|[;&|(`]|\$\()\s*sudo(?=\s|$)")
# sudo options that take a value as the following word
_SUDO_VALUE_FLAGS = frozenset({"-C", "-D", "-g", "-h", "-p", "-R", "-r", "-T", "-t", "-U", "-u"})


class OSType(Enum):
    """Operating system families with distinct command helpers."""

    LINUX = "linux"
    DARWIN = "darwin"
    WINDOWS = "windows"
    OTHER = "other"


def current_os() -> OSType:
    """Detect the running operating system."""
    if sys.platform.startswith("linux"):
        return OSType.LINUX
    if sys.platform == "darwin":
        return OSType.DARWIN
    if sys.platform in ("win32", "cygwin"):
        return OSType.WINDOWS
    return OSType.OTHER


def build_environ(variables: Mapping[str, Any] | None = None) -> dict[str, str]:
    """Merge the process environment with caller variables (caller wins)."""
    env = dict(os.environ)
    for key, value in (variables or {}).items():
        env[key] = to_string(value)
    return env


def _run(
    variables: Mapping[str, Any] | None,
    dir: str | None,
    argv: list[str],
    input: str | None = None,
) -> CommandOutput:
    result = run_process(argv, cwd=dir or None, env=build_environ(variables), input=input)
    if not result.success:
        logger.debug("external_command_failed", command=argv[0], return_code=result.return_code)
        raise CommandExecutionError(
            f"run command {argv[0]}: exit status {result.return_code}: {result.stderr.strip()}",
            exit_status=result.return_code,
            stderr=result.stderr,
        )
    return CommandOutput(kind=CommandOutputKind.TEXT, text=result.stdout.strip())


def run_command_without_input(
    variables: Mapping[str, Any] | None, dir: str | None, name: str, *args: str
) -> CommandOutput:
    """Run an executable with empty stdin.

    Raises:
        CommandExecutionError: If the process exits non-zero.
    """
    return _run(variables, dir, [name, *args])


def run_command_with_input(
    variables: Mapping[str, Any] | None,
    dir: str | None,
    name: str,
    *args: str,
    input: str = "",
) -> CommandOutput:
    """Run an executable, feeding input to its stdin."""
    return _run(variables, dir, [name, *args], input=input)


def is_sudo_command(cmd: str) -> bool:
    """Check whether any command in the line is run through sudo."""
    return _SUDO_RE.search(cmd) is not None


def instrument_sudo_command(cmd: str) -> str:
    """Make sudo read its password from stdin.

    Inserts --stdin after each sudo whose own options do not already
    include -S or --stdin. Lines without sudo are returned unchanged.
    """

    def add_flag(match: re.Match[str]) -> str:
        if _reads_password_from_stdin(cmd[match.end():].split()):
            return match.group(0)
        return match.group(0) + " --stdin"

    return _SUDO_RE.sub(add_flag, cmd)


def _reads_password_from_stdin(words: list[str]) -> bool:
    """Check the options at the start of a sudo invocation for -S."""
    index = 0
    while index < len(words) and words[index].startswith("-") and words[index] != "--":
        flag = words[index]
        if flag == "--stdin" or (not flag.startswith("--") and "S" in flag[1:]):
            return True
        index += 2 if flag in _SUDO_VALUE_FLAGS else 1
    return False


def input_sudo_password(password_input: PasswordInput | None) -> str:
    """Ask the callback for the sudo password, empty without one."""
    if password_input is None:
        return ""
    return password_input()


def run_sudo_command(
    variables: Mapping[str, Any] | None, password: str, dir: str | None, cmd: str
) -> CommandOutput:
    """Run cmd through sudo sh -c, piping the password when given."""
    if password:
        return _run(variables, dir, ["sudo", "-S", "sh", "-c", cmd], input=password + "\n")
    return _run(variables, dir, ["sudo", "sh", "-c", cmd])


def _applescript_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def run_apple_script(
    variables: Mapping[str, Any] | None, password: str, dir: str | None, cmd: str
) -> CommandOutput:
    """Run cmd with administrator privileges through osascript."""
    script = f"do shell script {_applescript_quote(cmd)}"
    if password:
        script += f" password {_applescript_quote(password)}"
    script += " with administrator privileges"
    return _run(variables, dir, ["osascript", "-e", script])


def run_admin_command(
    variables: Mapping[str, Any] | None, password: str, dir: str | None, cmd: str
) -> CommandOutput:
    """Run cmd with elevated privileges using the platform's mechanism.

    Raises:
        UnsupportedOSError: On platforms other than Linux and macOS.
    """
    os_type = current_os()
    if os_type is OSType.LINUX:
        return run_sudo_command(variables, password, dir, cmd)
    if os_type is OSType.DARWIN:
        return run_apple_script(variables, password, dir, cmd)
    raise UnsupportedOSError(os_type.value)


def run_user_command(variables: Mapping[str, Any] | None, dir: str | None, cmd: str) -> CommandOutput:
    """Run cmd as the current user: sh -c on Linux, open on macOS.

    Raises:
        UnsupportedOSError: On platforms other than Linux and macOS.
    """
    os_type = current_os()
    if os_type is OSType.LINUX:
        return _run(variables, dir, ["sh", "-c", cmd])
    if os_type is OSType.DARWIN:
        return _run(variables, dir, ["open", cmd])
    raise UnsupportedOSError(os_type.value)
