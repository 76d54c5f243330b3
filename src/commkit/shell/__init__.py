"""Embedded shell execution with command security checks.

Layers:
- Extraction: parse scripts into the commands they invoke (bashlex)
- Checking: blacklist/whitelist rules scoped by arguments and origin
- Execution: embedded interpreter with in-process handlers
- Output protocol: $json$ / $vars$ sentinels for structured results

Usage:
    from commkit.shell import CommandRule, GoshConfig, run_gosh_command

    config = GoshConfig().with_blacklist(CommandRule("rm"))
    output = run_gosh_command(None, "/tmp", "echo hello", config=config)
    # output.kind == CommandOutputKind.TEXT, output.text == "hello\\n"

    # Structured output
    output = run_gosh_command(None, None, "printf '$vars$\\n\\nA=1'")
    # output.vars == {"A": "1"}
"""

from commkit.shell.checker import (
    SecurityChecker,
    check_commands,
    check_script,
    get_security_check_error,
)
from commkit.shell.command import (
    OSType,
    build_environ,
    current_os,
    input_sudo_password,
    instrument_sudo_command,
    is_sudo_command,
    run_admin_command,
    run_apple_script,
    run_command_with_input,
    run_command_without_input,
    run_sudo_command,
    run_user_command,
)
from commkit.shell.config import GoshConfig
from commkit.shell.errors import (
    CommandCancelledError,
    CommandExecutionError,
    CommandTimeoutError,
    ErrorCode,
    OutputProtocolError,
    SecurityCheckError,
    ShellError,
    ShellParseError,
    UnsupportedOSError,
)
from commkit.shell.executor import GoshExecutor, run_gosh_command, run_shell_command
from commkit.shell.extractor import CommandExtractor, extract_commands, parse_script
from commkit.shell.handlers import (
    DevNull,
    HandlerContext,
    HandlerEntry,
    HandlerRegistry,
    match_handler,
)
from commkit.shell.interpreter import ShellInterpreter
from commkit.shell.models import (
    ArgMatcher,
    CommandOutput,
    CommandOutputKind,
    CommandRule,
    CommandSource,
    ExtractedCommand,
    MatchMode,
)
from commkit.shell.output import (
    JSON_SENTINEL,
    VARS_SENTINEL,
    pair_to_vars,
    parse_command_output,
    text_to_vars,
    to_string,
    vars_to_pairs,
)
from commkit.shell.zenity import zenity_handler

__all__ = [
    # Main entry points
    "GoshExecutor",
    "GoshConfig",
    "run_gosh_command",
    "run_shell_command",
    # Extraction and checking
    "CommandExtractor",
    "extract_commands",
    "parse_script",
    "SecurityChecker",
    "check_commands",
    "check_script",
    "get_security_check_error",
    # Models
    "ArgMatcher",
    "CommandOutput",
    "CommandOutputKind",
    "CommandRule",
    "CommandSource",
    "ExtractedCommand",
    "MatchMode",
    # Handlers
    "DevNull",
    "HandlerContext",
    "HandlerEntry",
    "HandlerRegistry",
    "match_handler",
    "ShellInterpreter",
    "zenity_handler",
    # Output protocol
    "JSON_SENTINEL",
    "VARS_SENTINEL",
    "parse_command_output",
    "pair_to_vars",
    "text_to_vars",
    "to_string",
    "vars_to_pairs",
    # External commands
    "OSType",
    "build_environ",
    "current_os",
    "input_sudo_password",
    "instrument_sudo_command",
    "is_sudo_command",
    "run_admin_command",
    "run_apple_script",
    "run_command_with_input",
    "run_command_without_input",
    "run_sudo_command",
    "run_user_command",
    # Errors
    "CommandCancelledError",
    "CommandExecutionError",
    "CommandTimeoutError",
    "ErrorCode",
    "OutputProtocolError",
    "SecurityCheckError",
    "ShellError",
    "ShellParseError",
    "UnsupportedOSError",
]
