"""Command output protocol.

Scripts opt into structured results by starting their stdout with a
sentinel line followed by a blank line:

    $json$          the remainder is a JSON document
    $vars$          the remainder is KEY=VALUE lines

Anything else is plain text.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from commkit.shell.errors import OutputProtocolError
from commkit.shell.models import CommandOutput, CommandOutputKind

logger = structlog.get_logger(__name__)

JSON_SENTINEL = "$json$\n\n"
VARS_SENTINEL = "$vars$\n\n"


def parse_command_output(text: str) -> CommandOutput:
    """Parse captured stdout into a CommandOutput.

    Args:
        text: The captured output.

    Returns:
        CommandOutput whose text is always the unmodified input.

    Raises:
        OutputProtocolError: If the JSON payload after the sentinel is invalid.
    """
    if text.startswith(JSON_SENTINEL):
        payload = text[len(JSON_SENTINEL):]
        try:
            value = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.debug("output_json_invalid", error=str(e))
            raise OutputProtocolError(f"parse json output: {e}", kind="json") from e
        return CommandOutput(kind=CommandOutputKind.JSON, text=text, json=value)

    if text.startswith(VARS_SENTINEL):
        variables = text_to_vars(text[len(VARS_SENTINEL):])
        return CommandOutput(kind=CommandOutputKind.VARS, text=text, vars=variables)

    return CommandOutput(kind=CommandOutputKind.TEXT, text=text)


def text_to_vars(text: str) -> dict[str, str]:
    """Parse newline separated KEY=VALUE text into a mapping."""
    return pair_to_vars(text.splitlines())


def pair_to_vars(pairs: Iterable[str]) -> dict[str, str]:
    """Parse KEY=VALUE strings into a mapping.

    Leading tabs, spaces and carriage returns are ignored. Entries with
    no key or no '=' are skipped, and later keys override earlier ones.
    """
    variables: dict[str, str] = {}
    for pair in pairs:
        pair = pair.lstrip("\t \r")
        key, sep, value = pair.partition("=")
        if not sep or not key:
            continue
        variables[key] = value
    return variables


def vars_to_pairs(variables: Mapping[str, Any] | None) -> list[str]:
    """Render a mapping as sorted KEY=VALUE strings."""
    if not variables:
        return []
    return [f"{key}={to_string(variables[key])}" for key in sorted(variables)]


def to_string(value: Any) -> str:
    """Stringify a caller-supplied variable value."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
