"""Structured logging for commkit.

structlog renders events either for a terminal or as JSON lines. Events
go to stderr by default so they never interleave with script output
captured on stdout.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, TextIO

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from commkit.config import CommkitSettings

# Longest script prefix attached to log events
SCRIPT_PREVIEW_LENGTH = 80


def configure_logging(settings: "CommkitSettings | None" = None, stream: TextIO | None = None) -> None:
    """Configure structlog from settings.

    Args:
        settings: Application settings; warning-level console output if None.
        stream: Destination for rendered events, stderr by default.
    """
    level_name = settings.log_level if settings is not None else "warning"
    log_format = settings.log_format if settings is not None else "console"
    stream = stream or sys.stderr

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=stream.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, named after the calling module when name is given."""
    return structlog.get_logger(name) if name else structlog.get_logger()


def bind_context(**kwargs: object) -> None:
    """Bind values to every later event in the current context.

    Example:
        bind_context(job="nightly-backup")
        run_gosh_command(None, "/srv", "tar czf backup.tgz data")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Drop all bound values."""
    structlog.contextvars.clear_contextvars()


def script_preview(script: str) -> str:
    """First line of a script, shortened for log output."""
    first_line = script.strip().split("\n", 1)[0]
    if len(first_line) > SCRIPT_PREVIEW_LENGTH or "\n" in script.strip():
        return first_line[:SCRIPT_PREVIEW_LENGTH] + "..."
    return first_line


@contextmanager
def script_context(script: str, **extra: object) -> Iterator[None]:
    """Attach a script preview to events logged while a script runs."""
    with structlog.contextvars.bound_contextvars(script=script_preview(script), **extra):
        yield
