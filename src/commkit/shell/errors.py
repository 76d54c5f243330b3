"""Exception hierarchy for the gosh shell subsystem.

Every failure raised by the library derives from ShellError, which
carries a machine-readable error code alongside the message.
"""

from __future__ import annotations

from typing import Any


class ErrorCode:
    """Standard error codes for shell failures."""

    SHELL_ERROR = "SHELL_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    INVALID_OUTPUT = "INVALID_OUTPUT"
    UNSUPPORTED_OS = "UNSUPPORTED_OS"


class ShellError(Exception):
    """Base error for shell parsing, checking and execution.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional error details
    """

    default_code = ErrorCode.SHELL_ERROR

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "message": self.message,
            "code": self.error_code,
            "details": self.details,
        }


class ShellParseError(ShellError):
    """Raised when script text is not valid shell syntax."""

    default_code = ErrorCode.PARSE_ERROR

    def __init__(self, message: str, source_text: str = ""):
        super().__init__(message, details={"source": source_text})
        self.source_text = source_text


class SecurityCheckError(ShellError):
    """Raised when a command violates the blacklist or whitelist.

    Attributes:
        command: Name of the offending command.
        rule: Pattern of the blacklist rule that matched, if any.
        violation_type: "blacklist" or "whitelist".
    """

    default_code = ErrorCode.SECURITY_VIOLATION

    def __init__(self, command: str, violation_type: str, rule: str = ""):
        if violation_type == "blacklist":
            message = f"command '{command}' is blocked by blacklist (rule: {rule})"
        else:
            message = f"command '{command}' is not in whitelist"
        super().__init__(
            message,
            details={"command": command, "rule": rule, "violation_type": violation_type},
        )
        self.command = command
        self.rule = rule
        self.violation_type = violation_type


class CommandExecutionError(ShellError):
    """Raised when a script or external command fails."""

    default_code = ErrorCode.EXECUTION_FAILED

    def __init__(
        self,
        message: str,
        exit_status: int | None = None,
        stderr: str = "",
        error_code: str | None = None,
    ):
        super().__init__(
            message,
            error_code=error_code,
            details={"exit_status": exit_status, "stderr": stderr},
        )
        self.exit_status = exit_status
        self.stderr = stderr


class CommandTimeoutError(CommandExecutionError):
    """Raised when an external process outlives the kill timeout."""

    default_code = ErrorCode.TIMEOUT


class CommandCancelledError(CommandExecutionError):
    """Raised when execution is cancelled by the caller."""

    default_code = ErrorCode.CANCELLED


class OutputProtocolError(ShellError):
    """Raised when sentinel-marked output cannot be decoded."""

    default_code = ErrorCode.INVALID_OUTPUT

    def __init__(self, message: str, kind: str = ""):
        super().__init__(message, details={"kind": kind})
        self.kind = kind


class UnsupportedOSError(ShellError):
    """Raised for operations with no implementation on the current OS."""

    default_code = ErrorCode.UNSUPPORTED_OS

    def __init__(self, os_type: str):
        super().__init__(f"unsupported OS: {os_type}", details={"os_type": os_type})
        self.os_type = os_type
