"""External process launching with a kill timeout and cancellation.

Real executables started by the external command helpers go through
run_process, which captures their output. The interpreter uses
stream_process so that pipeline stages run at the same time.
"""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import IO, Any, TextIO

import structlog

from commkit.shell.errors import CommandCancelledError, CommandTimeoutError

logger = structlog.get_logger(__name__)

# How often a running process is checked for cancellation
POLL_INTERVAL = 0.05


@dataclass
class ProcessResult:
    """Result of an external process run.

    Attributes:
        stdout: Decoded standard output.
        stderr: Decoded standard error.
        return_code: Exit status; 128 + N when killed by signal N.
        duration_ms: Wall-clock duration in milliseconds.
    """

    stdout: str
    stderr: str
    return_code: int
    duration_ms: int

    @property
    def success(self) -> bool:
        return self.return_code == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "return_code": self.return_code,
            "duration": self.duration_ms / 1000,
        }


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


def _exit_status(return_code: int) -> int:
    if return_code < 0:
        return 128 + (-return_code)
    return return_code


def _wait_interval(deadline: float | None, cancel: threading.Event | None) -> float | None:
    wait = POLL_INTERVAL if cancel is not None else None
    if deadline is not None:
        remaining = max(deadline - time.monotonic(), 0)
        wait = remaining if wait is None else min(wait, remaining)
    return wait


def _enforce_limits(
    process: subprocess.Popen,
    name: str,
    timeout: float | None,
    deadline: float | None,
    cancel: threading.Event | None,
) -> None:
    """Kill the process once cancel is set or the deadline has passed."""
    if cancel is not None and cancel.is_set():
        process.kill()
        logger.debug("external_command_cancelled", command=name)
        raise CommandCancelledError(f"command '{name}' cancelled")
    if deadline is not None and time.monotonic() >= deadline:
        process.kill()
        logger.warning("external_command_timeout", command=name, timeout=timeout)
        raise CommandTimeoutError(f"command '{name}' timed out after {timeout} seconds")


def run_process(
    argv: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    input: str | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> ProcessResult:
    """Run an executable to completion.

    Args:
        argv: Program and arguments.
        cwd: Working directory.
        env: Full environment of the process.
        input: Text fed to stdin.
        timeout: Seconds before the process is killed, None for no limit.
        cancel: Event that kills the process when set.

    Returns:
        ProcessResult with the captured output.

    Raises:
        CommandTimeoutError: If the process outlived the timeout.
        CommandCancelledError: If cancel was set while it ran.
        OSError: If the executable could not be started.
    """
    name = argv[0]
    start_time = time.monotonic()
    deadline = None if timeout is None else start_time + timeout
    logger.debug("external_command_started", command=name, cwd=cwd)

    process = subprocess.Popen(
        list(argv),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=cwd,
        env=dict(env) if env is not None else None,
    )

    # communicate() may only send input on its first call
    pending_input: bytes | None = (input or "").encode("utf-8")
    while True:
        try:
            stdout_bytes, stderr_bytes = process.communicate(
                input=pending_input, timeout=_wait_interval(deadline, cancel)
            )
            break
        except subprocess.TimeoutExpired:
            pending_input = None
            try:
                _enforce_limits(process, name, timeout, deadline, cancel)
            except (CommandCancelledError, CommandTimeoutError):
                process.communicate()
                raise

    return_code = _finished(process, name, start_time)
    return ProcessResult(
        stdout=_decode(stdout_bytes),
        stderr=_decode(stderr_bytes),
        return_code=return_code,
        duration_ms=int((time.monotonic() - start_time) * 1000),
    )


def _feed(source: TextIO, sink: IO[str], name: str) -> None:
    try:
        for line in iter(source.readline, ""):
            sink.write(line)
    except (BrokenPipeError, ValueError):
        # The process exited without reading everything, or the pipeline
        # closed the source once the process was done
        logger.debug("external_command_input_closed", command=name)
    finally:
        close_pipe(sink)


def _drain(source: IO[str], sink: TextIO, name: str) -> None:
    try:
        for line in iter(source.readline, ""):
            sink.write(line)
    except BrokenPipeError:
        # Closing our end makes the process see SIGPIPE on its next write
        logger.debug("external_command_output_closed", command=name)
    finally:
        source.close()


def stream_process(
    argv: Sequence[str],
    *,
    stdin: TextIO,
    stdout: TextIO,
    stderr: TextIO,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> int:
    """Run an executable wired to text streams.

    Output is copied line by line as the process writes it, so a
    process feeding a pipeline stage runs alongside its consumer.

    Args:
        argv: Program and arguments.
        stdin: Stream copied to the process's standard input.
        stdout: Stream receiving the process's standard output.
        stderr: Stream receiving the process's standard error.
        cwd: Working directory.
        env: Full environment of the process.
        timeout: Seconds before the process is killed, None for no limit.
        cancel: Event that kills the process when set.

    Returns:
        Exit status; 128 + N when killed by signal N.

    Raises:
        CommandTimeoutError: If the process outlived the timeout.
        CommandCancelledError: If cancel was set while it ran.
        OSError: If the executable could not be started.
    """
    name = argv[0]
    start_time = time.monotonic()
    deadline = None if timeout is None else start_time + timeout
    logger.debug("external_command_started", command=name, cwd=cwd, streaming=True)

    process = subprocess.Popen(
        list(argv),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )
    # The feeder may stay blocked on a source that never ends, so only
    # the output threads are joined
    threading.Thread(target=_feed, args=(stdin, process.stdin, name), daemon=True).start()
    drains = [
        threading.Thread(target=_drain, args=(process.stdout, stdout, name), daemon=True),
        threading.Thread(target=_drain, args=(process.stderr, stderr, name), daemon=True),
    ]
    for thread in drains:
        thread.start()

    try:
        while True:
            try:
                process.wait(timeout=_wait_interval(deadline, cancel))
                break
            except subprocess.TimeoutExpired:
                _enforce_limits(process, name, timeout, deadline, cancel)
    finally:
        process.wait()
        for thread in drains:
            thread.join()

    return _finished(process, name, start_time)


def close_pipe(stream: IO[str]) -> None:
    """Close a pipe end whose reader may already be gone."""
    try:
        stream.close()
    except BrokenPipeError:
        logger.debug("pipe_closed_early")


def _finished(process: subprocess.Popen, name: str, start_time: float) -> int:
    return_code = _exit_status(process.returncode)
    logger.debug(
        "external_command_finished",
        command=name,
        return_code=return_code,
        duration_ms=int((time.monotonic() - start_time) * 1000),
    )
    return return_code
