"""Command runner for toolchain stages.

This module handles:
- Executing stage commands with subprocess
- Capturing stdout/stderr to a per-stage log file
- Enforcing command timeouts
- Terminating commands when the pipeline is cancelled
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from layerchef.errors import PipelineCancelled

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while a command runs
POLL_INTERVAL = 0.2

# Seconds to wait after SIGTERM before SIGKILL
TERMINATE_GRACE = 5.0


class CommandError(Exception):
    """Raised when a stage command fails, times out, or cannot start."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "command_failed",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path


@dataclass
class CommandResult:
    """Result of a single command execution.

    Attributes:
        command: The command that was executed.
        exit_code: Process exit code.
        log_path: Path to the log file.
        started_at: Start time.
        finished_at: Finish time.
    """

    command: str
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime

    @property
    def duration_seconds(self) -> float:
        """Wall-clock duration of the command."""
        return (self.finished_at - self.started_at).total_seconds()


def _terminate(proc: subprocess.Popen[bytes]) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def run_command(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    timeout: float | None = None,
    env_override: dict[str, str] | None = None,
    cancel: threading.Event | None = None,
) -> CommandResult:
    """Execute one command, appending its output to a log file.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        log_path: Log file; output is appended.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Environment variable overrides.
        cancel: Event that, when set, terminates the command.

    Returns:
        CommandResult with the exit code, which may be non-zero.

    Raises:
        CommandError: If the command times out or cannot be started.
        PipelineCancelled: If the cancel event is set while it runs.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = datetime.now(timezone.utc)

    env: dict[str, str] | None = None
    if env_override:
        env = dict(os.environ)
        env.update(env_override)

    with log_path.open("a") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {cwd}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=env,
            )
        except OSError as e:
            message = f"Failed to execute {cmd[0]}: {e}"
            logger.error(message)
            log_file.write(f"\n# ERROR: {message}\n")
            raise CommandError(
                message, code="execution_error", log_path=log_path
            ) from e

        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            try:
                exit_code = proc.wait(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    _terminate(proc)
                    log_file.write("\n# CANCELLED\n")
                    logger.warning("Cancelled: %s", cmd_str)
                    raise PipelineCancelled(
                        f"Cancelled while running: {cmd_str}", log_path=str(log_path)
                    ) from None
                if deadline is not None and time.monotonic() >= deadline:
                    _terminate(proc)
                    log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
                    message = f"Command timed out after {timeout} seconds: {cmd_str}"
                    logger.error("%s. See log: %s", message, log_path)
                    raise CommandError(
                        message, exit_code=-1, code="command_timeout", log_path=log_path
                    ) from None

        finished_at = datetime.now(timezone.utc)
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    return CommandResult(
        command=cmd_str,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
    )


def run_commands(
    commands: list[list[str]],
    cwd: Path,
    log_path: Path,
    timeout: float | None = None,
    env_override: dict[str, str] | None = None,
    cancel: threading.Event | None = None,
) -> list[CommandResult]:
    """Execute commands in order, stopping at the first failure.

    Args:
        commands: Commands to run.
        cwd: Working directory.
        log_path: Shared log file for all commands.
        timeout: Per-command timeout in seconds.
        env_override: Environment variable overrides.
        cancel: Event that, when set, terminates the running command.

    Returns:
        Results of all commands, all successful.

    Raises:
        CommandError: If a command exits non-zero, times out, or cannot start.
        PipelineCancelled: If the cancel event is set.
    """
    results: list[CommandResult] = []
    for cmd in commands:
        if cancel is not None and cancel.is_set():
            raise PipelineCancelled(log_path=str(log_path))
        result = run_command(
            cmd,
            cwd=cwd,
            log_path=log_path,
            timeout=timeout,
            env_override=env_override,
            cancel=cancel,
        )
        results.append(result)
        if result.exit_code != 0:
            message = f"Command failed with exit code {result.exit_code}: {result.command}"
            logger.error("%s. See log: %s", message, log_path)
            raise CommandError(
                message, exit_code=result.exit_code, log_path=log_path
            )
    return results


def read_log_tail(log_path: Path, lines: int = 20) -> str:
    """Return the last lines of a log file, or an empty string."""
    if not log_path.exists():
        return ""
    with log_path.open(encoding="utf-8", errors="replace") as f:
        content = f.readlines()
    return "".join(content[-lines:])


__all__ = [
    "CommandError",
    "CommandResult",
    "read_log_tail",
    "run_command",
    "run_commands",
]
