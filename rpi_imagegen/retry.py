"""Bounded exponential-backoff retry for external commands.

Used for network operations against the pi-gen repository (clone, fetch).
Each attempt starts from a clean slate: when the command creates a target
directory, any partial output from a failed attempt is deleted first.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from rpi_imagegen.errors import NETWORK, PipelineError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_INITIAL_DELAY = 2.0


class RetryExhaustedError(PipelineError):
    """Raised when a command still fails after the last attempt."""

    category = NETWORK

    def __init__(
        self,
        command: str,
        attempts: int,
        exit_code: int | None = None,
        code: str = "retry_exhausted",
    ) -> None:
        super().__init__(
            f"Command failed after {attempts} attempts: {command}",
            code=code,
        )
        self.command = command
        self.attempts = attempts
        self.exit_code = exit_code


@dataclass
class RetryResult:
    """Outcome of a successful retried command.

    Attributes:
        command: The command as a shell-quoted string.
        attempts: Number of attempts used (1 = first try succeeded).
        exit_code: Exit code of the successful attempt.
    """

    command: str
    attempts: int
    exit_code: int = 0


def _remove_partial_output(target_dir: Path) -> None:
    if target_dir.is_symlink() or target_dir.is_file():
        target_dir.unlink()
    elif target_dir.exists():
        shutil.rmtree(target_dir)


def run_with_retry(
    command: Sequence[str],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    cwd: Path | None = None,
    target_dir: Path | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """Run a command, retrying with exponential backoff on failure.

    Args:
        command: Command and arguments.
        max_attempts: Total attempts before giving up.
        initial_delay: Delay in seconds before the second attempt; doubled
            after every further failure.
        cwd: Working directory for the command.
        target_dir: Directory the command creates (e.g. a clone target).
            Removed before each attempt if present.
        sleep: Sleep function (injectable for tests).

    Returns:
        RetryResult for the successful attempt.

    Raises:
        ValueError: If max_attempts is less than 1.
        RetryExhaustedError: If every attempt failed.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    cmd_str = shlex.join(command)
    delay = initial_delay
    exit_code: int | None = None

    for attempt in range(1, max_attempts + 1):
        if target_dir is not None and (target_dir.exists() or target_dir.is_symlink()):
            logger.warning("Removing partial output from previous attempt: %s", target_dir)
            _remove_partial_output(target_dir)

        if attempt > 1:
            logger.warning(
                "Retry attempt %d of %d after %.0fs delay...",
                attempt,
                max_attempts,
                delay,
            )
            sleep(delay)
            delay *= 2

        try:
            result = subprocess.run(list(command), cwd=cwd, check=False)
            exit_code = result.returncode
        except OSError as e:
            exit_code = None
            logger.warning("Failed to start command %s: %s", cmd_str, e)
        else:
            if exit_code == 0:
                if attempt > 1:
                    logger.info("Command succeeded on attempt %d: %s", attempt, cmd_str)
                return RetryResult(command=cmd_str, attempts=attempt)
            logger.warning(
                "Command failed (exit %d, attempt %d/%d): %s",
                exit_code,
                attempt,
                max_attempts,
                cmd_str,
            )

    logger.error("Command failed after %d attempts: %s", max_attempts, cmd_str)
    raise RetryExhaustedError(cmd_str, max_attempts, exit_code=exit_code)


__all__ = [
    "DEFAULT_INITIAL_DELAY",
    "DEFAULT_MAX_ATTEMPTS",
    "RetryExhaustedError",
    "RetryResult",
    "run_with_retry",
]
