"""Build runner for executing pi-gen.

This module handles:
- Rendering the pi-gen `config` file from the build configuration
- Composing the build command (host or Docker)
- Executing the build with output streamed to a log file and the logger
- Enforcing an optional build timeout
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TextIO

from rpi_imagegen.config import BuildConfiguration
from rpi_imagegen.errors import BUILDER, PipelineError

logger = logging.getLogger(__name__)

# Logger receiving the builder's own output, one record per line
output_logger = logging.getLogger("rpi_imagegen.pigen.output")

DOCKER_CONTAINER_NAME = "pigen_work"


class BuilderExecutionError(PipelineError):
    """Raised when pi-gen cannot be started or exceeds its timeout."""

    category = BUILDER

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "builder_error",
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code


@dataclass
class BuilderResult:
    """Result of a pi-gen execution.

    Attributes:
        success: Whether the build succeeded.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        error_message: Error message if the build failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def render_pigen_config(config: BuildConfiguration, stage_list: str) -> str:
    """Render the pi-gen `config` file.

    Values are shell-quoted because pi-gen sources the file.

    Args:
        config: Build configuration.
        stage_list: Space-separated STAGE_LIST value.

    Returns:
        File content.
    """
    keyboard = config.get("KEYBOARD_LAYOUT") or ""
    values = [
        ("IMG_NAME", config.get("IMG_NAME") or ""),
        ("RELEASE", config.get("RPI_OS_RELEASE") or ""),
        ("DEPLOY_COMPRESSION", "none"),
        ("LOCALE_DEFAULT", config.get("LOCALE") or ""),
        ("TARGET_HOSTNAME", config.get("HOSTNAME") or ""),
        ("KEYBOARD_KEYMAP", keyboard),
        ("KEYBOARD_LAYOUT", keyboard),
        ("TIMEZONE_DEFAULT", config.get("TIMEZONE") or ""),
        ("FIRST_USER_NAME", config.get("RPI_USERNAME") or ""),
        ("FIRST_USER_PASS", config.get("RPI_PASSWORD") or ""),
        ("ENABLE_SSH", config.get("ENABLE_SSH") or "0"),
        ("ARCH", config.require("ARCHITECTURE")),
        ("STAGE_LIST", stage_list),
    ]
    lines = ["# Generated by rpi-imagegen"]
    lines.extend(f"{key}={shlex.quote(value)}" for key, value in values)
    return "\n".join(lines) + "\n"


def write_pigen_config(pigen_dir: Path, config: BuildConfiguration, stage_list: str) -> Path:
    path = pigen_dir / "config"
    path.write_text(render_pigen_config(config, stage_list), encoding="utf-8")
    logger.info("Wrote pi-gen config (STAGE_LIST=%s)", stage_list)
    return path


def compose_build_command(use_docker: bool) -> list[str]:
    """Compose the pi-gen build command."""
    return ["./build-docker.sh"] if use_docker else ["./build.sh"]


def _stream_output(stdout: IO[str], log_file: TextIO) -> None:
    for line in stdout:
        log_file.write(line)
        log_file.flush()
        output_logger.info("%s", line.rstrip("\n"))


def run_pigen(
    pigen_dir: Path,
    log_path: Path,
    use_docker: bool = False,
    env_override: dict[str, str] | None = None,
    timeout: int | None = None,
) -> BuilderResult:
    """Execute a pi-gen build.

    Blocks until pi-gen exits. stdout and stderr are merged and written line
    by line to log_path and the `rpi_imagegen.pigen.output` logger.

    Args:
        pigen_dir: Root of the pi-gen checkout.
        log_path: Build log location.
        use_docker: Run build-docker.sh instead of build.sh.
        env_override: Extra environment variables for the build.
        timeout: Build timeout in seconds (None = no timeout).

    Returns:
        BuilderResult with execution details.

    Raises:
        BuilderExecutionError: If the build cannot start or times out.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = compose_build_command(use_docker)
    cmd_str = shlex.join(cmd)

    logger.info("Executing build: %s", cmd_str)
    logger.info("Working directory: %s", pigen_dir)
    logger.info("Build log: %s", log_path)

    env = dict(os.environ)
    if env_override:
        env.update(env_override)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None
    timed_out = threading.Event()

    with log_path.open("w", encoding="utf-8") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {pigen_dir}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            process = subprocess.Popen(
                cmd,
                cwd=pigen_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                env=env,
            )
        except OSError as e:
            error_message = f"Failed to execute build: {e}"
            logger.error(error_message)
            raise BuilderExecutionError(
                error_message,
                exit_code=None,
                code="execution_error",
            ) from e

        if process.stdout is None:
            process.kill()
            error_message = "Failed to execute build: no output pipe"
            logger.error(error_message)
            raise BuilderExecutionError(error_message, code="execution_error")

        timer: threading.Timer | None = None
        if timeout is not None:

            def _kill() -> None:
                timed_out.set()
                process.kill()

            timer = threading.Timer(timeout, _kill)
            timer.start()

        try:
            _stream_output(process.stdout, log_file)
            exit_code = process.wait()
        finally:
            if timer is not None:
                timer.cancel()

        if timed_out.is_set():
            error_message = f"Build timed out after {timeout} seconds"
            logger.error("%s. See log: %s", error_message, log_path)
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
            raise BuilderExecutionError(
                error_message,
                exit_code=-1,
                code="build_timeout",
            )

        finished_at = datetime.now(timezone.utc)
        success = exit_code == 0
        if not success:
            error_message = f"Build failed with exit code {exit_code}"
            logger.error("%s. See log: %s", error_message, log_path)

        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return BuilderResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def tail_log(log_path: Path, lines: int = 40) -> list[str]:
    """Return the last lines of a build log (empty if it does not exist)."""
    if not log_path.is_file():
        return []
    with log_path.open(encoding="utf-8", errors="replace") as f:
        return [line.rstrip("\n") for line in deque(f, maxlen=lines)]


def remove_docker_container(name: str = DOCKER_CONTAINER_NAME) -> bool:
    """Remove pi-gen's work container, ignoring a missing container.

    Returns:
        True if docker reported the container removed.
    """
    try:
        result = subprocess.run(
            ["docker", "rm", "-v", name],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        logger.warning("Could not run docker to remove %s: %s", name, e)
        return False
    if result.returncode != 0:
        logger.info("No %s container to remove", name)
        return False
    logger.info("Removed docker container %s", name)
    return True


__all__ = [
    "DOCKER_CONTAINER_NAME",
    "BuilderExecutionError",
    "BuilderResult",
    "compose_build_command",
    "remove_docker_container",
    "render_pigen_config",
    "run_pigen",
    "tail_log",
    "write_pigen_config",
]
