"""pi-gen checkout management.

pi-gen keeps 32-bit and 64-bit images on different branches: `master`
builds armhf images, `arm64` builds aarch64 images. The checkout lives under
the work directory and is reused across runs; an update always hard-resets to
the remote branch so that files patched by a previous run are restored.
"""

from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from rpi_imagegen.config import BuildConfiguration
from rpi_imagegen.errors import ConfigurationError, PipelineError
from rpi_imagegen.retry import DEFAULT_INITIAL_DELAY, DEFAULT_MAX_ATTEMPTS, run_with_retry

logger = logging.getLogger(__name__)

ARCH_BRANCHES: dict[str, str] = {
    "arm64": "arm64",
    "armhf": "master",
}


class PigenSourceError(PipelineError):
    """Raised when a local git operation on the checkout fails."""

    def __init__(self, message: str, code: str = "pigen_source_error") -> None:
        super().__init__(message, code=code)


@dataclass
class PigenCheckout:
    """A ready-to-use pi-gen checkout.

    Attributes:
        path: Root of the checkout.
        branch: Branch checked out.
        commit: Abbreviated HEAD commit.
    """

    path: Path
    branch: str
    commit: str


def select_branch(config: BuildConfiguration) -> str:
    """Choose the pi-gen branch for the target architecture.

    PIGEN_BRANCH overrides the architecture mapping.

    Raises:
        ConfigurationError: If the architecture is missing or unsupported.
    """
    override = config.get("PIGEN_BRANCH")
    if override:
        logger.info("Target branch: %s (PIGEN_BRANCH override)", override)
        return override

    arch = config.require("ARCHITECTURE")
    branch = ARCH_BRANCHES.get(arch)
    if branch is None:
        raise ConfigurationError(
            f"Unsupported ARCHITECTURE '{arch}' (expected one of: "
            f"{', '.join(sorted(ARCH_BRANCHES))})",
            code="invalid_architecture",
        )
    logger.info("Target branch: %s (for %s build)", branch, arch)
    return branch


def _git(pigen_dir: Path, *args: str) -> str:
    cmd = ["git", "-C", str(pigen_dir), *args]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
        )
    except subprocess.CalledProcessError as e:
        raise PigenSourceError(
            f"git {' '.join(args)} failed: {(e.stderr or '').strip()}",
            code="git_error",
        ) from e
    except OSError as e:
        raise PigenSourceError(
            f"Failed to run git: {e}",
            code="git_not_available",
        ) from e
    return result.stdout.strip()


def is_git_checkout(path: Path) -> bool:
    return (path / ".git").exists()


def validate_pigen_root(path: Path) -> bool:
    """Check that a directory looks like a pi-gen checkout."""
    if not path.is_dir():
        return False
    required_files = ["build.sh", "build-docker.sh"]
    if not all((path / f).is_file() for f in required_files):
        return False
    return (path / "stage0").is_dir()


def ensure_pigen(
    pigen_dir: Path,
    repo_url: str,
    branch: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> PigenCheckout:
    """Clone pi-gen, or bring an existing checkout to the remote branch tip.

    Args:
        pigen_dir: Checkout location.
        repo_url: Git URL to clone from.
        branch: Branch to check out.
        max_attempts: Attempts for network operations.
        initial_delay: Initial retry delay in seconds.
        sleep: Sleep function (injectable for tests).

    Returns:
        PigenCheckout describing the ready checkout.

    Raises:
        RetryExhaustedError: If clone/fetch keeps failing.
        PigenSourceError: If a local git command fails.
    """
    if is_git_checkout(pigen_dir):
        logger.info("Updating existing pi-gen repository at %s", pigen_dir)
        run_with_retry(
            [
                "git",
                "-C",
                str(pigen_dir),
                "fetch",
                "--depth",
                "1",
                "origin",
                f"+refs/heads/{branch}:refs/remotes/origin/{branch}",
            ],
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            sleep=sleep,
        )
        _git(pigen_dir, "checkout", "-f", "-B", branch, f"origin/{branch}")
        _git(pigen_dir, "reset", "--hard", f"origin/{branch}")
        _git(pigen_dir, "clean", "-fd")
    else:
        if pigen_dir.exists():
            logger.warning("%s exists but is not a git checkout, recloning", pigen_dir)
        logger.info("Cloning pi-gen repository (branch: %s)", branch)
        pigen_dir.parent.mkdir(parents=True, exist_ok=True)
        run_with_retry(
            [
                "git",
                "clone",
                "--depth",
                "1",
                "--branch",
                branch,
                repo_url,
                str(pigen_dir),
            ],
            max_attempts=max_attempts,
            initial_delay=initial_delay,
            target_dir=pigen_dir,
            sleep=sleep,
        )

    commit = _git(pigen_dir, "rev-parse", "--short", "HEAD")
    logger.info("Using pi-gen commit: %s (branch: %s)", commit, branch)
    return PigenCheckout(path=pigen_dir, branch=branch, commit=commit)


__all__ = [
    "ARCH_BRANCHES",
    "PigenCheckout",
    "PigenSourceError",
    "ensure_pigen",
    "is_git_checkout",
    "select_branch",
    "validate_pigen_root",
]
