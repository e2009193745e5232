"""Pipeline driver.

This module provides the high-level build API:
- run_pipeline(): load configuration, verify the host, prepare pi-gen, run
  it and post-process the image
- Host prerequisite and disk space checks, done before any network or
  filesystem work
- A work directory lock so only one pipeline runs against a checkout

Every step either succeeds or raises a PipelineError; there is no partial
recovery. A failed builder run must be cleaned up with --clean.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rpi_imagegen.builds.artifacts import (
    collect_deploy_outputs,
    generate_build_record,
    process_image,
    write_build_record,
)
from rpi_imagegen.config import Settings, get_settings, load_build_configuration
from rpi_imagegen.errors import BUILDER, HostEnvironmentError, PipelineError
from rpi_imagegen.pigen.fixups import apply_fixups
from rpi_imagegen.pigen.manifest import DEFAULT_UNAVAILABLE_PACKAGES, patch_manifests
from rpi_imagegen.pigen.runner import (
    remove_docker_container,
    run_pigen,
    tail_log,
    write_pigen_config,
)
from rpi_imagegen.pigen.source import (
    PigenCheckout,
    PigenSourceError,
    ensure_pigen,
    select_branch,
    validate_pigen_root,
)
from rpi_imagegen.pigen.trust import inject_trust_bootstrap
from rpi_imagegen.stages.synth import limit_plan, plan_stages, synthesize
from rpi_imagegen.types import ArtifactInfo, BuildStatus

logger = logging.getLogger(__name__)

GIB = 1024**3

# pi-gen host dependencies: package -> command proving it is installed
HOST_REQUIRED_PACKAGES: dict[str, str] = {
    "git": "git",
    "curl": "curl",
    "quilt": "quilt",
    "parted": "parted",
    "qemu-user-static": "qemu-arm-static",
    "debootstrap": "debootstrap",
    "zerofree": "zerofree",
    "zip": "zip",
    "dosfstools": "mkfs.vfat",
    "libarchive-tools": "bsdtar",
    "libcap2-bin": "setcap",
    "grep": "grep",
    "rsync": "rsync",
    "xz-utils": "xz",
    "file": "file",
    "bc": "bc",
    "qemu-utils": "qemu-img",
    "kpartx": "kpartx",
    "python3": "python3",
}

DOCKER_REQUIRED_PACKAGES: dict[str, str] = {
    "docker": "docker",
    "git": "git",
}

LOCK_FILE_NAME = ".rpi-imagegen.lock"
BUILD_LOG_NAME = "build.log"


class BuilderFailedError(PipelineError):
    """Raised when pi-gen exits non-zero.

    Attributes:
        log_path: The build log.
        log_tail: Last lines of pi-gen's own output.
        exit_code: pi-gen's exit code.
    """

    category = BUILDER

    def __init__(
        self,
        message: str,
        log_path: Path,
        log_tail: list[str],
        exit_code: int | None = None,
        code: str = "builder_failed",
    ) -> None:
        super().__init__(message, code=code)
        self.log_path = log_path
        self.log_tail = log_tail
        self.exit_code = exit_code


@dataclass
class PipelineOptions:
    """Per-invocation options (the CLI flags).

    Attributes:
        use_docker: Build with pi-gen's Docker wrapper.
        override_config: Optional override configuration file.
        clean: Remove previous build output first.
        stage: Advisory last stage to run.
    """

    use_docker: bool = False
    override_config: Path | None = None
    clean: bool = False
    stage: str | None = None


@dataclass
class PipelineResult:
    """Outcome of a successful pipeline run."""

    status: BuildStatus
    checkout: PigenCheckout
    stage_list: str
    log_path: Path
    duration_seconds: float
    artifact: ArtifactInfo | None = None
    record_path: Path | None = None


def check_host_prerequisites(
    use_docker: bool,
    *,
    which: Callable[[str], str | None] = shutil.which,
    geteuid: Callable[[], int] = os.geteuid,
) -> None:
    """Verify the tools the chosen builder needs are installed.

    Raises:
        HostEnvironmentError: If privileges or tools are missing.
    """
    logger.info("Checking system requirements...")

    if use_docker:
        required = DOCKER_REQUIRED_PACKAGES
    else:
        if geteuid() != 0:
            raise HostEnvironmentError(
                "Please run as root (use sudo) or use --docker",
                code="root_required",
            )
        required = HOST_REQUIRED_PACKAGES

    missing = [pkg for pkg, command in required.items() if which(command) is None]
    if missing:
        if use_docker:
            hint = "Install Docker: https://docs.docker.com/get-docker/"
        else:
            hint = f"Install with: sudo apt-get install {' '.join(missing)}"
        logger.error("Missing required packages: %s", " ".join(missing))
        raise HostEnvironmentError(
            f"Missing required packages: {' '.join(missing)}. {hint}",
            code="missing_tools",
        )
    logger.info("All required tools found")


def nearest_existing_ancestor(path: Path) -> Path:
    """The path itself, or its closest parent that exists."""
    current = path.absolute()
    while not current.exists():
        current = current.parent
    return current


def check_disk_space(
    path: Path,
    min_free_gb: int,
    *,
    disk_usage: Callable[[Path], Any] = shutil.disk_usage,
) -> int:
    """Verify the filesystem holding path has enough free space.

    Returns:
        Free bytes.

    Raises:
        HostEnvironmentError: If free space is below min_free_gb.
    """
    mount_path = nearest_existing_ancestor(path)
    free = disk_usage(mount_path).free
    required = min_free_gb * GIB
    if free < required:
        logger.error(
            "Insufficient disk space on %s: %.1f GiB free, %d GiB required",
            mount_path,
            free / GIB,
            min_free_gb,
        )
        raise HostEnvironmentError(
            f"Insufficient disk space: required {min_free_gb} GiB, "
            f"available {free / GIB:.1f} GiB on {mount_path}",
            code="insufficient_disk_space",
        )
    logger.info("Disk space sufficient: %.1f GiB free", free / GIB)
    return free


@contextmanager
def pipeline_lock(work_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on the work directory.

    Raises:
        HostEnvironmentError: If another pipeline holds the lock.
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    lock_file = work_dir / LOCK_FILE_NAME

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            lock_acquired = True
        except BlockingIOError:
            raise HostEnvironmentError(
                f"Another build is running in {work_dir}",
                code="build_in_progress",
            ) from None
        logger.debug("Work directory lock acquired: %s", lock_file)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Work directory lock released: %s", lock_file)
        os.close(fd)


def clean_previous_build(settings: Settings, use_docker: bool) -> None:
    """Remove pi-gen's work tree and the deploy directory contents.

    Raises:
        HostEnvironmentError: If files cannot be removed.
    """
    logger.warning("Cleaning previous builds...")
    pigen_work = settings.pigen_dir / "work"
    try:
        if pigen_work.exists():
            shutil.rmtree(pigen_work)
            logger.info("Removed %s", pigen_work)
        if settings.deploy_dir.is_dir():
            for entry in settings.deploy_dir.iterdir():
                if entry.is_dir() and not entry.is_symlink():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            logger.info("Emptied %s", settings.deploy_dir)
    except OSError as e:
        raise HostEnvironmentError(
            f"Failed to clean previous build: {e}",
            code="clean_failed",
        ) from e

    if use_docker:
        remove_docker_container()
    logger.info("Clean complete")


def run_pipeline(
    options: PipelineOptions,
    settings: Settings | None = None,
    *,
    which: Callable[[str], str | None] = shutil.which,
    disk_usage: Callable[[Path], Any] = shutil.disk_usage,
    geteuid: Callable[[], int] = os.geteuid,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Run the full image build.

    Args:
        options: Per-invocation options.
        settings: Tool settings; loaded from the environment if None.
        which: Command lookup (injectable for tests).
        disk_usage: Disk usage function (injectable for tests).
        geteuid: Effective user id function (injectable for tests).
        sleep: Sleep used between network retries (injectable for tests).

    Returns:
        PipelineResult describing the build.

    Raises:
        PipelineError: On any fatal condition.
    """
    if settings is None:
        settings = get_settings()

    config = load_build_configuration(settings.base_config, options.override_config)
    branch = select_branch(config)

    check_host_prerequisites(options.use_docker, which=which, geteuid=geteuid)
    check_disk_space(settings.work_dir, settings.min_free_space_gb, disk_usage=disk_usage)

    plan = limit_plan(plan_stages(config, settings.scripts_dir), options.stage)

    with pipeline_lock(settings.work_dir):
        if options.clean:
            clean_previous_build(settings, options.use_docker)

        checkout = ensure_pigen(
            settings.pigen_dir,
            settings.pigen_repo_url,
            branch,
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            sleep=sleep,
        )
        if not validate_pigen_root(checkout.path):
            raise PigenSourceError(
                f"{checkout.path} does not look like a pi-gen checkout",
                code="invalid_checkout",
            )

        pigen_dir = checkout.path
        write_pigen_config(pigen_dir, config, plan.stage_list)
        inject_trust_bootstrap(pigen_dir, config)
        patch_manifests(
            pigen_dir,
            tokens=config.get_list("UNAVAILABLE_PACKAGES") or DEFAULT_UNAVAILABLE_PACKAGES,
        )
        apply_fixups(pigen_dir)
        synthesize(plan, pigen_dir)

        log_path = settings.deploy_dir / BUILD_LOG_NAME
        logger.info("Starting image build (this can take several hours)...")
        result = run_pigen(
            pigen_dir,
            log_path,
            use_docker=options.use_docker,
            env_override=config.as_env(),
            timeout=settings.build_timeout,
        )
        if not result.success:
            raise BuilderFailedError(
                result.error_message or "Build failed",
                log_path=log_path,
                log_tail=tail_log(log_path),
                exit_code=result.exit_code,
            )

        logger.info("Processing build artifacts...")
        collect_deploy_outputs(pigen_dir / "deploy", settings.deploy_dir)

        artifact: ArtifactInfo | None = None
        if plan.exports_image:
            artifact = process_image(
                settings.deploy_dir,
                compress=config.get_bool("COMPRESS_IMAGE"),
                checksum=config.get_bool("GENERATE_CHECKSUMS", default=True),
            )
            status = BuildStatus.SUCCEEDED
        else:
            logger.warning(
                "Build stopped at %s before the export stage; no image produced",
                options.stage,
            )
            status = BuildStatus.NO_IMAGE

        record = generate_build_record(
            artifact,
            branch=checkout.branch,
            commit=checkout.commit,
            duration_seconds=result.duration,
            configuration=config.masked(),
            use_docker=options.use_docker,
            stage_list=plan.stage_list,
            log_path=log_path,
        )
        record_path = write_build_record(record, settings.deploy_dir)

    logger.info("Build completed successfully!")
    return PipelineResult(
        status=status,
        checkout=checkout,
        stage_list=plan.stage_list,
        log_path=log_path,
        duration_seconds=result.duration,
        artifact=artifact,
        record_path=record_path,
    )


__all__ = [
    "DOCKER_REQUIRED_PACKAGES",
    "HOST_REQUIRED_PACKAGES",
    "BuilderFailedError",
    "PipelineOptions",
    "PipelineResult",
    "check_disk_space",
    "check_host_prerequisites",
    "clean_previous_build",
    "nearest_existing_ancestor",
    "pipeline_lock",
    "run_pipeline",
]
