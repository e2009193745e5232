"""Artifact collection and build records.

This module handles:
- Moving pi-gen's deploy output into the project deploy directory
- Locating the produced disk image
- Optional xz compression of the image
- SHA-256 checksum files in sha256sum format
- The human-readable build record (YAML)
"""

from __future__ import annotations

import hashlib
import logging
import lzma
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from rpi_imagegen.errors import BUILDER, PipelineError
from rpi_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing and compression
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

BUILD_RECORD_NAME = "build-record.yaml"


class ArtifactError(PipelineError):
    """Raised when build outputs are missing or cannot be processed."""

    category = BUILDER

    def __init__(self, message: str, code: str = "artifact_error") -> None:
        super().__init__(message, code=code)


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def collect_deploy_outputs(pigen_deploy: Path, deploy_dir: Path) -> list[Path]:
    """Move everything pi-gen deployed into the project deploy directory.

    Existing entries with the same name are replaced.

    Returns:
        Paths of the moved entries in deploy_dir.
    """
    deploy_dir.mkdir(parents=True, exist_ok=True)
    if not pigen_deploy.is_dir():
        logger.warning("pi-gen deploy directory does not exist: %s", pigen_deploy)
        return []

    moved: list[Path] = []
    for entry in sorted(pigen_deploy.iterdir()):
        target = deploy_dir / entry.name
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()
        shutil.move(str(entry), str(target))
        moved.append(target)
        logger.debug("Moved %s to %s", entry.name, deploy_dir)

    logger.info("Collected %d deploy output(s) into %s", len(moved), deploy_dir)
    return moved


def find_image(deploy_dir: Path) -> Path:
    """Locate the disk image in the deploy directory.

    The most recently written `*.img` wins, so images left over from earlier
    runs are not picked up.

    Raises:
        ArtifactError: If no image exists.
    """
    images = sorted(p for p in deploy_dir.glob("*.img") if p.is_file())
    if not images:
        raise ArtifactError(
            f"No image file found in {deploy_dir}",
            code="image_not_found",
        )
    return max(images, key=lambda p: p.stat().st_mtime)


def compress_image(image: Path, chunk_size: int = HASH_CHUNK_SIZE) -> Path:
    """Write an xz-compressed copy next to the image.

    Returns:
        Path to `<image>.xz`.
    """
    target = image.with_name(image.name + ".xz")
    logger.info("Compressing %s", image.name)
    with image.open("rb") as src, lzma.open(target, "wb") as dst:
        while chunk := src.read(chunk_size):
            dst.write(chunk)
    logger.info("Compressed image: %s", target.name)
    return target


def write_checksum_file(image: Path, digest: str | None = None) -> Path:
    """Write `<image>.sha256` in sha256sum format (`<hex>  <name>`).

    Returns:
        Path to the checksum file.
    """
    if digest is None:
        digest = compute_file_hash(image)
    path = image.with_name(image.name + ".sha256")
    path.write_text(f"{digest}  {image.name}\n", encoding="utf-8")
    logger.info("SHA256 checksum generated: %s", path.name)
    return path


def format_size(size_bytes: int) -> str:
    """Human-readable binary size, e.g. `3.9GiB`."""
    size = float(size_bytes)
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GiB"


def generate_build_record(
    artifact: ArtifactInfo | None,
    *,
    branch: str,
    commit: str,
    duration_seconds: float,
    configuration: dict[str, str],
    use_docker: bool,
    stage_list: str,
    log_path: Path | None = None,
) -> dict[str, Any]:
    """Assemble the build record.

    Args:
        artifact: The produced image, or None when no image was exported.
        branch: pi-gen branch.
        commit: pi-gen commit.
        duration_seconds: Builder wall-clock time.
        configuration: Effective configuration with secrets already masked.
        use_docker: Whether the Docker builder was used.
        stage_list: Stages that were run.
        log_path: Build log location.

    Returns:
        Record dictionary suitable for YAML serialization.
    """
    now = datetime.now(timezone.utc)
    record: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "pigen": {"branch": branch, "commit": commit},
        "builder": "docker" if use_docker else "host",
        "stage_list": stage_list,
        "duration_seconds": round(duration_seconds, 1),
    }
    if artifact is not None:
        record["image"] = {
            "filename": artifact.filename,
            "size_bytes": artifact.size_bytes,
            "size": format_size(artifact.size_bytes),
            "sha256": artifact.sha256,
            "compressed": artifact.compressed_path,
        }
    if log_path is not None:
        record["log"] = str(log_path)
    record["configuration"] = dict(configuration)
    return record


def write_build_record(record: dict[str, Any], deploy_dir: Path) -> Path:
    """Write the build record to `deploy_dir/build-record.yaml`."""
    deploy_dir.mkdir(parents=True, exist_ok=True)
    path = deploy_dir / BUILD_RECORD_NAME
    with path.open("w", encoding="utf-8") as f:
        yaml.dump(
            record, f, default_flow_style=False, allow_unicode=True, sort_keys=False
        )
    logger.info("Wrote build record to %s", path)
    return path


def process_image(
    deploy_dir: Path,
    *,
    compress: bool = False,
    checksum: bool = True,
) -> ArtifactInfo:
    """Locate the image and produce its compressed copy and checksum.

    Raises:
        ArtifactError: If no image exists.
    """
    image = find_image(deploy_dir)
    size_bytes = image.stat().st_size
    logger.info("Image created: %s (%s)", image.name, format_size(size_bytes))

    artifact = ArtifactInfo(
        filename=image.name,
        path=str(image),
        size_bytes=size_bytes,
    )

    if compress:
        artifact.compressed_path = str(compress_image(image))

    if checksum:
        artifact.sha256 = compute_file_hash(image)
        artifact.checksum_path = str(write_checksum_file(image, artifact.sha256))

    return artifact


__all__ = [
    "BUILD_RECORD_NAME",
    "HASH_CHUNK_SIZE",
    "ArtifactError",
    "collect_deploy_outputs",
    "compress_image",
    "compute_file_hash",
    "find_image",
    "format_size",
    "generate_build_record",
    "process_image",
    "write_build_record",
    "write_checksum_file",
]
