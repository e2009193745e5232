"""Shared type definitions for rpi_imagegen.

This module contains dataclasses and enums shared across subpackages to avoid
circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    """Outcome of a pipeline run."""

    SUCCEEDED = "succeeded"
    # Builder succeeded but the export stage was excluded with --stage
    NO_IMAGE = "no-image"
    FAILED = "failed"


@dataclass
class ArtifactInfo:
    """Information about a produced image file."""

    filename: str
    path: str
    size_bytes: int
    sha256: str | None = None
    compressed_path: str | None = None
    checksum_path: str | None = None


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
]
