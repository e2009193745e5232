"""Stage plan types.

A StagePlan is the ordered list of pi-gen stages for one build. Stages are
either left to pi-gen (UPSTREAM) or written by rpi_imagegen (PASSTHROUGH,
CUSTOM). Exactly one stage exports the image.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from rpi_imagegen.errors import PipelineError


class StageRole(str, Enum):
    """How a stage is produced."""

    UPSTREAM = "upstream"
    PASSTHROUGH = "passthrough"
    CUSTOM = "custom"


class StageSynthesisError(PipelineError):
    """Raised when a stage plan is invalid or cannot be written."""

    def __init__(
        self,
        message: str,
        code: str = "stage_synthesis_error",
        category: str | None = None,
    ) -> None:
        super().__init__(message, code=code, category=category)


def _file_pairs(
    files: Mapping[str, Path] | Iterable[tuple[str, Path]],
) -> tuple[tuple[str, Path], ...]:
    if isinstance(files, Mapping):
        return tuple(files.items())
    return tuple(files)


@dataclass(frozen=True)
class Step:
    """One pi-gen sub-stage directory.

    Attributes:
        name: Directory name, e.g. `03-install-openframeworks`.
        host_script: Body of `00-run.sh` (runs on the build host).
        chroot_script: Body of `00-run-chroot.sh` (runs inside the rootfs).
        files: Files copied into the step's `files/` dir, (name, source) pairs.
            A dict is accepted and converted.
        packages: Content of `00-packages`.
    """

    name: str
    host_script: str | None = None
    chroot_script: str | None = None
    files: tuple[tuple[str, Path], ...] = ()
    packages: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", _file_pairs(self.files))
        if self.packages is not None:
            object.__setattr__(self, "packages", tuple(self.packages))


@dataclass(frozen=True)
class Stage:
    """A pi-gen stage.

    Attributes:
        name: Stage directory name (stage0 ... stage5).
        steps: Sub-stages, in execution order (synthesized stages only).
        exported: Whether the stage carries the EXPORT_IMAGE marker.
        prerun: Body of `prerun.sh` (synthesized stages only).
        role: How the stage is produced.
        files: Stage-level auxiliary files, (name, source) pairs.
    """

    name: str
    steps: tuple[Step, ...] = ()
    exported: bool = False
    prerun: str | None = None
    role: StageRole = StageRole.UPSTREAM
    files: tuple[tuple[str, Path], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "files", _file_pairs(self.files))

    @property
    def synthesized(self) -> bool:
        return self.role is not StageRole.UPSTREAM


@dataclass(frozen=True)
class StagePlan:
    """Ordered stages for one build.

    Attributes:
        stages: All stages, in pi-gen order.
        limit: Last stage to run (advisory `--stage`), or None for all.
    """

    stages: tuple[Stage, ...]
    limit: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        exported = [s.name for s in self.stages if s.exported]
        if len(exported) != 1:
            raise StageSynthesisError(
                f"Exactly one stage must export the image, got: {exported or 'none'}",
                code="invalid_export",
            )

    @property
    def names(self) -> list[str]:
        return [s.name for s in self.stages]

    @property
    def exported_stage(self) -> Stage:
        return next(s for s in self.stages if s.exported)

    @property
    def active_stages(self) -> list[Stage]:
        """Stages pi-gen will run, honouring the limit."""
        if self.limit is None:
            return list(self.stages)
        index = self.names.index(self.limit)
        return list(self.stages[: index + 1])

    @property
    def stage_list(self) -> str:
        """STAGE_LIST value for pi-gen's config."""
        return " ".join(s.name for s in self.active_stages)

    @property
    def exports_image(self) -> bool:
        return self.exported_stage in self.active_stages

    def get(self, name: str) -> Stage | None:
        return next((s for s in self.stages if s.name == name), None)

    def limited(self, stage: str) -> StagePlan:
        return replace(self, limit=stage)


__all__ = [
    "Stage",
    "StagePlan",
    "StageRole",
    "StageSynthesisError",
    "Step",
]
