"""Optional edits to upstream pi-gen stage scripts.

Some upstream scripts assume a subsystem that is absent on certain builds
(the rpi-resize service, the CUPS lpadmin group). Each fixup guards the
affected command with an existence check. A fixup whose target script or
command is missing is skipped with a warning; it never fails the build.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScriptFixup:
    """A guarded replacement inside one upstream script.

    Attributes:
        name: Short identifier for logging.
        relative_path: Script path relative to the pi-gen root.
        pattern: Regex of the unguarded command.
        replacement: Replacement text (may use regex group references).
        guard_marker: Text present once the guard is applied.
    """

    name: str
    relative_path: str
    pattern: str
    replacement: str
    guard_marker: str


@dataclass
class FixupResult:
    """Outcome of one fixup."""

    name: str
    path: Path
    applied: bool
    skipped_reason: str | None = None


RPI_RESIZE_FIXUP = ScriptFixup(
    name="rpi-resize",
    relative_path="stage2/01-sys-tweaks/01-run.sh",
    pattern=r"systemctl enable rpi-resize(\.service)?(?=\s|$)",
    replacement=(
        "{ systemctl list-unit-files rpi-resize.service --no-pager 2>/dev/null"
        " | grep -q rpi-resize.service && systemctl enable rpi-resize\\1"
        ' || echo "rpi-resize.service not found, skipping"; }'
    ),
    guard_marker="systemctl list-unit-files rpi-resize.service",
)

LPADMIN_FIXUP = ScriptFixup(
    name="lpadmin",
    relative_path="stage3/01-print-support/00-run.sh",
    pattern=r'adduser "\$FIRST_USER_NAME" lpadmin',
    replacement=(
        "{ getent group lpadmin >/dev/null"
        ' && adduser "$FIRST_USER_NAME" lpadmin'
        ' || echo "lpadmin group not found (CUPS not installed), skipping"; }'
    ),
    guard_marker="getent group lpadmin",
)

DEFAULT_FIXUPS = (RPI_RESIZE_FIXUP, LPADMIN_FIXUP)


def apply_fixup(pigen_dir: Path, fixup: ScriptFixup) -> FixupResult:
    """Apply a single fixup.

    Returns:
        FixupResult; applied is False when the script was already guarded or
        the fixup was skipped.
    """
    path = pigen_dir / fixup.relative_path

    if not path.is_file():
        reason = f"{fixup.relative_path} not found"
        logger.warning("Skipping %s fixup: %s", fixup.name, reason)
        return FixupResult(fixup.name, path, applied=False, skipped_reason=reason)

    content = path.read_text(encoding="utf-8")

    if fixup.guard_marker in content:
        logger.info("%s fixup already applied to %s", fixup.name, fixup.relative_path)
        return FixupResult(fixup.name, path, applied=False)

    patched, count = re.subn(fixup.pattern, fixup.replacement, content)
    if count == 0:
        reason = "no matching command in script"
        logger.warning(
            "Skipping %s fixup: %s (%s)", fixup.name, reason, fixup.relative_path
        )
        return FixupResult(fixup.name, path, applied=False, skipped_reason=reason)

    path.write_text(patched, encoding="utf-8")
    logger.info("Patched %d command(s) in %s", count, fixup.relative_path)
    return FixupResult(fixup.name, path, applied=True)


def apply_fixups(
    pigen_dir: Path,
    fixups: tuple[ScriptFixup, ...] = DEFAULT_FIXUPS,
) -> list[FixupResult]:
    return [apply_fixup(pigen_dir, f) for f in fixups]


__all__ = [
    "DEFAULT_FIXUPS",
    "LPADMIN_FIXUP",
    "RPI_RESIZE_FIXUP",
    "FixupResult",
    "ScriptFixup",
    "apply_fixup",
    "apply_fixups",
]
