"""Package-list patching for pi-gen stages.

pi-gen stages install packages listed in `00-packages` / `00-packages-nr`
files: whitespace-separated package names, possibly several per line. Some
names are not available for every release/architecture and must be removed
before the builder runs, without disturbing the other names on the same line.

Removal is whole-token only: `rpi-swap` never matches `rpi-swap-extra`.
`#` comment lines are not part of the list and are never touched.
After patching, every file is verified; a removed name that is still present
means the patch logic is broken and aborts the pipeline.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from rpi_imagegen.errors import PATCH_VERIFICATION, PipelineError

logger = logging.getLogger(__name__)

PACKAGE_FILE_NAMES = ("00-packages", "00-packages-nr")
DEFAULT_MANIFEST_STAGES = ("stage2", "stage3")

# Packages referenced by upstream lists that are missing from the archive
DEFAULT_UNAVAILABLE_PACKAGES = (
    "rpi-swap",
    "rpi-loop-utils",
    "rpi-usb-gadget",
    "rpi-cloud-init-mods",
    "rpd-wayland-core",
    "rpd-x-core",
    "rpd-preferences",
    "rpd-theme",
)


class ManifestPatchError(PipelineError):
    """Raised when package files cannot be located or rewritten."""

    def __init__(self, message: str, code: str = "manifest_patch_error") -> None:
        super().__init__(message, code=code)


class ManifestVerificationError(PipelineError):
    """Raised when a removed package is still present after patching."""

    category = PATCH_VERIFICATION

    def __init__(self, path: Path, token: str, line: str) -> None:
        super().__init__(
            f"Package '{token}' still present in {path} after removal: {line!r}",
            code="patch_verification_failed",
        )
        self.path = path
        self.token = token
        self.line = line


@dataclass
class ManifestPatchResult:
    """Result of patching one package file.

    Attributes:
        path: The package file.
        changed: Whether the file was rewritten.
        removed: Number of occurrences removed per package name.
    """

    path: Path
    changed: bool
    removed: dict[str, int] = field(default_factory=dict)

    @property
    def total_removed(self) -> int:
        return sum(self.removed.values())


def token_pattern(token: str) -> re.Pattern[str]:
    """Regex matching token as a whole word (whitespace or line anchored)."""
    return re.compile(rf"(^|\s){re.escape(token)}(\s|$)")


def remove_tokens_from_line(line: str, tokens: frozenset[str]) -> tuple[str, Counter[str]]:
    """Remove whole tokens from a single line.

    Returns:
        Tuple of (new line, per-token removal counts). The line is returned
        unchanged when nothing was removed; otherwise the surviving tokens are
        joined with single spaces.
    """
    parts = line.split()
    kept = [p for p in parts if p not in tokens]
    removed = Counter(p for p in parts if p in tokens)
    if not removed:
        return line, removed
    return " ".join(kept), removed


def is_comment(line: str) -> bool:
    """Whether a package-list line is a `#` comment."""
    return line.lstrip().startswith("#")


def remove_tokens_from_text(
    text: str,
    tokens: Iterable[str],
) -> tuple[str, dict[str, int]]:
    """Remove whole tokens from package-list text.

    Lines that become empty, and whitespace-only lines, are dropped. Comment
    lines and lines without a target token are kept byte-for-byte, and every
    kept line keeps its own line ending (LF or CRLF).

    Args:
        text: File content.
        tokens: Package names to remove.

    Returns:
        Tuple of (new text, removal counts per token).
    """
    targets = frozenset(tokens)
    counts: Counter[str] = Counter()
    out_lines: list[str] = []

    for raw in text.splitlines(keepends=True):
        body = raw.rstrip("\r\n")
        ending = raw[len(body):]
        if is_comment(body):
            out_lines.append(raw)
            continue
        new_line, removed = remove_tokens_from_line(body, targets)
        counts.update(removed)
        if not new_line.strip():
            continue
        out_lines.append(new_line + ending)

    return "".join(out_lines), dict(counts)


def _read_raw(path: Path) -> str:
    with path.open(encoding="utf-8", newline="") as f:
        return f.read()


def verify_tokens_absent(path: Path, tokens: Iterable[str]) -> None:
    """Confirm no token is present as a whole word on any package line.

    Comment lines are not part of the package list and are not checked.

    Raises:
        ManifestVerificationError: On the first token still present.
    """
    lines = [line for line in _read_raw(path).splitlines() if not is_comment(line)]
    for token in tokens:
        pattern = token_pattern(token)
        for line in lines:
            if pattern.search(line):
                logger.error("Package '%s' still present after removal in %s", token, path)
                raise ManifestVerificationError(path, token, line)


def patch_manifest_file(path: Path, tokens: Sequence[str]) -> ManifestPatchResult:
    """Remove tokens from one package file and verify the result.

    The file is rewritten only when a token was found, so repeated runs are
    no-ops.

    Raises:
        ManifestPatchError: If the file cannot be read or written.
        ManifestVerificationError: If verification fails after patching.
    """
    try:
        original = _read_raw(path)
    except OSError as e:
        raise ManifestPatchError(
            f"Failed to read package file {path}: {e}",
            code="manifest_read_error",
        ) from e

    patched, removed = remove_tokens_from_text(original, tokens)
    changed = bool(removed)

    if changed:
        for token, count in sorted(removed.items()):
            logger.info("  Removing package: %s (%d occurrence(s))", token, count)
        try:
            path.write_text(patched, encoding="utf-8", newline="")
        except OSError as e:
            raise ManifestPatchError(
                f"Failed to write package file {path}: {e}",
                code="manifest_write_error",
            ) from e

    verify_tokens_absent(path, tokens)
    return ManifestPatchResult(path=path, changed=changed, removed=removed)


def find_package_files(
    pigen_dir: Path,
    stages: Sequence[str] = DEFAULT_MANIFEST_STAGES,
) -> list[Path]:
    """Find every package-list file under the given stages.

    Raises:
        ManifestPatchError: If no package file exists in any stage.
    """
    found: list[Path] = []
    for stage in stages:
        stage_dir = pigen_dir / stage
        if not stage_dir.is_dir():
            continue
        for name in PACKAGE_FILE_NAMES:
            found.extend(p for p in stage_dir.rglob(name) if p.is_file())

    if not found:
        raise ManifestPatchError(
            f"No package files found in {', '.join(stages)} under {pigen_dir}",
            code="no_package_files",
        )
    return sorted(found)


def patch_manifests(
    pigen_dir: Path,
    tokens: Sequence[str] = DEFAULT_UNAVAILABLE_PACKAGES,
    stages: Sequence[str] = DEFAULT_MANIFEST_STAGES,
) -> list[ManifestPatchResult]:
    """Patch and verify every package file of the given stages.

    Args:
        pigen_dir: Root of the pi-gen checkout.
        tokens: Package names to remove.
        stages: Stage directories to search.

    Returns:
        One result per package file.
    """
    files = find_package_files(pigen_dir, stages)
    logger.info("Removing unavailable packages from %d package file(s)", len(files))

    results: list[ManifestPatchResult] = []
    for path in files:
        logger.info("Processing package file: %s", path.relative_to(pigen_dir))
        result = patch_manifest_file(path, tokens)
        logger.info(
            "  Removed %d package occurrence(s) from %s",
            result.total_removed,
            path.name,
        )
        results.append(result)

    logger.info("Verified package removals in %d file(s)", len(results))
    return results


__all__ = [
    "DEFAULT_MANIFEST_STAGES",
    "DEFAULT_UNAVAILABLE_PACKAGES",
    "PACKAGE_FILE_NAMES",
    "ManifestPatchError",
    "ManifestPatchResult",
    "ManifestVerificationError",
    "find_package_files",
    "is_comment",
    "patch_manifest_file",
    "patch_manifests",
    "remove_tokens_from_line",
    "remove_tokens_from_text",
    "token_pattern",
    "verify_tokens_absent",
]
