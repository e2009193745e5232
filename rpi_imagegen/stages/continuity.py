"""Root filesystem continuity for synthesized pi-gen stages.

Every pi-gen stage builds on the root filesystem of its predecessor. A stage
that pi-gen did not create itself has to materialize that snapshot in its
prerun. This module resolves which snapshot to use and copies it into the
current stage's work directory.

Resolution order:

1. the predecessor's rootfs (PREV_ROOTFS_DIR), when it exists and is
   non-empty;
2. otherwise the nearest valid ancestor, in the order given;
3. otherwise nothing: the stage has no base to build on and must fail.

This file is copied verbatim into the stage's `files/` directory and run with
the stock interpreter inside the build environment, so it only uses the
standard library and never imports from rpi_imagegen.

Usage (from a stage prerun):

    python3 files/resolve_rootfs.py --ancestor stage3 --verify
"""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Union

logger = logging.getLogger("rpi_imagegen.continuity")

PRIMARY = "primary"
FALLBACK = "fallback"

RSYNC_EXCLUDES = ("/var/cache/apt/archives", "/boot/firmware")


@dataclass(frozen=True)
class Found:
    """A usable snapshot.

    Attributes:
        path: Root of the snapshot.
        source: PRIMARY for the predecessor, FALLBACK for an ancestor.
    """

    path: Path
    source: str


@dataclass(frozen=True)
class Missing:
    """No usable snapshot; tried lists every candidate in order."""

    tried: tuple[Path, ...]


SnapshotRef = Union[Found, Missing]


def is_valid_snapshot(path: Path) -> bool:
    """A snapshot is valid when it is an existing, non-empty directory."""
    if not path.is_dir():
        return False
    return any(path.iterdir())


def ancestor_rootfs_dirs(prev_rootfs: Path, ancestor_stages: Sequence[str]) -> list[Path]:
    """Rootfs paths of ancestor stages, derived from the predecessor's.

    pi-gen lays out work/<img>/<stage>/rootfs, so ancestors are siblings of
    the predecessor's stage directory.
    """
    work_root = prev_rootfs.parent.parent
    return [work_root / stage / "rootfs" for stage in ancestor_stages]


def resolve_snapshot(prev_rootfs: Path, ancestors: Sequence[Path]) -> SnapshotRef:
    """Pick the snapshot the current stage builds on.

    Args:
        prev_rootfs: The predecessor's rootfs.
        ancestors: Fallback candidates, nearest first.

    Returns:
        Found for the first valid candidate, Missing otherwise.
    """
    if is_valid_snapshot(prev_rootfs):
        return Found(prev_rootfs, PRIMARY)

    for candidate in ancestors:
        if is_valid_snapshot(candidate):
            return Found(candidate, FALLBACK)

    return Missing((prev_rootfs, *ancestors))


def rsync_command(source: Path, rootfs_dir: Path) -> list[str]:
    cmd = ["rsync", "-aHAXx"]
    for exclude in RSYNC_EXCLUDES:
        cmd.extend(["--exclude", exclude])
    cmd.extend([f"{source}/", f"{rootfs_dir}/"])
    return cmd


def materialize_snapshot(
    source: Path,
    rootfs_dir: Path,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> None:
    """Copy a snapshot into the current stage's rootfs.

    The source is copied, never moved: it may be needed again by a later
    stage or a re-run.

    Raises:
        subprocess.CalledProcessError: If rsync fails.
    """
    rootfs_dir.mkdir(parents=True, exist_ok=True)
    runner(rsync_command(source, rootfs_dir), check=True)


def _env_path(value: str | None) -> Path | None:
    return Path(value) if value else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Materialize the predecessor root filesystem for a pi-gen stage.",
    )
    parser.add_argument(
        "--prev-rootfs",
        type=Path,
        default=_env_path(os.environ.get("PREV_ROOTFS_DIR")),
        help="Predecessor rootfs (default: $PREV_ROOTFS_DIR)",
    )
    parser.add_argument(
        "--rootfs",
        type=Path,
        default=_env_path(os.environ.get("ROOTFS_DIR")),
        help="Current stage rootfs (default: $ROOTFS_DIR)",
    )
    parser.add_argument(
        "--ancestor",
        action="append",
        default=[],
        metavar="STAGE",
        help="Fallback ancestor stage, nearest first (repeatable)",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Fail if the materialized rootfs is empty",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    if args.prev_rootfs is None or args.rootfs is None:
        parser.error("PREV_ROOTFS_DIR and ROOTFS_DIR must be set")

    ancestors = ancestor_rootfs_dirs(args.prev_rootfs, args.ancestor)
    ref = resolve_snapshot(args.prev_rootfs, ancestors)

    if isinstance(ref, Missing):
        logger.error("No previous root filesystem found, nothing to build on")
        for path in ref.tried:
            logger.error("Tried: %s", path)
        return 1

    if ref.source == FALLBACK:
        logger.warning("Predecessor rootfs not found, falling back to %s", ref.path)
    else:
        logger.info("Using predecessor rootfs: %s", ref.path)

    logger.info("Copying rootfs from %s to %s", ref.path, args.rootfs)
    try:
        materialize_snapshot(ref.path, args.rootfs)
    except subprocess.CalledProcessError as e:
        logger.error("rsync failed with exit code %d", e.returncode)
        return 1
    except OSError as e:
        logger.error("Could not run rsync: %s", e)
        return 1

    if args.verify and not is_valid_snapshot(args.rootfs):
        logger.error("Rootfs %s is empty after copy", args.rootfs)
        return 1

    logger.info("Rootfs ready: %s", args.rootfs)
    return 0


if __name__ == "__main__":
    sys.exit(main())
