"""Tests for pigen/source.py module.

Uses mocked subprocess so no git command really runs.
"""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rpi_imagegen.config import BuildConfiguration
from rpi_imagegen.errors import ConfigurationError
from rpi_imagegen.pigen.source import (
    PigenSourceError,
    ensure_pigen,
    is_git_checkout,
    select_branch,
    validate_pigen_root,
)
from rpi_imagegen.retry import RetryExhaustedError

REPO_URL = "https://github.com/RPi-Distro/pi-gen.git"


def _completed(returncode: int = 0, stdout: str = "") -> MagicMock:
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    return result


class FakeGit:
    """Records git invocations and answers rev-parse with a fixed commit."""

    def __init__(self, fail_network: int = 0) -> None:
        self.calls: list[list[str]] = []
        self.fail_network = fail_network

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if "rev-parse" in cmd:
            return _completed(stdout="abc1234\n")
        if ("clone" in cmd or "fetch" in cmd) and self.fail_network > 0:
            self.fail_network -= 1
            return _completed(128)
        return _completed(0)

    def subcommands(self) -> list[str]:
        result = []
        for cmd in self.calls:
            args = cmd[3:] if cmd[1] == "-C" else cmd[1:]
            result.append(args[0])
        return result


class TestSelectBranch:
    """Tests for select_branch."""

    def test_arm64(self) -> None:
        assert select_branch(BuildConfiguration({"ARCHITECTURE": "arm64"})) == "arm64"

    def test_armhf(self) -> None:
        assert select_branch(BuildConfiguration({"ARCHITECTURE": "armhf"})) == "master"

    def test_override(self) -> None:
        config = BuildConfiguration({"ARCHITECTURE": "arm64", "PIGEN_BRANCH": "bookworm-arm64"})
        assert select_branch(config) == "bookworm-arm64"

    def test_unsupported_architecture(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            select_branch(BuildConfiguration({"ARCHITECTURE": "x86_64"}))
        assert exc_info.value.code == "invalid_architecture"

    def test_missing_architecture(self) -> None:
        with pytest.raises(ConfigurationError):
            select_branch(BuildConfiguration({}))


class TestValidatePigenRoot:
    """Tests for validate_pigen_root."""

    def test_valid(self, tmp_path: Path) -> None:
        (tmp_path / "build.sh").write_text("#!/bin/bash\n")
        (tmp_path / "build-docker.sh").write_text("#!/bin/bash\n")
        (tmp_path / "stage0").mkdir()
        assert validate_pigen_root(tmp_path) is True

    def test_missing_stage0(self, tmp_path: Path) -> None:
        (tmp_path / "build.sh").write_text("#!/bin/bash\n")
        (tmp_path / "build-docker.sh").write_text("#!/bin/bash\n")
        assert validate_pigen_root(tmp_path) is False

    def test_not_a_directory(self, tmp_path: Path) -> None:
        assert validate_pigen_root(tmp_path / "missing") is False


class TestEnsurePigen:
    """Tests for ensure_pigen."""

    def test_fresh_clone(self, tmp_path: Path) -> None:
        pigen_dir = tmp_path / "work" / "pi-gen"
        fake = FakeGit()

        with patch("subprocess.run", side_effect=fake):
            checkout = ensure_pigen(pigen_dir, REPO_URL, "arm64", sleep=MagicMock())

        assert checkout.path == pigen_dir
        assert checkout.branch == "arm64"
        assert checkout.commit == "abc1234"
        assert fake.calls[0] == [
            "git",
            "clone",
            "--depth",
            "1",
            "--branch",
            "arm64",
            REPO_URL,
            str(pigen_dir),
        ]
        assert fake.subcommands() == ["clone", "rev-parse"]

    def test_update_existing(self, tmp_path: Path) -> None:
        """An existing checkout is fetched and hard-reset, never recloned."""
        pigen_dir = tmp_path / "pi-gen"
        (pigen_dir / ".git").mkdir(parents=True)
        fake = FakeGit()

        with patch("subprocess.run", side_effect=fake):
            ensure_pigen(pigen_dir, REPO_URL, "master", sleep=MagicMock())

        assert fake.subcommands() == ["fetch", "checkout", "reset", "clean", "rev-parse"]
        assert "+refs/heads/master:refs/remotes/origin/master" in fake.calls[0]
        assert fake.calls[2][-2:] == ["--hard", "origin/master"]

    def test_non_git_directory_recloned(self, tmp_path: Path) -> None:
        pigen_dir = tmp_path / "pi-gen"
        pigen_dir.mkdir()
        (pigen_dir / "leftover").write_text("x")
        fake = FakeGit()

        with patch("subprocess.run", side_effect=fake):
            ensure_pigen(pigen_dir, REPO_URL, "arm64", sleep=MagicMock())

        assert fake.subcommands()[0] == "clone"
        assert not (pigen_dir / "leftover").exists()

    def test_clone_retried(self, tmp_path: Path) -> None:
        sleep = MagicMock()
        fake = FakeGit(fail_network=2)

        with patch("subprocess.run", side_effect=fake):
            ensure_pigen(tmp_path / "pi-gen", REPO_URL, "arm64", sleep=sleep)

        assert fake.subcommands() == ["clone", "clone", "clone", "rev-parse"]
        assert sleep.call_count == 2

    def test_clone_exhausted(self, tmp_path: Path) -> None:
        fake = FakeGit(fail_network=10)

        with patch("subprocess.run", side_effect=fake):
            with pytest.raises(RetryExhaustedError) as exc_info:
                ensure_pigen(
                    tmp_path / "pi-gen", REPO_URL, "arm64", max_attempts=3, sleep=MagicMock()
                )

        assert exc_info.value.attempts == 3
        assert "rev-parse" not in fake.subcommands()

    def test_local_git_failure(self, tmp_path: Path) -> None:
        pigen_dir = tmp_path / "pi-gen"
        (pigen_dir / ".git").mkdir(parents=True)

        def fake_run(cmd, **kwargs):
            if "checkout" in cmd:
                raise subprocess.CalledProcessError(1, cmd, stderr="pathspec error")
            return _completed(0)

        with patch("subprocess.run", side_effect=fake_run):
            with pytest.raises(PigenSourceError) as exc_info:
                ensure_pigen(pigen_dir, REPO_URL, "arm64", sleep=MagicMock())

        assert exc_info.value.code == "git_error"
        assert "pathspec error" in exc_info.value.message


def test_is_git_checkout(tmp_path: Path) -> None:
    assert is_git_checkout(tmp_path) is False
    (tmp_path / ".git").mkdir()
    assert is_git_checkout(tmp_path) is True
