"""Smoke tests for the CLI.

These tests verify basic CLI functionality without network access, root
privileges, or a real pi-gen run.
"""

import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from rpi_imagegen import __version__
from rpi_imagegen.builds.pipeline import BuilderFailedError, PipelineResult
from rpi_imagegen.cli import app
from rpi_imagegen.errors import HostEnvironmentError
from rpi_imagegen.pigen.source import PigenCheckout
from rpi_imagegen.types import ArtifactInfo, BuildStatus

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures the root logger; undo it after each test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def base_config(tmp_path: Path):
    path = tmp_path / "build.conf"
    path.write_text(
        "ARCHITECTURE=arm64\nHOSTNAME=gallery-pi\nRPI_PASSWORD=hunter2\n"
    )
    with patch.dict(
        "os.environ",
        {
            "RPI_IMG_BASE_CONFIG": str(path),
            "RPI_IMG_WORK_DIR": str(tmp_path / "work"),
            "RPI_IMG_DEPLOY_DIR": str(tmp_path / "deploy"),
        },
    ):
        yield path


def _result(tmp_path: Path, status: BuildStatus = BuildStatus.SUCCEEDED) -> PipelineResult:
    artifact = None
    if status is BuildStatus.SUCCEEDED:
        artifact = ArtifactInfo(
            filename="gallery.img",
            path=str(tmp_path / "deploy" / "gallery.img"),
            size_bytes=1024,
            sha256="ab" * 32,
        )
    return PipelineResult(
        status=status,
        checkout=PigenCheckout(path=tmp_path / "work" / "pi-gen", branch="arm64", commit="abc1234"),
        stage_list="stage0 stage1 stage2 stage3 stage4 stage5",
        log_path=tmp_path / "deploy" / "build.log",
        duration_seconds=5400.0,
        artifact=artifact,
        record_path=tmp_path / "deploy" / "build-record.yaml",
    )


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Raspberry Pi image builder" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout

    def test_build_help_lists_flags(self) -> None:
        result = runner.invoke(app, ["build", "--help"])
        assert result.exit_code == 0
        for flag in ("--docker", "--config", "--clean", "--stage"):
            assert flag in result.stdout

    def test_invalid_log_level(self) -> None:
        result = runner.invoke(app, ["--log-level", "LOUD", "config"])
        assert result.exit_code == 2


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self, base_config: Path) -> None:
        result = runner.invoke(app, ["--log-level", "ERROR", "config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Operational:" in result.stdout
        assert "gallery-pi" in result.stdout
        assert "hunter2" not in result.stdout

    def test_config_json(self, base_config: Path, tmp_path: Path) -> None:
        """config --json should output settings and the masked build config."""
        override = tmp_path / "custom.conf"
        override.write_text("HOSTNAME=override-pi\n")

        result = runner.invoke(
            app, ["--log-level", "ERROR", "config", "--json", "-c", str(override)]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert set(data) == {"settings", "build", "sources"}
        assert data["build"]["HOSTNAME"] == "override-pi"
        assert data["build"]["RPI_PASSWORD"] == "********"
        assert data["sources"] == [str(base_config), str(override)]
        assert data["settings"]["min_free_space_gb"] == 25

    def test_config_missing_override(self, base_config: Path, tmp_path: Path) -> None:
        result = runner.invoke(
            app, ["--log-level", "ERROR", "config", "-c", str(tmp_path / "nope.conf")]
        )
        assert result.exit_code == 1
        assert "config_not_found" in result.stdout


class TestCLIBuild:
    """Test CLI build command with the pipeline mocked."""

    def test_build_success(self, base_config: Path, tmp_path: Path) -> None:
        with patch(
            "rpi_imagegen.builds.pipeline.run_pipeline", return_value=_result(tmp_path)
        ) as mock_run:
            result = runner.invoke(
                app, ["--log-level", "ERROR", "build", "--docker", "--stage", "stage5"]
            )

        assert result.exit_code == 0
        assert "Build complete" in result.stdout
        options = mock_run.call_args.args[0]
        assert options.use_docker is True
        assert options.stage == "stage5"
        assert options.clean is False

    def test_build_json(self, base_config: Path, tmp_path: Path) -> None:
        with patch(
            "rpi_imagegen.builds.pipeline.run_pipeline", return_value=_result(tmp_path)
        ):
            result = runner.invoke(app, ["--log-level", "ERROR", "build", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "succeeded"
        assert data["branch"] == "arm64"
        assert data["commit"] == "abc1234"
        assert data["sha256"] == "ab" * 32
        assert data["duration_seconds"] == 5400.0

    def test_build_no_image(self, base_config: Path, tmp_path: Path) -> None:
        with patch(
            "rpi_imagegen.builds.pipeline.run_pipeline",
            return_value=_result(tmp_path, BuildStatus.NO_IMAGE),
        ):
            result = runner.invoke(
                app, ["--log-level", "ERROR", "build", "--stage", "stage2", "--json"]
            )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "no-image"
        assert data["image"] is None

    def test_build_environment_error(self, base_config: Path) -> None:
        error = HostEnvironmentError(
            "Insufficient disk space: required 25 GiB, available 3.0 GiB",
            code="insufficient_disk_space",
        )
        with patch("rpi_imagegen.builds.pipeline.run_pipeline", side_effect=error):
            result = runner.invoke(app, ["--log-level", "ERROR", "build"])

        assert result.exit_code == 1
        assert "insufficient_disk_space" in result.stdout

    def test_build_builder_failure_shows_log_tail(
        self, base_config: Path, tmp_path: Path
    ) -> None:
        error = BuilderFailedError(
            "Build failed with exit code 1",
            log_path=tmp_path / "build.log",
            log_tail=["E: Unable to locate package rpi-swap"],
            exit_code=1,
        )
        with patch("rpi_imagegen.builds.pipeline.run_pipeline", side_effect=error):
            result = runner.invoke(app, ["--log-level", "ERROR", "build"])

        assert result.exit_code == 1
        assert "builder_failed" in result.stdout
        assert "E: Unable to locate package rpi-swap" in result.stdout

