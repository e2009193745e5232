"""Tests for stages/synth.py module.

Plans stages for lite and desktop builds and writes them into a fake pi-gen
checkout.
"""

import dataclasses
import logging
import os
from pathlib import Path

import pytest

from rpi_imagegen.config import BuildConfiguration
from rpi_imagegen.errors import ENVIRONMENT
from rpi_imagegen.stages.models import StageRole, StageSynthesisError
from rpi_imagegen.stages.synth import (
    AUTOSTART_STEP,
    EXPORT_MARKER,
    HELPER_STEPS,
    RESOLVER_NAME,
    derive_application_settings,
    limit_plan,
    plan_stages,
    render_dependency_script,
    synthesize,
)

HELPERS = [helper for _, helper, _ in HELPER_STEPS] + [AUTOSTART_STEP[1]]


@pytest.fixture
def scripts_dir(tmp_path: Path) -> Path:
    path = tmp_path / "scripts"
    path.mkdir()
    for helper in HELPERS:
        (path / helper).write_text(f"#!/bin/bash\necho {helper}\n")
    return path


@pytest.fixture
def pigen_dir(tmp_path: Path) -> Path:
    root = tmp_path / "pi-gen"
    for stage in ("stage0", "stage1", "stage2", "stage3", "stage4"):
        (root / stage).mkdir(parents=True)
    # Upstream pi-gen exports from stage2 and stage4 by default
    (root / "stage2" / EXPORT_MARKER).touch()
    (root / "stage4" / EXPORT_MARKER).touch()
    return root


def _config(**overrides: str) -> BuildConfiguration:
    values = {"ARCHITECTURE": "arm64", "RPI_USERNAME": "artist", "BASE_IMAGE": "lite"}
    values.update(overrides)
    return BuildConfiguration(values)


class TestPlanStages:
    """Tests for plan_stages."""

    def test_lite_plan(self, scripts_dir: Path) -> None:
        plan = plan_stages(_config(), scripts_dir)

        assert plan.names == ["stage0", "stage1", "stage2", "stage3", "stage4", "stage5"]
        assert plan.get("stage4").role is StageRole.PASSTHROUGH
        assert plan.get("stage5").role is StageRole.CUSTOM
        assert plan.exported_stage.name == "stage5"

    def test_lite_placeholder_falls_back_past_stage3(self, scripts_dir: Path) -> None:
        prerun = plan_stages(_config(), scripts_dir).get("stage4").prerun
        assert "--ancestor stage2 --ancestor stage1 --ancestor stage0" in prerun
        assert "--verify" in prerun

    def test_passthrough_verify_can_be_disabled(self, scripts_dir: Path) -> None:
        plan = plan_stages(_config(VERIFY_PASSTHROUGH="false"), scripts_dir)
        assert "--verify" not in plan.get("stage4").prerun
        assert "--verify" in plan.get("stage5").prerun

    def test_desktop_plan(self, scripts_dir: Path) -> None:
        plan = plan_stages(_config(BASE_IMAGE="desktop"), scripts_dir)

        assert plan.get("stage4").role is StageRole.UPSTREAM
        assert plan.get("stage4").synthesized is False
        assert "--ancestor stage3" in plan.get("stage5").prerun

    def test_invalid_base_image(self, scripts_dir: Path) -> None:
        with pytest.raises(StageSynthesisError) as exc_info:
            plan_stages(_config(BASE_IMAGE="server"), scripts_dir)
        assert exc_info.value.code == "invalid_base_image"

    def test_custom_steps_in_order(self, scripts_dir: Path) -> None:
        steps = [s.name for s in plan_stages(_config(), scripts_dir).get("stage5").steps]
        assert steps == [
            "00-install-dependencies",
            "00a-configure-wireless-bluetooth",
            "01-configure-x11",
            "02-configure-autologin",
            "03-install-openframeworks",
            "04-install-ofxpimapper",
        ]

    def test_autostart_enabled(self, scripts_dir: Path) -> None:
        plan = plan_stages(_config(AUTOSTART_ENABLED="true"), scripts_dir)
        assert plan.get("stage5").steps[-1].name == "05-configure-autostart"

    def test_helper_missing_skips_step(self, scripts_dir: Path, caplog) -> None:
        (scripts_dir / "configure-x11.sh").unlink()

        with caplog.at_level(logging.WARNING):
            plan = plan_stages(_config(), scripts_dir)

        steps = [s.name for s in plan.get("stage5").steps]
        assert "01-configure-x11" not in steps
        assert "02-configure-autologin" in steps
        assert "configure-x11.sh" in caplog.text

    def test_helper_missing_strict(self, scripts_dir: Path) -> None:
        (scripts_dir / "configure-x11.sh").unlink()

        with pytest.raises(StageSynthesisError) as exc_info:
            plan_stages(_config(STRICT_HELPERS="true"), scripts_dir)

        assert exc_info.value.code == "helper_missing"
        assert exc_info.value.category == ENVIRONMENT

    def test_no_helpers_still_exports(self, tmp_path: Path) -> None:
        plan = plan_stages(_config(), tmp_path / "missing-scripts")

        stage5 = plan.get("stage5")
        assert [s.name for s in stage5.steps] == ["00-install-dependencies"]
        assert plan.exported_stage is stage5

    def test_plan_is_immutable(self, scripts_dir: Path) -> None:
        plan = plan_stages(_config(), scripts_dir)

        assert isinstance(plan.stages, tuple)
        assert isinstance(plan.get("stage5").steps, tuple)
        with pytest.raises(dataclasses.FrozenInstanceError):
            plan.get("stage5").exported = False

    def test_helper_files_are_pairs(self, scripts_dir: Path) -> None:
        step = plan_stages(_config(), scripts_dir).get("stage5").steps[2]
        assert step.files == (("configure-x11.sh", scripts_dir / "configure-x11.sh"),)

    def test_helper_exports_quoted(self, scripts_dir: Path) -> None:
        plan = plan_stages(_config(WIFI_SSID="Gallery Wi-Fi"), scripts_dir)
        step = plan.get("stage5").steps[1]
        assert "export WIFI_SSID='Gallery Wi-Fi'" in step.chroot_script
        assert "bash /tmp/configure-wireless-bluetooth.sh" in step.chroot_script


class TestDerivedSettings:
    """Tests for derive_application_settings."""

    def test_platform_from_architecture(self) -> None:
        assert derive_application_settings(_config())["OF_PLATFORM"] == "linuxaarch64"
        armhf = _config(ARCHITECTURE="armhf")
        assert derive_application_settings(armhf)["OF_PLATFORM"] == "linuxarmv7l"

    def test_root_from_username(self) -> None:
        values = derive_application_settings(_config())
        assert values["OF_ROOT"] == "/home/artist/openFrameworks"

    def test_explicit_values_win(self) -> None:
        values = derive_application_settings(_config(OF_ROOT="/opt/oF", OF_PLATFORM="x"))
        assert values["OF_ROOT"] == "/opt/oF"
        assert values["OF_PLATFORM"] == "x"


def test_dependency_script_reverts_trust_first() -> None:
    script = render_dependency_script(_config())
    assert script.index("trust_established()") < script.index("apt-get update -y")
    assert "libgles2-mesa-dev" in script


class TestLimitPlan:
    """Tests for limit_plan."""

    def test_none(self, scripts_dir: Path) -> None:
        plan = plan_stages(_config(), scripts_dir)
        assert limit_plan(plan, None) is plan

    def test_unknown_stage(self, scripts_dir: Path) -> None:
        with pytest.raises(StageSynthesisError) as exc_info:
            limit_plan(plan_stages(_config(), scripts_dir), "stage9")
        assert exc_info.value.code == "unknown_stage"

    def test_limit_before_export_warns(self, scripts_dir: Path, caplog) -> None:
        plan = plan_stages(_config(), scripts_dir)
        with caplog.at_level(logging.WARNING):
            limited = limit_plan(plan, "stage2")

        assert limited.stage_list == "stage0 stage1 stage2"
        assert limited.exports_image is False
        assert "no image will be exported" in caplog.text


class TestSynthesize:
    """Tests for synthesize."""

    def test_writes_lite_stages(self, scripts_dir: Path, pigen_dir: Path) -> None:
        plan = plan_stages(_config(), scripts_dir)

        written = synthesize(plan, pigen_dir)

        assert written == [pigen_dir / "stage4", pigen_dir / "stage5"]
        stage4 = pigen_dir / "stage4"
        assert (stage4 / "prerun.sh").read_text().startswith("#!/bin/bash -e\n")
        assert os.access(stage4 / "prerun.sh", os.X_OK)
        assert (stage4 / "files" / RESOLVER_NAME).is_file()
        assert (stage4 / "00-pass-through" / "00-run.sh").is_file()

        stage5 = pigen_dir / "stage5"
        assert (stage5 / "00-install-dependencies" / "00-run-chroot.sh").is_file()
        step = stage5 / "01-configure-x11"
        assert (step / "files" / "configure-x11.sh").is_file()
        assert 'install -m 755 -D files/configure-x11.sh' in (step / "00-run.sh").read_text()

    def test_only_custom_stage_exports(self, scripts_dir: Path, pigen_dir: Path) -> None:
        synthesize(plan_stages(_config(), scripts_dir), pigen_dir)

        markers = sorted(p.parent.name for p in pigen_dir.glob(f"*/{EXPORT_MARKER}"))
        assert markers == ["stage5"]

    def test_desktop_keeps_upstream_stage4(
        self, scripts_dir: Path, pigen_dir: Path
    ) -> None:
        (pigen_dir / "stage4" / "00-install-packages").mkdir()

        synthesize(plan_stages(_config(BASE_IMAGE="desktop"), scripts_dir), pigen_dir)

        assert (pigen_dir / "stage4" / "00-install-packages").is_dir()
        assert not (pigen_dir / "stage4" / "prerun.sh").exists()
        assert not (pigen_dir / "stage4" / EXPORT_MARKER).exists()

    def test_rewrites_from_scratch(self, scripts_dir: Path, pigen_dir: Path) -> None:
        """Leftovers from an earlier run must not survive a re-synthesis."""
        plan = plan_stages(_config(AUTOSTART_ENABLED="true"), scripts_dir)
        synthesize(plan, pigen_dir)
        assert (pigen_dir / "stage5" / "05-configure-autostart").is_dir()

        synthesize(plan_stages(_config(), scripts_dir), pigen_dir)

        assert not (pigen_dir / "stage5" / "05-configure-autostart").exists()

    def test_upstream_stage_missing(self, scripts_dir: Path, tmp_path: Path) -> None:
        empty = tmp_path / "empty-pi-gen"
        empty.mkdir()

        with pytest.raises(StageSynthesisError) as exc_info:
            synthesize(plan_stages(_config(), scripts_dir), empty)

        assert exc_info.value.code == "upstream_stage_missing"
