"""Stage planning and synthesis.

Stock pi-gen builds stage0-stage3 (lite) and stage4 (desktop). This module
plans the full stage list for a build and writes the stages rpi_imagegen owns
into the pi-gen checkout:

- stage4 is left to pi-gen for desktop images; for lite images it becomes a
  pass-through placeholder that only carries the rootfs forward.
- stage5 is the custom application stage and the only exported stage.

Synthesized stages are rewritten from scratch on every run.
"""

from __future__ import annotations

import logging
import shlex
import shutil
from pathlib import Path

from rpi_imagegen.config import BuildConfiguration
from rpi_imagegen.errors import ENVIRONMENT
from rpi_imagegen.pigen.trust import render_trust_revert
from rpi_imagegen.stages import continuity
from rpi_imagegen.stages.models import (
    Stage,
    StagePlan,
    StageRole,
    StageSynthesisError,
    Step,
)

logger = logging.getLogger(__name__)

UPSTREAM_STAGES = ("stage0", "stage1", "stage2", "stage3")
DESKTOP_STAGE = "stage4"
CUSTOM_STAGE = "stage5"

RESOLVER_NAME = "resolve_rootfs.py"
EXPORT_MARKER = "EXPORT_IMAGE"
SCRIPT_MODE = 0o755

OF_PLATFORMS: dict[str, str] = {
    "arm64": "linuxaarch64",
    "armhf": "linuxarmv7l",
}

# Packages installed at the start of the custom stage, by purpose
DEPENDENCY_GROUPS: dict[str, tuple[str, ...]] = {
    "build essentials": (
        "build-essential", "git", "cmake", "pkg-config", "gdb", "ccache",
    ),
    "OpenGL ES and graphics libraries": (
        "libgles2-mesa-dev", "libglu1-mesa-dev", "libglew-dev", "libglfw3-dev",
        "libegl1-mesa-dev", "mesa-utils", "libdrm-dev", "libgbm-dev",
    ),
    "GStreamer and plugins": (
        "libgstreamer1.0-dev", "libgstreamer-plugins-base1.0-dev",
        "gstreamer1.0-plugins-base", "gstreamer1.0-plugins-good",
        "gstreamer1.0-plugins-bad", "gstreamer1.0-plugins-ugly",
        "gstreamer1.0-libav", "gstreamer1.0-alsa", "gstreamer1.0-tools",
    ),
    "audio libraries": (
        "libasound2-dev", "libpulse-dev", "librtaudio-dev", "alsa-utils",
        "pulseaudio", "libmpg123-dev", "libsndfile1-dev", "libfreeimage-dev",
        "libopenal-dev",
    ),
    "additional libraries": (
        "libfreetype6-dev", "libfontconfig1-dev", "libcairo2-dev", "libglm-dev",
        "libxrandr-dev", "libxi-dev", "libxcursor-dev", "libxinerama-dev",
        "libxxf86vm-dev", "libxmu-dev", "libudev-dev", "libboost-all-dev",
        "libssl-dev", "libpoco-dev", "libpugixml-dev", "libgtk-3-dev",
        "libjpeg-dev", "libpng-dev", "libtiff-dev", "libavcodec-dev",
        "libavformat-dev", "libswscale-dev", "libv4l-dev", "libxvidcore-dev",
        "libx264-dev", "liburiparser-dev",
    ),
    "utilities": (
        "curl", "wget", "unzip", "rsync", "htop", "vim", "nano", "screen",
        "tmux", "net-tools", "wireless-tools",
    ),
    "Python": ("python3", "python3-pip", "python3-dev"),
}

# (step name, helper script, configuration keys forwarded into the chroot)
HELPER_STEPS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    (
        "00a-configure-wireless-bluetooth",
        "configure-wireless-bluetooth.sh",
        ("RPI_USERNAME", "WIFI_SSID", "WIFI_PASSWORD", "WIFI_COUNTRY"),
    ),
    (
        "01-configure-x11",
        "configure-x11.sh",
        ("RPI_USERNAME", "SCREEN_WIDTH", "SCREEN_HEIGHT", "FORCE_X"),
    ),
    (
        "02-configure-autologin",
        "configure-autologin.sh",
        ("RPI_USERNAME", "ENABLE_AUTOLOGIN", "DISABLE_SUDO_PASSWORD"),
    ),
    (
        "03-install-openframeworks",
        "install-openframeworks.sh",
        ("OF_VERSION", "OF_PLATFORM", "OF_ROOT"),
    ),
    (
        "04-install-ofxpimapper",
        "install-ofxpimapper.sh",
        ("RPI_USERNAME", "OF_ROOT"),
    ),
)

AUTOSTART_STEP: tuple[str, str, tuple[str, ...]] = (
    "05-configure-autostart",
    "configure-autostart.sh",
    (
        "RPI_USERNAME",
        "OF_ROOT",
        "AUTOSTART_ENABLED",
        "AUTOSTART_PROJECT",
        "AUTOSTART_DELAY",
        "AUTOSTART_FULLSCREEN",
        "AUTOSTART_RESTART_ON_CRASH",
    ),
)


def derive_application_settings(config: BuildConfiguration) -> dict[str, str]:
    """Effective values of the keys forwarded to helper scripts.

    OF_PLATFORM follows the architecture and OF_ROOT the first user's home
    unless set explicitly.
    """
    values = config.as_env()
    arch = config.require("ARCHITECTURE")
    if not values.get("OF_PLATFORM"):
        values["OF_PLATFORM"] = OF_PLATFORMS.get(arch, "linuxaarch64")
    if not values.get("OF_ROOT"):
        values["OF_ROOT"] = f"/home/{values.get('RPI_USERNAME', 'pi')}/openFrameworks"
    return values


def render_dependency_script(config: BuildConfiguration) -> str:
    """Chroot script installing the application's build dependencies."""
    lines = [
        "# Install system dependencies",
        render_trust_revert(config).rstrip(),
        "",
        'echo "[INFO] Updating package lists..."',
        "apt-get update -y",
        'echo "[INFO] Upgrading existing packages..."',
        "apt-get upgrade -y",
    ]
    for purpose, packages in DEPENDENCY_GROUPS.items():
        lines.append("")
        lines.append(f'echo "[INFO] Installing {purpose}..."')
        lines.append("apt-get install -y \\")
        lines.extend(f"    {pkg} \\" for pkg in packages[:-1])
        lines.append(f"    {packages[-1]}")
    lines.extend(
        [
            "",
            'echo "[INFO] Cleaning up..."',
            "apt-get autoremove -y",
            "apt-get autoclean -y",
            'echo "[INFO] Dependency installation completed successfully!"',
        ]
    )
    return "\n".join(lines) + "\n"


def helper_step(
    name: str,
    helper: str,
    forwarded: tuple[str, ...],
    values: dict[str, str],
    scripts_dir: Path,
) -> Step:
    """Step that copies a helper script into the rootfs and runs it there.

    Raises:
        StageSynthesisError: If the helper script does not exist.
    """
    source = scripts_dir / helper
    if not source.is_file():
        raise StageSynthesisError(
            f"Helper script not found: {source}",
            code="helper_missing",
            category=ENVIRONMENT,
        )

    exports = [
        f"export {key}={shlex.quote(values[key])}" for key in forwarded if key in values
    ]
    chroot_lines = [*exports, f"bash /tmp/{helper}", f"rm -f /tmp/{helper}"]
    return Step(
        name=name,
        host_script=f'install -m 755 -D files/{helper} "${{ROOTFS_DIR}}/tmp/{helper}"\n',
        chroot_script="\n".join(chroot_lines) + "\n",
        files={helper: source},
    )


def render_prerun(stage_name: str, ancestors: list[str], verify: bool) -> str:
    """prerun.sh materializing the predecessor rootfs via the resolver."""
    args = [f"files/{RESOLVER_NAME}"]
    for ancestor in ancestors:
        args.extend(["--ancestor", ancestor])
    if verify:
        args.append("--verify")
    return (
        f'echo "===== Preparing {stage_name} ====="\n'
        "if ! command -v python3 >/dev/null 2>&1; then\n"
        "    apt-get update && apt-get install -y --no-install-recommends python3-minimal\n"
        "fi\n"
        f"python3 {shlex.join(args)}\n"
    )


def passthrough_stage(name: str, ancestors: list[str], verify: bool) -> Stage:
    """Placeholder stage that only carries the rootfs forward.

    The single step exists so pi-gen creates the stage's work directory.
    """
    return Stage(
        name=name,
        role=StageRole.PASSTHROUGH,
        prerun=render_prerun(name, ancestors, verify),
        steps=[
            Step(
                name="00-pass-through",
                host_script=f'echo "{name}: pass-through, rootfs carried forward"\n',
            )
        ],
        files={RESOLVER_NAME: Path(continuity.__file__)},
    )


def custom_stage(
    name: str,
    config: BuildConfiguration,
    scripts_dir: Path,
    ancestors: list[str],
) -> Stage:
    """The exported application stage.

    A helper script missing from scripts_dir drops its step with a warning,
    unless STRICT_HELPERS is set, in which case it is fatal.
    """
    values = derive_application_settings(config)
    strict = config.get_bool("STRICT_HELPERS")
    helpers = list(HELPER_STEPS)
    if config.get_bool("AUTOSTART_ENABLED"):
        helpers.append(AUTOSTART_STEP)
    else:
        logger.info("Autostart disabled, skipping %s", AUTOSTART_STEP[0])

    steps = [
        Step(
            name="00-install-dependencies",
            chroot_script=render_dependency_script(config),
        )
    ]
    for step_name, helper, forwarded in helpers:
        try:
            steps.append(helper_step(step_name, helper, forwarded, values, scripts_dir))
        except StageSynthesisError as e:
            if strict:
                raise
            logger.warning("%s; step %s will not be built", e, step_name)

    return Stage(
        name=name,
        role=StageRole.CUSTOM,
        exported=True,
        prerun=render_prerun(name, ancestors, verify=True),
        steps=steps,
        files={RESOLVER_NAME: Path(continuity.__file__)},
    )


def plan_stages(config: BuildConfiguration, scripts_dir: Path) -> StagePlan:
    """Plan the stages for a build.

    Args:
        config: Build configuration.
        scripts_dir: Directory holding the helper scripts.

    Returns:
        StagePlan with stage5 as the single exported stage.

    Raises:
        StageSynthesisError: If BASE_IMAGE is unknown, or a helper is missing
            and STRICT_HELPERS is set.
    """
    base_image = (config.get("BASE_IMAGE") or "lite").lower()
    if base_image not in ("lite", "desktop"):
        raise StageSynthesisError(
            f"Unknown BASE_IMAGE '{base_image}' (expected 'lite' or 'desktop')",
            code="invalid_base_image",
            category=ENVIRONMENT,
        )

    stages = [Stage(name=name) for name in UPSTREAM_STAGES]

    if base_image == "desktop":
        logger.info("Desktop build: %s installs the desktop environment", DESKTOP_STAGE)
        stages.append(Stage(name=DESKTOP_STAGE))
    else:
        logger.info("Lite build: %s is a pass-through placeholder", DESKTOP_STAGE)
        stages.append(
            passthrough_stage(
                DESKTOP_STAGE,
                ancestors=list(reversed(UPSTREAM_STAGES[:-1])),
                verify=config.get_bool("VERIFY_PASSTHROUGH", default=True),
            )
        )

    previous = [s.name for s in stages]
    stages.append(
        custom_stage(
            CUSTOM_STAGE,
            config,
            scripts_dir,
            ancestors=list(reversed(previous[:-1])),
        )
    )
    return StagePlan(stages=stages)


def limit_plan(plan: StagePlan, stage: str | None) -> StagePlan:
    """Restrict the plan to stages up to and including `stage`.

    Raises:
        StageSynthesisError: If the stage is not part of the plan.
    """
    if stage is None:
        return plan
    if stage not in plan.names:
        raise StageSynthesisError(
            f"Unknown stage '{stage}' (available: {', '.join(plan.names)})",
            code="unknown_stage",
        )
    limited = plan.limited(stage)
    if not limited.exports_image:
        logger.warning(
            "Build limited to %s: %s will not run and no image will be exported",
            stage,
            plan.exported_stage.name,
        )
    return limited


def _write_script(path: Path, body: str) -> None:
    path.write_text("#!/bin/bash -e\n" + body, encoding="utf-8")
    path.chmod(SCRIPT_MODE)


def _copy_files(files: tuple[tuple[str, Path], ...], target_dir: Path) -> None:
    if not files:
        return
    target_dir.mkdir(parents=True, exist_ok=True)
    for name, source in files:
        dest = target_dir / name
        shutil.copy2(source, dest)
        dest.chmod(SCRIPT_MODE)


def write_stage(stage: Stage, stage_dir: Path) -> None:
    """Write one synthesized stage from scratch."""
    if stage_dir.exists():
        shutil.rmtree(stage_dir)
    stage_dir.mkdir(parents=True)

    if stage.prerun is not None:
        _write_script(stage_dir / "prerun.sh", stage.prerun)
    _copy_files(stage.files, stage_dir / "files")

    for step in stage.steps:
        step_dir = stage_dir / step.name
        step_dir.mkdir()
        if step.host_script is not None:
            _write_script(step_dir / "00-run.sh", step.host_script)
        if step.chroot_script is not None:
            _write_script(step_dir / "00-run-chroot.sh", step.chroot_script)
        if step.packages:
            (step_dir / "00-packages").write_text(
                "\n".join(step.packages) + "\n", encoding="utf-8"
            )
        _copy_files(step.files, step_dir / "files")


def synthesize(plan: StagePlan, pigen_dir: Path) -> list[Path]:
    """Write the plan's synthesized stages into the pi-gen checkout.

    EXPORT_IMAGE is set on the exported stage and removed from every other
    stage of the plan.

    Returns:
        Directories of the synthesized stages.
    """
    written: list[Path] = []
    for stage in plan.stages:
        stage_dir = pigen_dir / stage.name
        if stage.synthesized:
            write_stage(stage, stage_dir)
            logger.info(
                "Synthesized %s (%s, %d step(s))",
                stage.name,
                stage.role.value,
                len(stage.steps),
            )
            written.append(stage_dir)
        elif not stage_dir.is_dir():
            raise StageSynthesisError(
                f"Upstream stage {stage.name} not found in {pigen_dir}",
                code="upstream_stage_missing",
            )

        marker = stage_dir / EXPORT_MARKER
        if stage.exported:
            marker.touch()
        elif marker.exists():
            marker.unlink()
            logger.debug("Removed %s from %s", EXPORT_MARKER, stage.name)

    logger.info("Exporting image from %s", plan.exported_stage.name)
    return written


__all__ = [
    "CUSTOM_STAGE",
    "DEPENDENCY_GROUPS",
    "DESKTOP_STAGE",
    "EXPORT_MARKER",
    "RESOLVER_NAME",
    "UPSTREAM_STAGES",
    "derive_application_settings",
    "limit_plan",
    "plan_stages",
    "render_dependency_script",
    "synthesize",
    "write_stage",
]
