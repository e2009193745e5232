"""Stage planning, synthesis and rootfs continuity.

This module handles:
- Planning the pi-gen stage list for lite and desktop builds
- Writing the pass-through and custom stages into the pi-gen checkout
- Resolving the root filesystem a synthesized stage builds on
"""

from rpi_imagegen.stages.models import Stage, StagePlan, StageRole, Step

__all__ = ["Stage", "StagePlan", "StageRole", "Step"]
