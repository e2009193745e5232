"""pi-gen integration.

This module handles:
- Cloning and updating the pi-gen checkout
- Injecting the repository trust bootstrap into stage0
- Removing unavailable packages from stage package lists
- Guarding optional commands in upstream stage scripts
- Writing pi-gen's config and running the build
"""

from rpi_imagegen.pigen.runner import BuilderResult
from rpi_imagegen.pigen.source import PigenCheckout

__all__ = ["BuilderResult", "PigenCheckout"]
