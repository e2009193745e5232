"""Build orchestration module.

This module handles:
- Host prerequisite and disk space checks
- Running the pipeline end to end
- Collecting, compressing and checksumming the image
- Writing the build record
"""

from rpi_imagegen.types import ArtifactInfo, BuildStatus

__all__ = ["ArtifactInfo", "BuildStatus"]
