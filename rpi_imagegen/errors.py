"""Error taxonomy for rpi_imagegen.

Every fatal pipeline condition is raised as a PipelineError subclass with a
stable code (for programmatic handling) and a category matching the build
system's failure classes.
"""

# Error categories
ENVIRONMENT = "environment"
NETWORK = "network"
PATCH_VERIFICATION = "patch_verification"
BUILDER = "builder"
INTERNAL = "internal"


class PipelineError(Exception):
    """Base error for all fatal pipeline conditions.

    Attributes:
        code: Stable error code.
        category: One of the error categories defined in this module.
    """

    category = INTERNAL

    def __init__(
        self,
        message: str,
        code: str = "pipeline_error",
        category: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        if category is not None:
            self.category = category


class ConfigurationError(PipelineError):
    """Raised when build configuration is missing or invalid."""

    category = ENVIRONMENT

    def __init__(self, message: str, code: str = "config_error") -> None:
        super().__init__(message, code=code)


class HostEnvironmentError(PipelineError):
    """Raised when the host is missing a tool, privileges, or disk space."""

    category = ENVIRONMENT

    def __init__(self, message: str, code: str = "host_environment") -> None:
        super().__init__(message, code=code)


__all__ = [
    "BUILDER",
    "ENVIRONMENT",
    "INTERNAL",
    "NETWORK",
    "PATCH_VERIFICATION",
    "ConfigurationError",
    "HostEnvironmentError",
    "PipelineError",
]
