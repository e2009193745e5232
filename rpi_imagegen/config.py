"""Configuration for rpi_imagegen.

Two layers live here:

- Settings: operational knobs of the orchestrator itself, parsed by
  pydantic-settings from RPI_IMG_* environment variables and an optional
  .env file. Precedence: CLI flags > env vars > defaults.
- BuildConfiguration: the flat KEY=value build description (architecture,
  release, hostname, user, application options). Loaded from a required base
  file and an optional override file; later files win.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Literal

from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from rpi_imagegen.errors import ConfigurationError

logger = logging.getLogger(__name__)

PIGEN_REPO_URL = "https://github.com/RPi-Distro/pi-gen.git"

TRUE_VALUES = frozenset({"1", "true", "yes", "on"})

# Defaults for optional build keys; ARCHITECTURE has none on purpose.
BUILD_DEFAULTS: dict[str, str] = {
    "RPI_OS_RELEASE": "bookworm",
    "BASE_IMAGE": "lite",
    "IMG_NAME": "ofxpimapper-rpi4",
    "HOSTNAME": "ofxpimapper",
    "LOCALE": "en_US.UTF-8",
    "KEYBOARD_LAYOUT": "us",
    "TIMEZONE": "UTC",
    "RPI_USERNAME": "mapper",
    "RPI_PASSWORD": "projection",
    "ENABLE_SSH": "1",
    "OF_VERSION": "0.12.0",
    "AUTOSTART_ENABLED": "false",
    "STRICT_HELPERS": "false",
    "GENERATE_CHECKSUMS": "true",
    "COMPRESS_IMAGE": "false",
    "VERIFY_PASSTHROUGH": "true",
}

SECRET_MARKERS = ("PASSWORD", "SECRET", "TOKEN")


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the RPI_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="RPI_IMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    base_config: Path = Field(
        default=Path("config/build.conf"),
        description="Base build configuration file (KEY=value)",
    )
    work_dir: Path = Field(
        default=Path("work"),
        description="Directory holding the pi-gen checkout",
    )
    deploy_dir: Path = Field(
        default=Path("deploy"),
        description="Directory receiving images, checksums and build records",
    )
    scripts_dir: Path = Field(
        default=Path("scripts"),
        description="Directory with helper scripts copied into the custom stage",
    )

    # Upstream
    pigen_repo_url: str = Field(
        default=PIGEN_REPO_URL,
        description="Git URL of the pi-gen repository",
    )

    # Host checks
    min_free_space_gb: int = Field(
        default=25,
        ge=0,
        description="Minimum free disk space required before a build starts",
    )

    # Network retry
    retry_max_attempts: int = Field(
        default=4,
        ge=1,
        le=10,
        description="Attempts for clone/fetch operations",
    )
    retry_initial_delay: float = Field(
        default=2.0,
        ge=0,
        description="Initial delay in seconds between retries (doubles each time)",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for the pi-gen build (None = no limit)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @property
    def pigen_dir(self) -> Path:
        """Location of the pi-gen checkout."""
        return self.work_dir / "pi-gen"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


class BuildConfiguration(Mapping[str, str]):
    """Immutable, ordered KEY=value build configuration.

    Values are always strings. Use the typed accessors for booleans and
    whitespace-separated lists.
    """

    def __init__(
        self,
        values: Mapping[str, str],
        sources: tuple[Path, ...] = (),
    ) -> None:
        self._values = MappingProxyType(dict(values))
        self.sources = sources

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"BuildConfiguration({len(self)} keys from {list(map(str, self.sources))})"

    def get(self, key: str, default: str | None = None) -> str | None:  # type: ignore[override]
        """Return a value, falling back to BUILD_DEFAULTS then default."""
        if key in self._values:
            return self._values[key]
        return BUILD_DEFAULTS.get(key, default)

    def require(self, key: str) -> str:
        """Return a value that must be present and non-empty.

        Raises:
            ConfigurationError: If the key is missing or empty.
        """
        value = self.get(key)
        if not value:
            raise ConfigurationError(
                f"Required configuration key missing: {key}",
                code="config_key_missing",
            )
        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None or value == "":
            return default
        return value.strip().lower() in TRUE_VALUES

    def get_list(self, key: str) -> list[str] | None:
        """Return a whitespace-separated list, or None if the key is unset."""
        value = self.get(key)
        if value is None or not value.strip():
            return None
        return value.split()

    def as_env(self) -> dict[str, str]:
        """Environment variables for subprocesses (defaults included)."""
        env = dict(BUILD_DEFAULTS)
        env.update(self._values)
        return env

    def masked(self) -> dict[str, str]:
        """Effective values with secrets masked, for display and records."""
        result: dict[str, str] = {}
        for key, value in self.as_env().items():
            upper = key.upper()
            if upper.endswith("_PASS") or any(m in upper for m in SECRET_MARKERS):
                result[key] = "********"
            else:
                result[key] = value
        return result


def read_config_file(path: Path) -> dict[str, str]:
    """Parse a single KEY=value file.

    Args:
        path: Path to the file.

    Returns:
        Ordered mapping of keys to string values.

    Raises:
        ConfigurationError: If the file does not exist.
    """
    if not path.is_file():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            code="config_not_found",
        )
    raw = dotenv_values(path, interpolate=False)
    return {key: "" if value is None else value for key, value in raw.items()}


def load_build_configuration(
    base_path: Path,
    override_path: Path | None = None,
) -> BuildConfiguration:
    """Load the base configuration and apply an optional override file.

    Later-loaded keys fully replace earlier ones. A missing base file is
    fatal, and so is an override that was requested but does not exist.

    Args:
        base_path: Required base settings file.
        override_path: Optional override settings file.

    Returns:
        Merged BuildConfiguration.

    Raises:
        ConfigurationError: If either file is missing.
    """
    logger.info("Loading build configuration from %s", base_path)
    values = read_config_file(base_path)
    sources = [base_path]

    if override_path is not None:
        logger.info("Loading custom configuration: %s", override_path)
        overrides = read_config_file(override_path)
        values.update(overrides)
        sources.append(override_path)

    config = BuildConfiguration(values, sources=tuple(sources))
    logger.debug("Loaded %d configuration keys", len(config))
    return config


__all__ = [
    "BUILD_DEFAULTS",
    "PIGEN_REPO_URL",
    "BuildConfiguration",
    "Settings",
    "get_settings",
    "load_build_configuration",
    "read_config_file",
]
