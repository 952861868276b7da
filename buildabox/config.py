"""Configuration settings for buildabox.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BUSYBOX_VERSION = "1.36.1"
DEFAULT_TARGETS = "x86_64-full i386 arm64 arm64-musl"
BUSYBOX_DOWNLOAD_BASE = "https://busybox.net/downloads"

# Denys Vlasenko's release signing key
BUSYBOX_SIGNING_KEY = "C9E9416F76E610DBD09D040F90B49FDB9E564609"


def parse_targets(value: str) -> list[str]:
    """Split a whitespace separated target list.

    Args:
        value: Target list such as ``"x86_64 arm64"``.

    Returns:
        Targets in their given order.
    """
    return value.split()


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDABOX_ prefix.
    Directory settings left unset are derived from ``root_dir``.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDABOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths; relative values are resolved against root_dir
    root_dir: Path = Field(
        default_factory=Path.cwd,
        description="Project root holding src/, build/, releases/ and configs/",
    )
    src_dir: Path = Field(
        default=Path("src"), description="BusyBox tarballs and extracted trees"
    )
    build_dir: Path = Field(
        default=Path("build"),
        description="Per-target work dirs, logs and built binaries",
    )
    releases_dir: Path = Field(
        default=Path("releases"), description="Dated release bundles and archives"
    )
    configs_dir: Path = Field(
        default=Path("configs"), description="Base configs and arch-specific overrides"
    )
    dockcross_dir: Path = Field(
        default=Path("dockcross"), description="Generated dockcross runner scripts"
    )
    config_file: Path = Field(
        default=Path("busybox-forensic.config"),
        description="Base BusyBox config file, relative to configs_dir unless absolute",
    )
    toolchains_file: Path | None = Field(
        default=None,
        description="Alternative toolchain table (uses the packaged table if not set)",
    )
    db_url: str = Field(
        default="",
        description="Run history database URL (defaults to SQLite under root_dir)",
    )

    # Build inputs
    busybox_version: str = Field(
        default=DEFAULT_BUSYBOX_VERSION, description="BusyBox version to build"
    )
    targets: str = Field(
        default=DEFAULT_TARGETS, description="Space separated list of targets"
    )
    busybox_base_url: str = Field(
        default=BUSYBOX_DOWNLOAD_BASE, description="BusyBox download server"
    )

    # Operational modes
    offline: bool = Field(
        default=False,
        description="Offline mode - do not download BusyBox source",
    )
    skip_tests: bool = Field(default=False, description="Skip smoke tests")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    docker_binary: str = Field(default="docker", description="Docker executable")

    # Concurrency
    parallel_builds: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrent builds",
    )

    # Verification
    require_signature: bool = Field(
        default=False,
        description="Fail when the source signature cannot be checked at all",
    )
    signing_key: str = Field(
        default=BUSYBOX_SIGNING_KEY, description="GPG key ID of the release signer"
    )
    gpg_keyserver: str = Field(
        default="keyserver.ubuntu.com", description="Keyserver to import the key from"
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for source downloads",
    )
    build_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for a single target build",
    )
    test_timeout: int = Field(
        default=60,
        ge=1,
        description="Timeout for a single smoke test command",
    )
    docker_timeout: int = Field(
        default=1800,
        ge=10,
        description="Timeout for docker pull/run when provisioning toolchains",
    )

    @model_validator(mode="after")
    def _derive_paths(self) -> "Settings":
        # Joining keeps absolute values unchanged
        root = self.root_dir
        self.src_dir = root / self.src_dir
        self.build_dir = root / self.build_dir
        self.releases_dir = root / self.releases_dir
        self.configs_dir = root / self.configs_dir
        self.dockcross_dir = root / self.dockcross_dir
        self.config_file = self.configs_dir / self.config_file
        if not self.db_url:
            self.db_url = f"sqlite:///{root / '.buildabox' / 'history.sqlite'}"
        return self

    @property
    def overrides_dir(self) -> Path:
        """Directory holding ``<target>.config`` overlays."""
        return self.configs_dir / "arch-specific"

    @property
    def target_list(self) -> list[str]:
        """Parsed ``targets`` value."""
        return parse_targets(self.targets)


def get_settings(**overrides: object) -> Settings:
    """Get the application settings.

    Args:
        **overrides: Field values taking precedence over the environment.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings(**overrides)  # type: ignore[arg-type]


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "BUSYBOX_DOWNLOAD_BASE",
    "BUSYBOX_SIGNING_KEY",
    "DEFAULT_BUSYBOX_VERSION",
    "DEFAULT_TARGETS",
    "Settings",
    "get_settings",
    "parse_targets",
    "print_settings_json",
]
