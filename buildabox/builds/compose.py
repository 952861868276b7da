"""Config composition for builds.

This module handles:
- Merging a base BusyBox config with an optional per-target overlay
- Reading the effective option values of a composed config

The overlay for a target lives at ``<overrides_dir>/<target>.config``. Its
lines are appended after the base lines; Kconfig honors the last occurrence
of an option, so no deduplication is done here.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

OPTION_SET = re.compile(r"^(CONFIG_[A-Za-z0-9_]+)=(.*)$")
OPTION_UNSET = re.compile(r"^# (CONFIG_[A-Za-z0-9_]+) is not set$")


class ConfigNotFoundError(Exception):
    """Raised when the base config file does not exist."""

    def __init__(self, path: Path, code: str = "config_not_found") -> None:
        super().__init__(f"Config file not found: {path}")
        self.path = path
        self.code = code


def overlay_path_for(overrides_dir: Path, target: str) -> Path:
    """Return the overlay path for a target."""
    return overrides_dir / f"{target}.config"


def composed_path_for(output_dir: Path, target: str) -> Path:
    """Return the composed config path for a target."""
    return output_dir / f".config.{target}"


def compose_config(
    base_config: Path,
    target: str,
    overrides_dir: Path,
    output_dir: Path,
) -> Path:
    """Compose the config used to build one target.

    Args:
        base_config: Base BusyBox config file.
        target: Target name.
        overrides_dir: Directory of ``<target>.config`` overlays.
        output_dir: Directory receiving composed configs.

    Returns:
        Path to the composed config, or ``base_config`` itself when the
        target has no overlay.

    Raises:
        ConfigNotFoundError: If the base config does not exist.
    """
    if not base_config.is_file():
        raise ConfigNotFoundError(base_config)

    overlay = overlay_path_for(overrides_dir, target)
    if not overlay.is_file():
        return base_config

    logger.info("[%s] Found architecture-specific config %s", target, overlay)

    base_bytes = base_config.read_bytes()
    if base_bytes and not base_bytes.endswith(b"\n"):
        base_bytes += b"\n"

    output_dir.mkdir(parents=True, exist_ok=True)
    composed = composed_path_for(output_dir, target)
    composed.write_bytes(base_bytes + overlay.read_bytes())
    return composed


def read_config_options(path: Path) -> dict[str, str | None]:
    """Read the effective options of a config file.

    Later occurrences of an option replace earlier ones. Options disabled
    with ``# CONFIG_X is not set`` map to None.

    Args:
        path: Config file.

    Returns:
        Mapping of option name to value.
    """
    options: dict[str, str | None] = {}
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        stripped = line.strip()
        if match := OPTION_SET.match(stripped):
            options[match.group(1)] = match.group(2)
        elif match := OPTION_UNSET.match(stripped):
            options[match.group(1)] = None
    return options


__all__ = [
    "ConfigNotFoundError",
    "compose_config",
    "composed_path_for",
    "overlay_path_for",
    "read_config_options",
]
