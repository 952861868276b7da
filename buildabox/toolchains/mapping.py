"""Architecture to toolchain mapping.

This module owns the single table mapping a build target name to:
- the dockcross image used to cross-compile it
- the QEMU user-mode emulator used to run the result on a foreign host
- the ``uname -m`` machine name that runs it natively

The table is loaded once per process, from the packaged toolchains.yaml or
from the file named by ``Settings.toolchains_file``, and is read-only
afterwards.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

TARGET_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
PACKAGED_TABLE = "toolchains.yaml"


class UnknownTargetError(Exception):
    """Raised when a target has no toolchain mapping."""

    def __init__(self, target: str, code: str = "unknown_target") -> None:
        super().__init__(f"Unknown target: {target}")
        self.target = target
        self.code = code


class ToolchainTableError(Exception):
    """Raised when the toolchain table cannot be loaded."""

    def __init__(self, message: str, code: str = "toolchain_table_error") -> None:
        super().__init__(message)
        self.code = code


class ToolchainEntrySchema(BaseModel):
    """Schema for one entry of the toolchain table file."""

    model_config = ConfigDict(extra="forbid")

    image: str = Field(description="dockcross image name, e.g. 'linux-arm64'")
    emulator: str = Field(description="QEMU binary, e.g. 'qemu-aarch64-static'")
    machine: str = Field(description="uname -m of hosts that run it natively")

    @field_validator("image", "emulator", "machine")
    @classmethod
    def validate_token(cls, v: str) -> str:
        """Validate values are single path-safe tokens."""
        if not TARGET_PATTERN.match(v):
            raise ValueError(f"must be a single token of [A-Za-z0-9_.-], got '{v}'")
        return v


class ToolchainTableSchema(BaseModel):
    """Schema for the toolchain table file."""

    model_config = ConfigDict(extra="forbid")

    toolchains: dict[str, ToolchainEntrySchema]

    @field_validator("toolchains")
    @classmethod
    def validate_targets(
        cls, v: dict[str, ToolchainEntrySchema]
    ) -> dict[str, ToolchainEntrySchema]:
        """Validate target names."""
        for target in v:
            if not TARGET_PATTERN.match(target):
                raise ValueError(f"invalid target name '{target}'")
        return v


@dataclass(frozen=True)
class Toolchain:
    """Resolved toolchain for one target.

    Attributes:
        target: Target name.
        image: dockcross image name (without the ``dockcross/`` prefix).
        emulator: QEMU user-mode emulator binary name.
        machine: Host machine name that can run the binary natively.
    """

    target: str
    image: str
    emulator: str
    machine: str

    @property
    def docker_image(self) -> str:
        """Fully qualified Docker image reference."""
        return f"dockcross/{self.image}"

    @property
    def script_name(self) -> str:
        """Filename of the generated dockcross runner script."""
        return f"dockcross-{self.image}"


class ToolchainMapping(Mapping[str, Toolchain]):
    """Read-only mapping of target name to Toolchain."""

    def __init__(self, entries: Mapping[str, Toolchain]) -> None:
        self._entries = MappingProxyType(dict(entries))

    def __getitem__(self, target: str) -> Toolchain:
        return self._entries[target]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, target: str) -> Toolchain:
        """Look up a target.

        Raises:
            UnknownTargetError: If the target is not in the table.
        """
        try:
            return self._entries[target]
        except KeyError:
            raise UnknownTargetError(target) from None

    def unknown(self, targets: list[str]) -> list[str]:
        """Return the targets that have no mapping, in input order."""
        return [t for t in targets if t not in self._entries]


def parse_toolchain_table(data: dict[str, Any]) -> ToolchainMapping:
    """Validate raw table data and build a ToolchainMapping.

    Args:
        data: Parsed YAML document.

    Returns:
        ToolchainMapping instance.

    Raises:
        ToolchainTableError: If data does not match the schema.
    """
    try:
        table = ToolchainTableSchema.model_validate(data)
    except ValidationError as e:
        raise ToolchainTableError(
            f"Invalid toolchain table: {e}", code="invalid_table"
        ) from e

    return ToolchainMapping(
        {
            target: Toolchain(
                target=target,
                image=entry.image,
                emulator=entry.emulator,
                machine=entry.machine,
            )
            for target, entry in table.toolchains.items()
        }
    )


def load_toolchain_table(path: Path | None = None) -> ToolchainMapping:
    """Load a toolchain table from YAML.

    Args:
        path: Table file. Uses the packaged table if not provided.

    Returns:
        ToolchainMapping instance.

    Raises:
        ToolchainTableError: If the file is missing or invalid.
    """
    try:
        if path is None:
            text = (
                resources.files("buildabox.toolchains")
                .joinpath(PACKAGED_TABLE)
                .read_text(encoding="utf-8")
            )
        else:
            text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text)
    except OSError as e:
        raise ToolchainTableError(
            f"Cannot read toolchain table {path}: {e}", code="table_not_found"
        ) from e
    except yaml.YAMLError as e:
        raise ToolchainTableError(
            f"Toolchain table is not valid YAML: {e}", code="invalid_yaml"
        ) from e

    if not isinstance(data, dict):
        raise ToolchainTableError(
            "Toolchain table must be a YAML mapping", code="invalid_table"
        )

    mapping = parse_toolchain_table(data)
    logger.debug("Loaded %d toolchains from %s", len(mapping), path or PACKAGED_TABLE)
    return mapping


_mapping: ToolchainMapping | None = None
_mapping_lock = threading.Lock()


def init_toolchain_mapping(path: Path | None = None) -> ToolchainMapping:
    """Initialize the process-wide mapping.

    The first call wins; later calls return the existing mapping so every
    caller sees the same table for the lifetime of the process.

    Args:
        path: Table file. Uses the packaged table if not provided.

    Returns:
        The process-wide ToolchainMapping.
    """
    global _mapping
    with _mapping_lock:
        if _mapping is None:
            _mapping = load_toolchain_table(path)
        elif path is not None:
            logger.debug("Toolchain mapping already initialized, ignoring %s", path)
        return _mapping


def get_toolchain_mapping() -> ToolchainMapping:
    """Return the process-wide mapping, loading the packaged table if needed."""
    if _mapping is not None:
        return _mapping
    return init_toolchain_mapping()


def reset_toolchain_mapping() -> None:
    """Forget the process-wide mapping. Only meant for tests."""
    global _mapping
    with _mapping_lock:
        _mapping = None


def resolve_toolchain(target: str) -> Toolchain:
    """Resolve a target against the process-wide mapping.

    Raises:
        UnknownTargetError: If the target is not in the table.
    """
    return get_toolchain_mapping().resolve(target)


def resolve_emulator(target: str) -> str:
    """Return the emulator binary name for a target.

    Raises:
        UnknownTargetError: If the target is not in the table.
    """
    return resolve_toolchain(target).emulator


__all__ = [
    "Toolchain",
    "ToolchainMapping",
    "ToolchainTableError",
    "UnknownTargetError",
    "get_toolchain_mapping",
    "init_toolchain_mapping",
    "load_toolchain_table",
    "parse_toolchain_table",
    "reset_toolchain_mapping",
    "resolve_emulator",
    "resolve_toolchain",
]
