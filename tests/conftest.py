"""Shared fixtures for buildabox tests."""

from pathlib import Path

import pytest

from buildabox.config import Settings
from buildabox.toolchains.mapping import reset_toolchain_mapping


@pytest.fixture(autouse=True)
def fresh_toolchain_mapping():
    """Give every test its own process-wide toolchain mapping."""
    reset_toolchain_mapping()
    yield
    reset_toolchain_mapping()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary project directory."""
    return Settings(
        root_dir=tmp_path,
        db_url=f"sqlite:///{tmp_path / 'history.sqlite'}",
    )
