"""Tests for builds/compose.py module."""

import pytest

from buildabox.builds.compose import (
    ConfigNotFoundError,
    compose_config,
    composed_path_for,
    overlay_path_for,
    read_config_options,
)


@pytest.fixture
def config_dirs(tmp_path):
    """Base config, overrides dir and output dir."""
    base = tmp_path / "busybox-forensic.config"
    base.write_bytes(b"CONFIG_STATIC=y\nCONFIG_FEATURE_UTMP=y\n")
    overrides = tmp_path / "arch-specific"
    overrides.mkdir()
    output = tmp_path / "build"
    return base, overrides, output


class TestComposeConfig:
    """Tests for compose_config function."""

    def test_no_overlay_returns_base(self, config_dirs):
        """Without an overlay the base path is returned unchanged."""
        base, overrides, output = config_dirs

        result = compose_config(base, "x86_64", overrides, output)

        assert result == base
        assert not output.exists()

    def test_overlay_appended(self, config_dirs):
        """Composed config is the base bytes followed by the overlay bytes."""
        base, overrides, output = config_dirs
        overlay = overlay_path_for(overrides, "android-arm64")
        overlay.write_bytes(b"# CONFIG_FEATURE_UTMP is not set\n")

        result = compose_config(base, "android-arm64", overrides, output)

        assert result == composed_path_for(output, "android-arm64")
        assert result == output / ".config.android-arm64"
        assert result.read_bytes() == base.read_bytes() + overlay.read_bytes()

    def test_newline_inserted_when_base_lacks_one(self, config_dirs):
        """The last base line is never merged with the first overlay line."""
        base, overrides, output = config_dirs
        base.write_bytes(b"CONFIG_STATIC=y")
        overlay_path_for(overrides, "mips").write_bytes(b"CONFIG_NC=y\n")

        result = compose_config(base, "mips", overrides, output)

        assert result.read_bytes() == b"CONFIG_STATIC=y\nCONFIG_NC=y\n"

    def test_idempotent(self, config_dirs):
        """Composing twice gives byte-identical output."""
        base, overrides, output = config_dirs
        overlay_path_for(overrides, "s390x").write_bytes(b"CONFIG_DD=n\n")

        first = compose_config(base, "s390x", overrides, output).read_bytes()
        second = compose_config(base, "s390x", overrides, output).read_bytes()

        assert first == second

    def test_missing_base(self, tmp_path):
        with pytest.raises(ConfigNotFoundError) as exc_info:
            compose_config(tmp_path / "nope.config", "x86_64", tmp_path, tmp_path)
        assert exc_info.value.code == "config_not_found"

    def test_overlay_for_other_target_ignored(self, config_dirs):
        base, overrides, output = config_dirs
        overlay_path_for(overrides, "arm64").write_text("CONFIG_NC=n\n")

        assert compose_config(base, "i386", overrides, output) == base


class TestReadConfigOptions:
    """Tests for read_config_options function."""

    def test_overlay_wins(self, config_dirs):
        """Later occurrences replace earlier ones."""
        base, overrides, output = config_dirs
        overlay_path_for(overrides, "android-arm").write_text(
            "# CONFIG_FEATURE_UTMP is not set\nCONFIG_STATIC=n\n"
        )

        composed = compose_config(base, "android-arm", overrides, output)
        options = read_config_options(composed)

        assert options["CONFIG_FEATURE_UTMP"] is None
        assert options["CONFIG_STATIC"] == "n"

    def test_ignores_comments_and_blank_lines(self, tmp_path):
        path = tmp_path / ".config"
        path.write_text(
            "#\n# Settings\n#\n\nCONFIG_EXTRA_CFLAGS=\"\"\n# CONFIG_DEBUG is not set\n"
        )

        options = read_config_options(path)

        assert options == {"CONFIG_EXTRA_CFLAGS": '""', "CONFIG_DEBUG": None}
