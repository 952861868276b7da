"""Tests for release/packager.py module."""

import hashlib
import json
import tarfile
import zipfile
from datetime import date

import pytest

from buildabox.release.packager import (
    PackagingError,
    compute_checksums,
    format_size,
    generate_manifest,
    package_release,
    release_tag,
)
from buildabox.types import ArtifactInfo

VERSION = "1.36.1"
DAY = date(2026, 3, 14)


def built_binary(settings, target, content=None):
    path = settings.build_dir / f"busybox-{VERSION}-{target}"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content or f"binary for {target}".encode())
    path.chmod(0o755)
    return path


def checksum_lines(path):
    return path.read_text().splitlines()


class TestHelpers:
    """Tests for naming and formatting helpers."""

    def test_release_tag(self):
        assert release_tag(VERSION, DAY) == "v1.36.1-20260314"

    @pytest.mark.parametrize(
        ("size", "expected"),
        [(512, "512"), (2048, "2.0K"), (1536 * 1024, "1.5M")],
    )
    def test_format_size(self, size, expected):
        assert format_size(size) == expected

    def test_compute_checksums(self, tmp_path):
        path = tmp_path / "data"
        path.write_bytes(b"hello")

        sums = compute_checksums(path, chunk_size=2)

        assert sums["sha256"] == hashlib.sha256(b"hello").hexdigest()
        assert sums["sha512"] == hashlib.sha512(b"hello").hexdigest()
        assert sums["md5"] == hashlib.md5(b"hello").hexdigest()

    def test_generate_manifest_summary(self):
        artifacts = [
            ArtifactInfo("busybox-1.36.1-arm64", "arm64", 10, "a", "b", "c"),
            ArtifactInfo("busybox-1.36.1-i386", "i386", 5, "d", "e", "f"),
        ]

        manifest = generate_manifest(artifacts, VERSION, "v1.36.1-20260314", DAY)

        assert manifest["busybox_version"] == VERSION
        assert manifest["release_date"] == "2026-03-14"
        assert manifest["summary"]["total_artifacts"] == 2
        assert manifest["summary"]["total_size_bytes"] == 15
        assert manifest["summary"]["targets"] == ["arm64", "i386"]


class TestPackageRelease:
    """Tests for package_release function."""

    def test_full_release(self, settings):
        for target in ("x86_64", "arm64", "i386"):
            built_binary(settings, target)

        result = package_release(
            VERSION, ["x86_64", "arm64", "i386"], settings, today=DAY
        )

        release_dir = settings.releases_dir / "busybox-1.36.1-20260314"
        assert result.release_dir == release_dir
        assert result.tag == "v1.36.1-20260314"
        assert [a.filename for a in result.artifacts] == [
            "busybox-1.36.1-arm64",
            "busybox-1.36.1-i386",
            "busybox-1.36.1-x86_64",
        ]
        assert (release_dir / "README.md").exists()
        assert result.manifest_path == release_dir / "manifest.json"
        assert result.notes_path.name == "RELEASE_NOTES-v1.36.1-20260314.md"
        assert result.missing_targets == []

    def test_checksum_files_agree(self, settings):
        """All three checksum files list the same sorted binaries."""
        for target in ("x86_64", "arm64"):
            built_binary(settings, target)

        result = package_release(VERSION, ["x86_64", "arm64"], settings, today=DAY)

        listed = {}
        for algorithm in ("sha256", "sha512", "md5"):
            lines = checksum_lines(result.release_dir / f"checksums.{algorithm}")
            listed[algorithm] = [line.split("  ", 1)[1] for line in lines]
        assert listed["sha256"] == listed["sha512"] == listed["md5"]
        assert listed["sha256"] == sorted(listed["sha256"])

        binaries = sorted(
            p.name for p in result.release_dir.iterdir() if p.name.startswith("busybox-")
        )
        assert listed["sha256"] == binaries

    def test_checksums_match_contents(self, settings):
        built_binary(settings, "arm64", b"arm64 bytes")

        result = package_release(VERSION, ["arm64"], settings, today=DAY)

        line = checksum_lines(result.release_dir / "checksums.sha256")[0]
        assert line == (
            f"{hashlib.sha256(b'arm64 bytes').hexdigest()}  busybox-1.36.1-arm64"
        )

    def test_archives(self, settings):
        built_binary(settings, "arm64")

        result = package_release(VERSION, ["arm64"], settings, today=DAY)

        names = [p.name for p in result.archives]
        assert names == [
            "busybox-1.36.1-forensic-20260314.tar.gz",
            "busybox-1.36.1-forensic-20260314.tar.xz",
            "busybox-1.36.1-forensic-20260314.zip",
        ]
        with tarfile.open(result.archives[0]) as tar:
            assert "busybox-1.36.1-20260314/busybox-1.36.1-arm64" in tar.getnames()
        with zipfile.ZipFile(result.archives[2]) as zf:
            assert "busybox-1.36.1-20260314/manifest.json" in zf.namelist()

        individual = result.individual_archives[0]
        assert individual == (
            settings.releases_dir / "individual" / "busybox-1.36.1-arm64.tar.gz"
        )
        with tarfile.open(individual) as tar:
            assert tar.getnames() == ["busybox-1.36.1-arm64"]

    def test_manifest_content(self, settings):
        built_binary(settings, "arm64")

        result = package_release(VERSION, ["arm64"], settings, today=DAY)

        manifest = json.loads(result.manifest_path.read_text())
        assert manifest["release_tag"] == "v1.36.1-20260314"
        assert manifest["artifacts"][0]["target"] == "arm64"
        assert len(manifest["artifacts"][0]["sha256"]) == 64
        assert "busybox-1.36.1-forensic-20260314.zip" in manifest["archives"]

    def test_notes_list_targets(self, settings):
        for target in ("arm64", "i386"):
            built_binary(settings, target)

        result = package_release(VERSION, ["arm64", "i386"], settings, today=DAY)

        notes = result.notes_path.read_text()
        assert "BusyBox 1.36.1" in notes
        assert "- arm64" in notes
        assert "- i386" in notes

    def test_missing_targets_skipped(self, settings):
        built_binary(settings, "arm64")

        result = package_release(VERSION, ["arm64", "mips"], settings, today=DAY)

        assert result.missing_targets == ["mips"]
        assert [a.target for a in result.artifacts] == ["arm64"]

    def test_no_binaries(self, settings):
        with pytest.raises(PackagingError) as exc_info:
            package_release(VERSION, ["arm64"], settings, today=DAY)
        assert exc_info.value.code == "no_binaries"

    def test_stale_release_dir_replaced(self, settings):
        built_binary(settings, "arm64")
        stale = settings.releases_dir / "busybox-1.36.1-20260314" / "busybox-old"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")

        result = package_release(VERSION, ["arm64"], settings, today=DAY)

        assert not stale.exists()
        assert "busybox-old" not in (result.release_dir / "checksums.md5").read_text()

    def test_sources_untouched(self, settings):
        binary = built_binary(settings, "arm64")

        package_release(VERSION, ["arm64"], settings, today=DAY)

        assert binary.exists()
