"""Tests for source/fetch.py module.

These tests use mocked HTTP responses to test downloading, and mocked
gpg calls to test signature verification.
"""

import hashlib
import io
import subprocess
import tarfile
from unittest.mock import patch

import httpx
import pytest
import respx

from buildabox.config import BUSYBOX_DOWNLOAD_BASE
from buildabox.source.fetch import (
    DownloadError,
    DownloadResult,
    ExtractionError,
    build_source_urls,
    compute_file_sha256,
    download_file,
    download_signature,
    extract_archive,
    tarball_name,
    verify_signature,
    write_checksum_file,
)
from buildabox.types import SignatureStatus

URL = "https://example.com/busybox-1.36.1.tar.bz2"


def make_tarball(path, members):
    """Write a .tar.bz2 with the given name -> bytes members."""
    with tarfile.open(path, "w:bz2") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class TestBuildSourceUrls:
    """Tests for build_source_urls function."""

    def test_default_base(self):
        urls = build_source_urls("1.36.1")
        assert urls.tarball_url == f"{BUSYBOX_DOWNLOAD_BASE}/busybox-1.36.1.tar.bz2"
        assert urls.signature_url == urls.tarball_url + ".sig"

    def test_custom_base_trailing_slash(self):
        urls = build_source_urls("1.35.0", "https://mirror.example.com/busybox/")
        assert urls.tarball_url == (
            "https://mirror.example.com/busybox/busybox-1.35.0.tar.bz2"
        )

    def test_tarball_name(self):
        assert tarball_name("1.36.1") == "busybox-1.36.1.tar.bz2"


class TestChecksums:
    """Tests for checksum helpers."""

    def test_compute_file_sha256(self, tmp_path):
        content = b"x" * 100_000
        path = tmp_path / "file"
        path.write_bytes(content)
        assert compute_file_sha256(path, chunk_size=4096) == (
            hashlib.sha256(content).hexdigest()
        )

    def test_write_checksum_file(self, tmp_path):
        path = tmp_path / "busybox-1.36.1.tar.bz2"
        path.write_bytes(b"data")

        out = write_checksum_file(path, "abc123")

        assert out.name == "busybox-1.36.1.tar.bz2.sha256"
        assert out.read_text() == "abc123  busybox-1.36.1.tar.bz2\n"


class TestDownloadFile:
    """Tests for download_file function."""

    @respx.mock
    def test_successful_download(self, tmp_path):
        """Should download file successfully."""
        content = b"BusyBox tarball"
        respx.get(URL).mock(return_value=httpx.Response(200, content=content))

        dest = tmp_path / "busybox-1.36.1.tar.bz2"
        with httpx.Client() as client:
            result = download_file(client, URL, dest)

        assert isinstance(result, DownloadResult)
        assert dest.read_bytes() == content
        assert result.checksum == hashlib.sha256(content).hexdigest()
        assert result.size_bytes == len(content)
        assert not dest.with_name(dest.name + ".part").exists()

    @respx.mock
    def test_http_error(self, tmp_path):
        respx.get(URL).mock(return_value=httpx.Response(404))

        dest = tmp_path / "busybox.tar.bz2"
        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, URL, dest)

        assert exc_info.value.code == "http_error"
        assert not dest.exists()

    @respx.mock
    def test_timeout(self, tmp_path):
        respx.get(URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, URL, tmp_path / "f")

        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_network_error(self, tmp_path):
        respx.get(URL).mock(side_effect=httpx.ConnectError("refused"))

        with httpx.Client() as client, pytest.raises(DownloadError) as exc_info:
            download_file(client, URL, tmp_path / "f")

        assert exc_info.value.code == "network_error"


class TestDownloadSignature:
    """Tests for download_signature function."""

    @respx.mock
    def test_signature_downloaded(self, tmp_path):
        respx.get(URL + ".sig").mock(return_value=httpx.Response(200, content=b"SIG"))

        with httpx.Client() as client:
            path = download_signature(client, URL + ".sig", tmp_path / "f.sig")

        assert path is not None
        assert path.read_bytes() == b"SIG"

    @respx.mock
    def test_missing_signature_tolerated(self, tmp_path):
        respx.get(URL + ".sig").mock(return_value=httpx.Response(404))

        with httpx.Client() as client:
            path = download_signature(client, URL + ".sig", tmp_path / "f.sig")

        assert path is None
        assert not (tmp_path / "f.sig").exists()


class TestVerifySignature:
    """Tests for verify_signature function."""

    @pytest.fixture
    def signed(self, tmp_path):
        tarball = tmp_path / "busybox-1.36.1.tar.bz2"
        tarball.write_bytes(b"data")
        sig = tmp_path / "busybox-1.36.1.tar.bz2.sig"
        sig.write_bytes(b"sig")
        return tarball, sig

    def test_no_signature_file(self, tmp_path):
        result = verify_signature(
            tmp_path / "f", tmp_path / "f.sig", "KEY", "keyserver"
        )
        assert result.status == SignatureStatus.UNAVAILABLE

    def test_no_gpg(self, signed):
        tarball, sig = signed
        with patch("buildabox.source.fetch.shutil.which", return_value=None):
            result = verify_signature(tarball, sig, "KEY", "keyserver")
        assert result.status == SignatureStatus.UNAVAILABLE
        assert "gpg" in result.message

    def test_good_signature(self, signed):
        tarball, sig = signed
        with (
            patch("buildabox.source.fetch.shutil.which", return_value="/usr/bin/gpg"),
            patch("buildabox.source.fetch.subprocess.run") as mock_run,
        ):
            mock_run.side_effect = [
                subprocess.CompletedProcess([], 0, b"", b""),
                subprocess.CompletedProcess(
                    [], 0, "", 'gpg: Good signature from "Denys Vlasenko"'
                ),
            ]
            result = verify_signature(tarball, sig, "KEY", "keyserver")

        assert result.status == SignatureStatus.VERIFIED

    def test_imports_missing_key(self, signed):
        tarball, sig = signed
        with (
            patch("buildabox.source.fetch.shutil.which", return_value="/usr/bin/gpg"),
            patch("buildabox.source.fetch.subprocess.run") as mock_run,
        ):
            mock_run.side_effect = [
                subprocess.CompletedProcess([], 2, b"", b""),
                subprocess.CompletedProcess([], 0, b"", b""),
                subprocess.CompletedProcess([], 0, "", "gpg: Good signature"),
            ]
            result = verify_signature(tarball, sig, "KEY", "keyserver.example")

        assert result.status == SignatureStatus.VERIFIED
        recv = mock_run.call_args_list[1].args[0]
        assert recv == ["gpg", "--keyserver", "keyserver.example", "--recv-keys", "KEY"]

    def test_key_import_failure_is_unavailable(self, signed):
        tarball, sig = signed
        with (
            patch("buildabox.source.fetch.shutil.which", return_value="/usr/bin/gpg"),
            patch("buildabox.source.fetch.subprocess.run") as mock_run,
        ):
            mock_run.side_effect = [
                subprocess.CompletedProcess([], 2, b"", b""),
                subprocess.CompletedProcess([], 2, b"", b""),
            ]
            result = verify_signature(tarball, sig, "KEY", "keyserver")

        assert result.status == SignatureStatus.UNAVAILABLE

    def test_bad_signature(self, signed):
        tarball, sig = signed
        with (
            patch("buildabox.source.fetch.shutil.which", return_value="/usr/bin/gpg"),
            patch("buildabox.source.fetch.subprocess.run") as mock_run,
        ):
            mock_run.side_effect = [
                subprocess.CompletedProcess([], 0, b"", b""),
                subprocess.CompletedProcess([], 1, "", "gpg: BAD signature"),
            ]
            result = verify_signature(tarball, sig, "KEY", "keyserver")

        assert result.status == SignatureStatus.FAILED
        assert "BAD signature" in result.message


class TestExtractArchive:
    """Tests for extract_archive function."""

    def test_extract(self, tmp_path):
        archive = make_tarball(
            tmp_path / "busybox-1.36.1.tar.bz2",
            {"busybox-1.36.1/Makefile": b"all:\n"},
        )
        dest = tmp_path / "src"

        root = extract_archive(archive, dest, "busybox-1.36.1")

        assert root == dest / "busybox-1.36.1"
        assert (root / "Makefile").read_bytes() == b"all:\n"

    def test_path_traversal_rejected(self, tmp_path):
        archive = make_tarball(tmp_path / "evil.tar.bz2", {"../evil": b"x"})

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, tmp_path / "src", "busybox-1.36.1")

        assert exc_info.value.code == "path_traversal"
        assert not (tmp_path / "evil").exists()

    def test_unexpected_layout(self, tmp_path):
        archive = make_tarball(tmp_path / "a.tar.bz2", {"other/Makefile": b""})

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, tmp_path / "src", "busybox-1.36.1")

        assert exc_info.value.code == "unexpected_layout"

    def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / "bad.tar.bz2"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, tmp_path / "src", "busybox-1.36.1")

        assert exc_info.value.code == "tar_error"
