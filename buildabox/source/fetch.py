"""BusyBox source fetch module.

This module handles:
- URL construction for official BusyBox release tarballs
- Streaming download with SHA256 computation
- GPG signature verification through the gpg binary
- Extraction of the source tarball
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import subprocess
import tarfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from buildabox.config import BUSYBOX_DOWNLOAD_BASE
from buildabox.types import SignatureStatus

logger = logging.getLogger(__name__)

# Timeout for small requests such as signatures (seconds)
HEAD_TIMEOUT = 30

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class DownloadError(Exception):
    """Raised when a source download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        super().__init__(message)
        self.code = code


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    def __init__(self, message: str, code: str = "extraction_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class SourceURLs:
    """URLs for a BusyBox tarball and its signature."""

    tarball_url: str
    signature_url: str


@dataclass
class DownloadResult:
    """Result of a download."""

    path: Path
    checksum: str
    size_bytes: int


@dataclass
class SignatureResult:
    """Result of a signature check."""

    status: SignatureStatus
    message: str


def tarball_name(version: str) -> str:
    """Return the release tarball filename for a version."""
    return f"busybox-{version}.tar.bz2"


def build_source_urls(
    version: str, base_url: str = BUSYBOX_DOWNLOAD_BASE
) -> SourceURLs:
    """Build URLs for a BusyBox release.

    Args:
        version: BusyBox version (e.g., '1.36.1').
        base_url: Base URL for BusyBox downloads.

    Returns:
        SourceURLs with tarball and signature URLs.
    """
    tarball_url = f"{base_url.rstrip('/')}/{tarball_name(version)}"
    return SourceURLs(tarball_url=tarball_url, signature_url=f"{tarball_url}.sig")


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def write_checksum_file(file_path: Path, checksum: str) -> Path:
    """Write a sha256sum-compatible ``<file>.sha256`` next to a file."""
    out = file_path.with_name(f"{file_path.name}.sha256")
    out.write_text(f"{checksum}  {file_path.name}\n", encoding="utf-8")
    return out


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file, computing its SHA256 while streaming.

    The file is written to a ``.part`` sibling and renamed into place only
    after the download completes.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    part_path = dest_path.with_name(f"{dest_path.name}.part")

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with part_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        part_path.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        part_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        part_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    computed_checksum = sha256.hexdigest()
    part_path.replace(dest_path)
    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


def download_signature(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = HEAD_TIMEOUT,
) -> Path | None:
    """Download a detached signature, tolerating its absence.

    Args:
        client: HTTPX client instance.
        url: Signature URL.
        dest_path: Destination path.
        timeout: Request timeout in seconds.

    Returns:
        Path to the signature, or None if it could not be fetched.
    """
    try:
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Failed to download signature %s: %s", url, e)
        return None

    dest_path.write_bytes(response.content)
    return dest_path


def verify_signature(
    file_path: Path,
    signature_path: Path,
    key_id: str,
    keyserver: str,
    gpg: str = "gpg",
    timeout: int = 120,
) -> SignatureResult:
    """Verify a detached GPG signature.

    The signing key is imported from the keyserver if it is not already in
    the keyring.

    Args:
        file_path: Signed file.
        signature_path: Detached signature.
        key_id: Fingerprint of the expected signing key.
        keyserver: Keyserver to fetch the key from.
        gpg: gpg executable name.
        timeout: Timeout for each gpg call in seconds.

    Returns:
        SignatureResult. ``UNAVAILABLE`` when the check could not be made,
        ``FAILED`` when gpg rejected the signature.
    """
    if not signature_path.exists():
        return SignatureResult(SignatureStatus.UNAVAILABLE, "No signature file")

    if shutil.which(gpg) is None:
        return SignatureResult(SignatureStatus.UNAVAILABLE, "gpg not available")

    try:
        known = subprocess.run(
            [gpg, "--list-keys", key_id],
            capture_output=True,
            timeout=timeout,
            check=False,
        )
        if known.returncode != 0:
            logger.info("Importing signing key %s from %s", key_id, keyserver)
            imported = subprocess.run(
                [gpg, "--keyserver", keyserver, "--recv-keys", key_id],
                capture_output=True,
                timeout=timeout,
                check=False,
            )
            if imported.returncode != 0:
                return SignatureResult(
                    SignatureStatus.UNAVAILABLE,
                    f"Failed to import signing key {key_id}",
                )

        result = subprocess.run(
            [gpg, "--verify", str(signature_path), str(file_path)],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return SignatureResult(SignatureStatus.UNAVAILABLE, "gpg timed out")
    except OSError as e:
        return SignatureResult(SignatureStatus.UNAVAILABLE, f"Failed to run gpg: {e}")

    if result.returncode == 0 and "Good signature" in result.stderr:
        return SignatureResult(SignatureStatus.VERIFIED, "Good signature")

    return SignatureResult(
        SignatureStatus.FAILED,
        f"GPG signature verification failed: {result.stderr.strip()}",
    )


def extract_archive(archive_path: Path, dest_dir: Path, expected_root: str) -> Path:
    """Extract a source tarball.

    Args:
        archive_path: Path to the ``.tar.bz2`` archive.
        dest_dir: Directory to extract into.
        expected_root: Top-level directory the archive must create.

    Returns:
        Path to the extracted source tree.

    Raises:
        ExtractionError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            if not members:
                raise ExtractionError(
                    f"Archive {archive_path} is empty",
                    code="empty_archive",
                )

            for member in members:
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )

            tar.extractall(dest_dir, filter="data")

    except tarfile.TarError as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except OSError as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e

    root_dir = dest_dir / expected_root
    if not root_dir.is_dir():
        raise ExtractionError(
            f"Archive {archive_path.name} did not contain {expected_root}/",
            code="unexpected_layout",
        )

    logger.info("Extracted source to %s", root_dir)
    return root_dir


__all__ = [
    "DOWNLOAD_CHUNK_SIZE",
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "SignatureResult",
    "SourceURLs",
    "build_source_urls",
    "compute_file_sha256",
    "download_file",
    "download_signature",
    "extract_archive",
    "tarball_name",
    "verify_signature",
    "write_checksum_file",
]
