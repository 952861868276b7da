"""BusyBox source service module.

This module provides the high-level source staging API:
- ensure_source(): Fetch, verify and extract a version, resuming from the
  last completed step
- load_record()/save_record(): Persisted per-version staging state
- source_lock(): File lock preventing concurrent staging of one version

Staging moves through NOT_FETCHED -> FETCHED -> VERIFIED -> EXTRACTED. The
state is stored in ``<src_dir>/busybox-<version>.state.json`` and is checked
against the filesystem on load, so a deleted tarball or tree moves the state
back to the step that must be redone.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ValidationError

from buildabox.config import get_settings
from buildabox.source.fetch import (
    build_source_urls,
    compute_file_sha256,
    download_file,
    download_signature,
    extract_archive,
    tarball_name,
    verify_signature,
    write_checksum_file,
)
from buildabox.types import SignatureStatus, SourceState

if TYPE_CHECKING:
    from buildabox.config import Settings

logger = logging.getLogger(__name__)


class OfflineModeError(Exception):
    """Raised when download is required but offline mode is enabled."""

    def __init__(
        self,
        message: str = "Cannot download in offline mode",
        code: str = "offline_mode",
    ) -> None:
        super().__init__(message)
        self.code = code


class SignatureError(Exception):
    """Raised when the source signature is bad, or required but unavailable."""

    def __init__(self, message: str, code: str = "signature_error") -> None:
        super().__init__(message)
        self.code = code


class SourceLockError(Exception):
    """Raised when another process holds the staging lock of a version."""

    def __init__(self, message: str, code: str = "lock_timeout") -> None:
        super().__init__(message)
        self.code = code


class SourceRecord(BaseModel):
    """Persisted staging state of one BusyBox version.

    Attributes:
        version: BusyBox version.
        state: Last completed staging step.
        tarball_sha256: Checksum of the downloaded tarball.
        signature: Outcome of the signature check, once made.
        signature_message: Detail from the signature check.
        updated_at: Time of the last state change.
    """

    version: str
    state: SourceState = SourceState.NOT_FETCHED
    tarball_sha256: str | None = None
    signature: SignatureStatus | None = None
    signature_message: str | None = None
    updated_at: datetime | None = None


def source_dir_for(src_dir: Path, version: str) -> Path:
    """Return the extracted source tree path of a version."""
    return src_dir / f"busybox-{version}"


def tarball_path_for(src_dir: Path, version: str) -> Path:
    """Return the tarball path of a version."""
    return src_dir / tarball_name(version)


def record_path_for(src_dir: Path, version: str) -> Path:
    """Return the state file path of a version."""
    return src_dir / f"busybox-{version}.state.json"


def save_record(src_dir: Path, record: SourceRecord) -> None:
    """Persist a source record."""
    record.updated_at = datetime.now(timezone.utc)
    src_dir.mkdir(parents=True, exist_ok=True)
    path = record_path_for(src_dir, record.version)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
    tmp.replace(path)


def load_record(src_dir: Path, version: str) -> SourceRecord:
    """Load a source record and reconcile it with the filesystem.

    Args:
        src_dir: Source directory.
        version: BusyBox version.

    Returns:
        SourceRecord whose state never claims more than is on disk.
    """
    path = record_path_for(src_dir, version)
    record = SourceRecord(version=version)
    if path.exists():
        try:
            record = SourceRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as e:
            logger.warning("Ignoring corrupt state file %s: %s", path, e)

    tarball = tarball_path_for(src_dir, version)
    tree = source_dir_for(src_dir, version)

    if not tarball.exists():
        if record.state == SourceState.EXTRACTED and tree.is_dir():
            # Tarball pruned after extraction; the tree is still usable
            return record
        record.state = SourceState.NOT_FETCHED
        record.tarball_sha256 = None
        record.signature = None
        return record

    if record.state == SourceState.NOT_FETCHED:
        # Tarball from an earlier run without a state file
        record.state = SourceState.FETCHED
    if record.state == SourceState.EXTRACTED and not tree.is_dir():
        record.state = SourceState.VERIFIED

    return record


@contextmanager
def source_lock(
    src_dir: Path,
    version: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for staging a BusyBox version.

    Args:
        src_dir: Source directory.
        version: BusyBox version.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        SourceLockError: If the lock cannot be acquired within timeout.
    """
    lock_dir = src_dir / ".locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"busybox-{version}.lock"

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise SourceLockError(
                            f"Timeout waiting for source lock on {version}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Source lock acquired for %s", version)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def _fetch(
    record: SourceRecord,
    settings: Settings,
    client: httpx.Client,
) -> None:
    if settings.offline:
        raise OfflineModeError(
            f"BusyBox {record.version} is not downloaded and offline mode is enabled"
        )

    urls = build_source_urls(record.version, settings.busybox_base_url)
    tarball = tarball_path_for(settings.src_dir, record.version)
    result = download_file(
        client, urls.tarball_url, tarball, timeout=settings.download_timeout
    )
    write_checksum_file(tarball, result.checksum)

    sig_path = tarball.with_name(f"{tarball.name}.sig")
    if not sig_path.exists():
        download_signature(client, urls.signature_url, sig_path)

    record.tarball_sha256 = result.checksum
    record.state = SourceState.FETCHED


def _verify(record: SourceRecord, settings: Settings) -> None:
    tarball = tarball_path_for(settings.src_dir, record.version)
    if record.tarball_sha256 is None:
        record.tarball_sha256 = compute_file_sha256(tarball)
        write_checksum_file(tarball, record.tarball_sha256)

    result = verify_signature(
        tarball,
        tarball.with_name(f"{tarball.name}.sig"),
        key_id=settings.signing_key,
        keyserver=settings.gpg_keyserver,
    )
    record.signature = result.status
    record.signature_message = result.message

    if result.status == SignatureStatus.FAILED:
        # A bad signature may mean a tampered download; force a refetch next time
        for path in (
            tarball,
            tarball.with_name(f"{tarball.name}.sig"),
            tarball.with_name(f"{tarball.name}.sha256"),
        ):
            path.unlink(missing_ok=True)
        record.state = SourceState.NOT_FETCHED
        record.tarball_sha256 = None
        save_record(settings.src_dir, record)
        raise SignatureError(result.message, code="bad_signature")

    if result.status == SignatureStatus.UNAVAILABLE:
        if settings.require_signature:
            raise SignatureError(
                f"Signature required but could not be checked: {result.message}",
                code="signature_unavailable",
            )
        logger.warning(
            "Proceeding without signature verification: %s", result.message
        )
    else:
        logger.info("GPG signature verified successfully")

    record.state = SourceState.VERIFIED


def _extract(record: SourceRecord, settings: Settings) -> None:
    tree = source_dir_for(settings.src_dir, record.version)
    if tree.exists():
        logger.info("Removing stale source tree %s", tree)
        shutil.rmtree(tree)
    extract_archive(
        tarball_path_for(settings.src_dir, record.version),
        settings.src_dir,
        expected_root=tree.name,
    )
    record.state = SourceState.EXTRACTED


def ensure_source(
    version: str,
    settings: Settings | None = None,
    client: httpx.Client | None = None,
) -> SourceRecord:
    """Make a BusyBox version available as an extracted source tree.

    Each completed step is persisted before the next one starts, so an
    interrupted run resumes where it stopped.

    Args:
        version: BusyBox version.
        settings: Application settings.
        client: HTTPX client; a temporary one is created if needed.

    Returns:
        SourceRecord in EXTRACTED state.

    Raises:
        OfflineModeError: If a download is needed in offline mode.
        DownloadError: If the download fails.
        SignatureError: If the signature is bad, or required but unavailable.
        ExtractionError: If extraction fails.
        SourceLockError: If another process keeps the version locked.
    """
    if settings is None:
        settings = get_settings()
    src_dir = settings.src_dir
    src_dir.mkdir(parents=True, exist_ok=True)

    with source_lock(src_dir, version, timeout=600):
        record = load_record(src_dir, version)
        logger.info("BusyBox %s source state: %s", version, record.state.value)

        if record.state == SourceState.NOT_FETCHED:
            if client is None:
                with httpx.Client(follow_redirects=True) as own_client:
                    _fetch(record, settings, own_client)
            else:
                _fetch(record, settings, client)
            save_record(src_dir, record)

        if record.state == SourceState.FETCHED:
            _verify(record, settings)
            save_record(src_dir, record)

        if record.state == SourceState.VERIFIED:
            _extract(record, settings)
            save_record(src_dir, record)

    logger.info("BusyBox %s ready for building", version)
    return record


def clean_sources(src_dir: Path) -> None:
    """Remove every downloaded tarball, tree and state file."""
    if not src_dir.exists():
        return
    for child in src_dir.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


__all__ = [
    "OfflineModeError",
    "SignatureError",
    "SourceLockError",
    "SourceRecord",
    "clean_sources",
    "ensure_source",
    "load_record",
    "record_path_for",
    "save_record",
    "source_dir_for",
    "source_lock",
    "tarball_path_for",
]
