"""BusyBox source management module.

This module handles:
- Downloading release tarballs and signatures
- GPG signature verification
- Extraction to the source directory
- Resumable per-version staging state
"""

from buildabox.source.fetch import (
    DownloadError,
    ExtractionError,
    SourceURLs,
    build_source_urls,
)
from buildabox.source.service import (
    OfflineModeError,
    SignatureError,
    SourceLockError,
    SourceRecord,
    ensure_source,
    load_record,
    source_dir_for,
)

__all__ = [
    # Fetch module
    "DownloadError",
    "ExtractionError",
    "SourceURLs",
    "build_source_urls",
    # Service module
    "OfflineModeError",
    "SignatureError",
    "SourceLockError",
    "SourceRecord",
    "ensure_source",
    "load_record",
    "source_dir_for",
]
