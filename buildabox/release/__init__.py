"""Release packaging module.

This module handles:
- Dated release directories with checksums, README and manifest
- Release notes
- Full and per-binary archives
"""

from buildabox.release.packager import (
    PackagingError,
    ReleaseResult,
    package_release,
)

__all__ = [
    "PackagingError",
    "ReleaseResult",
    "package_release",
]
