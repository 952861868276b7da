"""Release packaging.

This module handles:
- Collecting built binaries into a dated release directory
- Writing SHA256, SHA512 and MD5 checksum files
- Rendering README and release notes from Jinja2 templates
- Writing the release manifest
- Creating full and per-binary archives
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tarfile
import zipfile
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, PackageLoader, StrictUndefined

from buildabox import __version__
from buildabox.builds.runner import output_binary_path
from buildabox.types import ArtifactInfo

if TYPE_CHECKING:
    from buildabox.config import Settings

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024  # 64KB

CHECKSUM_ALGORITHMS = ("sha256", "sha512", "md5")


class PackagingError(Exception):
    """Raised when a release cannot be packaged."""

    def __init__(self, message: str, code: str = "packaging_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ReleaseResult:
    """Outputs of one packaging run.

    Attributes:
        tag: Release tag (``v<version>-<YYYYMMDD>``).
        release_dir: Release directory.
        artifacts: Packaged binaries, sorted by filename.
        manifest_path: Path to manifest.json.
        notes_path: Path to the release notes.
        archives: Full release archives.
        individual_archives: Per-binary archives.
        missing_targets: Requested targets without a built binary.
    """

    tag: str
    release_dir: Path
    artifacts: list[ArtifactInfo]
    manifest_path: Path
    notes_path: Path
    archives: list[Path] = field(default_factory=list)
    individual_archives: list[Path] = field(default_factory=list)
    missing_targets: list[str] = field(default_factory=list)


def release_tag(version: str, day: date) -> str:
    """Return the release tag for a version and date."""
    return f"v{version}-{day:%Y%m%d}"


def release_dir_for(releases_dir: Path, version: str, day: date) -> Path:
    """Return the release directory for a version and date."""
    return releases_dir / f"busybox-{version}-{day:%Y%m%d}"


def archive_base_for(releases_dir: Path, version: str, day: date) -> Path:
    """Return the full archive path without extension."""
    return releases_dir / f"busybox-{version}-forensic-{day:%Y%m%d}"


def format_size(size_bytes: int) -> str:
    """Format a byte count the way ``ls -lh`` does."""
    size = float(size_bytes)
    for unit in ("", "K", "M", "G"):
        if size < 1024 or unit == "G":
            if unit == "":
                return f"{int(size)}"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size_bytes}"


def compute_checksums(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> dict[str, str]:
    """Compute SHA256, SHA512 and MD5 of a file in one pass.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        Mapping of algorithm name to hex digest.
    """
    hashers = {name: hashlib.new(name) for name in CHECKSUM_ALGORITHMS}
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            for hasher in hashers.values():
                hasher.update(chunk)
    return {name: hasher.hexdigest() for name, hasher in hashers.items()}


def write_checksum_files(
    release_dir: Path,
    artifacts: list[ArtifactInfo],
) -> list[Path]:
    """Write ``checksums.<algorithm>`` files in coreutils format.

    Every file lists the same binaries, sorted by filename.
    """
    ordered = sorted(artifacts, key=lambda a: a.filename)
    paths = []
    for algorithm in CHECKSUM_ALGORITHMS:
        path = release_dir / f"checksums.{algorithm}"
        lines = [f"{getattr(a, algorithm)}  {a.filename}\n" for a in ordered]
        path.write_text("".join(lines), encoding="utf-8")
        paths.append(path)
    logger.info("Created SHA256, SHA512 and MD5 checksums")
    return paths


def generate_manifest(
    artifacts: list[ArtifactInfo],
    version: str,
    tag: str,
    day: date,
    archives: list[str] | None = None,
) -> dict[str, Any]:
    """Generate a release manifest.

    Args:
        artifacts: Packaged binaries.
        version: BusyBox version.
        tag: Release tag.
        day: Release date.
        archives: Archive filenames produced for the release.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)
    return {
        "manifest_version": "1.0",
        "generated_at": now.isoformat(),
        "generator": f"buildabox {__version__}",
        "busybox_version": version,
        "release_tag": tag,
        "release_date": day.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
        "archives": archives or [],
        "summary": {
            "total_artifacts": len(artifacts),
            "total_size_bytes": sum(a.size_bytes for a in artifacts),
            "targets": [a.target for a in artifacts],
        },
    }


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
    logger.info("Wrote manifest to %s", output_path)
    return output_path


def _template_env() -> Environment:
    env = Environment(
        loader=PackageLoader("buildabox.release", "templates"),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters["filesize"] = format_size
    return env


def render_template(name: str, **context: Any) -> str:
    """Render one of the packaged release templates."""
    return _template_env().get_template(name).render(**context)


def create_archives(release_dir: Path, archive_base: Path) -> list[Path]:
    """Create .tar.gz, .tar.xz and .zip archives of the release directory."""
    root = release_dir.parent
    archives = []

    for suffix, mode in ((".tar.gz", "w:gz"), (".tar.xz", "w:xz")):
        path = archive_base.with_name(archive_base.name + suffix)
        with tarfile.open(path, mode) as tar:
            tar.add(release_dir, arcname=release_dir.name)
        archives.append(path)
        logger.info("Created %s", path)

    zip_path = archive_base.with_name(archive_base.name + ".zip")
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(release_dir.rglob("*")):
            zf.write(path, arcname=path.relative_to(root).as_posix())
    archives.append(zip_path)
    logger.info("Created %s", zip_path)

    return archives


def create_individual_archives(
    release_dir: Path,
    artifacts: list[ArtifactInfo],
    individual_dir: Path,
) -> list[Path]:
    """Create one .tar.gz per binary."""
    individual_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for artifact in artifacts:
        path = individual_dir / f"{artifact.filename}.tar.gz"
        with tarfile.open(path, "w:gz") as tar:
            tar.add(release_dir / artifact.filename, arcname=artifact.filename)
        paths.append(path)
        logger.info("Created individual archive for %s", artifact.target)
    return paths


def package_release(
    version: str,
    targets: list[str],
    settings: Settings,
    today: date | None = None,
) -> ReleaseResult:
    """Package built binaries into a dated release.

    Binaries are taken from ``<build_dir>/busybox-<version>-<target>``;
    nothing is rebuilt. Targets without a binary are logged and skipped.

    Args:
        version: BusyBox version.
        targets: Targets to package.
        settings: Application settings.
        today: Release date; defaults to the current date.

    Returns:
        ReleaseResult describing everything written.

    Raises:
        PackagingError: If no requested target has a built binary.
    """

    if today is None:
        today = date.today()
    tag = release_tag(version, today)
    releases_dir = settings.releases_dir
    release_dir = release_dir_for(releases_dir, version, today)

    logger.info("Packaging release %s for targets: %s", tag, " ".join(targets))

    binaries: list[tuple[str, Path]] = []
    missing: list[str] = []
    for target in targets:
        binary = output_binary_path(settings.build_dir, version, target)
        if binary.is_file():
            binaries.append((target, binary))
        else:
            logger.error("Binary not found for %s: %s", target, binary)
            missing.append(target)

    if not binaries:
        raise PackagingError("No binaries found to package", code="no_binaries")

    # Start from an empty directory so checksum files match its contents
    if release_dir.exists():
        shutil.rmtree(release_dir)
    release_dir.mkdir(parents=True)

    artifacts: list[ArtifactInfo] = []
    for target, binary in binaries:
        dest = release_dir / binary.name
        shutil.copy2(binary, dest)
        sums = compute_checksums(dest)
        artifacts.append(
            ArtifactInfo(
                filename=dest.name,
                target=target,
                size_bytes=dest.stat().st_size,
                sha256=sums["sha256"],
                sha512=sums["sha512"],
                md5=sums["md5"],
            )
        )
    artifacts.sort(key=lambda a: a.filename)
    logger.info("Copied %d binaries to release directory", len(artifacts))

    archive_base = archive_base_for(releases_dir, version, today)
    context = {
        "version": version,
        "tag": tag,
        "release_date": today.isoformat(),
        "release_name": release_dir.name,
        "archive_base": archive_base.name,
        "artifacts": artifacts,
        "example_target": artifacts[0].target,
        "tool_version": __version__,
    }

    (release_dir / "README.md").write_text(
        render_template("README.md.j2", **context), encoding="utf-8"
    )
    write_checksum_files(release_dir, artifacts)

    archive_names = [
        f"{archive_base.name}{suffix}" for suffix in (".tar.gz", ".tar.xz", ".zip")
    ]
    manifest_path = write_manifest(
        generate_manifest(artifacts, version, tag, today, archive_names),
        release_dir / "manifest.json",
    )

    archives = create_archives(release_dir, archive_base)
    individual = create_individual_archives(
        release_dir, artifacts, releases_dir / "individual"
    )

    notes_path = releases_dir / f"RELEASE_NOTES-{tag}.md"
    notes_path.write_text(
        render_template("RELEASE_NOTES.md.j2", **context), encoding="utf-8"
    )
    logger.info("Created release notes: %s", notes_path)

    return ReleaseResult(
        tag=tag,
        release_dir=release_dir,
        artifacts=artifacts,
        manifest_path=manifest_path,
        notes_path=notes_path,
        archives=archives,
        individual_archives=individual,
        missing_targets=missing,
    )


__all__ = [
    "PackagingError",
    "ReleaseResult",
    "compute_checksums",
    "create_archives",
    "create_individual_archives",
    "format_size",
    "generate_manifest",
    "package_release",
    "release_dir_for",
    "release_tag",
    "render_template",
    "write_checksum_files",
    "write_manifest",
]
