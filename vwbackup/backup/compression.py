"""
Archive packaging for backup runs.

Bundles the database snapshot (and, for full backups, attachments and
configuration files) into a single gzip-compressed tar, computes its
checksum, and owns the artifact naming scheme:

    vw-{tier}-{YYYYMMDD-HHMMSS}.tar.gz.enc
"""

import os
import re
import hashlib
import tarfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple, Optional

from .errors import PackagingFailed
from .tiers import BackupTier


ARCHIVE_EXTENSION = 'tar.gz'
ENCRYPTED_EXTENSION = 'tar.gz.enc'
TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'

_ARTIFACT_NAME_RE = re.compile(
    r'^vw-(?P<tier>hourly|daily|monthly|yearly)-(?P<timestamp>\d{8}-\d{6})\.tar\.gz\.enc$'
)

# Hashing buffer
CHUNK_SIZE = 1024 * 1024


@dataclass
class PackagedArchive:
    """Result of packaging: archive location plus its content checksum."""
    path: str
    checksum: str
    size_bytes: int
    entry_names: List[str] = field(default_factory=list)


def create_archive(entries: List[Tuple[str, str]], output_path: str) -> PackagedArchive:
    """
    Create a gzip-compressed tar from ordered (path, archive name) pairs.

    Args:
        entries: Ordered list of (filesystem path, archive-relative name)
        output_path: Archive file to write (should live in the run's scratch dir)

    Returns:
        PackagedArchive with path, SHA-256 checksum and size

    Raises:
        PackagingFailed: If an input is missing/unreadable or the archive cannot be written
    """
    if not entries:
        raise PackagingFailed("No archive inputs provided")

    # Check every input before writing anything
    for path, arcname in entries:
        if not arcname or os.path.isabs(arcname) or '..' in Path(arcname).parts:
            raise PackagingFailed(f"Invalid archive name for {path}: {arcname!r}")
        if not os.path.exists(path):
            raise PackagingFailed(f"Archive input does not exist: {path}")
        if not os.access(path, os.R_OK):
            raise PackagingFailed(f"Archive input is not readable: {path}")

    try:
        with tarfile.open(output_path, 'w:gz') as tar:
            for path, arcname in entries:
                tar.add(path, arcname=arcname, recursive=True)
    except (OSError, tarfile.TarError) as e:
        _remove_partial(output_path)
        raise PackagingFailed(f"Failed to create archive: {e}")

    return PackagedArchive(
        path=output_path,
        checksum=sha256_file(output_path),
        size_bytes=get_archive_size(output_path),
        entry_names=[arcname for _, arcname in entries]
    )


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError:
            pass


def sha256_file(path: str) -> str:
    """Return the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def count_archive_members(archive_path: str) -> int:
    """
    Count the members of a tar archive, reading it end to end.

    Raises:
        tarfile.TarError: If the archive is malformed
        OSError: If it cannot be read
    """
    count = 0
    with tarfile.open(archive_path, 'r:*') as tar:
        for _ in tar:
            count += 1
    return count


def safe_extract(archive_path: str, destination: str) -> List[str]:
    """
    Extract a tar archive, refusing members that would land outside destination.

    Args:
        archive_path: Archive to extract
        destination: Target directory (created if missing)

    Returns:
        List of extracted member names

    Raises:
        PackagingFailed: If the archive contains unsafe members
        tarfile.TarError: If the archive is malformed
    """
    dest = Path(destination).resolve()
    dest.mkdir(parents=True, exist_ok=True)

    with tarfile.open(archive_path, 'r:*') as tar:
        members = tar.getmembers()
        for member in members:
            _check_member(member, dest)

        if hasattr(tarfile, 'data_filter'):
            tar.extractall(dest, members=members, filter='data')
        else:
            tar.extractall(dest, members=members)

    return [m.name for m in members]


def _check_member(member: tarfile.TarInfo, dest: Path):
    target = (dest / member.name).resolve()
    if member.name.startswith('/') or (target != dest and dest not in target.parents):
        raise PackagingFailed(f"Unsafe path in archive: {member.name}")
    if member.isdev():
        raise PackagingFailed(f"Device file in archive: {member.name}")
    if member.issym() or member.islnk():
        link_base = target.parent if member.issym() else dest
        link_target = (link_base / member.linkname).resolve()
        if link_target != dest and dest not in link_target.parents:
            raise PackagingFailed(f"Link escapes destination in archive: {member.name}")


def generate_artifact_name(tier: BackupTier, when: datetime = None) -> str:
    """
    Generate the artifact file name for a tier run.

    Format: vw-{tier}-{YYYYMMDD-HHMMSS}.tar.gz.enc (UTC, second precision)
    """
    when = when or datetime.now(timezone.utc)
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc)
    return f"vw-{BackupTier.parse(tier).value}-{when.strftime(TIMESTAMP_FORMAT)}.{ENCRYPTED_EXTENSION}"


def artifact_key(tier: BackupTier, name: str) -> str:
    """Remote key for an artifact: {tier}/{name}."""
    return f"{BackupTier.parse(tier).prefix}{name}"


def parse_artifact_timestamp(key: str, tier: Optional[BackupTier] = None) -> Optional[datetime]:
    """
    Extract the embedded UTC timestamp from an artifact key or file name.

    Returns None for keys that do not follow the naming scheme (or that belong
    to a different tier when one is given); such keys are never treated as
    artifacts.
    """
    name = key.rsplit('/', 1)[-1]
    match = _ARTIFACT_NAME_RE.match(name)
    if not match:
        return None
    if tier is not None and match.group('tier') != BackupTier.parse(tier).value:
        return None
    try:
        parsed = datetime.strptime(match.group('timestamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def strip_archive_extension(filename: str) -> str:
    """
    Strip the archive extension from a file name.

    Handles .tar.gz.enc and .tar.gz.
    """
    if filename.endswith('.' + ENCRYPTED_EXTENSION):
        return filename[:-(len(ENCRYPTED_EXTENSION) + 1)]
    elif filename.endswith('.' + ARCHIVE_EXTENSION):
        return filename[:-(len(ARCHIVE_EXTENSION) + 1)]
    else:
        return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        PackagingFailed: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise PackagingFailed(f"Archive not found: {archive_path}")
    except OSError as e:
        raise PackagingFailed(f"Failed to get archive size: {e}")
