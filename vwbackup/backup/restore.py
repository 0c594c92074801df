"""
Operator-invoked restore of a backup artifact.
"""

import os
import tarfile
import logging
import tempfile
from pathlib import Path

from .compression import count_archive_members, safe_extract, ENCRYPTED_EXTENSION
from .errors import RestoreFailed, VerificationFailed, PackagingFailed
from .storage import StorageError, StorageObjectNotFound
from .tiers import BackupTier

logger = logging.getLogger(__name__)


def resolve_artifact_key(tier: BackupTier, artifact_id: str) -> str:
    """
    Accept an artifact as a full key, a file name, or a file name without extension.

    Examples for tier daily:
        daily/vw-daily-20240115-023000.tar.gz.enc
        vw-daily-20240115-023000.tar.gz.enc
        vw-daily-20240115-023000
    """
    tier = BackupTier.parse(tier)
    artifact_id = artifact_id.strip()
    if not artifact_id or '..' in artifact_id:
        raise RestoreFailed(f"Invalid artifact id: {artifact_id!r}")

    if artifact_id.startswith(tier.prefix):
        key = artifact_id
    elif '/' in artifact_id:
        raise RestoreFailed(f"Artifact {artifact_id} does not belong to tier {tier.value}")
    else:
        key = tier.prefix + artifact_id

    if not key.endswith('.' + ENCRYPTED_EXTENSION):
        key = f"{key}.{ENCRYPTED_EXTENSION}"
    return key


def restore_artifact(storage, cipher, tier: BackupTier, artifact_id: str, destination: str,
                     scratch_dir: str) -> dict:
    """
    Download, decrypt, check and extract an artifact into destination.

    Args:
        storage: Destination holding the artifact
        cipher: ArchiveCipher with the backup passphrase
        tier: Artifact tier
        artifact_id: Key or name of the artifact
        destination: Directory to extract into; must be absent or empty
        scratch_dir: Parent directory for the encrypted download and the archive

    Returns:
        Dict with the restored key, destination and extracted member names

    Raises:
        RestoreFailed: Artifact missing, download error or destination not empty
        EncryptionFailed: Wrong passphrase or tampered artifact
        VerificationFailed: Decrypted archive is malformed or empty
    """
    tier = BackupTier.parse(tier)
    key = resolve_artifact_key(tier, artifact_id)
    dest = Path(destination)

    if dest.exists() and (not dest.is_dir() or any(dest.iterdir())):
        raise RestoreFailed(f"Restore destination must be an empty directory: {destination}")

    os.makedirs(scratch_dir, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix=f'restore-{tier.value}-', dir=scratch_dir) as work_dir:
        encrypted_path = os.path.join(work_dir, 'artifact.enc')
        archive_path = os.path.join(work_dir, 'archive.tar.gz')

        logger.info(f"Downloading {key} from {storage.name}")
        try:
            storage.download(key, encrypted_path)
        except StorageObjectNotFound:
            raise RestoreFailed(f"Artifact not found on {storage.name}: {key}")
        except StorageError as e:
            raise RestoreFailed(f"Failed to download {key}", detail=str(e))

        cipher.decrypt_file(encrypted_path, archive_path)
        os.remove(encrypted_path)

        try:
            if count_archive_members(archive_path) == 0:
                raise VerificationFailed("archive empty")
            members = safe_extract(archive_path, str(dest))
        except (tarfile.TarError, EOFError, PackagingFailed) as e:
            raise VerificationFailed("archive unreadable", detail=str(e))

    logger.info(f"Restored {key} into {dest} ({len(members)} entries)")
    return {
        'remote_key': key,
        'destination': str(dest),
        'members': members
    }
