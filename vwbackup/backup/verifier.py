"""
Backup verification.

Downloads the newest artifact of a tier, decrypts it and checks that the
archive is structurally sound. Plaintext only ever exists inside a
temporary directory under the scratch area, removed on every exit path.
"""

import os
import tarfile
import logging
import tempfile
from dataclasses import dataclass
from typing import Optional

from .compression import count_archive_members, safe_extract
from .errors import EncryptionFailed, RetentionListFailed, PackagingFailed, VerificationFailed
from .retention import list_artifacts
from .snapshot import check_database_integrity
from .storage import StorageError
from .tiers import BackupTier

logger = logging.getLogger(__name__)

# Archive name of the database snapshot inside every artifact
SNAPSHOT_ARCNAME = 'db.sqlite3'


@dataclass
class VerificationResult:
    tier: BackupTier
    ok: bool
    remote_key: Optional[str] = None
    reason: Optional[str] = None
    entry_count: int = 0
    detail: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'tier': self.tier.value,
            'ok': self.ok,
            'remote_key': self.remote_key,
            'reason': self.reason,
            'entry_count': self.entry_count
        }


class Verifier:
    """Checks that the latest artifact of a tier can actually be restored."""

    def __init__(self, storage, cipher, scratch_dir: str):
        """
        Args:
            storage: Destination to verify
            cipher: ArchiveCipher holding the backup passphrase
            scratch_dir: Parent directory for ephemeral plaintext
        """
        self.storage = storage
        self.cipher = cipher
        self.scratch_dir = scratch_dir

    def verify_tier(self, tier: BackupTier) -> VerificationResult:
        """
        Verify the newest artifact of tier.

        Returns:
            VerificationResult; ok is False with a human-readable reason on failure
        """
        tier = BackupTier.parse(tier)

        try:
            artifacts = list_artifacts(self.storage, tier)
        except RetentionListFailed as e:
            return self._fail(tier, None, 'listing error', e.detail)

        if not artifacts:
            return self._fail(tier, None, 'no artifacts')

        return self.verify_artifact(tier, artifacts[0].remote_key)

    def verify_artifact(self, tier: BackupTier, remote_key: str) -> VerificationResult:
        """Download, decrypt and inspect one artifact."""
        tier = BackupTier.parse(tier)
        os.makedirs(self.scratch_dir, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f'verify-{tier.value}-', dir=self.scratch_dir) as work_dir:
            encrypted_path = os.path.join(work_dir, 'artifact.enc')
            archive_path = os.path.join(work_dir, 'archive.tar.gz')

            try:
                self.storage.download(remote_key, encrypted_path)
            except StorageError as e:
                return self._fail(tier, remote_key, 'download error', str(e))

            try:
                self.cipher.decrypt_file(encrypted_path, archive_path)
            except EncryptionFailed as e:
                return self._fail(tier, remote_key, 'decryption error', e.detail or e.message)
            finally:
                os.remove(encrypted_path)

            try:
                entry_count = count_archive_members(archive_path)
            except (tarfile.TarError, OSError, EOFError) as e:
                return self._fail(tier, remote_key, 'archive unreadable', str(e))

            if entry_count == 0:
                return self._fail(tier, remote_key, 'archive empty')

            problem = self._check_database(archive_path, work_dir)
            if problem:
                return self._fail(tier, remote_key, 'database integrity check failed', problem)

        logger.info(f"Verified {remote_key}: {entry_count} entries")
        return VerificationResult(tier=tier, ok=True, remote_key=remote_key, entry_count=entry_count)

    def _check_database(self, archive_path: str, work_dir: str) -> Optional[str]:
        """Run an integrity check on the bundled database snapshot, if present."""
        with tarfile.open(archive_path, 'r:*') as tar:
            try:
                tar.getmember(SNAPSHOT_ARCNAME)
            except KeyError:
                return None

        extract_dir = os.path.join(work_dir, 'extracted')
        try:
            safe_extract(archive_path, extract_dir)
        except (PackagingFailed, tarfile.TarError, OSError) as e:
            return f"cannot extract archive: {e}"
        return check_database_integrity(os.path.join(extract_dir, SNAPSHOT_ARCNAME))

    def _fail(self, tier, remote_key, reason, detail=None) -> VerificationResult:
        logger.error(
            f"Verification failed for {tier.value}"
            f"{' (' + remote_key + ')' if remote_key else ''}: {reason}"
            f"{' - ' + detail if detail else ''}"
        )
        return VerificationResult(tier=tier, ok=False, remote_key=remote_key, reason=reason, detail=detail)


def verify_or_raise(verifier: Verifier, tier: BackupTier) -> VerificationResult:
    """Run verification and raise VerificationFailed when it does not pass."""
    result = verifier.verify_tier(tier)
    if not result.ok:
        raise VerificationFailed(result.reason, detail=result.detail)
    return result
