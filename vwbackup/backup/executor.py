"""
Backup executor - orchestrates one tier run.

Workflow (strictly sequential, each phase starts only after the previous
one's output exists on disk):
1. Build the cipher (passphrase strength check, before any I/O)
2. Snapshot the live database with the online-backup API
3. Package snapshot (+ attachments/config for full tiers) into a tar.gz
4. Encrypt the archive
5. Upload to the primary destination and any secondary destinations
6. Enforce retention for the tier (only after a successful upload)
7. Remove the run's scratch directory
8. Append a RunRecord (outcome: success/failure)
"""

import os
import uuid
import shutil
import logging
import threading
from typing import Optional

from vwbackup import db
from vwbackup.models import RunRecord, utcnow
from .compression import create_archive, generate_artifact_name, artifact_key, strip_archive_extension, ARCHIVE_EXTENSION
from .errors import BackupError, RetentionListFailed, UploadCancelled, AlreadyRunning
from .locks import TierLock
from .restore import restore_artifact
from .retention import enforce_retention
from .settings import BackupContext
from .snapshot import create_snapshot
from .tiers import BackupTier
from .verifier import Verifier, VerificationResult, SNAPSHOT_ARCNAME

logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Runs the complete backup workflow for one tier.
    """

    def __init__(self, context: BackupContext, tier: BackupTier, trigger: str = 'scheduled',
                 cancel_event: Optional[threading.Event] = None):
        """
        Initialize backup executor.

        Args:
            context: Settings, secrets and storage factories
            tier: Tier to back up
            trigger: 'scheduled' or 'manual'
            cancel_event: Set on process shutdown to abort in-flight uploads
        """
        self.context = context
        self.settings = context.settings
        self.tier = BackupTier.parse(tier)
        self.trigger = trigger
        self.cancel_event = cancel_event
        self.run_id = uuid.uuid4().hex
        self.started_at = None
        self.scratch_dir = None
        self.remote_key = None
        self.source_checksum = None
        self.size_bytes = None
        self.upload_result = None
        self.retention_report = None
        self.retention_warning = None

    def execute(self) -> RunRecord:
        """
        Execute the tier run under the tier lock.

        Returns:
            The appended RunRecord

        Raises:
            AlreadyRunning: If a run for this tier is in progress (no record is written)
        """
        lock = TierLock(self.settings.lock_dir, self.tier, owner=self.run_id)
        if not lock.acquire():
            logger.warning(f"{self.tier.value} run already in progress, dropping {self.trigger} trigger")
            raise AlreadyRunning(f"A {self.tier.value} run is already in progress; trigger dropped")

        try:
            return self._execute_locked()
        finally:
            lock.release()

    def _execute_locked(self) -> RunRecord:
        self.started_at = utcnow()
        logger.info(f"Starting {self.tier.value} backup (run {self.run_id}, {self.trigger})")

        error = None
        try:
            self._execute_workflow()
            logger.info(f"{self.tier.value} backup completed: {self.remote_key}")
        except BackupError as e:
            error = e
            logger.error(f"{self.tier.value} backup failed [{e.kind}]: {e.message}"
                         f"{' - ' + e.detail if e.detail else ''}")
        except Exception as e:
            error = BackupError(f"Unexpected error: {e}")
            logger.exception(f"{self.tier.value} backup failed with an unexpected error")
        finally:
            self._cleanup()

        return self._record(error)

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: cipher first, so a weak passphrase fails before any I/O
        cipher = self.context.cipher()
        uploader = self.context.uploader()

        # Step 2: per-run scratch directory
        self.scratch_dir = os.path.join(self.settings.scratch_dir, f"{self.tier.value}-{self.run_id}")
        os.makedirs(self.scratch_dir, mode=0o700)

        snapshot_path = os.path.join(self.scratch_dir, SNAPSHOT_ARCNAME)
        create_snapshot(self.settings.source_db_path, snapshot_path, timeout=self.settings.snapshot_timeout)

        # Step 3: archive
        entries = [(snapshot_path, SNAPSHOT_ARCNAME)]
        if self.settings.is_full(self.tier):
            extra = self.settings.full_backup_entries()
            logger.info(f"Full backup: including {', '.join(name for _, name in extra) or 'no extra entries'}")
            entries.extend(extra)

        artifact_name = generate_artifact_name(self.tier, self.started_at)
        archive_path = os.path.join(
            self.scratch_dir, f"{strip_archive_extension(artifact_name)}.{ARCHIVE_EXTENSION}"
        )
        archive = create_archive(entries, archive_path)
        self.source_checksum = archive.checksum
        os.remove(snapshot_path)
        logger.info(f"Archive created: {os.path.basename(archive.path)} ({archive.size_bytes / 1024 / 1024:.2f} MB)")

        # Step 4: encrypt, then drop the plaintext archive
        encrypted_path = os.path.join(self.scratch_dir, artifact_name)
        cipher.encrypt_file(archive.path, encrypted_path)
        os.remove(archive.path)
        self.size_bytes = os.path.getsize(encrypted_path)

        # Step 5: upload
        remote_key = artifact_key(self.tier, artifact_name)
        self.upload_result = uploader.upload(
            encrypted_path, remote_key, run_id=self.run_id, cancellation_check=self._check_cancelled
        )
        self.remote_key = remote_key

        # Step 6: retention, only reached after a successful primary upload
        try:
            self.retention_report = enforce_retention(
                uploader.destinations, self.settings.policies, self.tier
            )
            if self.retention_report.warnings:
                self.retention_warning = '; '.join(self.retention_report.warnings)
        except RetentionListFailed as e:
            self.retention_warning = f"{e.message}: {e.detail}" if e.detail else e.message
            logger.error(f"Retention skipped for {self.tier.value}: {self.retention_warning}")

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise UploadCancelled("Upload aborted: process is shutting down")

    def _cleanup(self):
        """Remove the run's scratch directory."""
        if self.scratch_dir and os.path.exists(self.scratch_dir):
            try:
                shutil.rmtree(self.scratch_dir)
            except OSError as e:
                logger.error(f"Failed to remove scratch directory {self.scratch_dir}: {e}")

    def _record(self, error: Optional[BackupError]) -> RunRecord:
        record = RunRecord(
            run_id=self.run_id,
            operation='backup',
            tier=self.tier.value,
            trigger=self.trigger,
            outcome='failure' if error else 'success',
            started_at=self.started_at,
            finished_at=utcnow(),
            error_kind=error.kind if error else None,
            error_detail=_describe(error),
            remote_key=self.remote_key,
            source_checksum=self.source_checksum if not error else None,
            size_bytes=self.size_bytes if not error else None,
            secondary_upload_warning=self.upload_result.secondary_warning if self.upload_result else None,
            retention_deleted=self.retention_report.deleted_count if self.retention_report else None,
            retention_warning=self.retention_warning
        )
        db.session.add(record)
        db.session.commit()
        return record


def _describe(error: Optional[BackupError]) -> Optional[str]:
    if error is None:
        return None
    if error.detail:
        return f"{error.message}: {error.detail}"
    return error.message


def execute_backup(context: BackupContext, tier: BackupTier, trigger: str = 'scheduled',
                   cancel_event: Optional[threading.Event] = None) -> RunRecord:
    """
    Execute a backup run for tier.

    Raises:
        AlreadyRunning: If the tier is busy
    """
    executor = BackupExecutor(context, tier, trigger=trigger, cancel_event=cancel_event)
    return executor.execute()


def execute_verification(context: BackupContext, tier: BackupTier, trigger: str = 'scheduled') -> VerificationResult:
    """
    Verify the newest artifact of tier on the primary destination and record the outcome.
    """
    tier = BackupTier.parse(tier)
    run_id = uuid.uuid4().hex
    started_at = utcnow()

    try:
        verifier = Verifier(context.primary_storage(), context.cipher(), context.settings.scratch_dir)
        result = verifier.verify_tier(tier)
        error_kind = None if result.ok else 'verification_failed'
        detail = None if result.ok else (f"{result.reason}: {result.detail}" if result.detail else result.reason)
    except BackupError as e:
        result = VerificationResult(tier=tier, ok=False, reason=e.message, detail=e.detail)
        error_kind = e.kind
        detail = _describe(e)
    result.error_kind = error_kind

    db.session.add(RunRecord(
        run_id=run_id,
        operation='verify',
        tier=tier.value,
        trigger=trigger,
        outcome='success' if result.ok else 'failure',
        started_at=started_at,
        finished_at=utcnow(),
        error_kind=error_kind,
        error_detail=detail,
        remote_key=result.remote_key
    ))
    db.session.commit()
    return result


def execute_restore(context: BackupContext, tier: BackupTier, artifact_id: str, destination: str) -> dict:
    """
    Restore an artifact from the primary destination into destination and record the outcome.

    Raises:
        BackupError: Any restore failure, after it has been recorded
    """
    tier = BackupTier.parse(tier)
    run_id = uuid.uuid4().hex
    started_at = utcnow()
    error = None
    result = None

    try:
        result = restore_artifact(
            context.primary_storage(), context.cipher(), tier, artifact_id, destination,
            context.settings.scratch_dir
        )
    except BackupError as e:
        error = e
        raise
    finally:
        db.session.add(RunRecord(
            run_id=run_id,
            operation='restore',
            tier=tier.value,
            trigger='manual',
            outcome='failure' if error else 'success',
            started_at=started_at,
            finished_at=utcnow(),
            error_kind=error.kind if error else None,
            error_detail=_describe(error),
            remote_key=result['remote_key'] if result else None
        ))
        db.session.commit()

    return result
