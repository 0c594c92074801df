"""
Error taxonomy for the backup engine.

Every failure a tier run can end with maps to one of these classes. Each
class carries a stable ``kind`` (recorded on RunRecord rows and printed by
the CLI) and a distinct process ``exit_code`` for automation.
"""


class BackupError(Exception):
    """Base class for all backup engine failures."""

    kind = 'internal'
    exit_code = 1

    def __init__(self, message: str = '', detail: str = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {
            'error': self.kind,
            'message': self.message,
            'exit_code': self.exit_code
        }


class SourceUnavailable(BackupError):
    """Source database is missing or is not a valid database."""
    kind = 'source_unavailable'
    exit_code = 3


class SnapshotFailed(BackupError):
    """The online-backup operation errored."""
    kind = 'snapshot_failed'
    exit_code = 4


class PackagingFailed(BackupError):
    """An archive input was missing/unreadable or the archive could not be written."""
    kind = 'packaging_failed'
    exit_code = 5


class WeakPassphrase(BackupError):
    """Encryption passphrase is shorter than the configured minimum."""
    kind = 'weak_passphrase'
    exit_code = 6


class EncryptionFailed(BackupError):
    """Key derivation, cipher or container format error."""
    kind = 'encryption_failed'
    exit_code = 7


class UploadFailed(BackupError):
    """Upload to a destination failed after all retries."""
    kind = 'upload_failed'
    exit_code = 8

    def __init__(self, message: str = '', detail: str = None, destination: str = None):
        super().__init__(message, detail)
        self.destination = destination


class RetentionListFailed(BackupError):
    """Listing a tier prefix failed; nothing was deleted."""
    kind = 'retention_list_failed'
    exit_code = 9


class VerificationFailed(BackupError):
    """A downloaded artifact did not pass verification."""
    kind = 'verification_failed'
    exit_code = 10


class BackupTimeout(BackupError):
    """An external call exceeded its configured timeout."""
    kind = 'timeout'
    exit_code = 11


class AlreadyRunning(BackupError):
    """A run for the tier is already in progress; the trigger was dropped."""
    kind = 'already_running'
    exit_code = 12


class ConfigurationError(BackupError):
    """Invalid or incomplete configuration, detected at startup."""
    kind = 'configuration_error'
    exit_code = 13


class RestoreFailed(BackupError):
    """Operator restore could not be completed."""
    kind = 'restore_failed'
    exit_code = 14


class UploadCancelled(BackupError):
    """In-flight upload aborted because the process is shutting down."""
    kind = 'cancelled'
    exit_code = 15


ERROR_KINDS = {
    cls.kind: cls for cls in (
        BackupError, SourceUnavailable, SnapshotFailed, PackagingFailed,
        WeakPassphrase, EncryptionFailed, UploadFailed, RetentionListFailed,
        VerificationFailed, BackupTimeout, AlreadyRunning, ConfigurationError,
        RestoreFailed, UploadCancelled
    )
}


def exit_code_for_kind(kind: str) -> int:
    """Map a recorded error kind back to its CLI exit code (1 when unknown)."""
    cls = ERROR_KINDS.get(kind)
    return cls.exit_code if cls else 1
