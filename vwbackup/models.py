from datetime import datetime, timezone

from sqlalchemy import event

from vwbackup import db


def utcnow() -> datetime:
    """Naive UTC timestamp, second precision (SQLite stores naive datetimes)."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


class RunRecord(db.Model):
    """
    Audit entry for one backup, verification or restore invocation.

    Rows are written once, when the invocation finishes, and never updated.
    """
    __tablename__ = 'run_records'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.String(32), unique=True, nullable=False)
    operation = db.Column(db.String(20), nullable=False, default='backup')  # backup, verify, restore
    tier = db.Column(db.String(20), nullable=False, index=True)
    trigger = db.Column(db.String(20), nullable=False, default='scheduled')  # scheduled, manual
    outcome = db.Column(db.String(20), nullable=False, index=True)  # success, failure
    started_at = db.Column(db.DateTime, nullable=False)
    finished_at = db.Column(db.DateTime, nullable=False)
    error_kind = db.Column(db.String(50))
    error_detail = db.Column(db.Text)
    remote_key = db.Column(db.String(500))
    source_checksum = db.Column(db.String(64))  # SHA-256 of the archive before encryption
    size_bytes = db.Column(db.BigInteger)  # Size of the encrypted artifact
    secondary_upload_warning = db.Column(db.Text)
    retention_deleted = db.Column(db.Integer)
    retention_warning = db.Column(db.Text)

    def __repr__(self):
        return f'<RunRecord {self.operation} tier={self.tier} outcome={self.outcome}>'

    @property
    def succeeded(self) -> bool:
        return self.outcome == 'success'

    @property
    def duration_seconds(self):
        if self.started_at and self.finished_at:
            return int((self.finished_at - self.started_at).total_seconds())
        return None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'run_id': self.run_id,
            'operation': self.operation,
            'tier': self.tier,
            'trigger': self.trigger,
            'outcome': self.outcome,
            'started_at': self.started_at.isoformat() + 'Z' if self.started_at else None,
            'finished_at': self.finished_at.isoformat() + 'Z' if self.finished_at else None,
            'duration_seconds': self.duration_seconds,
            'error_kind': self.error_kind,
            'error_detail': self.error_detail,
            'remote_key': self.remote_key,
            'source_checksum': self.source_checksum,
            'size_bytes': self.size_bytes,
            'secondary_upload_warning': self.secondary_upload_warning,
            'retention_deleted': self.retention_deleted,
            'retention_warning': self.retention_warning
        }

    @classmethod
    def latest(cls, tier: str, operation: str = 'backup', outcome: str = None):
        query = cls.query.filter_by(tier=tier, operation=operation)
        if outcome:
            query = query.filter_by(outcome=outcome)
        return query.order_by(cls.finished_at.desc(), cls.id.desc()).first()

    @classmethod
    def last_success(cls, tier: str, operation: str = 'backup'):
        return cls.latest(tier, operation=operation, outcome='success')


@event.listens_for(RunRecord, 'before_update')
def _run_records_are_append_only(mapper, connection, target):
    raise RuntimeError('RunRecord rows are append-only')
