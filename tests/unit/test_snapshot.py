"""
Unit tests for database snapshots (vwbackup/backup/snapshot.py).

Tests the SQLite online-backup snapshot against a live WAL database.
"""

import hashlib
import itertools
import sqlite3
from unittest.mock import patch

import pytest

from vwbackup.backup.errors import SourceUnavailable, SnapshotFailed, BackupTimeout
from vwbackup.backup.snapshot import create_snapshot, check_database_integrity


def _digest(path):
    return hashlib.sha256(path.read_bytes()).hexdigest()


class TestCreateSnapshot:
    """Test create_snapshot."""

    def test_snapshot_copies_all_rows(self, source_dir, tmp_path):
        output = tmp_path / 'snapshot.sqlite3'

        result = create_snapshot(str(source_dir / 'db.sqlite3'), str(output))

        assert result == str(output)
        conn = sqlite3.connect(str(output))
        try:
            assert conn.execute('SELECT COUNT(*) FROM users').fetchone()[0] == 50
            assert conn.execute('SELECT COUNT(*) FROM ciphers').fetchone()[0] == 50
        finally:
            conn.close()
        assert check_database_integrity(str(output)) is None

    def test_snapshot_includes_uncheckpointed_wal_writes(self, source_dir, tmp_path):
        """Test committed rows still sitting in the WAL are part of the snapshot."""
        writer = sqlite3.connect(str(source_dir / 'db.sqlite3'))
        try:
            writer.execute('PRAGMA wal_autocheckpoint=0')
            writer.execute("INSERT INTO users VALUES ('late-user', 'late@example.com')")
            writer.commit()

            output = tmp_path / 'snapshot.sqlite3'
            create_snapshot(str(source_dir / 'db.sqlite3'), str(output))
        finally:
            writer.close()

        conn = sqlite3.connect(str(output))
        try:
            row = conn.execute("SELECT email FROM users WHERE uuid = 'late-user'").fetchone()
        finally:
            conn.close()
        assert row == ('late@example.com',)

    def test_snapshot_while_writer_holds_open_transaction(self, source_dir, tmp_path):
        """Test an uncommitted write is neither blocking nor included."""
        writer = sqlite3.connect(str(source_dir / 'db.sqlite3'), isolation_level=None)
        try:
            writer.execute('BEGIN')
            writer.execute("INSERT INTO users VALUES ('pending', 'pending@example.com')")

            output = tmp_path / 'snapshot.sqlite3'
            create_snapshot(str(source_dir / 'db.sqlite3'), str(output), timeout=10)
        finally:
            writer.execute('ROLLBACK')
            writer.close()

        conn = sqlite3.connect(str(output))
        try:
            assert conn.execute("SELECT COUNT(*) FROM users WHERE uuid = 'pending'").fetchone()[0] == 0
        finally:
            conn.close()

    def test_snapshot_never_mutates_source(self, source_dir, tmp_path):
        db_path = source_dir / 'db.sqlite3'
        before = _digest(db_path)

        create_snapshot(str(db_path), str(tmp_path / 'snapshot.sqlite3'))

        assert _digest(db_path) == before

    def test_missing_source_raises_source_unavailable(self, tmp_path):
        with pytest.raises(SourceUnavailable, match='not found'):
            create_snapshot(str(tmp_path / 'missing.sqlite3'), str(tmp_path / 'out.sqlite3'))

        assert not (tmp_path / 'out.sqlite3').exists()

    def test_non_database_source_raises_source_unavailable(self, tmp_path):
        bogus = tmp_path / 'bogus.sqlite3'
        bogus.write_bytes(b'this is not a database file at all' * 200)

        with pytest.raises(SourceUnavailable, match='not a valid database'):
            create_snapshot(str(bogus), str(tmp_path / 'out.sqlite3'))

        assert not (tmp_path / 'out.sqlite3').exists()
        assert not (tmp_path / 'out.sqlite3.partial').exists()

    def test_unwritable_destination_raises_snapshot_failed(self, source_dir, tmp_path):
        output = tmp_path / 'missing-dir' / 'snapshot.sqlite3'

        with pytest.raises(SnapshotFailed):
            create_snapshot(str(source_dir / 'db.sqlite3'), str(output))

    def test_backup_error_raises_snapshot_failed(self, source_dir, tmp_path):
        """Test an error from the online-backup call (e.g. disk full) is reported as SnapshotFailed."""
        output = tmp_path / 'snapshot.sqlite3'
        real_connect = sqlite3.connect

        class FailingConnection:
            def __init__(self, conn):
                self._conn = conn

            def execute(self, *args):
                return self._conn.execute(*args)

            def backup(self, *args, **kwargs):
                raise sqlite3.OperationalError('database or disk is full')

            def close(self):
                self._conn.close()

        def fake_connect(database, *args, **kwargs):
            conn = real_connect(database, *args, **kwargs)
            return FailingConnection(conn) if kwargs.get('uri') else conn

        with patch('vwbackup.backup.snapshot.sqlite3.connect', side_effect=fake_connect):
            with pytest.raises(SnapshotFailed, match='disk is full'):
                create_snapshot(str(source_dir / 'db.sqlite3'), str(output))

        assert not output.exists()
        assert not (tmp_path / 'snapshot.sqlite3.partial').exists()

    def test_timeout_raises_backup_timeout(self, source_dir, tmp_path):
        """Test exceeding the deadline aborts the backup between steps."""
        output = tmp_path / 'snapshot.sqlite3'
        clock = itertools.chain([0.0], itertools.repeat(1000.0))

        with patch('vwbackup.backup.snapshot.time.monotonic', side_effect=lambda: next(clock)):
            with pytest.raises(BackupTimeout, match='exceeded'):
                create_snapshot(str(source_dir / 'db.sqlite3'), str(output), timeout=5, pages=1)

        assert not output.exists()
        assert not (tmp_path / 'snapshot.sqlite3.partial').exists()


class TestIntegrityCheck:
    """Test check_database_integrity."""

    def test_healthy_database(self, source_dir):
        assert check_database_integrity(str(source_dir / 'db.sqlite3')) is None

    def test_garbage_file_reports_problem(self, tmp_path):
        bogus = tmp_path / 'bogus.sqlite3'
        bogus.write_bytes(b'garbage' * 1000)

        assert check_database_integrity(str(bogus)) is not None
