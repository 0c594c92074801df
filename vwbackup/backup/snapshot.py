"""
Consistent point-in-time snapshots of the live SQLite database.

Uses SQLite's online-backup API (``sqlite3.Connection.backup``) instead of a
raw file copy, so writers on the live database are never blocked for the
whole copy and torn pages are never read. The source is opened read-only.
"""

import os
import time
import sqlite3
import logging
from pathlib import Path
from typing import Optional

from .errors import SourceUnavailable, SnapshotFailed, BackupTimeout

logger = logging.getLogger(__name__)

# Pages copied per backup step; between steps other connections may write
DEFAULT_PAGES_PER_STEP = 256


def _open_read_only(source_path: str, timeout: Optional[float]) -> sqlite3.Connection:
    uri = Path(source_path).resolve().as_uri() + '?mode=ro'
    return sqlite3.connect(uri, uri=True, timeout=timeout or 5.0)


def create_snapshot(
    source_path: str,
    output_path: str,
    timeout: Optional[float] = None,
    pages: int = DEFAULT_PAGES_PER_STEP
) -> str:
    """
    Copy a live SQLite database to output_path using the online-backup API.

    The copy is written to a temporary sibling file and renamed into place
    once complete.

    Args:
        source_path: Live database file
        output_path: Where the consistent copy should be written
        timeout: Seconds allowed for the whole backup (None = no limit)
        pages: Pages copied per step

    Returns:
        output_path

    Raises:
        SourceUnavailable: If the source is missing or not a database
        SnapshotFailed: If the backup itself errors (e.g. destination disk full)
        BackupTimeout: If the backup exceeds timeout
    """
    if not os.path.isfile(source_path):
        raise SourceUnavailable(f"Source database not found: {source_path}")

    try:
        source = _open_read_only(source_path, timeout)
    except sqlite3.Error as e:
        raise SourceUnavailable(f"Cannot open source database {source_path}: {e}")

    partial_path = f"{output_path}.partial"
    deadline = time.monotonic() + timeout if timeout else None

    def _progress(status, remaining, total):
        if deadline is not None and time.monotonic() > deadline:
            raise BackupTimeout(
                f"Database snapshot exceeded {timeout}s ({total - remaining}/{total} pages copied)"
            )

    try:
        try:
            source.execute('PRAGMA schema_version').fetchone()
        except sqlite3.DatabaseError as e:
            raise SourceUnavailable(f"Source is not a valid database: {source_path} ({e})")

        try:
            destination = sqlite3.connect(partial_path)
        except sqlite3.Error as e:
            raise SnapshotFailed(f"Cannot create snapshot file {partial_path}: {e}")

        try:
            source.backup(destination, pages=pages, progress=_progress)
        except BackupTimeout:
            raise
        except (sqlite3.Error, OSError) as e:
            raise SnapshotFailed(f"Online backup failed: {e}")
        finally:
            destination.close()

        try:
            os.replace(partial_path, output_path)
        except OSError as e:
            raise SnapshotFailed(f"Failed to finalize snapshot: {e}")

    except Exception:
        if os.path.exists(partial_path):
            try:
                os.remove(partial_path)
            except OSError:
                logger.warning(f"Could not remove partial snapshot {partial_path}")
        raise
    finally:
        source.close()

    logger.info(f"Snapshot of {source_path} written to {output_path} ({os.path.getsize(output_path)} bytes)")
    return output_path


def check_database_integrity(path: str) -> Optional[str]:
    """
    Run ``PRAGMA integrity_check`` on a database file.

    Returns:
        None when the database is healthy, otherwise the first problem reported
    """
    try:
        conn = _open_read_only(path, None)
    except sqlite3.Error as e:
        return str(e)
    try:
        row = conn.execute('PRAGMA integrity_check').fetchone()
    except sqlite3.DatabaseError as e:
        return str(e)
    finally:
        conn.close()
    if row and row[0] == 'ok':
        return None
    return row[0] if row else 'no result'
