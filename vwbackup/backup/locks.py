"""
Per-tier mutual exclusion.

At most one run per tier executes at a time; different tiers may run
concurrently. Each tier has an in-process lock plus an ``flock`` lock file,
so a manual CLI run and the scheduler daemon also exclude each other.
Acquisition never blocks: a trigger that finds its tier busy is dropped.
"""

import os
import fcntl
import logging
import threading
from typing import Dict, Optional

from .errors import AlreadyRunning
from .tiers import BackupTier

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_thread_locks: Dict[str, threading.Lock] = {}
_running: Dict[str, str] = {}


def _thread_lock_for(tier: BackupTier) -> threading.Lock:
    with _registry_lock:
        return _thread_locks.setdefault(tier.value, threading.Lock())


class TierLock:
    """Non-blocking exclusive lock for one tier."""

    def __init__(self, lock_dir: str, tier: BackupTier, owner: str = ''):
        self.tier = BackupTier.parse(tier)
        self.lock_dir = lock_dir
        self.path = os.path.join(lock_dir, f"{self.tier.value}.lock")
        self.owner = owner
        self._file = None
        self._thread_lock = _thread_lock_for(self.tier)

    def acquire(self) -> bool:
        """
        Try to take the lock.

        Returns:
            True if acquired, False if a run for this tier is already in progress
        """
        if not self._thread_lock.acquire(blocking=False):
            return False

        try:
            os.makedirs(self.lock_dir, exist_ok=True)
            self._file = open(self.path, 'a+')
            fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self._close_file()
            self._thread_lock.release()
            return False
        except Exception:
            self._close_file()
            self._thread_lock.release()
            raise

        self._file.seek(0)
        self._file.truncate()
        self._file.write(f"{os.getpid()} {self.owner}\n")
        self._file.flush()
        _running[self.tier.value] = self.owner
        return True

    def release(self):
        _running.pop(self.tier.value, None)
        if self._file is not None:
            try:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            finally:
                self._close_file()
        self._thread_lock.release()

    def _close_file(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self):
        if not self.acquire():
            raise AlreadyRunning(f"A {self.tier.value} run is already in progress; trigger dropped")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


def get_tier_states() -> Dict[str, str]:
    """Current state per tier in this process: 'running' or 'idle'."""
    return {
        tier.value: 'running' if tier.value in _running else 'idle'
        for tier in BackupTier
    }


def running_owner(tier: BackupTier) -> Optional[str]:
    return _running.get(BackupTier.parse(tier).value)
