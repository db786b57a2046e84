"""Apply lock.

Two ``ts apply`` runs against the same state file would interleave remote
mutations and overwrite each other's recorded identities.
"""
import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from tillstand.core.errors import LockError
from tillstand.core.logger import get_logger

logger = get_logger(__name__)

LOCK_NAME = "apply.lock"
DEFAULT_LOCK_FILE = Path(".tillstand") / LOCK_NAME


def lock_file_for(state_file: Path) -> Path:
    """Lock guarding ``state_file``; runs sharing a state file share the lock."""
    return Path(state_file).resolve().parent / LOCK_NAME


class TillstandLock:
    """File-based lock for preventing concurrent apply operations."""

    def __init__(self, lock_file: Optional[Path] = None, timeout: int = 0):
        """Initialize lock.

        Args:
            lock_file: Path to lock file (default: .tillstand/apply.lock)
            timeout: Seconds to wait for lock (0 = fail immediately)
        """
        self.lock_file = Path(lock_file) if lock_file else Path.cwd() / DEFAULT_LOCK_FILE
        self.timeout = timeout
        self.lock_fd = None

    def acquire(self) -> bool:
        """Acquire the lock.

        Raises:
            LockError: If the lock is held and the timeout passes
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        # Append mode keeps the holder's PID readable until we own the lock
        self.lock_fd = open(self.lock_file, 'a+')

        start_time = time.time()
        while True:
            try:
                fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                elapsed = time.time() - start_time
                if self.timeout == 0 or elapsed >= self.timeout:
                    info = self._read_lock_info()
                    self.lock_fd.close()
                    self.lock_fd = None
                    raise LockError(
                        f"Another Tillstand apply is in progress.\n"
                        f"Lock held by PID {info['pid']} since {info['time']}\n"
                        f"Wait for it to finish, or remove {self.lock_file} if stale."
                    )
                time.sleep(0.5)
                continue

            self.lock_fd.seek(0)
            self.lock_fd.truncate()
            self.lock_fd.write(f"{os.getpid()}\n")
            self.lock_fd.write(f"{time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            self.lock_fd.flush()
            logger.debug(f"Acquired lock: {self.lock_file}")
            return True

    def release(self):
        if self.lock_fd is None:
            return
        try:
            fcntl.flock(self.lock_fd.fileno(), fcntl.LOCK_UN)
            self.lock_fd.close()
            logger.debug(f"Released lock: {self.lock_file}")
        finally:
            self.lock_fd = None

        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass

    def _read_lock_info(self) -> dict:
        try:
            lines = self.lock_file.read_text().splitlines()
        except OSError:
            lines = []
        if len(lines) >= 2:
            return {'pid': lines[0].strip(), 'time': lines[1].strip()}
        return {'pid': 'unknown', 'time': 'unknown'}

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


@contextmanager
def apply_lock(timeout: int = 0, lock_file: Optional[Path] = None, state_file: Optional[Path] = None):
    """Context manager for apply operation locking.

    The lock sits beside ``state_file`` when one is given.

    Usage:
        with apply_lock(state_file=runner.store.state_file):
            runner.apply(plans)

    Raises:
        LockError: If unable to acquire lock
    """
    if lock_file is None and state_file is not None:
        lock_file = lock_file_for(state_file)
    lock = TillstandLock(lock_file=lock_file, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
