"""Single-instance lock for the orchestrator."""

import logging
import os
from pathlib import Path
from typing import Optional

from hostupgrade.models.errors import LockContention


def pid_alive(pid: int) -> bool:
    """True if a process with this PID exists (kill -0 semantics)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


class LockManager:
    """PID-tagged lock file with liveness detection.

    Advisory, single-host exclusion. Not a distributed lock.
    """

    def __init__(self, lock_path: str = "/var/run/hostupgrade.lock", pid: Optional[int] = None):
        self.logger = logging.getLogger("hostupgrade.lock")
        self.lock_path = Path(lock_path)
        self.pid = pid if pid is not None else os.getpid()

    def holder(self) -> Optional[int]:
        """PID recorded in the lock file, None if absent or unreadable."""
        try:
            raw = self.lock_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.warning(f"Cannot read lock file {self.lock_path}: {e}")
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def _create(self) -> bool:
        """Create the lock file exclusively; False if it already exists."""
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{self.pid}\n")
        return True

    def acquire(self) -> None:
        """Acquire the lock, reclaiming it once when the holder is dead.

        Raises:
            LockContention: If a live process holds the lock, or another
                instance won the race for a reclaimed lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            if self._create():
                self.logger.debug(f"Acquired lock {self.lock_path} (PID: {self.pid})")
                return
            pid = self.holder()
            if pid == self.pid:
                self.logger.debug(f"Lock {self.lock_path} already held by this process")
                return
            if pid is not None and pid_alive(pid):
                self.logger.error(f"Another upgrade is in progress (PID: {pid})")
                raise LockContention(pid)
            self.logger.warning(f"Reclaiming stale lock {self.lock_path} (holder: {pid})")
            self.lock_path.unlink(missing_ok=True)

        pid = self.holder() or 0
        self.logger.error(f"Lost the race for {self.lock_path} (holder: {pid})")
        raise LockContention(pid)

    def release(self) -> None:
        self.lock_path.unlink(missing_ok=True)
        self.logger.debug(f"Released lock {self.lock_path}")

    def __enter__(self) -> "LockManager":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
