"""
Exclusive deployment lock.

Only one deploy or teardown may run against a stack at a time. The lock is
an fcntl.flock on a file under the stack's base directory, holding the PID
of the owner. The kernel drops the flock when its holder dies, so a lock
file left behind by a crashed run never blocks the next one.
"""

import os
import fcntl
import logging
from pathlib import Path
from typing import Optional, IO

from .errors import DeploymentInProgress

logger = logging.getLogger(__name__)


class DeploymentLock:
    """
    File-based lock preventing overlapping deployments.

    Usage:
        with DeploymentLock(config.lock_file):
            scheduler.run(config.phases)
    """

    def __init__(self, lock_file: Path):
        self.lock_file = Path(lock_file)
        self._file: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._file is not None

    def acquire(self):
        """Take the lock or raise DeploymentInProgress without changing anything."""
        if self._file is not None:
            return
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        # r+ keeps the holder's PID intact if we lose the race
        try:
            f = open(self.lock_file, "r+")
        except FileNotFoundError:
            f = open(self.lock_file, "w")

        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            f.close()
            pid = self.holder_pid()
            logger.error(f"Another deployment is running (PID {pid})")
            raise DeploymentInProgress(self.lock_file, pid)

        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()))
        f.flush()
        self._file = f
        logger.debug(f"Acquired deployment lock (PID {os.getpid()})")

    def release(self):
        """Release the lock. Safe to call multiple times or without acquire."""
        if self._file is None:
            return
        try:
            self._file.seek(0)
            self._file.truncate()
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None
        logger.debug("Released deployment lock")

    def holder_pid(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def __enter__(self) -> "DeploymentLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
