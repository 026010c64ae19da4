"""
Run-level mutual exclusion.

A scheduled import and a manually triggered one must not race on the same
local accounts, so every import holds an exclusive lock on a lock file for
its whole duration. The lock is released by the OS if the process dies.
"""

import os
import fcntl
import logging
from typing import Optional, IO

logger = logging.getLogger(__name__)


class RunLockError(Exception):
    """Raised when another import run holds the lock."""
    pass


class RunLock:
    """Exclusive, non-blocking file lock usable as a context manager."""

    def __init__(self, path: str):
        self.path = path
        self._handle: Optional[IO] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self):
        """
        Take the lock without waiting.

        Raises:
            RunLockError: If another run holds the lock or the file cannot be opened
        """
        if self._handle is not None:
            return

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        try:
            handle = open(self.path, 'a+')
        except OSError as e:
            raise RunLockError(f"Cannot open lock file {self.path}: {e}")

        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            raise RunLockError(f"Another import run holds {self.path}")

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug(f"Acquired run lock: {self.path}")

    def release(self):
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle, fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(f"Released run lock: {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
