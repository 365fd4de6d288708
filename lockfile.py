#!/usr/bin/env python3
"""
Advisory lock scoped to a data directory.

A scrape process and any other process touching the same data directory
(export, download, registry edits) coordinate through ``tumblr.lock``. The
lock is an exclusive ``flock`` on that file, so the kernel drops it when the
holding process exits, including on a crash.
"""

import fcntl
import os
from typing import Dict

from config import config, get_logger
from errors import LockConflictError

logger = get_logger("lockfile")


class DataDirLock:
    """Exclusive, non-blocking advisory lock on a data directory.

    The lock is re-entrant within one process: nested acquisitions of the
    same directory share the open file and only the outermost release
    unlocks it.
    """

    # realpath(lock file) -> [fd, depth]
    _held: Dict[str, list] = {}

    def __init__(self, directory: str, lock_name: str | None = None):
        self.directory = directory
        self.lock_path = os.path.realpath(os.path.join(directory, lock_name or config.LOCK_FILE))
        self._owned = False

    @property
    def locked(self) -> bool:
        return self._owned

    def acquire(self) -> None:
        """Take the lock or raise LockConflictError if another process holds it."""
        if self._owned:
            return
        held = self._held.get(self.lock_path)
        if held is not None:
            held[1] += 1
            self._owned = True
            return

        os.makedirs(os.path.dirname(self.lock_path), exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockConflictError(self.lock_path) from None
        except OSError:
            os.close(fd)
            raise

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._held[self.lock_path] = [fd, 1]
        self._owned = True
        logger.debug(f"Acquired lock {self.lock_path}")

    def release(self) -> None:
        if not self._owned:
            return
        self._owned = False
        held = self._held.get(self.lock_path)
        if held is None:
            return
        held[1] -= 1
        if held[1] > 0:
            return
        del self._held[self.lock_path]
        fd = held[0]
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.debug(f"Released lock {self.lock_path}")

    def __enter__(self) -> "DataDirLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def __aenter__(self) -> "DataDirLock":
        self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
