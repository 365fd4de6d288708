import fcntl
import os

import pytest

from config import config
from errors import LockConflictError
from lockfile import DataDirLock
from posts import PostStore


def _hold_from_elsewhere(directory):
    """Take the lock on a separate open file, as another process would."""
    fd = os.open(os.path.join(directory, config.LOCK_FILE), os.O_RDWR | os.O_CREAT, 0o644)
    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    return fd


def _release(fd):
    fcntl.flock(fd, fcntl.LOCK_UN)
    os.close(fd)


def test_lock_writes_pid_and_releases(tmp_path):
    with DataDirLock(str(tmp_path)) as lock:
        assert lock.locked
        with open(tmp_path / config.LOCK_FILE) as f:
            assert f.read().strip() == str(os.getpid())

    assert not lock.locked
    fd = _hold_from_elsewhere(str(tmp_path))
    _release(fd)


def test_lock_is_reentrant_in_process(tmp_path):
    outer = DataDirLock(str(tmp_path))
    inner = DataDirLock(str(tmp_path))
    outer.acquire()
    inner.acquire()
    inner.release()

    # Still held by the outer acquisition
    with pytest.raises(BlockingIOError):
        _hold_from_elsewhere(str(tmp_path))

    outer.release()
    _release(_hold_from_elsewhere(str(tmp_path)))


def test_conflict_with_other_holder(tmp_path):
    fd = _hold_from_elsewhere(str(tmp_path))
    try:
        with pytest.raises(LockConflictError) as excinfo:
            DataDirLock(str(tmp_path)).acquire()
        assert excinfo.value.lock_path.endswith(config.LOCK_FILE)
    finally:
        _release(fd)


def test_run_on_locked_directory_fails(tmp_path):
    store = PostStore(str(tmp_path))
    fd = _hold_from_elsewhere(str(tmp_path))
    try:
        with pytest.raises(LockConflictError):
            store.acquire_run()
        assert not store.run_active
    finally:
        _release(fd)
