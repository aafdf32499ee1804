"""File locks serializing work on one architecture or one source.

Locks are advisory ``fcntl.flock`` locks on files under the work
directory's ``.locks`` folder. Each acquisition opens its own descriptor,
so two threads of one process exclude each other as well as two processes.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Poll interval while waiting for a lock with a timeout
LOCK_POLL_INTERVAL = 0.1


def lock_file_path(lock_dir: Path, key: str) -> Path:
    """Return the lock file for a key, sanitized for use as a filename."""
    safe_key = key.replace(":", "_").replace("/", "_")[:64]
    return lock_dir / f"{safe_key}.lock"


@contextmanager
def file_lock(
    lock_dir: Path,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire an exclusive lock for a key.

    Args:
        lock_dir: Directory for lock files.
        key: Lock key (e.g. 'arch_x86_64' or 'source_libc-test').
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_file_path(lock_dir, key)

    logger.debug("Acquiring lock: %s", key)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(f"Timeout waiting for lock {key}") from None
                    time.sleep(LOCK_POLL_INTERVAL)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Lock acquired: %s", key)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Lock released: %s", key)
        os.close(fd)


def arch_lock(lock_dir: Path, arch: str, timeout: float | None = None):
    """Lock all pipeline work for one architecture."""
    return file_lock(lock_dir, f"arch_{arch}", timeout=timeout)


def source_lock(lock_dir: Path, name: str, timeout: float | None = None):
    """Lock fetching of one source."""
    return file_lock(lock_dir, f"source_{name}", timeout=timeout)


__all__ = ["arch_lock", "file_lock", "lock_file_path", "source_lock"]
