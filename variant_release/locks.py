"""File-based locks keyed by name.

Used by the cache manager (one producer per cache key across processes)
and by the release publisher (one writer per version tag).
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")

# Poll interval while waiting for a lock with a timeout
LOCK_POLL_INTERVAL = 0.1


def lock_file_path(lock_dir: Path, name: str, prefix: str = "lock") -> Path:
    """Return the lock file used for a name.

    Args:
        lock_dir: Directory for lock files.
        name: Lock name (cache key, version tag).
        prefix: Filename prefix.

    Returns:
        Path of the lock file.
    """
    safe_name = _UNSAFE_CHARS.sub("_", name)[:96]
    return lock_dir / f"{prefix}_{safe_name}.lock"


@contextmanager
def file_lock(
    lock_dir: Path,
    name: str,
    timeout: float | None = None,
    prefix: str = "lock",
) -> Iterator[None]:
    """Acquire an exclusive lock for a name.

    flock locks belong to the open file description, so two threads of
    the same process contend just like two processes do.

    Args:
        lock_dir: Directory for lock files.
        name: Lock name.
        timeout: Lock acquisition timeout in seconds (None = blocking).
        prefix: Lock filename prefix.

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_file_path(lock_dir, name, prefix)

    logger.debug("Acquiring lock %s", lock_file.name)

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
                        raise TimeoutError(
                            f"Timeout waiting for lock on {name[:48]}"
                        ) from None
                    time.sleep(LOCK_POLL_INTERVAL)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Lock acquired %s", lock_file.name)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Lock released %s", lock_file.name)
        os.close(fd)


__all__ = ["LOCK_POLL_INTERVAL", "file_lock", "lock_file_path"]
