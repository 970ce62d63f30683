"""Per-server advisory file locks.

``flock`` locks belong to the open file description, so every acquisition
opens its own descriptor: the lock excludes other processes and other
threads of the same process alike.
"""
import os
import time
import fcntl
import logging
from pathlib import Path
from contextlib import contextmanager
from collections.abc import Iterator

from .exceptions import PersistenceError

logger = logging.getLogger("credential_broker.locks")

POLL_INTERVAL = 0.005


@contextmanager
def file_lock(path: Path, timeout: float, server_name: str = "") -> Iterator[None]:
    """Hold an exclusive lock on ``path`` for the duration of the block.

    Args:
        path: Lock file, created with mode 0600 if missing.
        timeout: Seconds to wait for the lock.
        server_name: Used in error messages only.

    Raises:
        PersistenceError: If the lock is not acquired before the deadline
            or the lock file cannot be opened.
    """
    try:
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as err:
        raise PersistenceError(
            f"Cannot open lock file {path}: {err}", server_name=server_name
        ) from err
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise PersistenceError(
                        f"Timed out after {timeout}s waiting for session lock"
                        f" of {server_name or path}",
                        server_name=server_name,
                    ) from None
                time.sleep(POLL_INTERVAL)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
