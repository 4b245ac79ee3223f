"""Advisory file locking for fact streams.

Exclusive locks serialize writers; shared locks admit any number of readers
while excluding writers. Locks are ``fcntl.flock`` locks, bound to the open
file description, so they are released when the file is closed even if
``unlock`` is never reached.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import time
from typing import IO, Any, Optional

from ..errors import AlreadyLockedError, LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_SEC = 0.1


def try_lock(file: IO[Any], shared: bool = False) -> bool:
    """Attempt a non-blocking lock. Returns False if it is held elsewhere."""
    mode = fcntl.LOCK_SH if shared else fcntl.LOCK_EX
    try:
        fcntl.flock(file.fileno(), mode | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def unlock(file: IO[Any]) -> None:
    """Release a lock held on ``file``. No-op on a closed file."""
    if file.closed:
        return
    fcntl.flock(file.fileno(), fcntl.LOCK_UN)


def acquire_lock(
    file: IO[Any],
    shared: bool = False,
    timeout: float = 0.0,
    retry_interval: float = DEFAULT_RETRY_INTERVAL_SEC,
    path: Optional[Any] = None,
) -> None:
    """Acquire a lock, polling until ``timeout`` seconds have elapsed.

    Raises:
        AlreadyLockedError: Lock is held and ``timeout`` is zero.
        LockTimeoutError: Lock still held after ``timeout`` seconds.
    """
    start = time.monotonic()
    while not try_lock(file, shared):
        if timeout <= 0:
            raise AlreadyLockedError(path)
        if time.monotonic() - start >= timeout:
            raise LockTimeoutError(timeout, path)
        logger.debug("Lock on %s busy, retrying in %.3fs", path, retry_interval)
        time.sleep(retry_interval)


async def acquire_lock_async(
    file: IO[Any],
    shared: bool = False,
    timeout: float = 0.0,
    retry_interval: float = DEFAULT_RETRY_INTERVAL_SEC,
    path: Optional[Any] = None,
) -> None:
    """Suspending variant of acquire_lock: retries sleep on the event loop."""
    loop = asyncio.get_running_loop()
    start = loop.time()
    while not try_lock(file, shared):
        if timeout <= 0:
            raise AlreadyLockedError(path)
        if loop.time() - start >= timeout:
            raise LockTimeoutError(timeout, path)
        logger.debug("Lock on %s busy, retrying in %.3fs", path, retry_interval)
        await asyncio.sleep(retry_interval)
