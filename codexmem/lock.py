"""
Cooperative File Lock — cross-process mutual exclusion via a marker file.

Acquisition exclusively creates ``<path>.lock`` (O_CREAT | O_EXCL).  A
holder that crashed leaves its marker behind; markers whose mtime is older
than ``stale_after`` seconds are evicted and acquisition retries at once.
Only callers using this same discipline on the same path are excluded.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from codexmem.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_RETRY_DELAY = 0.05
DEFAULT_STALE_AFTER = 30.0

LOCK_SUFFIX = ".lock"


def lock_path_for(path: Union[str, Path]) -> str:
    return f"{path}{LOCK_SUFFIX}"


def _is_stale(lock_path: str, stale_after: float) -> bool:
    try:
        mtime = os.stat(lock_path).st_mtime
    except FileNotFoundError:
        return False
    return (time.time() - mtime) > stale_after


def _remove_marker(lock_path: str) -> None:
    try:
        os.unlink(lock_path)
    except FileNotFoundError:
        pass


def _write_holder(fd: int) -> None:
    """Best-effort holder metadata; failures never abort acquisition."""
    payload = json.dumps({
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "createdAt": datetime.now(timezone.utc).isoformat(),
    })
    try:
        os.write(fd, payload.encode("utf-8"))
    except OSError as exc:
        logger.debug(f"Could not write lock metadata: {exc}")


@contextmanager
def file_lock(
    path: Union[str, Path],
    timeout: float = DEFAULT_TIMEOUT,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    stale_after: float = DEFAULT_STALE_AFTER,
) -> Iterator[str]:
    """Hold the cooperative lock for *path* for the duration of the block.

    Args:
        path: The protected file (the marker is ``<path>.lock``).
        timeout: Seconds to wait before giving up.
        retry_delay: Seconds to sleep between attempts.
        stale_after: Marker age (seconds) after which the holder is presumed dead.

    Yields:
        The lock marker path.

    Raises:
        LockTimeoutError: if the lock was not acquired within *timeout*.
        OSError: any filesystem error other than "marker already exists".
    """
    lock_path = lock_path_for(path)
    Path(lock_path).parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()

    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            waited = time.monotonic() - start
            if waited > timeout:
                raise LockTimeoutError(lock_path, waited)
            if _is_stale(lock_path, stale_after):
                logger.warning(
                    f"Breaking stale lock {lock_path} (older than {stale_after:.1f}s)"
                )
                _remove_marker(lock_path)
                continue
            time.sleep(retry_delay)
            continue
        break

    try:
        _write_holder(fd)
    finally:
        os.close(fd)

    logger.debug(f"Lock acquired: {lock_path}")
    try:
        yield lock_path
    finally:
        _remove_marker(lock_path)
        logger.debug(f"Lock released: {lock_path}")


def read_lock_holder(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """Metadata of the current holder of *path*'s lock, or None if unlocked.

    Returns an empty dict when the marker exists but carries no readable
    metadata.
    """
    lock_path = lock_path_for(path)
    try:
        with open(lock_path, "r", encoding="utf-8") as f:
            raw = f.read()
    except FileNotFoundError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}
