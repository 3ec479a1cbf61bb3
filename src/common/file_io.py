"""File I/O helpers for the store.

Safe access patterns used by the store and the coordinator:
- Atomic writes (temp file in the same directory + fsync + rename)
- Advisory ``fcntl.flock`` locks with a bounded wait
- Durable appends that can be undone by truncation
- Canonical JSON bytes and UTC timestamps
"""
from __future__ import annotations

import errno
import fcntl
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from constants import Constants

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class LockTimeout(TimeoutError):
    """Raised when an advisory lock cannot be acquired in time."""

    def __init__(self, path: PathLike, timeout: Optional[float]):
        super().__init__(f"timed out after {timeout}s waiting for lock {path}")
        self.path = str(path)
        self.timeout = timeout


def ensure_parent_dir(path: PathLike) -> None:
    """Ensure the parent directory for ``path`` exists."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize ``obj`` deterministically (sorted keys, compact, UTF-8)."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def utc_timestamp() -> str:
    """Return an ISO 8601 UTC timestamp with microseconds."""
    return datetime.now(timezone.utc).isoformat()


def atomic_write_bytes(path: PathLike, data: bytes) -> None:
    """Write ``data`` to ``path`` atomically using a temp file + fsync + rename.

    Any leftover temp file is cleaned up on failure.
    """
    path = Path(path)
    ensure_parent_dir(path)
    tmp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile("wb", dir=str(path.parent), prefix=f".{path.name}.", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
        tmp_path = None
    finally:
        if tmp_path is not None and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError as exc:
                logger.debug("Failed to remove temp file %s: %s", tmp_path, exc)


def write_json_atomic(path: PathLike, data: Any) -> None:
    """Atomically write canonical JSON to ``path``."""
    atomic_write_bytes(path, canonical_json_bytes(data) + b"\n")


def read_json(path: PathLike) -> Any:
    """Read JSON from ``path`` under a shared lock; errors propagate."""
    with open(path, "r", encoding="utf-8") as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_SH)
        try:
            return json.load(f)
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


@contextmanager
def file_lock(path: PathLike, *, exclusive: bool = True, timeout: Optional[float] = None) -> Iterator[None]:
    """Hold an advisory ``flock`` on ``path`` for the duration of the block.

    Each call opens its own descriptor, so the lock serializes threads of the
    same process as well as separate processes.

    Args:
        path: Lock file path (created if missing).
        exclusive: Exclusive lock when True, shared otherwise.
        timeout: Seconds to wait; ``None`` waits forever.

    Raises:
        LockTimeout: When the lock is not acquired within ``timeout``.
    """
    path = Path(path)
    ensure_parent_dir(path)
    mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        if timeout is None:
            fcntl.flock(fd, mode)
        else:
            deadline = time.monotonic() + timeout
            while True:
                try:
                    fcntl.flock(fd, mode | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                        raise
                    if time.monotonic() >= deadline:
                        raise LockTimeout(path, timeout) from exc
                    time.sleep(Constants.LOCK_POLL_INTERVAL_SEC)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def durable_append(path: PathLike, data: bytes) -> int:
    """Append ``data`` to ``path`` in one write and fsync it.

    If the file does not end with a newline (a torn previous append), a newline
    is written first so the torn fragment stays on its own line.
    On failure the file is truncated back to its previous size before the
    exception propagates.

    Returns:
        The file size before the append.
    """
    path = Path(path)
    ensure_parent_dir(path)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT | os.O_APPEND, 0o644)
    try:
        size = os.fstat(fd).st_size
        if size > 0:
            os.lseek(fd, size - 1, os.SEEK_SET)
            if os.read(fd, 1) != b"\n":
                data = b"\n" + data
        try:
            view = memoryview(data)
            while view:
                written = os.write(fd, view)
                view = view[written:]
            os.fsync(fd)
        except OSError:
            try:
                os.ftruncate(fd, size)
                os.fsync(fd)
            except OSError as exc:
                logger.error("Failed to truncate %s after a failed append: %s", path, exc)
            raise
        return size
    finally:
        os.close(fd)


def fsync_dir(path: PathLike) -> None:
    """Flush directory metadata (renames) to disk where supported."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass  # not supported on every filesystem
    finally:
        os.close(fd)
