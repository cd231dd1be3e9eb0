"""Persistence sinks for encoded tiles."""

from __future__ import annotations

import errno
import logging
import threading
from pathlib import Path
from typing import Protocol

from fastdz.core.paths import atomic_write_bytes
from fastdz.errors import StoreError

logger = logging.getLogger(__name__)

#: errno values that will fail every remaining write as well
FATAL_ERRNOS: frozenset[int] = frozenset(
    code
    for code in (
        errno.ENOSPC,
        getattr(errno, "EDQUOT", None),
        errno.EACCES,
        errno.EPERM,
        errno.EROFS,
    )
    if code is not None
)


class TileSink(Protocol):
    """Durable storage for encoded tiles.

    ``store`` must be safe to call from many threads at once, must create
    any intermediate directories itself, and raises StoreError on failure.
    """

    def store(self, path: str, data: bytes) -> None: ...


class LocalFileSink:
    """Writes tiles to the local filesystem.

    Each tile is written atomically, so a crash never leaves a truncated
    tile at its final path.
    """

    def store(self, path: str, data: bytes) -> None:
        try:
            atomic_write_bytes(Path(path), data)
        except OSError as e:
            fatal = e.errno in FATAL_ERRNOS
            raise StoreError(f"Failed to write {path}: {e}", fatal=fatal) from e
        logger.debug("Stored %s (%d bytes)", path, len(data))


class MemorySink:
    """Keeps tiles in a dict keyed by path."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.files: dict[str, bytes] = {}

    def store(self, path: str, data: bytes) -> None:
        with self._lock:
            self.files[path] = bytes(data)

    def paths(self) -> set[str]:
        with self._lock:
            return set(self.files)

    def __len__(self) -> int:
        with self._lock:
            return len(self.files)
