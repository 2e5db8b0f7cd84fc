"""Advisory in-process file locks keyed by path."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from bemadralphy.errors import FileLockConflictError, FileLockMismatchError

logger = logging.getLogger(__name__)


class FileLockManager:
    """Track which task holds which path; nothing touches the filesystem."""

    def __init__(self) -> None:
        self._holders: dict[str, str] = {}
        self._lock = threading.Lock()

    def acquire(self, path: str | Path, task_id: str) -> None:
        key = _key(path)
        with self._lock:
            holder = self._holders.get(key)
            if holder is not None and holder != task_id:
                raise FileLockConflictError(f"{key} is locked by task {holder}")
            self._holders[key] = task_id

    def release(self, path: str | Path, task_id: str) -> None:
        key = _key(path)
        with self._lock:
            holder = self._holders.get(key)
            if holder is None:
                return
            if holder != task_id:
                raise FileLockMismatchError(
                    f"{key} is held by task {holder}, not {task_id}",
                )
            del self._holders[key]

    def release_all(self, task_id: str) -> list[str]:
        """Drop every lock held by ``task_id`` and return the released paths."""

        with self._lock:
            released = [key for key, holder in self._holders.items() if holder == task_id]
            for key in released:
                del self._holders[key]
        if released:
            logger.debug("Released %d file lock(s) for task %s", len(released), task_id)
        return released

    def holder(self, path: str | Path) -> str | None:
        with self._lock:
            return self._holders.get(_key(path))

    def held_by(self, task_id: str) -> list[str]:
        with self._lock:
            return sorted(key for key, holder in self._holders.items() if holder == task_id)


def _key(path: str | Path) -> str:
    return Path(path).as_posix()
