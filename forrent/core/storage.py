"""
forrent/core/storage.py
═══════════════════════════════════════════════════════════════════════════
Durable key-value mirror for the cache, shaped like browser local storage:
string keys, string values, synchronous calls.

  • MemoryStorage → dict-backed, optional byte quota (tests, ephemeral runs)
  • FileStorage   → one JSON document on disk, atomic rewrite per mutation

Writes past the quota raise StorageQuotaExceeded. Callers treat every
StorageError as non-fatal.
═══════════════════════════════════════════════════════════════════════════
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

from forrent.core.errors import ForRentError

log = logging.getLogger("storage")


class StorageError(ForRentError):
    """Any failure of the durable layer."""


class StorageQuotaExceeded(StorageError):
    """A write would push the store past its byte quota."""


def _size_of(items: dict[str, str]) -> int:
    return sum(len(k) + len(v) for k, v in items.items())


class MemoryStorage:
    """In-process storage with the same contract as FileStorage."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._items: dict[str, str] = {}
        self._quota = quota_bytes

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self._quota is not None:
            projected = dict(self._items)
            projected[key] = value
            if _size_of(projected) > self._quota:
                raise StorageQuotaExceeded(f"quota of {self._quota} bytes exceeded writing {key!r}")
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


class FileStorage:
    """
    Persists every item in a single JSON object at `path`.
    The file is read once on construction; a missing, unreadable or corrupt
    file starts the store empty.
    """

    def __init__(self, path, quota_bytes: Optional[int] = None):
        self._path  = Path(path)
        self._quota = quota_bytes
        self._lock  = threading.Lock()
        self._items = self._read()

    def _read(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as ex:
            log.warning(f"Durable store {self._path} unreadable, starting empty: {ex}")
            return {}
        if not isinstance(raw, dict):
            log.warning(f"Durable store {self._path} is not a JSON object, starting empty")
            return {}
        return {str(k): v for k, v in raw.items() if isinstance(v, str)}

    def _flush(self, items: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(items, fh)
            os.replace(tmp, self._path)
        except OSError as ex:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StorageError(f"failed to write {self._path}: {ex}") from ex

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            projected = dict(self._items)
            projected[key] = value
            if self._quota is not None and _size_of(projected) > self._quota:
                raise StorageQuotaExceeded(f"quota of {self._quota} bytes exceeded writing {key!r}")
            self._flush(projected)
            self._items = projected

    def remove_item(self, key: str) -> None:
        with self._lock:
            if key not in self._items:
                return
            projected = dict(self._items)
            del projected[key]
            self._flush(projected)
            self._items = projected

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
