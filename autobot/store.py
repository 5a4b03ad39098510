from __future__ import annotations

import fcntl
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import ContextManager, Iterator, Protocol


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str) -> None: ...

    def lock(self, key: str) -> ContextManager[None]:
        """Hold exclusive access to ``key`` across a read-modify-write."""
        ...


class MemoryStore:
    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})
        self._mutex = threading.Lock()

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def put(self, key: str, value: str) -> None:
        self._data[key] = value

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._mutex:
            yield


_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.-]")


class FileStore:
    """One JSON document per key under ``root``; writes replace the file atomically.

    ``lock`` takes an exclusive ``fcntl.flock`` on ``<key>.lock`` so the CLI,
    the loop and the dashboard, each in its own process, serialize on the
    same state.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _safe_key(self, key: str) -> str:
        safe = _SAFE_KEY_RE.sub("_", key.strip())
        if not safe:
            raise ValueError("store key must be non-empty")
        return safe

    def _path(self, key: str) -> Path:
        return self.root / f"{self._safe_key(key)}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8")
        return raw if raw.strip() else None

    def put(self, key: str, value: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f"{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        self.root.mkdir(parents=True, exist_ok=True)
        lock_path = self.root / f"{self._safe_key(key)}.lock"
        with open(lock_path, "a", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)
