from __future__ import annotations

import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Dict


class BlobNotFound(KeyError):
    """Raised when a previously stored object is missing or unreadable."""


class BlobStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes) -> str: ...

    @abstractmethod
    def get(self, key: str) -> bytes: ...


def _safe_key(key: str) -> str:
    parts = [p for p in str(key or "").replace("\\", "/").split("/") if p not in {"", ".", ".."}]
    if not parts:
        raise ValueError("Blob key must not be empty")
    return "/".join(parts)


class LocalBlobStore(BlobStore):
    """Stores segment uploads as files under one root directory."""

    def __init__(self, root: Path):
        self._root = root

    def _path_for(self, key: str) -> Path:
        return self._root / _safe_key(key)

    def put(self, key: str, data: bytes) -> str:
        safe = _safe_key(key)
        path = self._root / safe
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never observe a partial object.
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
        return safe

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise BlobNotFound(f"Segment object unavailable: {key} ({exc})") from exc


class InMemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._objects: Dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> str:
        safe = _safe_key(key)
        with self._lock:
            self._objects[safe] = bytes(data)
        return safe

    def get(self, key: str) -> bytes:
        with self._lock:
            data = self._objects.get(_safe_key(key))
        if data is None:
            raise BlobNotFound(f"Segment object unavailable: {key}")
        return data
