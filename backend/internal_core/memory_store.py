from __future__ import annotations

import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import List

from .contracts import MemoryItem


class InMemoryMemoryStore:
    """Owner-scoped standalone transcriptions, newest first on listing."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._memories: List[MemoryItem] = []

    def add(self, owner_id: str, text: str) -> MemoryItem:
        item = MemoryItem(
            memory_id=uuid.uuid4().hex,
            owner_id=owner_id,
            text=text,
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._memories.append(item)
        return item

    def list_for_owner(self, owner_id: str) -> List[MemoryItem]:
        with self._lock:
            return [item for item in reversed(self._memories) if item.owner_id == owner_id]
