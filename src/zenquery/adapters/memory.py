"""In-memory storage adapter (async only)."""

import asyncio
import copy
from collections import OrderedDict
from typing import Any


class AsyncMemoryAdapter:
    """Async in-memory storage adapter with optional LRU eviction.

    Stored objects are deep-copied on write and read so callers never share
    mutable state with the store.
    """

    def __init__(self, max_items: int | None = None) -> None:
        self._store: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._max_items = max_items
        self._lock = asyncio.Lock()

    async def write(self, key: str, json: dict[str, Any]) -> None:
        """Store a JSON object under key."""
        async with self._lock:
            self._store[key] = copy.deepcopy(json)
            self._store.move_to_end(key)
            if self._max_items and len(self._store) > self._max_items:
                self._store.popitem(last=False)

    async def read(self, key: str) -> dict[str, Any] | None:
        """Read the JSON object stored under key."""
        async with self._lock:
            value = self._store.get(key)
            if value is None:
                return None
            self._store.move_to_end(key)  # LRU touch
            return copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        """Delete a stored object."""
        async with self._lock:
            self._store.pop(key, None)

    async def clear(self) -> None:
        """Delete every stored object."""
        async with self._lock:
            self._store.clear()

    async def disconnect(self) -> None:
        """Disconnect from the storage backend (no-op for memory)."""
        pass

    def keys(self) -> list[str]:
        """Snapshot of stored keys, least recently used first."""
        return list(self._store)

    def __len__(self) -> int:
        return len(self._store)
