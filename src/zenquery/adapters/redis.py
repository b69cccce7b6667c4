"""Redis storage adapter."""

from __future__ import annotations

import json as jsonlib
from typing import Any

from zenquery.duration import parse_duration
from zenquery.types import Duration


def _serialize(json: dict[str, Any]) -> str:
    """Serialize a stored object to JSON."""
    return jsonlib.dumps(json)


def _deserialize(data: bytes | str) -> dict[str, Any]:
    """Deserialize JSON to a stored object."""
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    obj = jsonlib.loads(data)
    if not isinstance(obj, dict):
        raise ValueError(f"Expected a JSON object, got {type(obj).__name__}")
    return obj


class AsyncRedisAdapter:
    """Async Redis storage adapter."""

    def __init__(
        self,
        client: Any,  # redis.asyncio.Redis
        *,
        prefix: str = "zenquery",
        ttl: Duration | None = None,
    ) -> None:
        self._client = client
        self._prefix = prefix
        self._ttl_ms = int(parse_duration(ttl)) if ttl is not None else None

    def _storage_key(self, key: str) -> str:
        """Generate full Redis key for stored objects."""
        return f"{self._prefix}:storage:{key}"

    async def write(self, key: str, json: dict[str, Any]) -> None:
        """Store a JSON object, expiring after ttl when configured."""
        await self._client.set(
            self._storage_key(key),
            _serialize(json),
            px=self._ttl_ms,
        )

    async def read(self, key: str) -> dict[str, Any] | None:
        """Read the JSON object stored under key."""
        data = await self._client.get(self._storage_key(key))
        if data is None:
            return None
        return _deserialize(data)

    async def delete(self, key: str) -> None:
        """Delete a stored object."""
        await self._client.delete(self._storage_key(key))

    async def clear(self) -> None:
        """Delete every object under this adapter's prefix."""
        # Use SCAN to find and delete all storage keys
        cursor: int = 0
        pattern = f"{self._prefix}:storage:*"
        while True:
            result = await self._client.scan(cursor, match=pattern, count=100)
            cursor = result[0]
            keys = result[1]
            if keys:
                await self._client.delete(*keys)
            if cursor == 0:
                break

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        await self._client.aclose()
