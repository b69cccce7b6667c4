"""Base adapter protocol for storage backends."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class AsyncStorageAdapter(Protocol):
    """Async key/value storage used for persistence and hydration.

    Values are JSON-serializable dicts such as the persistence envelope
    ``{"data": ..., "timestamp": <epoch ms>, "version": 1}``.
    """

    async def write(self, key: str, json: dict[str, Any]) -> None:
        """Store a JSON object under key."""
        ...

    async def read(self, key: str) -> dict[str, Any] | None:
        """Read the JSON object stored under key, or None."""
        ...

    async def delete(self, key: str) -> None:
        """Delete the object stored under key."""
        ...

    async def clear(self) -> None:
        """Delete every stored object."""
        ...

    async def disconnect(self) -> None:
        """Disconnect from the storage backend."""
        ...
