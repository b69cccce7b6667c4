"""Storage adapters for zenquery persistence (async only)."""

from contextlib import suppress

from zenquery.adapters.base import AsyncStorageAdapter
from zenquery.adapters.memory import AsyncMemoryAdapter

# Optional adapters - only available when dependencies are installed
with suppress(ImportError):
    from zenquery.adapters.redis import AsyncRedisAdapter

with suppress(ImportError):
    from zenquery.adapters.http import AsyncHttpAdapter

__all__ = [
    "AsyncHttpAdapter",
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStorageAdapter",
]
