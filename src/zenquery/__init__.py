"""zenquery - Async query cache with retries, pagination and offline support."""

from contextlib import suppress

# Adapters
from zenquery.adapters import (
    AsyncMemoryAdapter,
    AsyncStorageAdapter,
)

# Cache and client
from zenquery.cache import QueryCache
from zenquery.cancel import CancelToken
from zenquery.client import (
    QueryClient,
    get_default_client,
    reset_default_client,
    set_default_client,
)
from zenquery.config import QueryConfig

# Duration parsing
from zenquery.duration import parse_duration
from zenquery.errors import (
    FetchCancelledError,
    InvalidStateError,
    MutationDisposedError,
    OfflineError,
    QueryDisabledError,
    QueryDisposedError,
    QueryPausedError,
    QueueError,
    StorageError,
    ZenQueryError,
)
from zenquery.infinite import InfiniteQuery
from zenquery.keys import normalize_key
from zenquery.mutation import Mutation
from zenquery.query import Query, SelectedQuery
from zenquery.queue import MutationAction, MutationJob, MutationQueue
from zenquery.retry import RetryPolicy
from zenquery.scope import Scope, ScopeProtocol, put_cached_query, put_query
from zenquery.signal import Signal
from zenquery.stream import StreamQuery

# Core types
from zenquery.types import (
    AppLifecycleState,
    CacheEntry,
    Duration,
    FetchStatus,
    MutationStatus,
    NetworkMode,
    QueryKey,
    QueryStatus,
    RefetchBehavior,
)

# Optional adapter imports - only available when dependencies are installed
with suppress(ImportError):
    from zenquery.adapters import AsyncRedisAdapter

with suppress(ImportError):
    from zenquery.adapters import AsyncHttpAdapter

__version__ = "0.1.0"

__all__ = [
    "AppLifecycleState",
    "AsyncHttpAdapter",
    "AsyncMemoryAdapter",
    "AsyncRedisAdapter",
    "AsyncStorageAdapter",
    "CacheEntry",
    "CancelToken",
    "Duration",
    "FetchCancelledError",
    "FetchStatus",
    "InfiniteQuery",
    "InvalidStateError",
    "Mutation",
    "MutationAction",
    "MutationDisposedError",
    "MutationJob",
    "MutationQueue",
    "MutationStatus",
    "NetworkMode",
    "OfflineError",
    "Query",
    "QueryCache",
    "QueryClient",
    "QueryConfig",
    "QueryDisabledError",
    "QueryDisposedError",
    "QueryKey",
    "QueryPausedError",
    "QueryStatus",
    "QueueError",
    "RefetchBehavior",
    "RetryPolicy",
    "Scope",
    "ScopeProtocol",
    "SelectedQuery",
    "Signal",
    "StorageError",
    "StreamQuery",
    "ZenQueryError",
    "get_default_client",
    "normalize_key",
    "parse_duration",
    "put_cached_query",
    "put_query",
    "reset_default_client",
    "set_default_client",
]
