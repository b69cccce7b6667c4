"""Query client: owns the cache, the offline mutation queue and defaults."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from zenquery.cache import QueryCache
from zenquery.config import QueryConfig
from zenquery.queue import MutationQueue
from zenquery.types import AppLifecycleState, QueryKey

if TYPE_CHECKING:
    from zenquery.adapters.base import AsyncStorageAdapter
    from zenquery.infinite import InfiniteQuery
    from zenquery.mutation import Mutation
    from zenquery.query import Query
    from zenquery.stream import StreamQuery

T = TypeVar("T")

logger = logging.getLogger(__name__)


class QueryClient:
    """Entry point that every query and mutation is bound to.

    Usage:
        client = QueryClient(default_options=QueryConfig(stale_time="1m"))
        todos = client.query("todos", load_todos)
        await todos.fetch()

    Queries created without ``client=`` use the process default client
    (see ``get_default_client``).
    """

    def __init__(
        self,
        *,
        cache: QueryCache | None = None,
        default_options: QueryConfig[Any] | None = None,
        storage: AsyncStorageAdapter | None = None,
        mutation_queue: MutationQueue | None = None,
    ) -> None:
        self.default_options: QueryConfig[Any] = default_options or QueryConfig()
        self.cache = cache or QueryCache(
            storage=storage, default_config=self.default_options
        )
        if cache is not None and storage is not None:
            self.cache.storage = storage
        self.mutation_queue = mutation_queue or MutationQueue(
            self.cache, storage=self.cache.storage
        )

    def resolve_config(self, config: QueryConfig[T] | None) -> QueryConfig[T]:
        """Client defaults overridden by the fields ``config`` sets."""
        return self.default_options.merge(config)

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    def query(self, key: QueryKey, fetcher: Any, **kwargs: Any) -> Query[Any]:
        from zenquery.query import Query

        return Query(key, fetcher, client=self, **kwargs)

    def infinite_query(self, key: QueryKey, fetcher: Any, **kwargs: Any) -> InfiniteQuery[Any, Any]:
        from zenquery.infinite import InfiniteQuery

        return InfiniteQuery(key, fetcher, client=self, **kwargs)

    def stream_query(self, key: QueryKey, stream_fn: Any, **kwargs: Any) -> StreamQuery[Any]:
        from zenquery.stream import StreamQuery

        return StreamQuery(key, stream_fn, client=self, **kwargs)

    def mutation(self, mutation_fn: Any, **kwargs: Any) -> Mutation[Any, Any, Any]:
        from zenquery.mutation import Mutation

        return Mutation(mutation_fn, client=self, **kwargs)

    # -------------------------------------------------------------------------
    # Cache pass-throughs
    # -------------------------------------------------------------------------

    def set_network_stream(self, stream: AsyncIterable[bool]) -> None:
        self.cache.set_network_stream(stream)

    def set_lifecycle_stream(self, stream: AsyncIterable[AppLifecycleState | str]) -> None:
        self.cache.set_lifecycle_stream(stream)

    def invalidate_queries(self, prefix: QueryKey) -> None:
        """Invalidate every query under a key prefix."""
        self.cache.invalidate_queries_with_prefix(prefix)

    async def prefetch_query(
        self,
        key: QueryKey,
        fetcher: Callable[[], Awaitable[Any]],
        **kwargs: Any,
    ) -> None:
        await self.cache.prefetch(key, fetcher, **kwargs)

    def get_query_data(self, key: QueryKey) -> Any | None:
        return self.cache.get_cached_data(key)

    def set_query_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> Any:
        return self.cache.set_query_data(key, updater)

    def dispose(self) -> None:
        self.mutation_queue.dispose()
        self.cache.dispose()
        logger.debug("QueryClient disposed")


_default_client: QueryClient | None = None


def get_default_client() -> QueryClient:
    """The process-wide client, created on first use."""
    global _default_client
    if _default_client is None:
        _default_client = QueryClient()
    return _default_client


def set_default_client(client: QueryClient) -> None:
    global _default_client
    _default_client = client


def reset_default_client() -> None:
    """Dispose the process-wide client; the next use creates a fresh one."""
    global _default_client
    if _default_client is not None:
        _default_client.dispose()
    _default_client = None


def resolve_client(client: QueryClient | None) -> QueryClient:
    """The given client, or the process default."""
    return client if client is not None else get_default_client()
