"""Shared query cache.

One ``QueryCache`` holds the last-known data for every query key, the live
queries observing each key, in-flight fetch coalescing, persistence and the
network/app-lifecycle plumbing that drives focus and reconnect refetches.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterable, Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from zenquery import clock
from zenquery.background import BackgroundTasks
from zenquery.config import DEFAULT_CONFIG, QueryConfig
from zenquery.duration import parse_duration
from zenquery.keys import normalize_key, prefix_matcher
from zenquery.signal import Signal
from zenquery.types import (
    AppLifecycleState,
    CacheEntry,
    Duration,
    FetchStatus,
    QueryKey,
    QueryStatus,
    RefetchBehavior,
)

if TYPE_CHECKING:
    from zenquery.adapters.base import AsyncStorageAdapter
    from zenquery.scope import ScopeProtocol

T = TypeVar("T")

logger = logging.getLogger(__name__)

PERSIST_VERSION = 1

NetworkListener = Callable[[bool], object]
LifecycleListener = Callable[[AppLifecycleState], object]


class CacheObserver(Protocol):
    """What the cache needs from a registered query."""

    config: QueryConfig[Any]
    status: Signal[QueryStatus]
    fetch_status: Signal[FetchStatus]
    is_loading: Signal[bool]
    enabled: Signal[bool]

    @property
    def key(self) -> str: ...

    @property
    def is_stale(self) -> bool: ...

    @property
    def has_error(self) -> bool: ...

    @property
    def is_paused(self) -> bool: ...

    @property
    def is_disposed(self) -> bool: ...

    def apply_cache_update(self, data: Any, timestamp: float) -> None: ...

    def network_restored(self) -> None: ...

    def invalidate(self) -> None: ...

    def refetch(self) -> Awaitable[Any]: ...


def scoped_key(scope_id: str, key: str) -> str:
    """Registration key of a query bound to a scope."""
    return f"{scope_id}:{key}"


class QueryCache:
    """Registry of cache entries and the queries observing them.

    Entries are keyed by the normalized query key; at most one entry exists
    per key. Queries register under their key (or ``"{scope_id}:{key}"`` when
    bound to a scope) and receive every write to their key made through
    ``update_cache``.

    Usage:
        cache = QueryCache(storage=AsyncMemoryAdapter())
        await cache.prefetch("todos", load_todos, stale_time="1m")
        cache.get_cached_data("todos")
        cache.invalidate_queries_with_prefix(["todos"])
    """

    def __init__(
        self,
        *,
        storage: AsyncStorageAdapter | None = None,
        default_config: QueryConfig[Any] | None = None,
    ) -> None:
        self._storage = storage
        self._default_config = default_config or DEFAULT_CONFIG
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._queries: dict[str, CacheObserver] = {}
        self._query_scopes: dict[str, str] = {}
        self._scopes: dict[str, ScopeProtocol] = {}
        self._expiry_timers: dict[str, asyncio.TimerHandle] = {}
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._is_online = True
        self._lifecycle_state: AppLifecycleState | None = None
        self._network_listeners: list[NetworkListener] = []
        self._lifecycle_listeners: list[LifecycleListener] = []
        self._network_task: asyncio.Task[Any] | None = None
        self._lifecycle_task: asyncio.Task[Any] | None = None
        self._tasks = BackgroundTasks("QueryCache")
        self._streams = BackgroundTasks("QueryCache streams")

    @property
    def storage(self) -> AsyncStorageAdapter | None:
        return self._storage

    @storage.setter
    def storage(self, storage: AsyncStorageAdapter | None) -> None:
        self._storage = storage

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, query: CacheObserver) -> None:
        """Register a query as the global observer of its key."""
        key = query.key
        previous = self._queries.get(key)
        if previous is not None and previous is not query:
            logger.debug("Replacing registered query for %s", key)
        self._queries[key] = query
        self._query_scopes.pop(key, None)

    def register_scoped(
        self, query: CacheObserver, registration_key: str, scope: ScopeProtocol | str
    ) -> None:
        """Register a query bound to a scope under ``registration_key``."""
        if isinstance(scope, str):
            scope_id = scope
        else:
            scope_id = scope.id
            self._scopes[scope_id] = scope
        self._queries[registration_key] = query
        self._query_scopes[registration_key] = scope_id
        logger.debug("Registered %s in scope %s", query.key, scope_id)

    def unregister(self, registration_key: str, query: CacheObserver | None = None) -> None:
        """Remove a registration; with ``query``, only if it is still the registered one."""
        current = self._queries.get(registration_key)
        if current is None or (query is not None and current is not query):
            return
        del self._queries[registration_key]
        scope_id = self._query_scopes.pop(registration_key, None)
        if scope_id is not None and scope_id not in self._query_scopes.values():
            self._scopes.pop(scope_id, None)

    def get_query(self, key: QueryKey) -> CacheObserver | None:
        """The globally registered query for key, if any."""
        return self._queries.get(normalize_key(key))

    def observers(self, key: QueryKey) -> list[CacheObserver]:
        """Every live registered query (global or scoped) observing key."""
        normalized = normalize_key(key)
        return [
            query
            for query in self._unique_queries()
            if query.key == normalized and not query.is_disposed
        ]

    def _unique_queries(self) -> list[CacheObserver]:
        seen: list[CacheObserver] = []
        for query in self._queries.values():
            if not any(query is other for other in seen):
                seen.append(query)
        return seen

    def _config_for(self, key: str) -> QueryConfig[Any] | None:
        for query in self.observers(key):
            return query.config
        return None

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def get_entry(self, key: QueryKey) -> CacheEntry[Any] | None:
        """The entry for key, unless it expired with nobody observing it."""
        normalized = normalize_key(key)
        entry = self._entries.get(normalized)
        if entry is None:
            return None
        if entry.is_expired(clock.now_ms()) and not self.observers(normalized):
            self._evict(normalized)
            return None
        return entry

    def get_cached_data(self, key: QueryKey) -> Any | None:
        entry = self.get_entry(key)
        return entry.data if entry is not None else None

    def get_timestamp(self, key: QueryKey) -> float | None:
        entry = self.get_entry(key)
        return entry.timestamp if entry is not None else None

    def update_cache(
        self,
        key: QueryKey,
        data: Any,
        timestamp: float | None = None,
        *,
        source: CacheObserver | None = None,
        config: QueryConfig[Any] | None = None,
        cache_time: Duration | None = None,
        persist: bool = True,
    ) -> None:
        """Write an entry and push it to every observer except ``source``.

        Persists the value in the background when the writer's (or the
        registered observer's) config has ``persist`` enabled.
        """
        normalized = normalize_key(key)
        ts = clock.now_ms() if timestamp is None else timestamp
        config = config or self._config_for(normalized)
        if cache_time is not None:
            cache_time_ms = parse_duration(cache_time)
        else:
            cache_time_ms = (config or self._default_config).cache_time_ms

        self._set_entry(normalized, data, ts, cache_time_ms)

        for query in self.observers(normalized):
            if query is not source:
                query.apply_cache_update(data, ts)

        if persist and config is not None and config.persist:
            self._tasks.spawn(
                self.persist(normalized, data, ts, config), f"persist {normalized}"
            )

    def set_query_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> Any:
        """Replace the data for key with ``updater(old)``; returns the new value."""
        new_data = updater(self.get_cached_data(key))
        self.update_cache(key, new_data)
        return new_data

    def remove_entry(self, key: QueryKey) -> None:
        """Delete the data for key; registered observers see None."""
        normalized = normalize_key(key)
        self._evict(normalized)
        now = clock.now_ms()
        for query in self.observers(normalized):
            query.apply_cache_update(None, now)

    def mark_stale(self, key: QueryKey) -> None:
        """Mark an entry stale without touching its data."""
        normalized = normalize_key(key)
        entry = self._entries.get(normalized)
        if entry is not None and not entry.invalidated:
            self._entries[normalized] = dataclasses.replace(entry, invalidated=True)

    def remove_query(self, key: QueryKey) -> None:
        """Forget key entirely: entry, global registration and pending fetch."""
        normalized = normalize_key(key)
        self._evict(normalized)
        self._pending.pop(normalized, None)
        self.unregister(normalized)

    def _set_entry(
        self, key: str, data: Any, timestamp: float, cache_time: float | None
    ) -> None:
        self._entries[key] = CacheEntry(data, timestamp, cache_time)
        self._schedule_expiry(key, cache_time)

    def _evict(self, key: str) -> None:
        timer = self._expiry_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if self._entries.pop(key, None) is not None:
            logger.debug("Evicted cache entry %s", key)

    def _schedule_expiry(self, key: str, cache_time: float | None) -> None:
        timer = self._expiry_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if cache_time is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._expiry_timers[key] = loop.call_later(
            cache_time / 1000, self._expire, key
        )

    def _expire(self, key: str) -> None:
        self._expiry_timers.pop(key, None)
        entry = self._entries.get(key)
        if entry is None:
            return
        if self.observers(key):
            self._schedule_expiry(key, entry.cache_time)
            return
        self._evict(key)

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def invalidate_query(self, key: QueryKey) -> None:
        """Mark key stale and let its observers refetch in the background."""
        normalized = normalize_key(key)
        self.mark_stale(normalized)
        for query in self.observers(normalized):
            query.invalidate()

    def invalidate_queries(self, predicate: Callable[[str], bool]) -> None:
        """Invalidate every known key matching predicate."""
        for key in self._known_keys():
            if predicate(key):
                self.invalidate_query(key)

    def invalidate_queries_with_prefix(self, prefix: QueryKey) -> None:
        """Invalidate every key under prefix, e.g. ``"user:"`` or ``["user"]``."""
        self.invalidate_queries(prefix_matcher(prefix))

    def _known_keys(self) -> list[str]:
        keys = dict.fromkeys(self._entries)
        keys.update(dict.fromkeys(query.key for query in self._unique_queries()))
        return list(keys)

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def deduplicate_fetch(
        self, key: QueryKey, fn: Callable[[], Awaitable[T]]
    ) -> T:
        """Run fn once for concurrent callers with the same key."""
        normalized = normalize_key(key)
        future = self._pending.get(normalized)
        if future is None:
            future = asyncio.ensure_future(fn())
            self._pending[normalized] = future

            def clear(done: asyncio.Future[Any]) -> None:
                if self._pending.get(normalized) is done:
                    del self._pending[normalized]
                if not done.cancelled():
                    # Mark the exception retrieved; callers see it via shield
                    done.exception()

            future.add_done_callback(clear)
        return await asyncio.shield(future)

    async def prefetch(
        self,
        key: QueryKey,
        fetcher: Callable[[], Awaitable[Any]],
        *,
        stale_time: Duration | None = None,
        cache_time: Duration | None = None,
    ) -> None:
        """Fetch and cache key unless a fresh entry exists.

        Failures are logged, never raised.
        """
        normalized = normalize_key(key)
        config = self._config_for(normalized)
        if stale_time is not None:
            stale_ms = parse_duration(stale_time)
        else:
            stale_ms = config.stale_time_ms if config is not None else 0

        entry = self.get_entry(normalized)
        if entry is not None and entry.is_fresh(clock.now_ms(), stale_ms):
            return

        try:
            data = await self.deduplicate_fetch(normalized, fetcher)
        except Exception as e:
            logger.warning("Prefetch failed for %s: %r", normalized, e)
            return

        self.update_cache(normalized, data, config=config, cache_time=cache_time)

    async def refetch_query(self, key: QueryKey) -> None:
        """Refetch the globally registered query for key; failures are logged."""
        query = self.get_query(key)
        if query is not None and not query.is_disposed:
            await self._refetch_all([query])

    async def refetch_queries(self, predicate: Callable[[str], bool]) -> None:
        """Refetch every live query whose key matches predicate."""
        await self._refetch_all(
            query
            for query in self._unique_queries()
            if not query.is_disposed and predicate(query.key)
        )

    async def _refetch_all(self, queries: Iterable[CacheObserver]) -> None:
        queries = list(queries)
        results = await asyncio.gather(
            *(query.refetch() for query in queries), return_exceptions=True
        )
        for query, result in zip(queries, results):
            if isinstance(result, Exception):
                logger.warning("Refetch failed for %s: %r", query.key, result)
            elif isinstance(result, BaseException):
                raise result

    # -------------------------------------------------------------------------
    # Scopes
    # -------------------------------------------------------------------------

    def get_scope_queries(self, scope_id: str) -> list[CacheObserver]:
        return [
            self._queries[key]
            for key, owner in self._query_scopes.items()
            if owner == scope_id
        ]

    def invalidate_scope(self, scope_id: str) -> None:
        for query in self.get_scope_queries(scope_id):
            self.mark_stale(query.key)
            query.invalidate()

    async def refetch_scope(self, scope_id: str) -> None:
        """Refetch every query of a scope and wait for all of them."""
        await self._refetch_all(
            query for query in self.get_scope_queries(scope_id) if not query.is_disposed
        )

    def clear_scope(self, scope_id: str) -> None:
        """Drop a scope's registrations and any entries nobody else observes."""
        keys = [key for key, owner in self._query_scopes.items() if owner == scope_id]
        data_keys = {self._queries[key].key for key in keys}
        for key in keys:
            del self._queries[key]
            del self._query_scopes[key]
        self._scopes.pop(scope_id, None)
        for key in data_keys:
            if not self.observers(key):
                self._evict(key)
        logger.debug("Cleared %d queries of scope %s", len(keys), scope_id)

    def get_scope_stats(self, scope_id: str) -> dict[str, int]:
        queries = self.get_scope_queries(scope_id)
        scope = self._scopes.get(scope_id)
        children = getattr(scope, "children", None) or ()
        return {
            "total": len(queries),
            **self._status_counts(queries),
            "child_scopes": len(children),
        }

    def get_stats(self) -> dict[str, int]:
        """Diagnostic counts over every registered query."""
        queries = list(self._queries.values())
        scoped = len(self._query_scopes)
        return {
            "total_queries": len(queries),
            "global_queries": len(queries) - scoped,
            "scoped_queries": scoped,
            "active_scopes": len(set(self._query_scopes.values())),
            **self._status_counts(queries),
        }

    @staticmethod
    def _status_counts(queries: list[CacheObserver]) -> dict[str, int]:
        return {
            "loading": sum(1 for q in queries if q.is_loading.value),
            "success": sum(1 for q in queries if q.status.value is QueryStatus.SUCCESS),
            "error": sum(1 for q in queries if q.status.value is QueryStatus.ERROR),
            "stale": sum(1 for q in queries if q.is_stale),
        }

    # -------------------------------------------------------------------------
    # Network and lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def lifecycle_state(self) -> AppLifecycleState | None:
        return self._lifecycle_state

    def set_network_stream(self, stream: AsyncIterable[bool]) -> None:
        """Follow an online/offline stream; replaces any previous stream."""
        if self._network_task is not None:
            self._network_task.cancel()

        async def listen() -> None:
            async for online in stream:
                self.set_online(bool(online))

        self._network_task = self._streams.spawn(listen(), "network stream")

    def set_online(self, online: bool) -> None:
        """Record connectivity; going online triggers reconnect refetches."""
        if online == self._is_online:
            return
        self._is_online = online
        logger.debug("Network is %s", "online" if online else "offline")

        for listener in list(self._network_listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Error in network listener")

        if online:
            for query in self._unique_queries():
                if not query.is_disposed:
                    query.network_restored()
            self._refetch_eligible("refetch_on_reconnect", "reconnect")

    def set_lifecycle_stream(self, stream: AsyncIterable[AppLifecycleState | str]) -> None:
        """Follow app lifecycle transitions; replaces any previous stream."""
        if self._lifecycle_task is not None:
            self._lifecycle_task.cancel()

        async def listen() -> None:
            async for state in stream:
                self.notify_lifecycle(state)

        self._lifecycle_task = self._streams.spawn(listen(), "lifecycle stream")

    def notify_lifecycle(self, state: AppLifecycleState | str) -> None:
        """Report a lifecycle transition; resuming triggers focus refetches."""
        state = AppLifecycleState(state)
        self._lifecycle_state = state
        logger.debug("App lifecycle state: %s", state.value)

        for listener in list(self._lifecycle_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in lifecycle listener")

        if state is AppLifecycleState.RESUMED:
            self._refetch_eligible("refetch_on_focus", "focus")

    def add_network_listener(self, listener: NetworkListener) -> None:
        self._network_listeners.append(listener)

    def remove_network_listener(self, listener: NetworkListener) -> None:
        if listener in self._network_listeners:
            self._network_listeners.remove(listener)

    def add_lifecycle_listener(self, listener: LifecycleListener) -> None:
        self._lifecycle_listeners.append(listener)

    def remove_lifecycle_listener(self, listener: LifecycleListener) -> None:
        if listener in self._lifecycle_listeners:
            self._lifecycle_listeners.remove(listener)

    def _refetch_eligible(self, policy_field: str, reason: str) -> None:
        for query in self._unique_queries():
            if query.is_disposed or query.is_paused:
                continue
            if not query.enabled.value or query.is_loading.value:
                continue
            policy: RefetchBehavior = getattr(query.config, policy_field)
            if policy.should_refetch(query.is_stale or query.has_error):
                logger.debug("Refetching %s on %s", query.key, reason)
                self._tasks.spawn(query.refetch(), f"{reason} refetch of {query.key}")

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _storage_for(self, config: QueryConfig[Any]) -> AsyncStorageAdapter | None:
        return config.storage if config.storage is not None else self._storage

    async def persist(
        self, key: QueryKey, data: Any, timestamp: float, config: QueryConfig[Any]
    ) -> None:
        """Write ``{data, timestamp, version}`` for key to storage."""
        normalized = normalize_key(key)
        storage = self._storage_for(config)
        if storage is None:
            logger.warning("persist=True for %s but no storage is configured", normalized)
            return
        payload = config.to_json(data) if config.to_json is not None else data
        envelope = {
            "data": payload,
            "timestamp": int(timestamp),
            "version": PERSIST_VERSION,
        }
        await storage.write(normalized, envelope)

    async def hydrate(
        self, key: QueryKey, config: QueryConfig[Any]
    ) -> CacheEntry[Any] | None:
        """Load a persisted entry for key into the cache.

        Expired or unreadable envelopes yield None; expired ones are also
        deleted from storage.
        """
        normalized = normalize_key(key)
        storage = self._storage_for(config)
        if storage is None:
            return None

        try:
            envelope = await storage.read(normalized)
            if envelope is None:
                return None

            timestamp = float(envelope["timestamp"])
            expired = clock.now_ms() - timestamp > config.cache_time_ms
            if expired or envelope.get("version") != PERSIST_VERSION:
                logger.debug("Discarding persisted entry for %s", normalized)
                await storage.delete(normalized)
                return None

            payload = envelope["data"]
            data = config.from_json(payload) if config.from_json is not None else payload
        except Exception as e:
            logger.warning("Hydration failed for %s: %r", normalized, e)
            return None

        self._set_entry(normalized, data, timestamp, config.cache_time_ms)
        logger.debug("Hydrated %s from storage", normalized)
        return self._entries[normalized]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def clear(self) -> None:
        """Drop every entry, registration and pending fetch."""
        for timer in self._expiry_timers.values():
            timer.cancel()
        self._expiry_timers.clear()
        self._entries.clear()
        self._queries.clear()
        self._query_scopes.clear()
        self._scopes.clear()
        self._pending.clear()

    async def flush(self) -> None:
        """Wait for background work (persistence, refetches) to finish."""
        await self._tasks.wait()

    def dispose(self) -> None:
        """Stop following streams, cancel timers and background work."""
        self._network_task = None
        self._lifecycle_task = None
        self._streams.cancel_all()
        self._tasks.cancel_all()
        self._network_listeners.clear()
        self._lifecycle_listeners.clear()
        self.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return normalize_key(key) in self._entries  # type: ignore[arg-type]
