"""Query: a cached, key-addressed async value with fetch/retry/staleness."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from zenquery import clock
from zenquery.background import BackgroundTasks
from zenquery.cache import CacheObserver, QueryCache, scoped_key
from zenquery.client import resolve_client
from zenquery.cancel import CancelToken
from zenquery.config import QueryConfig
from zenquery.errors import (
    FetchCancelledError,
    OfflineError,
    QueryDisabledError,
    QueryDisposedError,
    QueryPausedError,
)
from zenquery.keys import normalize_key
from zenquery.retry import RetryPolicy
from zenquery.signal import Signal
from zenquery.types import (
    AppLifecycleState,
    FetchStatus,
    Fetcher,
    NetworkMode,
    QueryKey,
    QueryStatus,
    RefetchBehavior,
)

if TYPE_CHECKING:
    from zenquery.client import QueryClient
    from zenquery.scope import ScopeProtocol

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def bind_observer(
    cache: QueryCache,
    observer: CacheObserver,
    scope: ScopeProtocol | None,
    auto_dispose: bool,
    dispose: Callable[[], None],
) -> str:
    """Register observer with the cache (and scope); returns the registration key."""
    if scope is None:
        cache.register(observer)
        return observer.key

    registration_key = scoped_key(scope.id, observer.key)
    cache.register_scoped(observer, registration_key, scope)
    if auto_dispose:
        scope.register_disposer(dispose)
    logger.debug(
        "Registered scoped query %s in scope %s (auto_dispose=%s)",
        observer.key,
        scope.name,
        auto_dispose,
    )
    return registration_key


class Query(Generic[T]):
    """A cached async value bound to one key.

    The query reads and writes the shared cache entry for its key, so every
    query observing the same key sees the same data. ``status`` describes the
    data (idle, loading, success, error); ``fetch_status`` describes network
    activity (idle, fetching, paused).

    Usage:
        async def load_user(token: CancelToken) -> dict:
            return await api.get_user(1)

        user = Query(["user", 1], load_user, config=QueryConfig(stale_time="1m"))
        data = await user.fetch()
        user.data.subscribe(render)
    """

    def __init__(
        self,
        key: QueryKey,
        fetcher: Fetcher[T],
        *,
        config: QueryConfig[T] | None = None,
        client: QueryClient | None = None,
        initial_data: T | None = None,
        scope: ScopeProtocol | None = None,
        auto_dispose: bool = True,
        register_in_cache: bool = True,
        enabled: bool = True,
    ) -> None:
        self._client = resolve_client(client)
        self._cache = self._client.cache
        self._key = normalize_key(key)
        self.fetcher = fetcher
        self.config: QueryConfig[T] = self._client.resolve_config(config)
        self.scope = scope
        self.auto_dispose = auto_dispose
        self.initial_data = initial_data

        self.data: Signal[T | None] = Signal(initial_data, name=f"{self._key}.data")
        self.status: Signal[QueryStatus] = Signal(
            QueryStatus.SUCCESS if initial_data is not None else QueryStatus.IDLE
        )
        self.fetch_status: Signal[FetchStatus] = Signal(FetchStatus.IDLE)
        self.error: Signal[BaseException | None] = Signal(None)
        self.is_loading: Signal[bool] = Signal(False)
        self.is_placeholder_data: Signal[bool] = Signal(False)
        self.enabled: Signal[bool] = Signal(enabled)

        self._last_fetch_time: float | None = None
        self._manually_paused = False
        self._paused_for_network = False
        self._disposed = False
        self._cancel_token: CancelToken | None = None
        self._current_fetch: asyncio.Future[T] | None = None
        self._refetch_task: asyncio.Task[Any] | None = None
        self._tasks = BackgroundTasks(f"Query {self._key}")
        self._timers = BackgroundTasks(f"Query {self._key} timers")
        # Identity reported to the cache; wrappers such as InfiniteQuery replace it
        self._observer: CacheObserver = self
        self._registration_key: str | None = None

        self.enabled.subscribe(self._on_enabled_changed)
        if register_in_cache:
            self._registration_key = bind_observer(
                self._cache, self, scope, auto_dispose, self._dispose_from_scope
            )
        elif scope is not None and auto_dispose:
            scope.register_disposer(self._dispose_from_scope)

        if self.config.auto_pause_on_background:
            self._cache.add_lifecycle_listener(self._on_lifecycle)

        self._setup_background_refetch()
        self._init_data()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def key(self) -> str:
        """The normalized query key."""
        return self._key

    @property
    def client(self) -> QueryClient:
        return self._client

    @property
    def has_data(self) -> bool:
        """Whether real (non-placeholder) data is available."""
        return self.data.value is not None and not self.is_placeholder_data.value

    @property
    def has_error(self) -> bool:
        return self.error.value is not None

    @property
    def is_stale(self) -> bool:
        if self._last_fetch_time is None:
            return True
        return clock.now_ms() - self._last_fetch_time > self.config.stale_time_ms

    @property
    def is_refetching(self) -> bool:
        """Fetching while data is already shown."""
        return self.is_loading.value and self.has_data

    @property
    def is_paused(self) -> bool:
        """Whether the query was paused with ``pause()``."""
        return self._manually_paused

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def last_updated(self) -> float | None:
        """Epoch ms of the data currently shown, None when stale by invalidation."""
        return self._last_fetch_time

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def fetch(self, *, force: bool = False) -> T:
        """Return fresh data, fetching only when needed.

        Concurrent calls share one in-flight fetch. With ``force`` the
        freshness, enabled and pause checks are skipped.

        Raises:
            QueryDisabledError: disabled, not forced, and no data.
            OfflineError: offline under the ``online`` network mode, no data.
            QueryPausedError: paused, not forced, and no data.
        """
        if self._disposed:
            return self._current_data_or_raise(
                QueryDisposedError(f"Query {self._key} has been disposed")
            )

        if not self.enabled.value and not force:
            return self._current_data_or_raise(
                QueryDisabledError(f"Query {self._key} is disabled")
            )

        mode = self.config.network_mode
        if mode is not NetworkMode.ALWAYS and not self._cache.is_online:
            if mode is NetworkMode.OFFLINE_FIRST and self.has_data:
                return self.data.value  # type: ignore[return-value]
            if not self._paused_for_network:
                logger.debug("Query %s paused (offline)", self._key)
                self._paused_for_network = True
            self.fetch_status.value = FetchStatus.PAUSED
            return self._current_data_or_raise(OfflineError())

        if self._manually_paused and not force:
            return self._current_data_or_raise(
                QueryPausedError(f"Query {self._key} is paused")
            )

        if not force and self.has_data and not self.is_stale:
            return self.data.value  # type: ignore[return-value]

        if self._current_fetch is None or self._current_fetch.done():
            future = asyncio.ensure_future(self._run_fetch())
            self._current_fetch = future
            future.add_done_callback(self._clear_current_fetch)
        return await asyncio.shield(self._current_fetch)

    async def refetch(self) -> T:
        """Fetch regardless of freshness."""
        return await self.fetch(force=True)

    def _current_data_or_raise(self, error: Exception) -> T:
        if self.has_data:
            return self.data.value  # type: ignore[return-value]
        raise error

    def _clear_current_fetch(self, future: asyncio.Future[Any]) -> None:
        if self._current_fetch is future:
            self._current_fetch = None
        if not future.cancelled():
            future.exception()

    async def _run_fetch(self) -> T:
        if self._cancel_token is not None:
            self._cancel_token.cancel("new fetch started")
        token = CancelToken(f"Fetching {self._key}")
        self._cancel_token = token

        previous_status = self.status.value
        previous_error = self.error.value
        if not self.has_data and not self.is_placeholder_data.value:
            self.status.value = QueryStatus.LOADING
        self.is_loading.value = True
        self.fetch_status.value = FetchStatus.FETCHING
        self.error.value = None

        try:
            result = await self._shared_fetch(token)
        except FetchCancelledError:
            self._abandon(token, previous_status, previous_error)
            return self._current_data_or_raise(FetchCancelledError())
        except Exception as e:
            if token.is_cancelled or self._disposed:
                self._abandon(token, previous_status, previous_error)
                return self._current_data_or_raise(FetchCancelledError())
            logger.exception("Query %s failed", self._key)
            self._fail(e)
            raise
        finally:
            if self._cancel_token is token:
                self._cancel_token = None

        if token.is_cancelled or self._disposed:
            self._abandon(token, previous_status, previous_error)
            return self._current_data_or_raise(FetchCancelledError())

        self._succeed(result)
        return result

    async def _shared_fetch(self, token: CancelToken) -> T:
        # Another query on the same key may own the shared fetch; if that
        # fetch was cancelled under us, start over with our own token
        started = False

        def start() -> Awaitable[T]:
            nonlocal started
            started = True
            return self._fetch_with_retry(token)

        while True:
            try:
                return await self._cache.deduplicate_fetch(self._key, start)
            except FetchCancelledError:
                if started or token.is_cancelled or self._disposed:
                    raise

    async def _fetch_with_retry(self, token: CancelToken) -> T:
        policy = RetryPolicy.from_config(self.config)
        attempt = 0
        while True:
            token.throw_if_cancelled()
            try:
                result = await self.fetcher(token)
            except FetchCancelledError:
                raise
            except Exception as e:
                if token.is_cancelled:
                    raise FetchCancelledError(token.reason or "Operation cancelled") from e
                if not policy.should_retry(attempt):
                    raise
                delay = policy.delay_for(attempt, e)
                attempt += 1
                logger.debug(
                    "Query %s failed, retrying (%d/%d) in %.0fms",
                    self._key,
                    attempt,
                    policy.retry_count,
                    delay,
                )
                if await token.sleep(delay / 1000):
                    raise FetchCancelledError(
                        token.reason or "Operation cancelled"
                    ) from e
                continue
            token.throw_if_cancelled()
            return result

    def _succeed(self, result: T) -> None:
        now = clock.now_ms()
        self._last_fetch_time = now
        self.data.value = result
        self.is_placeholder_data.value = False
        self.error.value = None
        self.status.value = QueryStatus.SUCCESS
        self.is_loading.value = False
        self.fetch_status.value = self._resting_fetch_status()
        self._cache.update_cache(
            self._key, result, now, source=self._observer, config=self.config
        )

    def _fail(self, error: Exception) -> None:
        self.error.value = error
        self.status.value = QueryStatus.ERROR
        self.is_loading.value = False
        self.fetch_status.value = self._resting_fetch_status()

    def _abandon(
        self,
        token: CancelToken,
        previous_status: QueryStatus,
        previous_error: BaseException | None,
    ) -> None:
        if self._disposed:
            return
        if self._cancel_token is not None and self._cancel_token is not token:
            # A newer fetch owns the transient state
            return
        logger.debug("Fetch of %s abandoned", self._key)
        if self.status.value is QueryStatus.LOADING:
            self.status.value = previous_status
        if self.error.value is None:
            self.error.value = previous_error
        self.is_loading.value = False
        self.fetch_status.value = self._resting_fetch_status()

    def _resting_fetch_status(self) -> FetchStatus:
        if self._manually_paused or self._paused_for_network:
            return FetchStatus.PAUSED
        return FetchStatus.IDLE

    def _cancel_pending(self, reason: str) -> None:
        token = self._cancel_token
        if token is not None and not token.is_cancelled:
            logger.debug("Cancelling pending fetch of %s: %s", self._key, reason)
            token.cancel(reason)
        self._cancel_token = None
        self._current_fetch = None

    # -------------------------------------------------------------------------
    # Manual control
    # -------------------------------------------------------------------------

    def pause(self) -> None:
        """Cancel in-flight work and stop fetching until ``resume()``."""
        if self._disposed:
            return
        self._cancel_pending("Query paused")
        self._stop_background_refetch()
        if not self._manually_paused:
            self._manually_paused = True
            logger.debug("Query paused: %s", self._key)
        self.fetch_status.value = FetchStatus.PAUSED

    def resume(self) -> None:
        """Undo ``pause()``; refetches stale data when ``refetch_on_resume``."""
        if self._disposed:
            return
        if self._manually_paused:
            self._manually_paused = False
            logger.debug("Query resumed: %s", self._key)
        if self.fetch_status.value is FetchStatus.PAUSED and not self._paused_for_network:
            self.fetch_status.value = FetchStatus.IDLE

        self._setup_background_refetch()

        if self.config.refetch_on_resume and self.is_stale and self.enabled.value:
            self._fetch_in_background("resume")

    def invalidate(self) -> None:
        """Mark stale now and refetch in the background when active."""
        if self._disposed:
            return
        self._last_fetch_time = None
        self._cache.mark_stale(self._key)
        if self.enabled.value and not self.is_loading.value:
            self._fetch_in_background("invalidation")

    def set_data(self, data: T) -> None:
        """Replace the data synchronously and mark it fresh.

        The write goes through the cache so other queries on the same key
        see it immediately.
        """
        if self._disposed:
            return
        now = clock.now_ms()
        self._last_fetch_time = now
        self.data.value = data
        self.is_placeholder_data.value = False
        if self.status.value in (QueryStatus.IDLE, QueryStatus.LOADING):
            self.status.value = QueryStatus.SUCCESS
        self._cache.update_cache(
            self._key, data, now, source=self._observer, config=self.config
        )

    def reset(self) -> None:
        """Return to the state the query was constructed in."""
        if self._disposed:
            return
        self._cancel_pending("Query reset")
        self._manually_paused = False
        self._paused_for_network = False
        self._last_fetch_time = None
        self.data.value = self.initial_data
        self.is_placeholder_data.value = False
        self.error.value = None
        self.status.value = (
            QueryStatus.SUCCESS if self.initial_data is not None else QueryStatus.IDLE
        )
        self.is_loading.value = False
        self.fetch_status.value = FetchStatus.IDLE

    def select(self, selector: Callable[[T], R]) -> SelectedQuery[R]:
        """Derive a read-only query whose data is ``selector(data)``."""
        return SelectedQuery(self, selector)

    async def flush(self) -> None:
        """Wait for background fetches started by this query."""
        await self._tasks.wait()

    # -------------------------------------------------------------------------
    # Cache callbacks
    # -------------------------------------------------------------------------

    def apply_cache_update(self, data: Any, timestamp: float) -> None:
        """Adopt a value another writer stored for this key."""
        if self._disposed:
            return
        self._last_fetch_time = timestamp
        self.data.value = data
        self.is_placeholder_data.value = False
        self.error.value = None
        self.status.value = QueryStatus.SUCCESS

    def network_restored(self) -> None:
        if self._disposed or not self._paused_for_network:
            return
        self._paused_for_network = False
        if self.fetch_status.value is FetchStatus.PAUSED and not self._manually_paused:
            self.fetch_status.value = FetchStatus.IDLE

    # -------------------------------------------------------------------------
    # Mount, timers, listeners
    # -------------------------------------------------------------------------

    def _init_data(self) -> None:
        entry = self._cache.get_entry(self._key)
        if entry is not None:
            self.data.value = entry.data
            self.status.value = QueryStatus.SUCCESS
            if not entry.invalidated:
                self._last_fetch_time = entry.timestamp
        elif self.initial_data is None and self.config.placeholder_data is not None:
            self.data.value = self.config.placeholder_data
            self.status.value = QueryStatus.SUCCESS
            self.is_placeholder_data.value = True

        self._tasks.spawn(self._mount(), "mount")

    async def _mount(self) -> None:
        if self.config.persist and self._last_fetch_time is None:
            entry = await self._cache.hydrate(self._key, self.config)
            if entry is not None and not self._disposed and self._last_fetch_time is None:
                self.apply_cache_update(entry.data, entry.timestamp)

        if self._disposed or not self.enabled.value:
            return

        policy = self.config.refetch_on_mount
        if self.has_data:
            should_fetch = policy.should_refetch(self.is_stale)
        else:
            should_fetch = policy is not RefetchBehavior.NEVER
        if should_fetch:
            await self.fetch()

    def _fetch_in_background(self, reason: str) -> None:
        self._tasks.spawn(self.fetch(), f"{reason} refetch")

    def _setup_background_refetch(self) -> None:
        interval = self.config.refetch_interval_ms
        if not self.config.enable_background_refetch or interval is None:
            return
        self._stop_background_refetch()
        self._refetch_task = self._timers.spawn(
            self._refetch_periodically(interval / 1000), "background refetch"
        )

    def _stop_background_refetch(self) -> None:
        if self._refetch_task is not None:
            self._refetch_task.cancel()
            self._refetch_task = None

    async def _refetch_periodically(self, seconds: float) -> None:
        while not self._disposed:
            await asyncio.sleep(seconds)
            if not self.has_data or self.is_loading.value or self._manually_paused:
                continue
            try:
                await self.fetch(force=True)
            except Exception as e:
                logger.warning("Background refetch failed for %s: %r", self._key, e)

    def _on_enabled_changed(self, enabled: bool) -> None:
        if enabled and not self._disposed:
            if self.is_stale or self.status.value is QueryStatus.IDLE:
                self._fetch_in_background("enable")

    def _on_lifecycle(self, state: AppLifecycleState) -> None:
        if state.is_background:
            self.pause()
        elif state is AppLifecycleState.RESUMED:
            self.resume()

    # -------------------------------------------------------------------------
    # Disposal
    # -------------------------------------------------------------------------

    def _dispose_from_scope(self) -> None:
        if not self._disposed:
            logger.debug("Auto-disposing scoped query %s", self._key)
            self.dispose()

    def dispose(self) -> None:
        """Cancel in-flight work and timers and detach from the cache.

        Cached data is kept. Later calls on the query are no-ops.
        """
        if self._disposed:
            return
        self._disposed = True
        self._cancel_pending("Query disposed")
        self._stop_background_refetch()
        self._timers.cancel_all()
        self._tasks.cancel_all()

        if self._registration_key is not None:
            self._cache.unregister(self._registration_key, self._observer)
        self._cache.remove_lifecycle_listener(self._on_lifecycle)

        for signal in (
            self.data,
            self.status,
            self.fetch_status,
            self.error,
            self.is_loading,
            self.is_placeholder_data,
            self.enabled,
        ):
            signal.dispose()
        logger.debug("Query disposed: %s", self._key)

    def __repr__(self) -> str:
        return f"Query({self._key!r}, status={self.status.value.value})"


_UNSET: Any = object()


class SelectedQuery(Generic[R]):
    """Read-only projection of another query's data.

    The selector only runs when the parent's data object changes, and
    listeners of ``data`` only fire when the selected value changes.
    Selector errors become this query's error and never reach the parent.
    Disposing a selection leaves the parent untouched.
    """

    def __init__(self, parent: Any, selector: Callable[[Any], R]) -> None:
        self.parent = parent
        self._selector = selector
        self._source: Any = _UNSET
        self._selector_error: BaseException | None = None
        self._disposed = False

        self.data: Signal[R | None] = Signal(None)
        self.error: Signal[BaseException | None] = Signal(parent.error.value)
        self.status: Signal[QueryStatus] = Signal(parent.status.value)
        self.fetch_status: Signal[FetchStatus] = Signal(parent.fetch_status.value)
        self.is_loading: Signal[bool] = Signal(parent.is_loading.value)

        self._unsubscribers = [
            parent.data.subscribe(self._on_parent_data),
            parent.status.subscribe(self._on_parent_status),
            parent.error.subscribe(self._on_parent_error),
            parent.fetch_status.subscribe(self.fetch_status.set),
            parent.is_loading.subscribe(self.is_loading.set),
        ]
        self._on_parent_data(parent.data.value)

    @property
    def key(self) -> str:
        return self.parent.key

    @property
    def has_data(self) -> bool:
        return self.data.value is not None

    @property
    def has_error(self) -> bool:
        return self.error.value is not None

    @property
    def is_stale(self) -> bool:
        return self.parent.is_stale

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _on_parent_data(self, value: Any) -> None:
        if value is self._source:
            return
        self._source = value
        if value is None:
            self._selector_error = None
            self.data.value = None
            self._sync_error_and_status()
            return
        try:
            selected = self._selector(value)
        except Exception as e:
            logger.warning("Selector failed for %s: %r", self.key, e)
            self._selector_error = e
        else:
            self._selector_error = None
            self.data.value = selected
        self._sync_error_and_status()

    def _on_parent_status(self, _status: QueryStatus) -> None:
        self._sync_error_and_status()

    def _on_parent_error(self, _error: BaseException | None) -> None:
        self._sync_error_and_status()

    def _sync_error_and_status(self) -> None:
        if self._selector_error is not None:
            self.error.value = self._selector_error
            self.status.value = QueryStatus.ERROR
        else:
            self.error.value = self.parent.error.value
            self.status.value = self.parent.status.value

    async def fetch(self, *, force: bool = False) -> R | None:
        await self.parent.fetch(force=force)
        return self.data.value

    async def refetch(self) -> R | None:
        return await self.fetch(force=True)

    def invalidate(self) -> None:
        self.parent.invalidate()

    def select(self, selector: Callable[[R], Any]) -> SelectedQuery[Any]:
        return SelectedQuery(self, selector)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for signal in (self.data, self.error, self.status, self.fetch_status, self.is_loading):
            signal.dispose()

    def __repr__(self) -> str:
        return f"SelectedQuery({self.key!r})"
