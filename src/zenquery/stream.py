"""Queries fed by a push-based async stream."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from zenquery.background import BackgroundTasks
from zenquery.cancel import CancelToken
from zenquery.client import resolve_client
from zenquery.config import QueryConfig
from zenquery.keys import normalize_key
from zenquery.signal import Signal
from zenquery.types import AppLifecycleState, FetchStatus, QueryKey, QueryStatus

if TYPE_CHECKING:
    from zenquery.client import QueryClient
    from zenquery.scope import ScopeProtocol

T = TypeVar("T")

logger = logging.getLogger(__name__)


class StreamQuery(Generic[T]):
    """Reactive state for values pushed by an async iterator.

    Each item from ``stream_fn()`` becomes ``data`` with ``status=success``.
    An exception from the iterator sets ``status=error`` and keeps the last
    data unless ``clear_data_on_error`` is set. While paused the iterator
    stays open but items are dropped.

    Usage:
        prices = StreamQuery("prices", lambda: ticker.subscribe("ACME"))
        prices.data.subscribe(render)
    """

    def __init__(
        self,
        key: QueryKey,
        stream_fn: Callable[[], AsyncIterator[T]],
        *,
        config: QueryConfig[T] | None = None,
        client: QueryClient | None = None,
        initial_data: T | None = None,
        scope: ScopeProtocol | None = None,
        auto_dispose: bool = True,
        auto_subscribe: bool = True,
        clear_data_on_error: bool = False,
    ) -> None:
        self._client = resolve_client(client)
        self._cache = self._client.cache
        self._key = normalize_key(key)
        self.stream_fn = stream_fn
        self.config: QueryConfig[T] = self._client.resolve_config(config)
        self.scope = scope
        self.clear_data_on_error = clear_data_on_error

        self.data: Signal[T | None] = Signal(initial_data)
        self.error: Signal[BaseException | None] = Signal(None)
        self.status: Signal[QueryStatus] = Signal(
            QueryStatus.SUCCESS if initial_data is not None else QueryStatus.IDLE
        )
        self.fetch_status: Signal[FetchStatus] = Signal(FetchStatus.IDLE)
        self.is_loading: Signal[bool] = Signal(False)
        self.status.subscribe(
            lambda status: self.is_loading.set(status is QueryStatus.LOADING)
        )

        self._paused = False
        self._disposed = False
        self._token: CancelToken | None = None
        self._subscription: asyncio.Task[Any] | None = None
        self._tasks = BackgroundTasks(f"StreamQuery {self._key}")

        if scope is not None and auto_dispose:
            scope.register_disposer(self._dispose_from_scope)
        if self.config.auto_pause_on_background:
            self._cache.add_lifecycle_listener(self._on_lifecycle)
        if auto_subscribe:
            self.subscribe()

    @property
    def key(self) -> str:
        return self._key

    @property
    def has_data(self) -> bool:
        return self.data.value is not None

    @property
    def has_error(self) -> bool:
        return self.error.value is not None

    @property
    def is_subscribed(self) -> bool:
        return self._subscription is not None

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def subscribe(self) -> None:
        """Start consuming the stream; no-op if already subscribed."""
        if self._disposed or self._subscription is not None:
            return

        token = CancelToken(f"Stream {self._key}")
        task = self._tasks.spawn(self._consume(token), "stream subscription")
        if task is None:
            return

        self._token = token
        self._subscription = task
        if not self.has_data:
            self.status.value = QueryStatus.LOADING
        self.error.value = None
        self.fetch_status.value = (
            FetchStatus.PAUSED if self._paused else FetchStatus.FETCHING
        )

    def unsubscribe(self) -> None:
        """Stop consuming the stream; the last state is kept."""
        if self._subscription is None:
            return
        if self._token is not None:
            self._token.cancel("Stream unsubscribed")
        self._subscription.cancel()
        self._subscription = None
        self._token = None
        if not self._disposed:
            if self.status.value is QueryStatus.LOADING:
                self.status.value = QueryStatus.IDLE
            self.fetch_status.value = FetchStatus.IDLE

    async def _consume(self, token: CancelToken) -> None:
        try:
            async for item in self.stream_fn():
                if token.is_cancelled or self._disposed:
                    break
                if self._paused:
                    continue
                self._on_item(item)
        except Exception as e:
            if not token.is_cancelled and not self._disposed:
                logger.error("Stream error [%s]: %r", self._key, e)
                self._on_error(e)
        finally:
            if self._token is token:
                self._subscription = None
                self._token = None
                if not self._disposed:
                    self.fetch_status.value = FetchStatus.IDLE
                logger.debug("Stream %s ended", self._key)

    def _on_item(self, item: T) -> None:
        self.data.value = item
        self.error.value = None
        self.status.value = QueryStatus.SUCCESS

    def _on_error(self, error: Exception) -> None:
        self.error.value = error
        if self.clear_data_on_error:
            self.data.value = None
        self.status.value = QueryStatus.ERROR

    def pause(self) -> None:
        """Hold the subscription open and drop items until ``resume()``."""
        if self._disposed or self._paused:
            return
        self._paused = True
        if self._subscription is not None:
            self.fetch_status.value = FetchStatus.PAUSED
        logger.debug("Stream paused: %s", self._key)

    def resume(self) -> None:
        if self._disposed or not self._paused:
            return
        self._paused = False
        if self._subscription is not None:
            self.fetch_status.value = FetchStatus.FETCHING
        else:
            self.subscribe()
        logger.debug("Stream resumed: %s", self._key)

    def set_data(self, data: T) -> None:
        """Replace the data manually."""
        if self._disposed:
            return
        self._on_item(data)

    def _on_lifecycle(self, state: AppLifecycleState) -> None:
        if state.is_background:
            self.pause()
        elif state is AppLifecycleState.RESUMED:
            self.resume()

    def _dispose_from_scope(self) -> None:
        if not self._disposed:
            logger.debug("Auto-disposing scoped stream %s", self._key)
            self.dispose()

    def dispose(self) -> None:
        if self._disposed:
            return
        self.unsubscribe()
        self._disposed = True
        self._tasks.cancel_all()
        self._cache.remove_lifecycle_listener(self._on_lifecycle)
        for signal in (self.data, self.error, self.status, self.fetch_status, self.is_loading):
            signal.dispose()

    def __repr__(self) -> str:
        return f"StreamQuery({self._key!r}, status={self.status.value.value})"
