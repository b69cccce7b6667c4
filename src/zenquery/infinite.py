"""Paginated queries."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from zenquery.cancel import CancelToken
from zenquery.config import QueryConfig
from zenquery.errors import FetchCancelledError
from zenquery.query import Query, SelectedQuery, bind_observer
from zenquery.signal import Signal
from zenquery.types import FetchStatus, QueryKey, QueryStatus

if TYPE_CHECKING:
    from zenquery.client import QueryClient
    from zenquery.scope import ScopeProtocol

T = TypeVar("T")
P = TypeVar("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)

PageFetcher = Callable[[P, CancelToken], Awaitable[T]]
PageParamFn = Callable[[T, list[T]], P | None]


class InfiniteQuery(Generic[T, P]):
    """A query whose data is an ordered list of pages.

    ``fetch()`` and ``refetch()`` load exactly the first page with
    ``initial_page_param``; ``fetch_next_page()`` appends the page for the
    cursor returned by ``get_next_page_param(last_page, all_pages)``, which
    returns None when there are no more pages.

    Usage:
        feed = InfiniteQuery(
            "feed",
            lambda cursor, token: api.feed(cursor),
            get_next_page_param=lambda last, pages: last["next"],
            initial_page_param=0,
        )
        await feed.fetch()
        await feed.fetch_next_page()
    """

    def __init__(
        self,
        key: QueryKey,
        fetcher: PageFetcher[P, T],
        *,
        get_next_page_param: PageParamFn[T, P],
        get_previous_page_param: PageParamFn[T, P] | None = None,
        initial_page_param: P | None = None,
        config: QueryConfig[list[T]] | None = None,
        client: QueryClient | None = None,
        initial_data: list[T] | None = None,
        scope: ScopeProtocol | None = None,
        auto_dispose: bool = True,
        enabled: bool = True,
    ) -> None:
        self.page_fetcher = fetcher
        self.get_next_page_param = get_next_page_param
        self.get_previous_page_param = get_previous_page_param
        self.initial_page_param = initial_page_param
        self.scope = scope

        self.is_fetching_next_page: Signal[bool] = Signal(False)
        self.is_fetching_previous_page: Signal[bool] = Signal(False)
        self.has_next_page: Signal[bool] = Signal(True)
        self.has_previous_page: Signal[bool] = Signal(False)

        self._next_page_param: P | None = initial_page_param
        self._previous_page_param: P | None = None
        self._next_token: CancelToken | None = None
        self._previous_token: CancelToken | None = None
        self._disposed = False

        self._query: Query[list[T]] = Query(
            key,
            self._fetch_first_page,
            config=config,
            client=client,
            initial_data=initial_data,
            register_in_cache=False,
            enabled=enabled,
        )
        self._query._observer = self
        self._cache = self._query.client.cache
        self._query.data.subscribe(self._update_page_params)
        self._update_page_params(self._query.data.value)

        self._registration_key = bind_observer(
            self._cache, self, scope, auto_dispose, self._dispose_from_scope
        )

    # -------------------------------------------------------------------------
    # Delegated state
    # -------------------------------------------------------------------------

    @property
    def key(self) -> str:
        return self._query.key

    @property
    def config(self) -> QueryConfig[list[T]]:
        return self._query.config

    @property
    def data(self) -> Signal[list[T] | None]:
        return self._query.data

    @property
    def status(self) -> Signal[QueryStatus]:
        return self._query.status

    @property
    def fetch_status(self) -> Signal[FetchStatus]:
        return self._query.fetch_status

    @property
    def error(self) -> Signal[BaseException | None]:
        return self._query.error

    @property
    def is_loading(self) -> Signal[bool]:
        return self._query.is_loading

    @property
    def is_placeholder_data(self) -> Signal[bool]:
        return self._query.is_placeholder_data

    @property
    def enabled(self) -> Signal[bool]:
        return self._query.enabled

    @property
    def pages(self) -> list[T]:
        return list(self._query.data.value or [])

    @property
    def has_data(self) -> bool:
        return self._query.has_data

    @property
    def has_error(self) -> bool:
        return self._query.has_error

    @property
    def is_stale(self) -> bool:
        return self._query.is_stale

    @property
    def is_paused(self) -> bool:
        return self._query.is_paused

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def _fetch_first_page(self, token: CancelToken) -> list[T]:
        page = await self.page_fetcher(self.initial_page_param, token)  # type: ignore[arg-type]
        return [page]

    async def fetch(self, *, force: bool = False) -> list[T]:
        """Load the first page; forced fetches also reset pagination."""
        if force:
            self._reset_pagination("Full refresh triggered")
        pages = await self._query.fetch(force=force)
        # data listeners do not fire when the reloaded pages compare equal
        if not self._disposed and pages:
            self._update_page_params(pages)
        return pages

    async def refetch(self) -> list[T]:
        """Discard every page and reload the first one."""
        return await self.fetch(force=True)

    async def fetch_next_page(self) -> None:
        """Append the next page.

        No-op when there is no next page or one is already being fetched.
        On failure the existing pages are kept and the error is recorded
        without changing ``status``.
        """
        if self._disposed or self.is_fetching_next_page.value or not self.has_next_page.value:
            return

        self.is_fetching_next_page.value = True
        if self._next_token is not None:
            self._next_token.cancel("New next page fetch started")
        token = CancelToken("Fetching next page")
        self._next_token = token

        try:
            page = await self.page_fetcher(self._next_page_param, token)  # type: ignore[arg-type]
            if self._disposed or token.is_cancelled:
                return
            self._query.set_data([*self.pages, page])
            self._query.error.value = None
        except FetchCancelledError:
            logger.debug("Next page fetch of %s cancelled", self.key)
        except Exception as e:
            if not self._disposed and not token.is_cancelled:
                logger.warning("Next page fetch of %s failed: %r", self.key, e)
                self._query.error.value = e
        finally:
            if self._next_token is token:
                self._next_token = None
                self.is_fetching_next_page.value = False

    async def fetch_previous_page(self) -> None:
        """Prepend the previous page (requires ``get_previous_page_param``)."""
        if (
            self._disposed
            or self.is_fetching_previous_page.value
            or not self.has_previous_page.value
        ):
            return

        self.is_fetching_previous_page.value = True
        if self._previous_token is not None:
            self._previous_token.cancel("New previous page fetch started")
        token = CancelToken("Fetching previous page")
        self._previous_token = token

        try:
            page = await self.page_fetcher(self._previous_page_param, token)  # type: ignore[arg-type]
            if self._disposed or token.is_cancelled:
                return
            self._query.set_data([page, *self.pages])
            self._query.error.value = None
        except FetchCancelledError:
            logger.debug("Previous page fetch of %s cancelled", self.key)
        except Exception as e:
            if not self._disposed and not token.is_cancelled:
                logger.warning("Previous page fetch of %s failed: %r", self.key, e)
                self._query.error.value = e
        finally:
            if self._previous_token is token:
                self._previous_token = None
                self.is_fetching_previous_page.value = False

    def _update_page_params(self, pages: list[T] | None) -> None:
        if not pages:
            self._next_page_param = self.initial_page_param
            self.has_next_page.value = True
            self._previous_page_param = None
            self.has_previous_page.value = False
            return

        next_param = self.get_next_page_param(pages[-1], pages)
        self._next_page_param = next_param
        self.has_next_page.value = next_param is not None

        if self.get_previous_page_param is not None:
            previous_param = self.get_previous_page_param(pages[0], pages)
            self._previous_page_param = previous_param
            self.has_previous_page.value = previous_param is not None

    def _reset_pagination(self, reason: str) -> None:
        for token in (self._next_token, self._previous_token):
            if token is not None:
                token.cancel(reason)
        self._next_token = None
        self._previous_token = None
        self.is_fetching_next_page.value = False
        self.is_fetching_previous_page.value = False
        self._next_page_param = self.initial_page_param
        self._previous_page_param = None
        self.has_next_page.value = True
        self.has_previous_page.value = False

    # -------------------------------------------------------------------------
    # Delegated control
    # -------------------------------------------------------------------------

    def pause(self) -> None:
        self._query.pause()

    def resume(self) -> None:
        self._query.resume()

    def invalidate(self) -> None:
        self._query.invalidate()

    def set_data(self, pages: list[T]) -> None:
        self._query.set_data(pages)

    def reset(self) -> None:
        self._reset_pagination("Query reset")
        self._query.reset()

    def select(self, selector: Callable[[list[T]], R]) -> SelectedQuery[R]:
        return SelectedQuery(self, selector)

    async def flush(self) -> None:
        await self._query.flush()

    def apply_cache_update(self, data: Any, timestamp: float) -> None:
        self._query.apply_cache_update(data, timestamp)

    def network_restored(self) -> None:
        self._query.network_restored()

    def _dispose_from_scope(self) -> None:
        if not self._disposed:
            logger.debug("Auto-disposing scoped infinite query %s", self.key)
            self.dispose()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for token in (self._next_token, self._previous_token):
            if token is not None:
                token.cancel("Query disposed")
        self._cache.unregister(self._registration_key, self)
        self._query.dispose()
        for signal in (
            self.is_fetching_next_page,
            self.is_fetching_previous_page,
            self.has_next_page,
            self.has_previous_page,
        ):
            signal.dispose()

    def __repr__(self) -> str:
        return f"InfiniteQuery({self.key!r}, pages={len(self.pages)})"
