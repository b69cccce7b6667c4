"""Mutations: one-shot async writes with lifecycle callbacks."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from zenquery.client import resolve_client
from zenquery.errors import MutationDisposedError, QueueError
from zenquery.keys import normalize_key
from zenquery.queue import MutationAction, MutationJob
from zenquery.signal import Signal
from zenquery.types import JsonDict, MutationStatus, QueryKey

if TYPE_CHECKING:
    from zenquery.client import QueryClient
    from zenquery.scope import ScopeProtocol

TData = TypeVar("TData")
TVariables = TypeVar("TVariables")
TContext = TypeVar("TContext")
TItem = TypeVar("TItem")

logger = logging.getLogger(__name__)


async def _call(callback: Callable[..., Any] | None, *args: Any) -> Any:
    """Invoke a sync or async callback; errors are logged."""
    if callback is None:
        return None
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            result = await result
        return result
    except Exception:
        logger.exception("Error in mutation callback %r", callback)
        return None


def serialize_variables(variables: Any) -> JsonDict:
    """Turn mutation variables into a JSON object for the offline queue."""
    if isinstance(variables, dict):
        return dict(variables)
    for method in ("to_json", "model_dump"):
        to_json = getattr(variables, method, None)
        if callable(to_json):
            payload = to_json()
            if isinstance(payload, dict):
                return payload
    raise QueueError(
        "Cannot queue offline mutation: variables must be a dict "
        "or provide to_json()/model_dump()"
    )


class Mutation(Generic[TData, TVariables, TContext]):
    """A one-shot async action with optimistic-update hooks.

    ``mutate(variables)`` runs ``on_mutate -> mutation_fn -> on_success |
    on_error -> on_settled``. Callbacks given to the constructor run first
    and receive the context returned by ``on_mutate``; callbacks given to
    ``mutate`` run after them. Failures never propagate out of ``mutate``:
    it returns None and the error is kept in ``error``.

    Usage:
        create_post = Mutation(
            api.create_post,
            on_success=lambda post, variables, context: posts.invalidate(),
        )
        post = await create_post.mutate({"title": "Hello"})
    """

    def __init__(
        self,
        mutation_fn: Callable[[TVariables], Awaitable[TData]],
        *,
        mutation_key: str | None = None,
        action: MutationAction = MutationAction.CUSTOM,
        on_mutate: Callable[[TVariables], TContext | Awaitable[TContext]] | None = None,
        on_success: Callable[[TData, TVariables, TContext | None], Any] | None = None,
        on_error: Callable[[Exception, TVariables, TContext | None], Any] | None = None,
        on_settled: Callable[
            [TData | None, Exception | None, TVariables, TContext | None], Any
        ]
        | None = None,
        client: QueryClient | None = None,
        scope: ScopeProtocol | None = None,
        auto_dispose: bool = True,
    ) -> None:
        self.mutation_fn = mutation_fn
        self.mutation_key = mutation_key
        self.action = action
        self.on_mutate = on_mutate
        self.on_success = on_success
        self.on_error = on_error
        self.on_settled = on_settled
        self._client = resolve_client(client)
        self._disposed = False

        self.status: Signal[MutationStatus] = Signal(MutationStatus.IDLE)
        self.data: Signal[TData | None] = Signal(None)
        self.error: Signal[Exception | None] = Signal(None)
        self.is_loading: Signal[bool] = Signal(False)

        if scope is not None and auto_dispose:
            scope.register_disposer(self.dispose)

    @property
    def client(self) -> QueryClient:
        return self._client

    @property
    def is_idle(self) -> bool:
        return self.status.value is MutationStatus.IDLE

    @property
    def is_success(self) -> bool:
        return self.status.value is MutationStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status.value is MutationStatus.ERROR

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    async def mutate(
        self,
        variables: TVariables,
        *,
        on_success: Callable[[TData, TVariables], Any] | None = None,
        on_error: Callable[[Exception, TVariables], Any] | None = None,
        on_settled: Callable[[TData | None, Exception | None, TVariables], Any]
        | None = None,
    ) -> TData | None:
        """Run the mutation. Returns the result, or None on failure or when queued.

        Raises:
            MutationDisposedError: the mutation was disposed.
            QueueError: offline with a ``mutation_key`` and variables that
                cannot be serialized.
        """
        if self._disposed:
            raise MutationDisposedError("Mutation has been disposed")

        self.status.value = MutationStatus.LOADING
        self.is_loading.value = True
        self.error.value = None

        context: TContext | None = None
        try:
            if self.on_mutate is not None:
                context = self.on_mutate(variables)  # type: ignore[assignment]
                if inspect.isawaitable(context):
                    context = await context

            if self._should_queue():
                return await self._queue_offline(variables)

            result = await self.mutation_fn(variables)
        except QueueError:
            raise
        except Exception as e:
            if self._disposed:
                return None
            if self._should_queue():
                return await self._queue_offline(variables)

            logger.warning("Mutation %s failed: %r", self.mutation_key or "", e)
            self.error.value = e
            self.status.value = MutationStatus.ERROR
            self.is_loading.value = False

            await _call(self.on_error, e, variables, context)
            await _call(on_error, e, variables)
            await _call(self.on_settled, None, e, variables, context)
            await _call(on_settled, None, e, variables)
            return None

        if self._disposed:
            return None

        self.data.value = result
        self.status.value = MutationStatus.SUCCESS
        self.is_loading.value = False

        await _call(self.on_success, result, variables, context)
        await _call(on_success, result, variables)
        await _call(self.on_settled, result, None, variables, context)
        await _call(on_settled, result, None, variables)
        return result

    def _should_queue(self) -> bool:
        return self.mutation_key is not None and not self._client.cache.is_online

    async def _queue_offline(self, variables: TVariables) -> None:
        self.is_loading.value = False
        self.status.value = MutationStatus.IDLE
        payload = serialize_variables(variables)
        job = MutationJob(
            mutation_key=self.mutation_key,  # type: ignore[arg-type]
            action=self.action,
            payload=payload,
        )
        await self._client.mutation_queue.add(job)
        return None

    def reset(self) -> None:
        """Return to idle with no data or error."""
        self.data.value = None
        self.error.value = None
        self.status.value = MutationStatus.IDLE
        self.is_loading.value = False

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for signal in (self.status, self.data, self.error, self.is_loading):
            signal.dispose()

    def __repr__(self) -> str:
        return f"Mutation({self.mutation_key!r}, status={self.status.value.value})"

    # -------------------------------------------------------------------------
    # Optimistic helpers
    # -------------------------------------------------------------------------

    @classmethod
    def list_put(
        cls,
        query_key: QueryKey,
        mutation_fn: Callable[[TItem], Awaitable[Any]],
        *,
        mutation_key: str | None = None,
        add_to_start: bool = True,
        on_success: Callable[[Any, TItem], Any] | None = None,
        on_error: Callable[[Exception, TItem], Any] | None = None,
        client: QueryClient | None = None,
    ) -> Mutation[Any, TItem, _Snapshot]:
        """Insert the item into the cached list right away; roll back on failure."""

        def insert(items: list[TItem] | None, item: TItem) -> list[TItem]:
            items = list(items or [])
            return [item, *items] if add_to_start else [*items, item]

        return cls._optimistic(
            query_key, mutation_fn, insert, "list_put", MutationAction.CREATE,
            mutation_key, on_success, on_error, client,
        )

    @classmethod
    def list_set(
        cls,
        query_key: QueryKey,
        mutation_fn: Callable[[TItem], Awaitable[Any]],
        *,
        where: Callable[[TItem, TItem], bool],
        mutation_key: str | None = None,
        on_success: Callable[[Any, TItem], Any] | None = None,
        on_error: Callable[[Exception, TItem], Any] | None = None,
        client: QueryClient | None = None,
    ) -> Mutation[Any, TItem, _Snapshot]:
        """Replace the list items matching ``where(item, updated)``."""

        def update(items: list[TItem] | None, updated: TItem) -> list[TItem]:
            return [updated if where(item, updated) else item for item in items or []]

        return cls._optimistic(
            query_key, mutation_fn, update, "list_set", MutationAction.UPDATE,
            mutation_key, on_success, on_error, client,
        )

    @classmethod
    def list_remove(
        cls,
        query_key: QueryKey,
        mutation_fn: Callable[[TItem], Awaitable[Any]],
        *,
        where: Callable[[TItem, TItem], bool],
        mutation_key: str | None = None,
        on_success: Callable[[Any, TItem], Any] | None = None,
        on_error: Callable[[Exception, TItem], Any] | None = None,
        client: QueryClient | None = None,
    ) -> Mutation[Any, TItem, _Snapshot]:
        """Drop the list items matching ``where(item, removed)``."""

        def remove(items: list[TItem] | None, removed: TItem) -> list[TItem]:
            return [item for item in items or [] if not where(item, removed)]

        return cls._optimistic(
            query_key, mutation_fn, remove, "list_remove", MutationAction.DELETE,
            mutation_key, on_success, on_error, client,
        )

    @classmethod
    def put(
        cls,
        query_key: QueryKey,
        mutation_fn: Callable[[TItem], Awaitable[Any]],
        *,
        mutation_key: str | None = None,
        on_success: Callable[[Any, TItem], Any] | None = None,
        on_error: Callable[[Exception, TItem], Any] | None = None,
        client: QueryClient | None = None,
    ) -> Mutation[Any, TItem, _Snapshot]:
        """Create a single cached value."""
        return cls._optimistic(
            query_key, mutation_fn, lambda _old, value: value, "put",
            MutationAction.CREATE, mutation_key, on_success, on_error, client,
        )

    @classmethod
    def set(
        cls,
        query_key: QueryKey,
        mutation_fn: Callable[[TItem], Awaitable[Any]],
        *,
        mutation_key: str | None = None,
        on_success: Callable[[Any, TItem], Any] | None = None,
        on_error: Callable[[Exception, TItem], Any] | None = None,
        client: QueryClient | None = None,
    ) -> Mutation[Any, TItem, _Snapshot]:
        """Update a single cached value."""
        return cls._optimistic(
            query_key, mutation_fn, lambda _old, value: value, "set",
            MutationAction.UPDATE, mutation_key, on_success, on_error, client,
        )

    @classmethod
    def remove(
        cls,
        query_key: QueryKey,
        mutation_fn: Callable[[], Awaitable[Any]],
        *,
        mutation_key: str | None = None,
        on_success: Callable[[Any, Any], Any] | None = None,
        on_error: Callable[[Exception, Any], Any] | None = None,
        client: QueryClient | None = None,
    ) -> Mutation[Any, Any, _Snapshot]:
        """Clear a single cached value; call ``mutate(None)``."""
        return cls._optimistic(
            query_key, lambda _variables: mutation_fn(), None, "remove",
            MutationAction.DELETE, mutation_key, on_success, on_error, client,
        )

    @classmethod
    def _optimistic(
        cls,
        query_key: QueryKey,
        mutation_fn: Callable[[Any], Awaitable[Any]],
        apply: Callable[[Any, Any], Any] | None,
        suffix: str,
        action: MutationAction,
        mutation_key: str | None,
        on_success: Callable[[Any, Any], Any] | None,
        on_error: Callable[[Exception, Any], Any] | None,
        client: QueryClient | None,
    ) -> Mutation[Any, Any, _Snapshot]:
        key = normalize_key(query_key)
        cache = resolve_client(client).cache

        def on_mutate(variables: Any) -> _Snapshot:
            snapshot = _Snapshot(key in cache, cache.get_cached_data(key))
            if apply is None:
                cache.remove_entry(key)
            else:
                cache.set_query_data(key, lambda old: apply(old, variables))
            return snapshot

        async def rollback(error: Exception, variables: Any, snapshot: _Snapshot | None) -> None:
            if snapshot is not None:
                snapshot.restore(cache, key)
            await _call(on_error, error, variables)

        async def succeeded(data: Any, variables: Any, _snapshot: _Snapshot | None) -> None:
            await _call(on_success, data, variables)

        return cls(
            mutation_fn,
            mutation_key=mutation_key or f"{key}_{suffix}",
            action=action,
            on_mutate=on_mutate,
            on_success=succeeded,
            on_error=rollback,
            client=client,
        )


@dataclass(frozen=True)
class _Snapshot:
    """Cache state captured before an optimistic write."""

    existed: bool
    data: Any

    def restore(self, cache: Any, key: str) -> None:
        if self.existed:
            cache.set_query_data(key, lambda _current: self.data)
        else:
            cache.remove_entry(key)
