"""Minimal dependency scope that queries can be bound to."""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from zenquery.config import QueryConfig
from zenquery.errors import InvalidStateError
from zenquery.types import Duration, Fetcher, QueryKey

if TYPE_CHECKING:
    from zenquery.client import QueryClient
    from zenquery.query import Query

T = TypeVar("T")

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


@runtime_checkable
class ScopeProtocol(Protocol):
    """What queries need from a scope: identity and a disposal hook."""

    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...

    def register_disposer(self, disposer: Callable[[], object]) -> None: ...


class Scope:
    """A named registry of instances with hierarchical disposal.

    Disposing a scope disposes its children first, then runs its disposers
    in reverse registration order. Queries created with ``scope=`` register
    a disposer, so they are disposed together with the scope.

    Usage:
        scope = Scope("checkout")
        cart = put_query(scope, "cart", load_cart)
        scope.dispose()  # disposes cart
    """

    def __init__(self, name: str | None = None, parent: Scope | None = None) -> None:
        self._id = f"scope-{next(_ids)}"
        self._name = name or self._id
        self.parent = parent
        self.children: list[Scope] = []
        self._instances: dict[tuple[type, str | None], Any] = {}
        self._disposers: list[Callable[[], object]] = []
        self._disposed = False
        if parent is not None:
            parent.children.append(self)

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def put(self, instance: T, *, tag: str | None = None) -> T:
        """Register an instance under its type (and optional tag)."""
        if self._disposed:
            raise InvalidStateError(f"Cannot register in a disposed scope: {self._name}")
        self._instances[(type(instance), tag)] = instance
        return instance

    def find(self, type_: type[T], *, tag: str | None = None) -> T | None:
        """Look up an instance here, then in the parent scopes."""
        if self._disposed:
            return None
        for (registered_type, registered_tag), instance in self._instances.items():
            if registered_tag == tag and issubclass(registered_type, type_):
                return instance
        if self.parent is not None:
            return self.parent.find(type_, tag=tag)
        return None

    def create_child(self, name: str | None = None) -> Scope:
        return Scope(name, parent=self)

    def register_disposer(self, disposer: Callable[[], object]) -> None:
        if self._disposed:
            raise InvalidStateError(
                f"Cannot register disposer on a disposed scope: {self._name}"
            )
        self._disposers.append(disposer)

    def dispose(self) -> None:
        if self._disposed:
            return
        logger.debug("Disposing scope %s", self._name)

        for child in list(self.children):
            child.dispose()

        self._disposed = True
        disposers, self._disposers = self._disposers, []
        for disposer in reversed(disposers):
            try:
                disposer()
            except Exception as e:
                logger.warning("Error executing disposer in scope %s: %r", self._name, e)

        self._instances.clear()
        if self.parent is not None and self in self.parent.children:
            self.parent.children.remove(self)

    def __repr__(self) -> str:
        return f"Scope({self._name!r}, id={self._id!r})"


def put_query(
    scope: Scope,
    key: QueryKey,
    fetcher: Fetcher[T],
    *,
    config: QueryConfig[T] | None = None,
    initial_data: T | None = None,
    client: QueryClient | None = None,
    tag: str | None = None,
) -> Query[T]:
    """Create a query bound to scope and register it there."""
    from zenquery.query import Query

    query = Query(
        key,
        fetcher,
        config=config,
        client=client,
        initial_data=initial_data,
        scope=scope,
    )
    scope.put(query, tag=tag if tag is not None else query.key)
    return query


def put_cached_query(
    scope: Scope,
    key: QueryKey,
    fetcher: Fetcher[T],
    *,
    stale_time: Duration = "5m",
    initial_data: T | None = None,
    client: QueryClient | None = None,
) -> Query[T]:
    """``put_query`` with only a stale time to configure."""
    return put_query(
        scope,
        key,
        fetcher,
        config=QueryConfig(stale_time=stale_time),
        initial_data=initial_data,
        client=client,
    )
