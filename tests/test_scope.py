"""Tests for Scope and scoped query helpers."""

import pytest

from zenquery import (
    CancelToken,
    InvalidStateError,
    Query,
    QueryClient,
    Scope,
    ScopeProtocol,
    put_cached_query,
    put_query,
)


async def load(token: CancelToken) -> list[str]:
    return ["a"]


class Repository:
    """Sample dependency stored in a scope."""


class TestScope:
    """Registry and disposal order."""

    def test_satisfies_protocol(self) -> None:
        """Test Scope implements the protocol queries depend on."""
        assert isinstance(Scope(), ScopeProtocol)

    def test_put_and_find(self) -> None:
        """Test instances are found by type, tag and through parents."""
        root = Scope("root")
        repo = root.put(Repository())
        tagged = root.put(Repository(), tag="archive")
        child = root.create_child("child")

        assert child.find(Repository) is repo
        assert child.find(Repository, tag="archive") is tagged
        assert child.find(str) is None

    def test_dispose_order(self) -> None:
        """Test children dispose first, then disposers in reverse order."""
        calls: list[str] = []
        root = Scope("root")
        child = root.create_child("child")
        root.register_disposer(lambda: calls.append("root-1"))
        root.register_disposer(lambda: calls.append("root-2"))
        child.register_disposer(lambda: calls.append("child"))

        root.dispose()

        assert calls == ["child", "root-2", "root-1"]
        assert root.is_disposed
        assert child.is_disposed
        assert root.children == []

    def test_disposer_errors_do_not_stop_disposal(self) -> None:
        """Test a failing disposer is logged and the rest still run."""
        calls: list[str] = []
        scope = Scope()

        def broken() -> None:
            raise RuntimeError("boom")

        scope.register_disposer(lambda: calls.append("first"))
        scope.register_disposer(broken)
        scope.dispose()
        assert calls == ["first"]

    def test_disposed_scope_rejects_registration(self) -> None:
        """Test registering on a disposed scope raises."""
        scope = Scope("gone")
        scope.dispose()
        with pytest.raises(InvalidStateError):
            scope.register_disposer(lambda: None)
        with pytest.raises(InvalidStateError):
            scope.put(Repository())
        assert scope.find(Repository) is None


class TestScopedQueries:
    """put_query and put_cached_query."""

    async def test_put_query(self, client: QueryClient) -> None:
        """Test put_query registers the query in the scope and the cache."""
        scope = Scope("screen")
        query = put_query(scope, "todos", load)

        assert scope.find(Query, tag="todos") is query
        assert client.cache.get_scope_queries(scope.id) == [query]

        scope.dispose()
        assert query.is_disposed

    async def test_put_cached_query(self, client: QueryClient) -> None:
        """Test put_cached_query sets the stale time."""
        scope = Scope("screen")
        query = put_cached_query(scope, "todos", load, stale_time="10m")

        assert query.config.stale_time_ms == 600_000
        await query.flush()
        assert query.data.value == ["a"]

    async def test_auto_dispose_disabled(self, client: QueryClient) -> None:
        """Test auto_dispose=False keeps the query alive after the scope."""
        scope = Scope("screen")
        query = Query("todos", load, scope=scope, auto_dispose=False)
        scope.dispose()
        assert not query.is_disposed
        query.dispose()
