"""Tests for Query fetching, staleness, retries and control."""

import asyncio

import pytest
from conftest import FakeClock, Feed, settle

from zenquery import (
    AppLifecycleState,
    CancelToken,
    FetchCancelledError,
    FetchStatus,
    OfflineError,
    Query,
    QueryClient,
    QueryConfig,
    QueryDisabledError,
    QueryDisposedError,
    QueryPausedError,
    QueryStatus,
    RefetchBehavior,
)

NO_MOUNT = QueryConfig(refetch_on_mount=RefetchBehavior.NEVER)


class Counter:
    """Fetcher returning a sequence of values and counting calls."""

    def __init__(self, *values: object, delay: float = 0) -> None:
        self.values = list(values)
        self.calls = 0
        self.delay = delay
        self.tokens: list[CancelToken] = []

    async def __call__(self, token: CancelToken) -> object:
        self.tokens.append(token)
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self.values[min(self.calls, len(self.values)) - 1]
        if isinstance(value, Exception):
            raise value
        return value


class TestQueryFetch:
    """Basic fetch behavior."""

    async def test_fetch_sets_data_and_status(self, client: QueryClient) -> None:
        """Test a successful fetch updates every signal."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher, config=NO_MOUNT)
        statuses: list[QueryStatus] = []
        query.status.subscribe(statuses.append)

        assert await query.fetch() == "v1"

        assert query.data.value == "v1"
        assert query.status.value is QueryStatus.SUCCESS
        assert query.fetch_status.value is FetchStatus.IDLE
        assert query.error.value is None
        assert not query.is_loading.value
        assert statuses == [QueryStatus.LOADING, QueryStatus.SUCCESS]
        assert client.get_query_data("todos") == "v1"

    async def test_concurrent_fetches_share_one_call(self, client: QueryClient) -> None:
        """Test concurrent fetch() calls are deduplicated."""
        fetcher = Counter("v1", delay=0.01)
        query = Query("todos", fetcher, config=NO_MOUNT)

        results = await asyncio.gather(query.fetch(), query.fetch(), query.fetch())

        assert results == ["v1", "v1", "v1"]
        assert fetcher.calls == 1

    async def test_queries_with_same_key_share_one_call(self, client: QueryClient) -> None:
        """Test two queries on one key deduplicate through the cache."""
        fetcher = Counter("shared", delay=0.01)
        first = Query(["user", 1], fetcher, config=NO_MOUNT)
        second = Query(("user", 1), fetcher, config=NO_MOUNT)

        await asyncio.gather(first.fetch(), second.fetch())

        assert fetcher.calls == 1
        assert first.data.value == second.data.value == "shared"

    async def test_fresh_data_is_not_refetched(
        self, client: QueryClient, fake_clock: FakeClock
    ) -> None:
        """Test fetch() returns fresh data without calling the fetcher."""
        fetcher = Counter("v1", "v2")
        query = Query("todos", fetcher, config=NO_MOUNT.copy_with(stale_time="30s"))

        await query.fetch()
        fake_clock.advance(29_000)
        assert not query.is_stale
        assert await query.fetch() == "v1"
        assert fetcher.calls == 1

        fake_clock.advance(1_000)
        assert not query.is_stale

        fake_clock.advance(1)
        assert query.is_stale
        assert await query.fetch() == "v2"
        assert fetcher.calls == 2

    async def test_force_ignores_freshness(self, client: QueryClient) -> None:
        """Test refetch() always calls the fetcher."""
        fetcher = Counter("v1", "v2")
        query = Query("todos", fetcher, config=NO_MOUNT.copy_with(stale_time="1h"))

        await query.fetch()
        assert await query.refetch() == "v2"
        assert fetcher.calls == 2

    async def test_error_keeps_previous_data(self, client: QueryClient) -> None:
        """Test a failed refetch records the error and keeps the data."""
        boom = RuntimeError("boom")
        query = Query("todos", Counter("v1", boom), config=NO_MOUNT)

        await query.fetch()
        with pytest.raises(RuntimeError, match="boom"):
            await query.refetch()

        assert query.status.value is QueryStatus.ERROR
        assert query.error.value is boom
        assert query.data.value == "v1"
        assert not query.is_loading.value

    async def test_is_refetching(self, client: QueryClient) -> None:
        """Test is_refetching is set only while data is already shown."""
        query = Query("todos", Counter("v1", "v2", delay=0.01), config=NO_MOUNT)
        await query.fetch()

        task = asyncio.create_task(query.refetch())
        await settle()
        assert query.is_refetching
        assert query.status.value is QueryStatus.SUCCESS
        await task
        assert not query.is_refetching


class TestQueryRetry:
    """Retry and backoff behavior."""

    async def test_retries_then_fails(self, client: QueryClient) -> None:
        """Test the fetcher runs retry_count + 1 times before failing."""
        fetcher = Counter(RuntimeError("down"))
        config = NO_MOUNT.copy_with(
            retry_count=2, retry_delay="1ms", retry_with_jitter=False
        )
        query = Query("todos", fetcher, config=config)

        with pytest.raises(RuntimeError, match="down"):
            await query.fetch()

        assert fetcher.calls == 3
        assert query.status.value is QueryStatus.ERROR

    async def test_retry_recovers(self, client: QueryClient) -> None:
        """Test a transient failure is retried transparently."""
        fetcher = Counter(RuntimeError("flaky"), RuntimeError("flaky"), "ok")
        config = NO_MOUNT.copy_with(retry_count=3, retry_delay="1ms")
        query = Query("todos", fetcher, config=config)

        assert await query.fetch() == "ok"
        assert fetcher.calls == 3
        assert query.error.value is None

    async def test_exponential_backoff_waits(self, client: QueryClient) -> None:
        """Test retries wait retry_delay * 2**attempt between attempts."""
        fetcher = Counter(RuntimeError("down"))
        config = NO_MOUNT.copy_with(
            retry_count=2, retry_delay="20ms", retry_with_jitter=False
        )
        query = Query("todos", fetcher, config=config)
        loop = asyncio.get_running_loop()

        started = loop.time()
        with pytest.raises(RuntimeError):
            await query.fetch()

        # 20ms + 40ms
        assert loop.time() - started >= 0.055

    async def test_custom_retry_delay_fn(self, client: QueryClient) -> None:
        """Test retry_delay_fn receives the attempt index and error."""
        attempts: list[int] = []

        def delay_fn(attempt: int, _error: BaseException) -> int:
            attempts.append(attempt)
            return 1

        config = NO_MOUNT.copy_with(retry_count=2, retry_delay_fn=delay_fn)
        query = Query("todos", Counter(RuntimeError("down")), config=config)

        with pytest.raises(RuntimeError):
            await query.fetch()
        assert attempts == [0, 1]


class TestQueryInvalidation:
    """Invalidation and background refetch."""

    async def test_invalidate_refetches(self, client: QueryClient) -> None:
        """Test invalidate() marks stale synchronously and refetches."""
        fetcher = Counter("v1", "v2")
        query = Query("todos", fetcher, config=QueryConfig(stale_time=0))

        assert await query.fetch() == "v1"
        query.invalidate()
        assert query.is_stale

        await query.flush()
        assert query.data.value == "v2"

    async def test_invalidate_disabled_does_not_fetch(self, client: QueryClient) -> None:
        """Test a disabled query is only marked stale."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher, enabled=False)
        query.invalidate()
        await query.flush()
        assert fetcher.calls == 0
        assert query.is_stale

    async def test_background_refetch_interval(self, client: QueryClient) -> None:
        """Test enable_background_refetch polls on refetch_interval."""
        fetcher = Counter("v1")
        config = NO_MOUNT.copy_with(
            enable_background_refetch=True, refetch_interval="10ms"
        )
        query = Query("todos", fetcher, config=config)
        await query.fetch()

        await asyncio.sleep(0.06)
        assert fetcher.calls >= 3
        query.dispose()


class TestQueryMount:
    """Initial data, placeholders and mount fetches."""

    async def test_mount_fetches_without_data(self, client: QueryClient) -> None:
        """Test a new query fetches on mount by default."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher)
        await query.flush()
        assert fetcher.calls == 1
        assert query.data.value == "v1"

    async def test_mount_never(self, client: QueryClient) -> None:
        """Test refetch_on_mount=NEVER skips the mount fetch."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher, config=NO_MOUNT)
        await query.flush()
        assert fetcher.calls == 0
        assert query.status.value is QueryStatus.IDLE

    async def test_initial_data_is_stale(self, client: QueryClient) -> None:
        """Test initial_data is shown and refreshed on mount."""
        fetcher = Counter("server")
        query = Query("todos", fetcher, initial_data="initial")
        assert query.data.value == "initial"
        assert query.status.value is QueryStatus.SUCCESS
        assert query.is_stale

        await query.flush()
        assert query.data.value == "server"

    async def test_placeholder_data(self, client: QueryClient) -> None:
        """Test placeholder data is shown but not treated as real data."""
        query = Query(
            "todos",
            Counter(["a"]),
            config=NO_MOUNT.copy_with(placeholder_data=[]),
        )
        assert query.data.value == []
        assert query.is_placeholder_data.value
        assert not query.has_data
        assert query.status.value is QueryStatus.SUCCESS

        await query.fetch()
        assert query.data.value == ["a"]
        assert not query.is_placeholder_data.value

    async def test_reset(self, client: QueryClient) -> None:
        """Test reset() returns to the constructed state."""
        query = Query("todos", Counter("v1"), config=NO_MOUNT)
        await query.fetch()
        query.reset()
        assert query.data.value is None
        assert query.status.value is QueryStatus.IDLE
        assert query.is_stale


class TestQueryControl:
    """Pause, resume, enable and disposal."""

    async def test_pause_cancels_in_flight_fetch(self, client: QueryClient) -> None:
        """Test pause() cancels the token of the running fetch."""
        release = asyncio.Event()

        async def fetcher(token: CancelToken) -> str:
            token.on_cancel(release.set)
            await release.wait()
            token.throw_if_cancelled()
            return "never"

        query = Query("todos", fetcher, config=NO_MOUNT)
        task = asyncio.create_task(query.fetch())
        await settle()

        query.pause()

        with pytest.raises(FetchCancelledError):
            await task
        assert query.is_paused
        assert query.status.value is QueryStatus.IDLE
        assert query.fetch_status.value is FetchStatus.PAUSED
        assert query.data.value is None

    async def test_paused_fetch(self, client: QueryClient) -> None:
        """Test a paused query refuses non-forced fetches."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher, config=NO_MOUNT)
        query.pause()

        with pytest.raises(QueryPausedError):
            await query.fetch()
        assert await query.fetch(force=True) == "v1"

        query.resume()
        assert not query.is_paused
        assert query.fetch_status.value is FetchStatus.IDLE

    async def test_pause_then_resume_keeps_state(self, client: QueryClient) -> None:
        """Test pause() then resume() leaves data and status untouched."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher, config=NO_MOUNT)
        await query.fetch()
        before = (query.data.value, query.status.value)

        query.pause()
        assert query.fetch_status.value is FetchStatus.PAUSED
        query.resume()
        await query.flush()

        assert (query.data.value, query.status.value) == before
        assert before == ("v1", QueryStatus.SUCCESS)
        assert query.fetch_status.value is FetchStatus.IDLE
        assert fetcher.calls == 1

    async def test_resume_refetches_when_configured(
        self, client: QueryClient, fake_clock: FakeClock
    ) -> None:
        """Test resume() refetches stale data with refetch_on_resume."""
        fetcher = Counter("v1", "v2")
        config = NO_MOUNT.copy_with(refetch_on_resume=True, stale_time="1s")
        query = Query("todos", fetcher, config=config)
        await query.fetch()

        query.pause()
        fake_clock.advance(5_000)
        query.resume()
        await query.flush()
        assert query.data.value == "v2"

    async def test_disabled_query(self, client: QueryClient) -> None:
        """Test disabled queries reject fetches until enabled."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher, enabled=False)
        await query.flush()
        assert fetcher.calls == 0

        with pytest.raises(QueryDisabledError):
            await query.fetch()

        query.enabled.value = True
        await query.flush()
        assert query.data.value == "v1"

    async def test_lifecycle_auto_pause(self, client: QueryClient) -> None:
        """Test auto_pause_on_background follows the app lifecycle."""
        query = Query(
            "todos",
            Counter("v1"),
            config=NO_MOUNT.copy_with(auto_pause_on_background=True),
        )
        client.cache.notify_lifecycle(AppLifecycleState.PAUSED)
        assert query.is_paused
        client.cache.notify_lifecycle("resumed")
        assert not query.is_paused

    async def test_dispose(self, client: QueryClient) -> None:
        """Test a disposed query detaches but keeps cached data."""
        query = Query("todos", Counter("v1"), config=NO_MOUNT)
        await query.fetch()
        query.dispose()

        assert query.is_disposed
        assert client.cache.get_query("todos") is None
        assert client.get_query_data("todos") == "v1"
        # Data still returned; a fresh disposed query raises
        assert await query.fetch() == "v1"

        empty = Query("other", Counter("x"), config=NO_MOUNT)
        empty.dispose()
        with pytest.raises(QueryDisposedError):
            await empty.fetch()


class TestQueryCacheSync:
    """Queries observing the same cache entry."""

    async def test_set_data_reaches_other_observer(self, client: QueryClient) -> None:
        """Test set_data() writes through the cache to registered observers."""
        writer = Query("todos", Counter("v1"), config=NO_MOUNT)
        reader = Query("todos", Counter("v1"), config=NO_MOUNT)

        writer.set_data(["local"])

        assert reader.data.value == ["local"]
        assert client.get_query_data("todos") == ["local"]

    async def test_existing_entry_used_on_creation(self, client: QueryClient) -> None:
        """Test a new query starts from fresh cached data without fetching."""
        client.set_query_data("todos", lambda _old: ["cached"])
        fetcher = Counter("server")
        query = Query("todos", fetcher, config=QueryConfig(stale_time="1m"))
        await query.flush()

        assert query.data.value == ["cached"]
        assert fetcher.calls == 0


class TestQueryOffline:
    """Network modes."""

    async def test_offline_fetch_pauses_and_reconnect_refetches(
        self, client: QueryClient, feed: Feed
    ) -> None:
        """Test offline fetches pause and resume automatically on reconnect."""
        fetcher = Counter("v1")
        query = Query("todos", fetcher, config=NO_MOUNT)
        client.set_network_stream(feed.stream())

        feed.push(False)
        await settle()
        assert not client.cache.is_online

        with pytest.raises(OfflineError):
            await query.fetch()
        assert query.fetch_status.value is FetchStatus.PAUSED
        assert fetcher.calls == 0

        feed.push(True)
        await settle()
        await client.cache.flush()

        assert fetcher.calls == 1
        assert query.data.value == "v1"
        assert query.fetch_status.value is FetchStatus.IDLE

    async def test_offline_returns_stale_data(
        self, client: QueryClient, fake_clock: FakeClock
    ) -> None:
        """Test offline fetches fall back to existing data."""
        fetcher = Counter("v1", "v2")
        query = Query("todos", fetcher, config=NO_MOUNT.copy_with(stale_time="1s"))
        await query.fetch()

        client.cache.set_online(False)
        fake_clock.advance(10_000)
        assert await query.fetch() == "v1"
        assert fetcher.calls == 1

        client.cache.set_online(True)
        await client.cache.flush()
        assert query.data.value == "v2"

    async def test_always_mode_ignores_connectivity(self, client: QueryClient) -> None:
        """Test network_mode=always fetches while offline."""
        client.cache.set_online(False)
        query = Query(
            "todos", Counter("v1"), config=NO_MOUNT.copy_with(network_mode="always")
        )
        assert await query.fetch() == "v1"

    async def test_offline_first_uses_cache(self, client: QueryClient) -> None:
        """Test offline_first serves cached data without pausing."""
        query = Query(
            "todos",
            Counter("v1"),
            config=NO_MOUNT.copy_with(network_mode="offline_first", stale_time=0),
        )
        await query.fetch()
        client.cache.set_online(False)

        assert await query.fetch() == "v1"
        assert query.fetch_status.value is FetchStatus.IDLE

    async def test_offline_first_without_cache_fails(self, client: QueryClient) -> None:
        """Test offline_first without data fails like online mode."""
        client.cache.set_online(False)
        query = Query(
            "todos",
            Counter("v1"),
            config=NO_MOUNT.copy_with(network_mode="offline_first"),
        )
        with pytest.raises(OfflineError):
            await query.fetch()


class TestSelectedQuery:
    """Derived queries."""

    async def test_select_projects_data(self, client: QueryClient) -> None:
        """Test select() maps the parent's data."""
        query = Query("user", Counter({"name": "Ada", "age": 36}), config=NO_MOUNT)
        name = query.select(lambda user: user["name"])

        await query.fetch()
        assert name.data.value == "Ada"
        assert name.status.value is QueryStatus.SUCCESS

    async def test_selector_runs_on_identity_change_only(
        self, client: QueryClient
    ) -> None:
        """Test the selector is skipped when the parent data is unchanged."""
        calls: list[object] = []
        user = {"name": "Ada"}
        query = Query("user", Counter(user), config=NO_MOUNT)

        def selector(value: dict) -> str:
            calls.append(value)
            return value["name"]

        name = query.select(selector)
        await query.fetch()
        query.status.refresh()
        query.data.refresh()
        assert len(calls) == 1
        assert name.data.value == "Ada"

    async def test_selector_error_is_local(self, client: QueryClient) -> None:
        """Test selector errors stay on the selection."""
        query = Query("user", Counter({"name": "Ada"}), config=NO_MOUNT)
        broken = query.select(lambda user: user["missing"])

        await query.fetch()
        assert broken.status.value is QueryStatus.ERROR
        assert isinstance(broken.error.value, KeyError)
        assert query.status.value is QueryStatus.SUCCESS

    async def test_dispose_selection_keeps_parent(self, client: QueryClient) -> None:
        """Test disposing a selection leaves the parent alive."""
        query = Query("user", Counter({"name": "Ada"}), config=NO_MOUNT)
        name = query.select(lambda user: user["name"])
        name.dispose()

        await query.fetch()
        assert not query.is_disposed
        assert name.data.value is None
