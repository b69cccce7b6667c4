"""Tests for QueryConfig."""

import pytest

from zenquery import NetworkMode, QueryConfig, RefetchBehavior
from zenquery.config import DEFAULT_CONFIG


class TestQueryConfigDefaults:
    """Tests for library defaults."""

    def test_defaults(self) -> None:
        """Test the documented default values."""
        config = QueryConfig()
        assert config.stale_time_ms == 30_000
        assert config.cache_time_ms == 300_000
        assert config.retry_count == 3
        assert config.retry_delay_ms == 200
        assert config.max_retry_delay_ms == 30_000
        assert config.refetch_on_mount is RefetchBehavior.IF_STALE
        assert config.refetch_on_focus is RefetchBehavior.NEVER
        assert config.refetch_on_reconnect is RefetchBehavior.IF_STALE
        assert config.network_mode is NetworkMode.ONLINE
        assert config.persist is False
        assert config.refetch_interval_ms is None

    def test_string_enums_coerced(self) -> None:
        """Test enum fields accept their string values."""
        config = QueryConfig(refetch_on_mount="always", network_mode="offline_first")  # type: ignore[arg-type]
        assert config.refetch_on_mount is RefetchBehavior.ALWAYS
        assert config.network_mode is NetworkMode.OFFLINE_FIRST


class TestQueryConfigMerge:
    """Tests for merge and copy_with."""

    def test_merge_only_explicit_fields(self) -> None:
        """Test that an override only replaces fields it set."""
        base = QueryConfig(stale_time="1m", retry_count=1)
        merged = base.merge(QueryConfig(retry_count=5))
        assert merged.stale_time == "1m"
        assert merged.retry_count == 5

    def test_merge_none(self) -> None:
        """Test merging None returns the base config."""
        assert DEFAULT_CONFIG.merge(None) is DEFAULT_CONFIG

    def test_override_back_to_default_value(self) -> None:
        """Test an explicit value equal to the default still wins."""
        base = QueryConfig(retry_count=5)
        assert base.merge(QueryConfig(retry_count=3)).retry_count == 3

    def test_copy_with(self) -> None:
        """Test copy_with keeps other explicit fields."""
        config = QueryConfig(stale_time="10s").copy_with(persist=True)
        assert config.stale_time == "10s"
        assert config.persist is True
        assert config.explicit_fields == {"stale_time", "persist"}


class TestQueryConfigValidation:
    """Tests for invalid configurations."""

    def test_negative_retry_count(self) -> None:
        """Test negative retry counts are rejected."""
        with pytest.raises(ValueError, match="retry_count"):
            QueryConfig(retry_count=-1)

    def test_bad_duration(self) -> None:
        """Test malformed durations are rejected."""
        with pytest.raises(ValueError):
            QueryConfig(stale_time="soon")

    def test_multiplier_below_one(self) -> None:
        """Test the backoff multiplier must be at least 1."""
        with pytest.raises(ValueError, match="multiplier"):
            QueryConfig(retry_backoff_multiplier=0.5)

    def test_zero_refetch_interval(self) -> None:
        """Test refetch_interval must be positive."""
        with pytest.raises(ValueError, match="refetch_interval"):
            QueryConfig(refetch_interval=0)
