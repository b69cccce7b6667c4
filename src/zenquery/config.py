"""Query configuration.

All fields have concrete library defaults. Fields passed explicitly to the
constructor are remembered, so ``base.merge(override)`` only replaces the
fields ``override`` actually set:

    defaults = QueryConfig(stale_time="1m", retry_count=1)
    config = defaults.merge(QueryConfig(retry_count=5))
    config.stale_time   # "1m" (inherited)
    config.retry_count  # 5
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from zenquery.duration import parse_duration
from zenquery.types import Duration, NetworkMode, RefetchBehavior, RetryDelayFn

if TYPE_CHECKING:
    from zenquery.adapters.base import AsyncStorageAdapter

T = TypeVar("T")


class _Unset:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()

_DEFAULTS: dict[str, Any] = {
    "stale_time": "30s",
    "cache_time": "5m",
    "refetch_on_mount": RefetchBehavior.IF_STALE,
    "refetch_on_focus": RefetchBehavior.NEVER,
    "refetch_on_reconnect": RefetchBehavior.IF_STALE,
    "refetch_on_resume": False,
    "refetch_interval": None,
    "enable_background_refetch": False,
    "auto_pause_on_background": False,
    "retry_count": 3,
    "retry_delay": "200ms",
    "max_retry_delay": "30s",
    "retry_backoff_multiplier": 2.0,
    "exponential_backoff": True,
    "retry_with_jitter": True,
    "retry_delay_fn": None,
    "network_mode": NetworkMode.ONLINE,
    "persist": False,
    "to_json": None,
    "from_json": None,
    "storage": None,
    "placeholder_data": None,
}

_REFETCH_FIELDS = ("refetch_on_mount", "refetch_on_focus", "refetch_on_reconnect")


@dataclass(frozen=True)
class QueryConfig(Generic[T]):
    """Configuration for a query."""

    # Freshness
    stale_time: Duration = UNSET
    cache_time: Duration = UNSET

    # Smart refetching
    refetch_on_mount: RefetchBehavior = UNSET
    refetch_on_focus: RefetchBehavior = UNSET
    refetch_on_reconnect: RefetchBehavior = UNSET
    refetch_on_resume: bool = UNSET
    refetch_interval: Duration | None = UNSET
    enable_background_refetch: bool = UNSET
    auto_pause_on_background: bool = UNSET

    # Retries
    retry_count: int = UNSET
    retry_delay: Duration = UNSET
    max_retry_delay: Duration = UNSET
    retry_backoff_multiplier: float = UNSET
    exponential_backoff: bool = UNSET
    retry_with_jitter: bool = UNSET
    retry_delay_fn: RetryDelayFn | None = UNSET

    network_mode: NetworkMode = UNSET

    # Persistence
    persist: bool = UNSET
    to_json: Callable[[T], Any] | None = UNSET
    from_json: Callable[[Any], T] | None = UNSET
    storage: AsyncStorageAdapter | None = UNSET

    placeholder_data: T | None = UNSET

    _explicit: frozenset[str] = field(
        default=frozenset(), init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        explicit = set()
        for name, default in _DEFAULTS.items():
            value = getattr(self, name)
            if value is UNSET:
                object.__setattr__(self, name, default)
            else:
                explicit.add(name)
        object.__setattr__(self, "_explicit", frozenset(explicit))

        for name in _REFETCH_FIELDS:
            object.__setattr__(self, name, RefetchBehavior(getattr(self, name)))
        object.__setattr__(self, "network_mode", NetworkMode(self.network_mode))

        self._validate()

    def _validate(self) -> None:
        if self.retry_count < 0:
            raise ValueError("retry_count must not be negative")
        if self.retry_backoff_multiplier < 1:
            raise ValueError("retry_backoff_multiplier must be >= 1")
        # Parsing raises ValueError for malformed or negative durations
        parse_duration(self.stale_time)
        parse_duration(self.cache_time)
        parse_duration(self.retry_delay)
        parse_duration(self.max_retry_delay)
        if self.refetch_interval is not None and parse_duration(self.refetch_interval) <= 0:
            raise ValueError("refetch_interval must be positive")

    # -------------------------------------------------------------------------
    # Parsed durations (milliseconds)
    # -------------------------------------------------------------------------

    @property
    def stale_time_ms(self) -> float:
        return parse_duration(self.stale_time)

    @property
    def cache_time_ms(self) -> float:
        return parse_duration(self.cache_time)

    @property
    def retry_delay_ms(self) -> float:
        return parse_duration(self.retry_delay)

    @property
    def max_retry_delay_ms(self) -> float:
        return parse_duration(self.max_retry_delay)

    @property
    def refetch_interval_ms(self) -> float | None:
        if self.refetch_interval is None:
            return None
        return parse_duration(self.refetch_interval)

    @property
    def explicit_fields(self) -> frozenset[str]:
        """Names of the fields that were set explicitly."""
        return self._explicit

    # -------------------------------------------------------------------------
    # Combinators
    # -------------------------------------------------------------------------

    def merge(self, other: QueryConfig[Any] | None) -> QueryConfig[T]:
        """Merge with another config; other's explicit fields take precedence."""
        if other is None:
            return self

        values = {name: getattr(self, name) for name in self._explicit}
        values.update({name: getattr(other, name) for name in other._explicit})
        return QueryConfig(**values)

    def copy_with(self, **changes: Any) -> QueryConfig[T]:
        """Create a copy with specific fields overridden."""
        values = {name: getattr(self, name) for name in self._explicit}
        values.update(changes)
        return QueryConfig(**values)


DEFAULT_CONFIG: QueryConfig[Any] = QueryConfig()

__all__ = ["DEFAULT_CONFIG", "UNSET", "QueryConfig"]
