"""Core types for the zenquery cache engine."""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar, Union

if TYPE_CHECKING:
    from zenquery.cancel import CancelToken

T = TypeVar("T")

# Duration type alias
Duration = str | int | float | timedelta  # "30s", "5m", "200ms", ms or a timedelta

# Query keys are primitives or (nested) sequences of primitives
KeyPrimitive = str | int | float | bool | None
QueryKey = Union[KeyPrimitive, Sequence["QueryKey"]]

# Fetchers receive the cancellation token for the current attempt
Fetcher = Callable[["CancelToken"], Awaitable[T]]

# Custom retry delay: (attempt_index, error) -> delay
RetryDelayFn = Callable[[int, BaseException], Duration]

JsonDict = dict[str, Any]


class QueryStatus(str, Enum):
    """Data state of a query."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class MutationStatus(str, Enum):
    """State of a mutation."""

    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class FetchStatus(str, Enum):
    """Network activity of a query, separate from its data state."""

    IDLE = "idle"
    FETCHING = "fetching"
    PAUSED = "paused"


class RefetchBehavior(str, Enum):
    """When to refetch in response to mount, focus or reconnect."""

    NEVER = "never"
    IF_STALE = "if_stale"
    ALWAYS = "always"

    def should_refetch(self, is_stale: bool) -> bool:
        """Check if a refetch should occur given staleness."""
        if self is RefetchBehavior.NEVER:
            return False
        if self is RefetchBehavior.IF_STALE:
            return is_stale
        return True


class NetworkMode(str, Enum):
    """Whether a fetch is attempted under connectivity constraints."""

    ONLINE = "online"
    ALWAYS = "always"
    OFFLINE_FIRST = "offline_first"


class AppLifecycleState(str, Enum):
    """Foreground/background transitions reported by the host application."""

    RESUMED = "resumed"
    INACTIVE = "inactive"
    PAUSED = "paused"
    HIDDEN = "hidden"
    DETACHED = "detached"

    @property
    def is_background(self) -> bool:
        return self in (
            AppLifecycleState.PAUSED,
            AppLifecycleState.INACTIVE,
            AppLifecycleState.HIDDEN,
        )


@dataclass(frozen=True, slots=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata."""

    data: T
    timestamp: float  # Unix timestamp ms
    cache_time: float | None = None  # Eviction window ms
    invalidated: bool = False  # Stale regardless of age

    def age(self, now: float) -> float:
        return now - self.timestamp

    def is_expired(self, now: float) -> bool:
        if self.cache_time is None:
            return False
        return self.age(now) > self.cache_time

    def is_fresh(self, now: float, stale_time: float) -> bool:
        return not self.invalidated and self.age(now) <= stale_time
