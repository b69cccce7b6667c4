"""Exceptions raised by the zenquery engine."""


class ZenQueryError(Exception):
    """Base class for all engine errors."""


class OfflineError(ZenQueryError):
    """A fetch cannot proceed because the device is offline."""

    def __init__(self, message: str = "No internet connection") -> None:
        super().__init__(message)


class QueryPausedError(OfflineError):
    """A non-forced fetch was attempted on a paused query with no data."""

    def __init__(self, message: str = "Query is paused") -> None:
        super().__init__(message)


class QueryDisabledError(ZenQueryError):
    """A non-forced fetch was attempted on a disabled query with no data."""


class FetchCancelledError(ZenQueryError):
    """Raised inside a fetcher that observed its cancel token.

    The engine treats it as an abandoned fetch, never as a query error.
    """

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class InvalidStateError(ZenQueryError):
    """An operation was attempted on an object in the wrong state."""


class QueryDisposedError(InvalidStateError):
    """The query was disposed."""


class MutationDisposedError(InvalidStateError):
    """The mutation was disposed."""


class StorageError(ZenQueryError):
    """A storage backend request failed."""


class QueueError(ZenQueryError):
    """A mutation could not be queued for offline replay."""
