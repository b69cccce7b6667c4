"""Cooperative cancellation for fetch operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from zenquery.errors import FetchCancelledError

logger = logging.getLogger(__name__)


class CancelToken:
    """A token used to signal cancellation to async operations.

    Fetchers receive one per attempt. They may poll ``is_cancelled``, call
    ``throw_if_cancelled()``, or register cleanup with ``on_cancel`` (for
    example to close an HTTP client mid-request).

    Usage:
        async def fetch_user(token: CancelToken) -> dict:
            token.on_cancel(client.close)
            response = await client.get("/user")
            token.throw_if_cancelled()
            return response.json()
    """

    __slots__ = ("_event", "_is_cancelled", "_listeners", "message", "reason")

    def __init__(self, message: str | None = None) -> None:
        self.message = message
        self.reason: str | None = None
        self._is_cancelled = False
        self._listeners: list[Callable[[], object]] = []
        self._event: asyncio.Event | None = None

    @property
    def is_cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._is_cancelled

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation. Listeners run once; later calls are no-ops."""
        if self._is_cancelled:
            return
        self._is_cancelled = True
        self.reason = reason or self.message

        if self.reason is not None:
            logger.debug("CancelToken cancelled: %s", self.reason)

        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            self._invoke(listener)

        if self._event is not None:
            self._event.set()

    def on_cancel(self, callback: Callable[[], object]) -> None:
        """Register a callback invoked when the token is cancelled.

        If the token is already cancelled, the callback runs immediately.
        """
        if self._is_cancelled:
            self._invoke(callback)
        else:
            self._listeners.append(callback)

    def throw_if_cancelled(self) -> None:
        """Raise FetchCancelledError if cancellation was requested."""
        if self._is_cancelled:
            raise FetchCancelledError(self.reason or "Operation cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first.

        Returns True if the token was cancelled before or during the wait.
        """
        if self._is_cancelled:
            return True
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return self._is_cancelled
        return True

    @staticmethod
    def _invoke(callback: Callable[[], object]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Error in CancelToken listener")

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self._is_cancelled}, message={self.message!r})"
