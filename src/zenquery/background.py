"""Fire-and-forget task tracking."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Keeps references to background tasks and logs their failures.

    Background work (auto-refetch, persistence, replay) is best-effort: a
    failure is logged at warning level and never raised to the caller.
    """

    def __init__(self, owner: str = "") -> None:
        self._owner = owner
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(
        self, coro: Coroutine[Any, Any, Any], description: str
    ) -> asyncio.Task[Any] | None:
        """Schedule coro on the running loop. Returns None without a loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, skipped %s", description)
            return None

        async def run() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("%s%s failed: %r", self._prefix, description, e)

        task = loop.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def wait(self) -> None:
        """Wait for every task currently scheduled (used by tests and flush)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def _prefix(self) -> str:
        return f"[{self._owner}] " if self._owner else ""
