"""Offline mutation queue.

Mutations with a ``mutation_key`` that run while the cache is offline are
stored as ``MutationJob`` records and replayed, in order, through handlers
registered per mutation key once connectivity returns.
"""

from __future__ import annotations

import logging
import secrets
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from zenquery import clock
from zenquery.background import BackgroundTasks
from zenquery.types import JsonDict

if TYPE_CHECKING:
    from zenquery.adapters.base import AsyncStorageAdapter
    from zenquery.cache import QueryCache

logger = logging.getLogger(__name__)

STORAGE_KEY = "mutation_queue"

MutationHandler = Callable[[JsonDict], Awaitable[Any]]


class MutationAction(str, Enum):
    """What a queued mutation does, for handlers that dispatch on it."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CUSTOM = "custom"


def new_job_id() -> str:
    return f"{int(clock.now_ms())}_{secrets.token_hex(4)}"


@dataclass(frozen=True)
class MutationJob:
    """A serialized mutation waiting to be replayed."""

    mutation_key: str
    payload: JsonDict = field(default_factory=dict)
    action: MutationAction = MutationAction.CUSTOM
    id: str = field(default_factory=new_job_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    retry_count: int = 0

    def to_json(self) -> JsonDict:
        return {
            "id": self.id,
            "mutation_key": self.mutation_key,
            "action": self.action.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> MutationJob:
        return cls(
            id=data["id"],
            mutation_key=data["mutation_key"],
            action=MutationAction(data.get("action", MutationAction.CUSTOM.value)),
            payload=dict(data.get("payload") or {}),
            created_at=datetime.fromisoformat(data["created_at"]),
            retry_count=int(data.get("retry_count", 0)),
        )

    def retried(self) -> MutationJob:
        return replace(self, retry_count=self.retry_count + 1)


class MutationQueue:
    """FIFO queue of offline mutations, persisted through a storage adapter.

    Usage:
        queue = client.mutation_queue
        await queue.init(storage)
        queue.register_handlers({"create_post": api.create_post})
        # replays automatically when the cache goes back online
    """

    def __init__(
        self,
        cache: QueryCache,
        *,
        storage: AsyncStorageAdapter | None = None,
        max_retries: int = 3,
    ) -> None:
        self._cache = cache
        self._storage = storage
        self.max_retries = max_retries
        self._queue: deque[MutationJob] = deque()
        self._handlers: dict[str, MutationHandler] = {}
        self._processing = False
        self._tasks = BackgroundTasks("MutationQueue")
        cache.add_network_listener(self._on_network_change)

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def pending_jobs(self) -> list[MutationJob]:
        return list(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._processing

    async def init(self, storage: AsyncStorageAdapter | None = None) -> None:
        """Attach storage and restore any jobs persisted by a previous run."""
        if storage is not None:
            self._storage = storage
        if self._storage is None:
            return
        try:
            data = await self._storage.read(STORAGE_KEY)
            if data is None or not isinstance(data.get("queue"), list):
                return
            jobs = [MutationJob.from_json(item) for item in data["queue"]]
        except Exception as e:
            logger.warning("Failed to restore mutation queue: %r", e)
            return
        self._queue = deque(jobs)
        logger.debug("Restored %d mutations from storage", len(jobs))

    def register_handlers(self, handlers: Mapping[str, MutationHandler]) -> None:
        """Register replay handlers keyed by mutation key."""
        self._handlers.update(handlers)

    async def add(self, job: MutationJob) -> None:
        self._queue.append(job)
        logger.debug("Mutation queued offline: %s (id=%s)", job.mutation_key, job.id)
        await self._persist()

    async def remove(self, job_id: str) -> None:
        self._queue = deque(job for job in self._queue if job.id != job_id)
        await self._persist()

    async def clear(self) -> None:
        self._queue.clear()
        await self._persist()

    async def process(self) -> None:
        """Replay queued jobs in order while online.

        A failing job is retried immediately, up to ``max_retries`` times,
        before it is dropped. Going offline stops processing and leaves the
        failed job at the head of the queue.
        """
        if self._processing or not self._queue or not self._cache.is_online:
            return

        self._processing = True
        logger.debug("Processing offline mutation queue (%d jobs)", len(self._queue))
        try:
            while self._queue and self._cache.is_online:
                job = self._queue[0]
                try:
                    await self._execute(job)
                except Exception:
                    logger.exception("Failed to replay mutation %s", job.id)
                    if not self._cache.is_online:
                        break
                    self._queue.popleft()
                    if job.retry_count < self.max_retries:
                        self._queue.appendleft(job.retried())
                    else:
                        logger.warning(
                            "Dropping mutation %s after %d attempts",
                            job.id,
                            job.retry_count + 1,
                        )
                else:
                    self._queue.popleft()
                await self._persist()
        finally:
            self._processing = False

    async def _execute(self, job: MutationJob) -> None:
        handler = self._handlers.get(job.mutation_key)
        if handler is None:
            logger.warning(
                "No handler registered for mutation key %s, dropping job", job.mutation_key
            )
            return
        logger.debug("Replaying mutation %s", job.mutation_key)
        await handler(job.payload)

    async def _persist(self) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.write(
                STORAGE_KEY, {"queue": [job.to_json() for job in self._queue]}
            )
        except Exception as e:
            logger.warning("Failed to persist mutation queue: %r", e)

    def _on_network_change(self, online: bool) -> None:
        if online:
            self._tasks.spawn(self.process(), "replay")

    async def flush(self) -> None:
        """Wait for background persistence and replay."""
        await self._tasks.wait()

    def dispose(self) -> None:
        self._cache.remove_network_listener(self._on_network_change)
        self._tasks.cancel_all()
