from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .init_manager import InitStatus

logger = logging.getLogger(__name__)

MAX_RETRY_COUNT = 2
QUEUE_RETRY_DELAY_S = 15.0
BACKLOG_WARNING_SIZE = 100

_WAITING_STATES = {"initializing", "retrying"}


@dataclass
class EmbeddingQueueItem:
    id: str
    text: str
    project_id: str | None
    type: str
    created_at: int
    retry_count: int = 0


class EmbeddingQueue:
    """In-memory FIFO of observations waiting to be embedded.

    A drain runs in two phases. First it checks that the memory system can take
    writes; if not, items stay queued untouched and one delayed retry is armed.
    Then items are indexed one at a time in arrival order. Failed items go back
    to the tail until they have been retried ``max_retries`` times.
    """

    def __init__(
        self,
        add: Callable[[str, str, str | None, str, int], Awaitable[None]],
        ensure_ready: Callable[[], Awaitable[None]],
        init_status: Callable[[], InitStatus],
        *,
        max_retries: int = MAX_RETRY_COUNT,
        retry_delay_s: float = QUEUE_RETRY_DELAY_S,
        backlog_warning: int = BACKLOG_WARNING_SIZE,
    ) -> None:
        self._add = add
        self._ensure_ready = ensure_ready
        self._init_status = init_status
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s
        self.backlog_warning = backlog_warning
        self._items: deque[EmbeddingQueueItem] = deque()
        self._processing = False
        self._retry_handle: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._closed = False

    def __len__(self) -> int:
        return len(self._items)

    @property
    def pending(self) -> list[EmbeddingQueueItem]:
        return list(self._items)

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_handle is not None

    def enqueue(
        self,
        id: str,
        text: str,
        project_id: str | None,
        type: str,
        created_at: int,
    ) -> None:
        """Queue an observation and start a drain without waiting for it."""

        if self._closed:
            logger.warning("embedding queue closed, dropping item", extra={"observation_id": id})
            return
        for item in self._items:
            if item.id == id:
                item.text = text
                item.project_id = project_id
                item.type = type
                item.created_at = created_at
                break
        else:
            self._items.append(EmbeddingQueueItem(id, text, project_id, type, created_at))
        self.kick()

    def kick(self) -> None:
        if self._closed or self._processing or not self._items:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self.process())
        self._drain_task.add_done_callback(self._on_drain_done)

    @staticmethod
    def _on_drain_done(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("embedding queue drain crashed", exc_info=exc)

    def _schedule_retry(self) -> None:
        if self._retry_handle is not None or not self._items or self._closed:
            return
        logger.info(
            "embedding queue retry scheduled",
            extra={"delay_s": self.retry_delay_s, "pending": len(self._items)},
        )
        self._retry_handle = asyncio.get_running_loop().call_later(
            self.retry_delay_s, self._fire_retry
        )

    def _fire_retry(self) -> None:
        self._retry_handle = None
        self.kick()

    async def process(self) -> None:
        if self._processing or not self._items:
            return
        self._processing = True
        try:
            if not await self._infrastructure_ready():
                return
            if len(self._items) > self.backlog_warning:
                logger.warning("embedding queue backlog", extra={"pending": len(self._items)})
            while self._items and not self._closed:
                item = self._items.popleft()
                try:
                    await self._add(
                        item.id, item.text, item.project_id, item.type, item.created_at
                    )
                except Exception as exc:
                    self._handle_item_failure(item, exc)
        finally:
            self._processing = False

    async def _infrastructure_ready(self) -> bool:
        status = self._init_status()
        if status.permanently_failed:
            logger.error(
                "memory system failed permanently, dropping queued embeddings",
                extra={"dropped": len(self._items), "error": status.error},
            )
            self._items.clear()
            return False
        if status.state in _WAITING_STATES or status.state == "failed":
            logger.info(
                "embedding infrastructure not ready",
                extra={"state": status.state, "pending": len(self._items)},
            )
            self._schedule_retry()
            return False
        try:
            await self._ensure_ready()
        except Exception as exc:
            logger.warning(
                "embedding infrastructure not ready",
                extra={"pending": len(self._items)},
                exc_info=exc,
            )
            self._schedule_retry()
            return False
        return True

    def _handle_item_failure(self, item: EmbeddingQueueItem, exc: Exception) -> None:
        if item.retry_count < self.max_retries:
            item.retry_count += 1
            logger.warning(
                "embedding failed, requeued",
                extra={
                    "observation_id": item.id,
                    "retry": item.retry_count,
                    "max_retries": self.max_retries,
                },
                exc_info=exc,
            )
            self._items.append(item)
            return
        logger.error(
            "embedding failed permanently, dropping item",
            extra={"observation_id": item.id, "attempts": item.retry_count + 1},
            exc_info=exc,
        )

    async def join(self) -> None:
        """Wait for the current drain, if any, to finish."""

        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def close(self) -> None:
        self._closed = True
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._drain_task = None
