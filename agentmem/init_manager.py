from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_RETRIES = 10
BASE_RETRY_DELAY_S = 5.0
MAX_RETRY_DELAY_S = 60.0
WARMUP_QUERY = "warmup test"

PHASES = ("model", "vector-store", "warmup")


@dataclass(frozen=True)
class InitStatus:
    state: str
    phase: str | None = None
    error: str | None = None
    retry_count: int = 0
    # Epoch ms of the next scheduled attempt; 0 once retries are exhausted.
    next_retry_at: int | None = None

    @property
    def permanently_failed(self) -> bool:
        return self.state == "failed" and self.next_retry_at == 0


def retry_delay_s(retry_count: int) -> float:
    return min(BASE_RETRY_DELAY_S * (2**retry_count), MAX_RETRY_DELAY_S)


class InitManager:
    """Brings the embedding model and vector index up, retrying with backoff.

    ``status`` is what the embedding queue consults before draining: while the
    manager is initializing or waiting to retry the queue holds its items, and
    once retries are exhausted the queue gives up on them.
    """

    def __init__(
        self,
        load_model: Callable[[], Awaitable[object]],
        init_vector_store: Callable[[], Awaitable[None]],
        warmup: Callable[[str], Awaitable[object]] | None = None,
        *,
        max_retries: int = MAX_RETRIES,
        on_ready: Callable[[], None] | None = None,
    ) -> None:
        self._load_model = load_model
        self._init_vector_store = init_vector_store
        self._warmup = warmup
        self.max_retries = max_retries
        self.on_ready = on_ready
        self._status = InitStatus("idle")
        self._retry_count = 0
        self._task: asyncio.Task[None] | None = None
        self._warmup_task: asyncio.Task[None] | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._ready_event = asyncio.Event()

    @property
    def status(self) -> InitStatus:
        return self._status

    def is_ready(self) -> bool:
        return self._status.state == "ready"

    def start(self) -> asyncio.Task[None] | None:
        """Kick off initialization without waiting for it."""

        if self._status.state == "ready":
            return None
        if self._task is not None and not self._task.done():
            return self._task
        if self._status.state == "failed" and self._retry_handle is not None:
            logger.info("memory init retry already scheduled")
            return None
        self._task = asyncio.create_task(self._attempt())
        return self._task

    async def initialize(self) -> None:
        task = self.start()
        if task is not None:
            await asyncio.shield(task)

    async def wait_ready(self, timeout: float | None = None) -> bool:
        if self.is_ready():
            return True
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def _attempt(self) -> None:
        attempt = self._retry_count + 1
        logger.info("memory init starting", extra={"attempt": attempt})
        try:
            self._status = InitStatus("initializing", phase="model", retry_count=self._retry_count)
            await self._load_model()
            self._status = InitStatus(
                "initializing", phase="vector-store", retry_count=self._retry_count
            )
            await self._init_vector_store()
            self._status = InitStatus("initializing", phase="warmup", retry_count=self._retry_count)
            if self._warmup is not None:
                self._warmup_task = asyncio.create_task(self._run_warmup())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("memory init failed", extra={"attempt": attempt}, exc_info=exc)
            self._handle_failure(exc)
            return
        self._status = InitStatus("ready")
        self._retry_count = 0
        self._ready_event.set()
        logger.info("memory system ready")
        if self.on_ready is not None:
            self.on_ready()

    async def _run_warmup(self) -> None:
        try:
            await self._warmup(WARMUP_QUERY)  # type: ignore[misc]
            logger.info("memory warmup completed")
        except Exception as exc:
            logger.warning("memory warmup failed", exc_info=exc)

    def _handle_failure(self, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        if self._retry_count >= self.max_retries:
            self._status = InitStatus(
                "failed",
                error=f"Max retries ({self.max_retries}) exceeded: {message}",
                retry_count=self._retry_count,
                next_retry_at=0,
            )
            logger.error("memory init giving up", extra={"retries": self._retry_count})
            return
        delay = retry_delay_s(self._retry_count)
        self._status = InitStatus(
            "failed",
            error=message,
            retry_count=self._retry_count,
            next_retry_at=int((time.time() + delay) * 1000),
        )
        logger.info(
            "memory init retry scheduled",
            extra={"retry": self._retry_count + 1, "delay_s": delay},
        )
        self._cancel_retry()
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._fire_retry)

    def _fire_retry(self) -> None:
        self._retry_handle = None
        self._retry_count += 1
        self._status = InitStatus("retrying", retry_count=self._retry_count)
        self._task = asyncio.create_task(self._attempt())

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    async def retry(self) -> None:
        """Manual reset after a failure; ignored while initializing or ready."""

        if self._status.state not in {"failed", "idle"}:
            logger.warning("memory init retry ignored", extra={"state": self._status.state})
            return
        logger.info("memory init manual retry")
        self._cancel_retry()
        self._retry_count = 0
        self._status = InitStatus("idle")
        await self.initialize()

    async def close(self) -> None:
        self._cancel_retry()
        for task in (self._task, self._warmup_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._warmup_task = None
