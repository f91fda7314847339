from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any

from .config import AgentMemConfig, load_config
from .context import build_memory_context
from .embedding_queue import EmbeddingQueue
from .embeddings import EmbeddingPipeline
from .events import parse_hook_event
from .hooks import MemoryHooks
from .hybrid_search import HybridRanker, HybridSearchResult
from .init_manager import InitManager, InitStatus
from .llm import ProviderBridge, default_model_for
from .observation_parser import build_observation_text
from .store import MemoryStore
from .summarizer import SlidingWindowRateLimiter, Summarizer, SummaryModelConfig
from .tasks import TaskSupervisor
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


class MemoryService:
    """Wires the memory components together for one process.

    With embeddings disabled there is no vector path: search and context are
    lexical only and nothing is queued for indexing.
    """

    def __init__(
        self,
        config: AgentMemConfig,
        store: MemoryStore,
        *,
        pipeline: EmbeddingPipeline | None = None,
        index: VectorIndex | None = None,
        summarizer: Summarizer | None = None,
        bridge: ProviderBridge | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.pipeline = pipeline
        self.index = index
        self.bridge = bridge
        self.supervisor = TaskSupervisor()
        self.init: InitManager | None = None
        self.queue: EmbeddingQueue | None = None
        if pipeline is not None and index is not None:
            self.init = InitManager(
                pipeline.ensure_ready,
                index.initialize,
                pipeline.embed,
                on_ready=self._on_vectors_ready,
            )
            self.queue = EmbeddingQueue(
                index.add,
                self._ensure_vectors_ready,
                self._init_status,
                max_retries=config.queue_max_retries,
                retry_delay_s=config.queue_retry_delay_s,
                backlog_warning=config.queue_backlog_warning,
            )
        self.ranker = HybridRanker(
            store, index, rrf_k=config.rrf_k, vector_ready=self.vectors_ready
        )
        self.summarizer = summarizer
        self.hooks = MemoryHooks(
            store,
            self.queue,
            summarizer,
            build_context=self.build_context,
            supervisor=self.supervisor,
            enhance_timeout_s=config.context_timeout_s,
        )
        self._preload_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: AgentMemConfig | None = None) -> MemoryService:
        cfg = config or load_config()
        store = MemoryStore(cfg.resolved_db_path())
        pipeline = None
        index = None
        if not cfg.embedding_disabled:
            pipeline = EmbeddingPipeline(
                cfg.embedding_model,
                cfg.resolved_model_cache_dir(),
                dimension=cfg.embedding_dimension,
                init_timeout_s=cfg.embedding_init_timeout_s,
                max_chars=cfg.embedding_max_chars,
                batch_size=cfg.embedding_batch_size,
            )
            index = VectorIndex(cfg.resolved_index_dir(), pipeline)
        bridge = ProviderBridge(
            api_key=cfg.llm_api_key, base_url=cfg.llm_base_url, timeout_s=cfg.llm_timeout_s
        )
        model_config = None
        if cfg.summary_provider:
            model_config = SummaryModelConfig(
                cfg.summary_provider,
                cfg.summary_model or default_model_for(cfg.summary_provider),
            )
        summarizer = Summarizer(
            bridge,
            model_config,
            rate_limiter=SlidingWindowRateLimiter(
                cfg.enhance_rate_limit, cfg.enhance_rate_window_s
            ),
            skip_tools=cfg.enhance_skip_tools,
            min_output_chars=cfg.enhance_min_output_chars,
            enhance_enabled=cfg.enhance_enabled,
        )
        return cls(
            cfg, store, pipeline=pipeline, index=index, summarizer=summarizer, bridge=bridge
        )

    # Vector readiness

    def _init_status(self) -> InitStatus:
        if self.init is None:
            return InitStatus("failed", error="embeddings disabled", next_retry_at=0)
        return self.init.status

    def vectors_ready(self) -> bool:
        return (
            self.init is not None
            and self.init.is_ready()
            and self.index is not None
            and self.index.is_ready
        )

    def _on_vectors_ready(self) -> None:
        if self.queue is not None:
            self.queue.kick()

    async def _ensure_vectors_ready(self) -> None:
        if self.init is None:
            raise RuntimeError("embeddings disabled")
        await self.init.initialize()
        if not self.init.is_ready():
            status = self.init.status
            raise RuntimeError(status.error or f"memory system {status.state}")

    async def ensure_vectors(self, timeout: float | None = None) -> bool:
        """Initialize the vector path and report whether it came up."""

        if self.init is None:
            return False
        try:
            await asyncio.wait_for(self.init.initialize(), timeout)
        except asyncio.TimeoutError:
            logger.warning("vector initialization still running", extra={"timeout_s": timeout})
        return self.vectors_ready()

    # Lifecycle

    def start(self) -> None:
        """Schedule a delayed model preload so start-up work is not slowed down."""

        if self.init is None or self._preload_task is not None:
            return
        self._preload_task = self.supervisor.spawn(self._delayed_preload(), name="preload")

    async def _delayed_preload(self) -> None:
        await asyncio.sleep(self.config.preload_delay_s)
        if self.pipeline is not None and not self.pipeline.is_model_downloaded():
            logger.info("embedding model not found, starting background download")
        else:
            logger.info("embedding model found, preloading")
        if self.init is not None:
            self.init.start()

    async def close(self) -> None:
        if self.queue is not None:
            await self.queue.close()
        if self.init is not None:
            await self.init.close()
        await self.supervisor.cancel_all()
        if self.bridge is not None:
            await self.bridge.close()
        if self.index is not None:
            self.index.close()
        if self.pipeline is not None:
            self.pipeline.close()
        self.store.close()

    # Operations

    async def submit(self, payload: dict[str, Any]) -> Any:
        """Validate a raw hook payload and dispatch it."""

        return await self.hooks.dispatch(parse_hook_event(payload))

    async def build_context(self, prompt: str | None, project_id: str) -> str | None:
        return await build_memory_context(
            self.store,
            self.ranker,
            prompt,
            project_id,
            search_timeout_s=self.config.search_timeout_s,
            min_score=self.config.context_min_score,
            search_limit=self.config.context_search_limit,
            recent_sessions=self.config.context_recent_sessions,
            recent_observations=self.config.context_recent_observations,
            supervisor=self.supervisor,
        )

    async def search(
        self,
        query: str,
        *,
        project_id: str | None = None,
        observation_type: str | None = None,
        limit: int = 20,
        kind: str = "all",
    ) -> list[HybridSearchResult]:
        return await self.ranker.search(
            query,
            project_id=project_id,
            observation_type=observation_type,
            limit=limit,
            kind=kind,
        )

    async def reindex(self, project_id: str | None = None, *, clear: bool = False) -> int:
        """Queue every stored observation for embedding again."""

        if self.queue is None or self.index is None:
            return 0
        if clear:
            if project_id:
                await self.index.delete_by_project(project_id)
            else:
                await self.index.clear()
        count = 0
        for obs in self.store.iter_observations(project_id):
            if not obs.narrative.strip():
                continue
            self.queue.enqueue(
                obs.id, build_observation_text(obs), obs.project_id, obs.type, obs.created_at
            )
            count += 1
        logger.info("observations queued for reindex", extra={"count": count})
        return count

    async def delete_observation(self, observation_id: str) -> bool:
        deleted = self.store.delete_observation(observation_id)
        if self.index is not None:
            await self.index.delete(observation_id)
        return deleted

    async def clear_project(self, project_id: str) -> int:
        removed = self.store.clear_project(project_id)
        if self.index is not None:
            await self.index.delete_by_project(project_id)
        logger.info("project memory cleared", extra={"project_id": project_id, "count": removed})
        return removed

    def stats(self, project_id: str | None = None) -> dict[str, Any]:
        return {
            "store": self.store.stats(project_id),
            "vectors": self.index.stats() if self.index is not None else None,
            "model": self.pipeline.get_status().to_dict() if self.pipeline is not None else None,
            "init": asdict(self._init_status()),
            "queue": {
                "pending": len(self.queue) if self.queue is not None else 0,
                "retry_scheduled": self.queue.retry_scheduled if self.queue is not None else False,
            },
            "usage": self.store.usage_summary(),
        }
