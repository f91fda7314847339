from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .store import LexicalHit, MemoryStore, Observation
from .vector_index import VectorIndex, VectorMatch

logger = logging.getLogger(__name__)

RRF_K = 60
SEARCH_KINDS = ("all", "observations", "prompts", "sessions")
EXCERPT_CHARS = 200


@dataclass
class HybridSearchResult:
    kind: str
    id: str
    title: str
    subtitle: str | None
    excerpt: str
    session_id: str
    project_id: str | None
    created_at: int
    score: float
    observation_type: str | None = None
    tool_call_id: str | None = None
    fts_score: float | None = None
    vector_score: float | None = None


def rrf_score(rank: int | None, k: int = RRF_K, weight: float = 1.0) -> float:
    """Reciprocal-rank contribution of a 1-indexed rank; 0 when absent."""

    if rank is None:
        return 0.0
    if rank < 1:
        raise ValueError("ranks are 1-indexed")
    return weight / (k + rank)


def fuse_rankings(
    rankings: Sequence[Sequence[str]],
    *,
    k: int = RRF_K,
    weights: Sequence[float] | None = None,
) -> dict[str, float]:
    fused: dict[str, float] = {}
    for index, ranking in enumerate(rankings):
        weight = weights[index] if weights is not None else 1.0
        seen: set[str] = set()
        for position, item_id in enumerate(ranking, start=1):
            if item_id in seen:
                continue
            seen.add(item_id)
            fused[item_id] = fused.get(item_id, 0.0) + rrf_score(position, k, weight)
    return fused


def _excerpt(text: str | None) -> str:
    if not text:
        return ""
    text = " ".join(text.split())
    return text if len(text) <= EXCERPT_CHARS else text[:EXCERPT_CHARS] + "..."


def _from_observation(obs: Observation, score: float) -> HybridSearchResult:
    return HybridSearchResult(
        kind="observation",
        id=obs.id,
        title=obs.title or "Untitled",
        subtitle=obs.subtitle,
        excerpt=_excerpt(obs.narrative),
        session_id=obs.session_id,
        project_id=obs.project_id,
        created_at=obs.created_at,
        score=score,
        observation_type=obs.type,
        tool_call_id=obs.tool_call_id,
    )


def _from_hit(hit: LexicalHit, score: float) -> HybridSearchResult:
    return HybridSearchResult(
        kind=hit.kind,
        id=hit.id,
        title=hit.title or "Untitled",
        subtitle=hit.subtitle,
        excerpt=hit.excerpt,
        session_id=hit.session_id,
        project_id=hit.project_id,
        created_at=hit.created_at,
        score=score,
        observation_type=hit.observation_type,
        tool_call_id=hit.tool_call_id,
    )


class HybridRanker:
    """Fuses FTS5 and vector results with reciprocal-rank fusion.

    The ranker returns everything it ranked; relevance floors are applied by
    consumers such as the context builder.
    """

    def __init__(
        self,
        store: MemoryStore,
        index: VectorIndex | None,
        *,
        rrf_k: int = RRF_K,
        vector_ready: Callable[[], bool] | None = None,
    ) -> None:
        self.store = store
        self.index = index
        self.rrf_k = rrf_k
        self._vector_ready = vector_ready

    def vector_available(self) -> bool:
        if self.index is None:
            return False
        if self._vector_ready is not None:
            return self._vector_ready()
        return self.index.is_ready

    async def _lexical(
        self, query: str, project_id: str | None, observation_type: str | None, limit: int
    ) -> list[LexicalHit]:
        return self.store.search_observations(
            query, project_id=project_id, observation_type=observation_type, limit=limit
        )

    async def _vector(
        self, query: str, project_id: str | None, observation_type: str | None, limit: int
    ) -> list[VectorMatch]:
        if not self.vector_available() or self.index is None:
            return []
        return await self.index.search(
            query, project_id=project_id, limit=limit, type=observation_type
        )

    async def search_observations(
        self,
        query: str,
        *,
        project_id: str | None = None,
        observation_type: str | None = None,
        limit: int = 20,
        fts_weight: float = 1.0,
        vector_weight: float = 1.0,
    ) -> list[HybridSearchResult]:
        if not query.strip() or limit <= 0:
            return []
        candidates = limit * 2
        lexical_result, vector_result = await asyncio.gather(
            self._lexical(query, project_id, observation_type, candidates),
            self._vector(query, project_id, observation_type, candidates),
            return_exceptions=True,
        )
        if isinstance(lexical_result, BaseException):
            if isinstance(lexical_result, asyncio.CancelledError):
                raise lexical_result
            logger.error("lexical search failed", exc_info=lexical_result)
            lexical_hits: list[LexicalHit] = []
        else:
            lexical_hits = lexical_result
        if isinstance(vector_result, BaseException):
            if isinstance(vector_result, asyncio.CancelledError):
                raise vector_result
            logger.warning(
                "vector search failed, using lexical results only", exc_info=vector_result
            )
            vector_hits: list[VectorMatch] = []
        else:
            vector_hits = vector_result

        fts_ranks = {hit.id: rank for rank, hit in enumerate(lexical_hits, start=1)}
        vector_ranks = {match.id: rank for rank, match in enumerate(vector_hits, start=1)}
        fused = fuse_rankings(
            [[hit.id for hit in lexical_hits], [match.id for match in vector_hits]],
            k=self.rrf_k,
            weights=[fts_weight, vector_weight],
        )
        ordered = sorted(fused.items(), key=lambda item: (-item[1], item[0]))[:limit]

        by_id = {hit.id: hit for hit in lexical_hits}
        missing = [item_id for item_id, _ in ordered if item_id not in by_id]
        hydrated = self.store.get_observations(missing) if missing else {}

        results: list[HybridSearchResult] = []
        for item_id, score in ordered:
            if item_id in by_id:
                result = _from_hit(by_id[item_id], score)
            elif item_id in hydrated:
                result = _from_observation(hydrated[item_id], score)
            else:
                # Vector row whose observation was deleted from the store.
                continue
            fts_rank = fts_ranks.get(item_id)
            vector_rank = vector_ranks.get(item_id)
            result.fts_score = rrf_score(fts_rank, self.rrf_k) if fts_rank else None
            result.vector_score = rrf_score(vector_rank, self.rrf_k) if vector_rank else None
            results.append(result)
        return results

    def _lexical_only(
        self, hits: Sequence[LexicalHit], fts_weight: float
    ) -> list[HybridSearchResult]:
        results = []
        for rank, hit in enumerate(hits, start=1):
            score = rrf_score(rank, self.rrf_k, fts_weight)
            result = _from_hit(hit, score)
            result.fts_score = score
            results.append(result)
        return results

    async def search(
        self,
        query: str,
        *,
        project_id: str | None = None,
        observation_type: str | None = None,
        limit: int = 20,
        kind: str = "all",
        fts_weight: float = 1.0,
        vector_weight: float = 1.0,
    ) -> list[HybridSearchResult]:
        if kind not in SEARCH_KINDS:
            raise ValueError(f"Invalid search kind '{kind}'. Allowed: {', '.join(SEARCH_KINDS)}")
        if not query.strip() or limit <= 0:
            return []
        results: list[HybridSearchResult] = []
        if kind in {"all", "observations"}:
            results.extend(
                await self.search_observations(
                    query,
                    project_id=project_id,
                    observation_type=observation_type,
                    limit=limit,
                    fts_weight=fts_weight,
                    vector_weight=vector_weight,
                )
            )
        if kind == "all" and observation_type:
            # Prompts and sessions carry no observation type.
            results.sort(key=lambda r: (-r.score, r.kind, r.id))
            return results[:limit]
        side_limit = limit if kind != "all" else max(1, math.ceil(limit / 3))
        if kind in {"all", "prompts"}:
            try:
                hits = self.store.search_prompts(query, project_id=project_id, limit=side_limit)
            except Exception as exc:
                logger.error("prompt search failed", exc_info=exc)
                hits = []
            results.extend(self._lexical_only(hits, fts_weight))
        if kind in {"all", "sessions"}:
            try:
                hits = self.store.search_sessions(query, project_id=project_id, limit=side_limit)
            except Exception as exc:
                logger.error("session summary search failed", exc_info=exc)
                hits = []
            results.extend(self._lexical_only(hits, fts_weight))
        results.sort(key=lambda r: (-r.score, r.kind, r.id))
        return results[:limit]

    async def find_related(
        self,
        observation_id: str,
        *,
        project_id: str | None = None,
        limit: int = 10,
    ) -> list[HybridSearchResult]:
        """Nearest observations to an existing one, the source itself excluded."""

        source = self.store.get_observation(observation_id)
        if source is None or not self.vector_available() or self.index is None:
            return []
        text = " ".join(part for part in (source.title, source.subtitle, source.narrative) if part)
        if not text:
            return []
        try:
            matches = await self.index.search(
                text, project_id=project_id or source.project_id, limit=limit + 1
            )
        except Exception as exc:
            logger.warning("related search failed", exc_info=exc)
            return []
        matches = [m for m in matches if m.id != observation_id][:limit]
        hydrated = self.store.get_observations([m.id for m in matches])
        results = []
        for match in matches:
            obs = hydrated.get(match.id)
            if obs is None:
                continue
            result = _from_observation(obs, match.score)
            result.vector_score = match.score
            results.append(result)
        return results
