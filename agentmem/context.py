from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .hybrid_search import HybridRanker
from .store import MemoryStore, Observation, Session
from .tasks import TaskSupervisor

logger = logging.getLogger(__name__)

SEARCH_TIMEOUT_S = 10.0
MIN_SCORE = 0.005
SEARCH_LIMIT = 15
RECENT_SESSIONS = 5
RECENT_OBSERVATIONS = 30
MIN_VALUABLE_OBSERVATIONS = 5
MIN_PROMPT_CHARS = 5
NARRATIVE_CHARS = 200
CONVERSATION_TYPES = frozenset({"conversation", "response"})

CONTEXT_HEADER = (
    "# Memory Context\n"
    "The following is context from previous sessions with this project:\n\n"
)


@dataclass
class ContextItem:
    type: str
    title: str
    narrative: str


async def _search_items(
    ranker: HybridRanker,
    prompt: str,
    project_id: str,
    *,
    timeout_s: float,
    min_score: float,
    limit: int,
    supervisor: TaskSupervisor | None,
) -> list[ContextItem]:
    coro = ranker.search(prompt, project_id=project_id, kind="observations", limit=limit)
    if supervisor is not None:
        task = supervisor.spawn(coro, name="context-search")
    else:
        task = asyncio.ensure_future(coro)
    # Shielded so a timeout abandons the query instead of cancelling it.
    results = await asyncio.wait_for(asyncio.shield(task), timeout=timeout_s)
    items = [
        ContextItem(
            type=r.observation_type or r.kind,
            title=r.title,
            narrative=r.excerpt,
        )
        for r in results
        if r.kind == "observation" and r.score > min_score
    ]
    logger.info(
        "hybrid search for context",
        extra={"results": len(results), "relevant": len(items), "project_id": project_id},
    )
    return items


def _recent_items(
    store: MemoryStore, project_id: str, limit: int, keep: int
) -> list[ContextItem]:
    recent = store.recent_observations(project_id, limit)
    valuable = [obs for obs in recent if obs.type not in CONVERSATION_TYPES]
    chosen: list[Observation]
    if len(valuable) >= MIN_VALUABLE_OBSERVATIONS:
        chosen = valuable[:keep]
    else:
        chosen = (valuable + [obs for obs in recent if obs.type in CONVERSATION_TYPES])[:keep]
    logger.info(
        "using recent observations for context",
        extra={"total": len(recent), "valuable": len(valuable), "selected": len(chosen)},
    )
    return [
        ContextItem(type=obs.type, title=obs.title, narrative=obs.narrative) for obs in chosen
    ]


def format_memory_context(sessions: list[Session], items: list[ContextItem]) -> str | None:
    lines: list[str] = []
    session_lines: list[str] = []
    for session in sessions:
        summary = session.summary
        if summary is None or not summary.request:
            continue
        session_lines.append(f"- **{summary.request}**")
        if summary.learned:
            session_lines.append(f"  - Learned: {summary.learned}")
        if summary.completed:
            session_lines.append(f"  - Completed: {summary.completed}")
    if session_lines:
        lines.append("## Recent Sessions\n")
        lines.extend(session_lines)
        lines.append("")
    if items:
        lines.append("## Recent Observations\n")
        for item in items:
            lines.append(f"- [{item.type}] {item.title}")
            if item.narrative:
                lines.append(f"  > {item.narrative[:NARRATIVE_CHARS]}")
    content = "\n".join(lines)
    if not content.strip():
        return None
    return CONTEXT_HEADER + content


async def build_memory_context(
    store: MemoryStore,
    ranker: HybridRanker | None,
    prompt: str | None,
    project_id: str,
    *,
    search_timeout_s: float = SEARCH_TIMEOUT_S,
    min_score: float = MIN_SCORE,
    search_limit: int = SEARCH_LIMIT,
    recent_sessions: int = RECENT_SESSIONS,
    recent_observations: int = RECENT_OBSERVATIONS,
    supervisor: TaskSupervisor | None = None,
) -> str | None:
    """Markdown memory block for a new prompt, or ``None`` when there is nothing to say.

    Relevant observations come from hybrid search when the vector index is ready;
    otherwise, and on timeout, error or an empty result, the most recent
    observations are used.
    """

    sessions = store.recent_sessions(project_id, recent_sessions)
    items: list[ContextItem] = []
    query = (prompt or "").strip()
    if ranker is not None and len(query) > MIN_PROMPT_CHARS:
        if not ranker.vector_available():
            logger.info("vector index not ready, using recent observations for context")
        else:
            try:
                items = await _search_items(
                    ranker,
                    query,
                    project_id,
                    timeout_s=search_timeout_s,
                    min_score=min_score,
                    limit=search_limit,
                    supervisor=supervisor,
                )
            except asyncio.TimeoutError:
                logger.warning("hybrid search timed out, using recent observations")
            except Exception as exc:
                logger.warning("hybrid search failed, using recent observations", exc_info=exc)
    if not items:
        items = _recent_items(store, project_id, recent_observations, search_limit)
    return format_memory_context(sessions, items)
