from __future__ import annotations

import re
import sqlite3
from typing import TYPE_CHECKING, Any

from .types import LexicalHit

if TYPE_CHECKING:
    from ._store import MemoryStore

EXCERPT_CHARS = 200
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_FTS_OPERATORS = {"or", "and", "not", "near"}
# Latin script (basic, supplement, extended A/B) ends at U+024F.
_LATIN_MAX_CODEPOINT = 0x24F


def _excerpt(text: str | None) -> str:
    if not text:
        return ""
    text = " ".join(text.split())
    if len(text) <= EXCERPT_CHARS:
        return text
    return text[:EXCERPT_CHARS] + "..."


def needs_substring_search(query: str) -> bool:
    """Short or non-Latin queries tokenize badly, so they use LIKE matching."""

    stripped = query.strip()
    if len(stripped) <= 2:
        return True
    return any(ch.isalpha() and ord(ch) > _LATIN_MAX_CODEPOINT for ch in stripped)


def build_fts_query(query: str) -> str:
    tokens = [t for t in _TOKEN_RE.findall(query) if t.lower() not in _FTS_OPERATORS]
    if not tokens:
        return ""
    return " OR ".join(f'"{token}"*' for token in tokens)


def _like_pattern(query: str) -> str:
    escaped = query.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _observation_hit(row: sqlite3.Row, score: float) -> LexicalHit:
    return LexicalHit(
        kind="observation",
        id=row["id"],
        title=row["title"] or "",
        subtitle=row["subtitle"],
        excerpt=_excerpt(row["narrative"]),
        session_id=row["session_id"],
        project_id=row["project_id"],
        created_at=int(row["created_at"]),
        score=score,
        observation_type=row["type"],
        tool_call_id=row["tool_call_id"],
    )


def search_observations(
    store: MemoryStore,
    query: str,
    *,
    project_id: str | None = None,
    observation_type: str | None = None,
    limit: int = 20,
) -> list[LexicalHit]:
    if not query.strip() or limit <= 0:
        return []
    where: list[str] = []
    params: list[Any] = []
    if project_id:
        where.append("observations.project_id = ?")
        params.append(project_id)
    if observation_type:
        where.append("observations.type = ?")
        params.append(observation_type)

    if needs_substring_search(query):
        where.append(
            "(observations.title LIKE ? ESCAPE '\\' OR observations.subtitle LIKE ? ESCAPE '\\'"
            " OR observations.narrative LIKE ? ESCAPE '\\')"
        )
        pattern = _like_pattern(query)
        params.extend([pattern, pattern, pattern])
        sql = f"""
            SELECT observations.* FROM observations
            WHERE {" AND ".join(where)}
            ORDER BY observations.created_at DESC
            LIMIT ?
        """
        params.append(limit)
        rows = store.conn.execute(sql, params).fetchall()
        return [_observation_hit(row, 1.0 / (rank + 1)) for rank, row in enumerate(rows)]

    fts_query = build_fts_query(query)
    if not fts_query:
        return []
    where.insert(0, "observations_fts MATCH ?")
    params.insert(0, fts_query)
    sql = f"""
        SELECT observations.*, -bm25(observations_fts, 2.0, 1.0, 1.0, 0.5, 0.25) AS score
        FROM observations_fts
        JOIN observations ON observations.rowid = observations_fts.rowid
        WHERE {" AND ".join(where)}
        ORDER BY score DESC
        LIMIT ?
    """
    params.append(limit)
    rows = store.conn.execute(sql, params).fetchall()
    return [_observation_hit(row, float(row["score"])) for row in rows]


def search_prompts(
    store: MemoryStore,
    query: str,
    *,
    project_id: str | None = None,
    limit: int = 20,
) -> list[LexicalHit]:
    if not query.strip() or limit <= 0:
        return []
    params: list[Any] = []
    project_clause = ""
    if project_id:
        project_clause = "AND user_prompts.project_id = ?"
    if needs_substring_search(query):
        sql = f"""
            SELECT user_prompts.*, 0.0 AS score FROM user_prompts
            WHERE user_prompts.prompt_text LIKE ? ESCAPE '\\' {project_clause}
            ORDER BY user_prompts.created_at DESC
            LIMIT ?
        """
        params.append(_like_pattern(query))
    else:
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        sql = f"""
            SELECT user_prompts.*, -bm25(user_prompts_fts) AS score
            FROM user_prompts_fts
            JOIN user_prompts ON user_prompts.rowid = user_prompts_fts.rowid
            WHERE user_prompts_fts MATCH ? {project_clause}
            ORDER BY score DESC
            LIMIT ?
        """
        params.append(fts_query)
    if project_id:
        params.append(project_id)
    params.append(limit)
    rows = store.conn.execute(sql, params).fetchall()
    return [
        LexicalHit(
            kind="prompt",
            id=row["id"],
            title=f"Prompt #{row['prompt_number']}",
            subtitle=None,
            excerpt=_excerpt(row["prompt_text"]),
            session_id=row["session_id"],
            project_id=row["project_id"],
            created_at=int(row["created_at"]),
            score=float(row["score"]),
        )
        for row in rows
    ]


def search_sessions(
    store: MemoryStore,
    query: str,
    *,
    project_id: str | None = None,
    limit: int = 20,
) -> list[LexicalHit]:
    """Match against generated session summaries."""

    if not query.strip() or limit <= 0:
        return []
    params: list[Any] = []
    project_clause = "AND sessions.project_id = ?" if project_id else ""
    if needs_substring_search(query):
        sql = f"""
            SELECT sessions.*, 0.0 AS score FROM sessions
            WHERE (sessions.summary_request LIKE ? ESCAPE '\\'
                OR sessions.summary_learned LIKE ? ESCAPE '\\'
                OR sessions.summary_completed LIKE ? ESCAPE '\\') {project_clause}
            ORDER BY sessions.started_at DESC
            LIMIT ?
        """
        pattern = _like_pattern(query)
        params.extend([pattern, pattern, pattern])
    else:
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        sql = f"""
            SELECT sessions.*, -bm25(session_summaries_fts) AS score
            FROM session_summaries_fts
            JOIN sessions ON sessions.rowid = session_summaries_fts.rowid
            WHERE session_summaries_fts MATCH ? {project_clause}
            ORDER BY score DESC
            LIMIT ?
        """
        params.append(fts_query)
    if project_id:
        params.append(project_id)
    params.append(limit)
    rows = store.conn.execute(sql, params).fetchall()
    return [
        LexicalHit(
            kind="session",
            id=row["id"],
            title=_excerpt(row["summary_request"]) or "Session summary",
            subtitle=row["status"],
            excerpt=_excerpt(row["summary_learned"] or row["summary_completed"]),
            session_id=row["id"],
            project_id=row["project_id"],
            created_at=int(row["started_at"]),
            score=float(row["score"]),
        )
        for row in rows
    ]
