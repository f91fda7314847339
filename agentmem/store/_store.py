from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Any

from .. import db
from ..memory_kinds import validate_observation_type
from . import search as store_search
from . import usage as store_usage
from .types import (
    LexicalHit,
    Observation,
    Session,
    SessionSummary,
    UserPrompt,
    new_id,
    now_ms,
)


class MemoryStore:
    """Relational store for sessions, prompts and observations, with FTS5 search."""

    RECENT_OBSERVATION_LIMIT = 30
    RECENT_SESSION_LIMIT = 5

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)

    def close(self) -> None:
        self.conn.close()

    # Sessions

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        summary = SessionSummary(
            request=row["summary_request"] or "",
            investigated=row["summary_investigated"] or "",
            learned=row["summary_learned"] or "",
            completed=row["summary_completed"] or "",
            next_steps=row["summary_next_steps"] or "",
        )
        return Session(
            id=row["id"],
            sub_chat_id=row["sub_chat_id"],
            project_id=row["project_id"],
            chat_id=row["chat_id"],
            status=row["status"],
            started_at=int(row["started_at"]),
            completed_at=row["completed_at"],
            summary=None if summary.is_empty() else summary,
        )

    def start_session(
        self,
        sub_chat_id: str,
        project_id: str,
        chat_id: str | None = None,
        *,
        started_at: int | None = None,
    ) -> Session:
        session = Session(
            id=new_id(),
            sub_chat_id=sub_chat_id,
            project_id=project_id,
            chat_id=chat_id,
            status="active",
            started_at=started_at or now_ms(),
        )
        self.conn.execute(
            """
            INSERT INTO sessions(id, sub_chat_id, chat_id, project_id, status, started_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.sub_chat_id,
                session.chat_id,
                session.project_id,
                session.status,
                session.started_at,
            ),
        )
        self.conn.commit()
        return session

    def get_session(self, session_id: str) -> Session | None:
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_session(row) if row else None

    def active_sessions(self, sub_chat_id: str) -> list[Session]:
        rows = self.conn.execute(
            """
            SELECT * FROM sessions
            WHERE sub_chat_id = ? AND status = 'active'
            ORDER BY started_at DESC
            """,
            (sub_chat_id,),
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def _finish_session(self, session_id: str, status: str) -> bool:
        cur = self.conn.execute(
            """
            UPDATE sessions SET status = ?, completed_at = ?
            WHERE id = ? AND status = 'active'
            """,
            (status, now_ms(), session_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def complete_session(self, session_id: str) -> bool:
        return self._finish_session(session_id, "completed")

    def fail_session(self, session_id: str) -> bool:
        return self._finish_session(session_id, "failed")

    def update_session_summary(
        self, session_id: str, summary: SessionSummary, *, model: str | None = None
    ) -> None:
        self.conn.execute(
            """
            UPDATE sessions
            SET summary_request = ?, summary_investigated = ?, summary_learned = ?,
                summary_completed = ?, summary_next_steps = ?, summary_model = ?
            WHERE id = ?
            """,
            (
                summary.request,
                summary.investigated,
                summary.learned,
                summary.completed,
                summary.next_steps,
                model,
                session_id,
            ),
        )
        self.conn.commit()

    def recent_sessions(
        self, project_id: str, limit: int = RECENT_SESSION_LIMIT
    ) -> list[Session]:
        rows = self.conn.execute(
            """
            SELECT * FROM sessions
            WHERE project_id = ?
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (project_id, limit),
        ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # Prompts

    def add_user_prompt(
        self,
        session_id: str,
        project_id: str,
        prompt_text: str,
        prompt_number: int | None = None,
    ) -> UserPrompt:
        if prompt_number is None:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM user_prompts WHERE session_id = ?", (session_id,)
            ).fetchone()
            prompt_number = int(row["n"]) + 1
        prompt = UserPrompt(
            id=new_id(),
            session_id=session_id,
            project_id=project_id,
            prompt_text=prompt_text,
            prompt_number=prompt_number,
            created_at=now_ms(),
        )
        self.conn.execute(
            """
            INSERT INTO user_prompts(id, session_id, project_id, prompt_text, prompt_number,
                                     created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                prompt.id,
                prompt.session_id,
                prompt.project_id,
                prompt.prompt_text,
                prompt.prompt_number,
                prompt.created_at,
            ),
        )
        self.conn.commit()
        return prompt

    def prompts_for_session(self, session_id: str) -> list[UserPrompt]:
        rows = self.conn.execute(
            "SELECT * FROM user_prompts WHERE session_id = ? ORDER BY prompt_number",
            (session_id,),
        ).fetchall()
        return [
            UserPrompt(
                id=row["id"],
                session_id=row["session_id"],
                project_id=row["project_id"],
                prompt_text=row["prompt_text"],
                prompt_number=int(row["prompt_number"]),
                created_at=int(row["created_at"]),
            )
            for row in rows
        ]

    # Observations

    @staticmethod
    def _row_to_observation(row: sqlite3.Row) -> Observation:
        return Observation(
            id=row["id"],
            session_id=row["session_id"],
            project_id=row["project_id"],
            type=row["type"],
            title=row["title"] or "",
            subtitle=row["subtitle"],
            narrative=row["narrative"] or "",
            facts=db.from_json_list(row["facts"]),
            concepts=db.from_json_list(row["concepts"]),
            files_read=db.from_json_list(row["files_read"]),
            files_modified=db.from_json_list(row["files_modified"]),
            tool_name=row["tool_name"],
            tool_call_id=row["tool_call_id"],
            prompt_number=row["prompt_number"],
            created_at=int(row["created_at"]),
        )

    def add_observation(self, obs: Observation) -> Observation:
        if not obs.session_id or not obs.project_id:
            raise ValueError("observation requires session_id and project_id")
        validate_observation_type(obs.type)
        self.conn.execute(
            """
            INSERT INTO observations(
                id, session_id, project_id, type, title, subtitle, narrative, facts, concepts,
                files_read, files_modified, tool_name, tool_call_id, prompt_number, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                obs.id,
                obs.session_id,
                obs.project_id,
                obs.type,
                obs.title,
                obs.subtitle,
                obs.narrative,
                db.to_json(obs.facts),
                db.to_json(obs.concepts),
                db.to_json(obs.files_read),
                db.to_json(obs.files_modified),
                obs.tool_name,
                obs.tool_call_id,
                obs.prompt_number,
                obs.created_at,
            ),
        )
        self.conn.commit()
        return obs

    def get_observation(self, observation_id: str) -> Observation | None:
        row = self.conn.execute(
            "SELECT * FROM observations WHERE id = ?", (observation_id,)
        ).fetchone()
        return self._row_to_observation(row) if row else None

    def get_observations(self, ids: Sequence[str]) -> dict[str, Observation]:
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self.conn.execute(
            f"SELECT * FROM observations WHERE id IN ({placeholders})", list(ids)
        ).fetchall()
        return {row["id"]: self._row_to_observation(row) for row in rows}

    def has_tool_call(self, session_id: str, tool_call_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM observations WHERE session_id = ? AND tool_call_id = ? LIMIT 1",
            (session_id, tool_call_id),
        ).fetchone()
        return row is not None

    def recent_observations(
        self,
        project_id: str,
        limit: int = RECENT_OBSERVATION_LIMIT,
        *,
        types: Iterable[str] | None = None,
        exclude_types: Iterable[str] | None = None,
    ) -> list[Observation]:
        where = ["project_id = ?"]
        params: list[Any] = [project_id]
        if types is not None:
            wanted = list(types)
            where.append(f"type IN ({','.join('?' for _ in wanted)})")
            params.extend(wanted)
        if exclude_types is not None:
            unwanted = list(exclude_types)
            where.append(f"type NOT IN ({','.join('?' for _ in unwanted)})")
            params.extend(unwanted)
        params.append(limit)
        rows = self.conn.execute(
            f"""
            SELECT * FROM observations
            WHERE {" AND ".join(where)}
            ORDER BY created_at DESC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [self._row_to_observation(row) for row in rows]

    def observations_for_session(self, session_id: str) -> list[Observation]:
        rows = self.conn.execute(
            "SELECT * FROM observations WHERE session_id = ? ORDER BY created_at",
            (session_id,),
        ).fetchall()
        return [self._row_to_observation(row) for row in rows]

    def iter_observations(
        self, project_id: str | None = None, *, batch_size: int = 500
    ) -> Iterator[Observation]:
        last_created = -1
        last_id = ""
        while True:
            params: list[Any] = [last_created, last_created, last_id]
            project_clause = ""
            if project_id:
                project_clause = "AND project_id = ?"
                params.append(project_id)
            params.append(batch_size)
            rows = self.conn.execute(
                f"""
                SELECT * FROM observations
                WHERE (created_at > ? OR (created_at = ? AND id > ?)) {project_clause}
                ORDER BY created_at, id
                LIMIT ?
                """,
                params,
            ).fetchall()
            if not rows:
                return
            for row in rows:
                yield self._row_to_observation(row)
            last_created = int(rows[-1]["created_at"])
            last_id = rows[-1]["id"]

    def delete_observation(self, observation_id: str) -> bool:
        cur = self.conn.execute("DELETE FROM observations WHERE id = ?", (observation_id,))
        self.conn.commit()
        return cur.rowcount > 0

    def clear_project(self, project_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS n FROM observations WHERE project_id = ?", (project_id,)
        ).fetchone()
        with self.conn:
            self.conn.execute("DELETE FROM observations WHERE project_id = ?", (project_id,))
            self.conn.execute("DELETE FROM user_prompts WHERE project_id = ?", (project_id,))
            self.conn.execute("DELETE FROM sessions WHERE project_id = ?", (project_id,))
        return int(row["n"])

    # Search

    def search_observations(
        self,
        query: str,
        *,
        project_id: str | None = None,
        observation_type: str | None = None,
        limit: int = 20,
    ) -> list[LexicalHit]:
        return store_search.search_observations(
            self, query, project_id=project_id, observation_type=observation_type, limit=limit
        )

    def search_prompts(
        self, query: str, *, project_id: str | None = None, limit: int = 20
    ) -> list[LexicalHit]:
        return store_search.search_prompts(self, query, project_id=project_id, limit=limit)

    def search_sessions(
        self, query: str, *, project_id: str | None = None, limit: int = 20
    ) -> list[LexicalHit]:
        return store_search.search_sessions(self, query, project_id=project_id, limit=limit)

    # Usage and stats

    def record_usage(
        self,
        event: str,
        session_id: str | None = None,
        model: str | None = None,
        tokens_read: int = 0,
        tokens_written: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        return store_usage.record_usage(
            self,
            event,
            session_id=session_id,
            model=model,
            tokens_read=tokens_read,
            tokens_written=tokens_written,
            metadata=metadata,
        )

    def usage_summary(self) -> list[dict[str, Any]]:
        return store_usage.usage_summary(self)

    def stats(self, project_id: str | None = None) -> dict[str, Any]:
        clause = "WHERE project_id = ?" if project_id else ""
        params: tuple[Any, ...] = (project_id,) if project_id else ()
        counts: dict[str, Any] = {}
        for table in ("sessions", "user_prompts", "observations"):
            row = self.conn.execute(
                f"SELECT COUNT(*) AS n FROM {table} {clause}", params
            ).fetchone()
            counts[table] = int(row["n"])
        type_rows = self.conn.execute(
            f"SELECT type, COUNT(*) AS n FROM observations {clause} GROUP BY type ORDER BY n DESC",
            params,
        ).fetchall()
        counts["observation_types"] = {row["type"]: int(row["n"]) for row in type_rows}
        active = self.conn.execute(
            "SELECT COUNT(*) AS n FROM sessions WHERE status = 'active'"
        ).fetchone()
        counts["active_sessions"] = int(active["n"])
        counts["db_path"] = str(self.db_path)
        return counts
