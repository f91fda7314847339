from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import sqlite_vec

from .config import DEFAULT_DATA_DIR

DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "memory.sqlite"


def sqlite_vec_version(conn: sqlite3.Connection) -> str | None:
    try:
        row = conn.execute("select vec_version()").fetchone()
    except sqlite3.Error:
        return None
    if not row or row[0] is None:
        return None
    return str(row[0])


def load_sqlite_vec(conn: sqlite3.Connection) -> None:
    try:
        conn.enable_load_extension(True)
    except AttributeError as exc:
        raise RuntimeError(
            "sqlite-vec requires a Python SQLite build that supports extension loading. "
            "Install a Python build with enable_load_extension and try again."
        ) from exc
    try:
        sqlite_vec.load(conn)
        if sqlite_vec_version(conn) is None:
            raise RuntimeError("sqlite-vec loaded but version check failed")
    except Exception as exc:  # pragma: no cover
        message = (
            "Failed to load sqlite-vec extension. "
            "Vector search requires sqlite-vec. "
            "To run lexical-only temporarily, set AGENTMEM_EMBEDDING_DISABLED=1."
        )
        if "ELFCLASS32" in str(exc):
            message = (
                "Failed to load sqlite-vec extension (ELFCLASS32). "
                "On Linux aarch64, PyPI may ship a 32-bit vec0.so; "
                "replace it with the 64-bit aarch64 loadable."
            )
        raise RuntimeError(message) from exc
    finally:
        try:
            conn.enable_load_extension(False)
        except AttributeError:
            pass


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            sub_chat_id TEXT NOT NULL,
            chat_id TEXT,
            project_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            started_at INTEGER NOT NULL,
            completed_at INTEGER,
            summary_request TEXT,
            summary_investigated TEXT,
            summary_learned TEXT,
            summary_completed TEXT,
            summary_next_steps TEXT,
            summary_model TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_sub_chat_status ON sessions(sub_chat_id, status);
        CREATE INDEX IF NOT EXISTS idx_sessions_project_started
            ON sessions(project_id, started_at DESC);

        CREATE TABLE IF NOT EXISTS user_prompts (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            project_id TEXT NOT NULL,
            prompt_text TEXT NOT NULL,
            prompt_number INTEGER NOT NULL DEFAULT 1,
            created_at INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_user_prompts_session ON user_prompts(session_id);
        CREATE INDEX IF NOT EXISTS idx_user_prompts_project_created
            ON user_prompts(project_id, created_at DESC);

        CREATE TABLE IF NOT EXISTS observations (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            project_id TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT,
            subtitle TEXT,
            narrative TEXT,
            facts TEXT,
            concepts TEXT,
            files_read TEXT,
            files_modified TEXT,
            tool_name TEXT,
            tool_call_id TEXT,
            prompt_number INTEGER,
            created_at INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_observations_project_created
            ON observations(project_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_observations_session ON observations(session_id);
        CREATE INDEX IF NOT EXISTS idx_observations_tool_call ON observations(tool_call_id);

        CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
            title, subtitle, narrative, facts, concepts,
            content='observations',
            content_rowid='rowid'
        );

        CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
            INSERT INTO observations_fts(rowid, title, subtitle, narrative, facts, concepts)
            VALUES (new.rowid, new.title, new.subtitle, new.narrative, new.facts, new.concepts);
        END;

        CREATE TRIGGER IF NOT EXISTS observations_au AFTER UPDATE ON observations BEGIN
            INSERT INTO observations_fts(
                observations_fts, rowid, title, subtitle, narrative, facts, concepts
            )
            VALUES('delete', old.rowid, old.title, old.subtitle, old.narrative, old.facts,
                   old.concepts);
            INSERT INTO observations_fts(rowid, title, subtitle, narrative, facts, concepts)
            VALUES (new.rowid, new.title, new.subtitle, new.narrative, new.facts, new.concepts);
        END;

        CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
            INSERT INTO observations_fts(
                observations_fts, rowid, title, subtitle, narrative, facts, concepts
            )
            VALUES('delete', old.rowid, old.title, old.subtitle, old.narrative, old.facts,
                   old.concepts);
        END;

        CREATE VIRTUAL TABLE IF NOT EXISTS user_prompts_fts USING fts5(
            prompt_text,
            content='user_prompts',
            content_rowid='rowid'
        );

        CREATE TRIGGER IF NOT EXISTS user_prompts_ai AFTER INSERT ON user_prompts BEGIN
            INSERT INTO user_prompts_fts(rowid, prompt_text) VALUES (new.rowid, new.prompt_text);
        END;

        CREATE TRIGGER IF NOT EXISTS user_prompts_ad AFTER DELETE ON user_prompts BEGIN
            INSERT INTO user_prompts_fts(user_prompts_fts, rowid, prompt_text)
            VALUES('delete', old.rowid, old.prompt_text);
        END;

        CREATE VIRTUAL TABLE IF NOT EXISTS session_summaries_fts USING fts5(
            summary_request, summary_investigated, summary_learned, summary_completed,
            summary_next_steps,
            content='sessions',
            content_rowid='rowid'
        );

        CREATE TRIGGER IF NOT EXISTS sessions_ai AFTER INSERT ON sessions BEGIN
            INSERT INTO session_summaries_fts(
                rowid, summary_request, summary_investigated, summary_learned,
                summary_completed, summary_next_steps
            )
            VALUES (new.rowid, new.summary_request, new.summary_investigated,
                    new.summary_learned, new.summary_completed, new.summary_next_steps);
        END;

        CREATE TRIGGER IF NOT EXISTS sessions_au AFTER UPDATE ON sessions BEGIN
            INSERT INTO session_summaries_fts(
                session_summaries_fts, rowid, summary_request, summary_investigated,
                summary_learned, summary_completed, summary_next_steps
            )
            VALUES('delete', old.rowid, old.summary_request, old.summary_investigated,
                   old.summary_learned, old.summary_completed, old.summary_next_steps);
            INSERT INTO session_summaries_fts(
                rowid, summary_request, summary_investigated, summary_learned,
                summary_completed, summary_next_steps
            )
            VALUES (new.rowid, new.summary_request, new.summary_investigated,
                    new.summary_learned, new.summary_completed, new.summary_next_steps);
        END;

        CREATE TRIGGER IF NOT EXISTS sessions_ad AFTER DELETE ON sessions BEGIN
            INSERT INTO session_summaries_fts(
                session_summaries_fts, rowid, summary_request, summary_investigated,
                summary_learned, summary_completed, summary_next_steps
            )
            VALUES('delete', old.rowid, old.summary_request, old.summary_investigated,
                   old.summary_learned, old.summary_completed, old.summary_next_steps);
        END;

        CREATE TABLE IF NOT EXISTS usage_events (
            id INTEGER PRIMARY KEY,
            session_id TEXT REFERENCES sessions(id) ON DELETE SET NULL,
            event TEXT NOT NULL,
            model TEXT,
            tokens_read INTEGER DEFAULT 0,
            tokens_written INTEGER DEFAULT 0,
            created_at INTEGER NOT NULL,
            metadata_json TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_usage_events_event_created
            ON usage_events(event, created_at DESC);
        """
    )
    _ensure_column(conn, "sessions", "summary_model", "TEXT")
    _ensure_column(conn, "observations", "prompt_number", "INTEGER")
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, column_type: str) -> None:
    existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    if column in existing:
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = {}
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False)


def from_json(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def from_json_list(text: str | None) -> list[str]:
    value = from_json(text)
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]
