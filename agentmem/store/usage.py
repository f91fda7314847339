from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .. import db
from .types import now_ms

if TYPE_CHECKING:
    from ._store import MemoryStore


def record_usage(
    store: MemoryStore,
    event: str,
    session_id: str | None = None,
    model: str | None = None,
    tokens_read: int = 0,
    tokens_written: int = 0,
    metadata: dict[str, Any] | None = None,
) -> int:
    cur = store.conn.execute(
        """
        INSERT INTO usage_events(session_id, event, model, tokens_read, tokens_written,
                                 created_at, metadata_json)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            event,
            model,
            int(tokens_read),
            int(tokens_written),
            now_ms(),
            db.to_json(metadata),
        ),
    )
    store.conn.commit()
    lastrowid = cur.lastrowid
    if lastrowid is None:
        raise RuntimeError("Failed to record usage")
    return int(lastrowid)


def usage_summary(store: MemoryStore) -> list[dict[str, Any]]:
    rows = store.conn.execute(
        """
        SELECT event,
               COUNT(*) AS count,
               COALESCE(SUM(tokens_read), 0) AS tokens_read,
               COALESCE(SUM(tokens_written), 0) AS tokens_written
        FROM usage_events
        GROUP BY event
        ORDER BY event
        """
    ).fetchall()
    return db.rows_to_dicts(rows)
