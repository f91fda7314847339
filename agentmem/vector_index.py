from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import sqlite_vec

from .db import connect, load_sqlite_vec

logger = logging.getLogger(__name__)

FINGERPRINT_FILE = ".embedding-model"
INDEX_DB_FILE = "vectors.sqlite"
TABLE_NAME = "vec_observations"


class TextEmbedder(Protocol):
    model_name: str
    dimension: int
    query_prefix: str
    passage_prefix: str

    async def embed(self, text: str) -> list[float]: ...


@dataclass
class VectorMatch:
    id: str
    score: float
    project_id: str | None
    type: str
    created_at: int


class VectorIndex:
    """Nearest-neighbour index of observation embeddings backed by sqlite-vec.

    The table lives in its own database file next to a fingerprint file naming
    the model (and dimension) that produced the stored vectors. When the
    configured model differs from the fingerprint the table is dropped and
    recreated empty; re-embedding is left to a reindex.
    """

    def __init__(self, index_dir: Path | str, embedder: TextEmbedder) -> None:
        self.index_dir = Path(index_dir).expanduser()
        self.embedder = embedder
        self.db_path = self.index_dir / INDEX_DB_FILE
        self.fingerprint_path = self.index_dir / FINGERPRINT_FILE
        self._conn: sqlite3.Connection | None = None
        self._init_task: asyncio.Task[None] | None = None

    @property
    def fingerprint(self) -> str:
        return f"{self.embedder.model_name}:{self.embedder.dimension}"

    @property
    def is_ready(self) -> bool:
        return self._conn is not None

    def _stored_fingerprint(self) -> str | None:
        try:
            return self.fingerprint_path.read_text().strip() or None
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("vector index fingerprint unreadable", exc_info=exc)
            return None

    async def initialize(self) -> None:
        if self._conn is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        logger.info("initializing vector index", extra={"path": str(self.db_path)})
        conn: sqlite3.Connection | None = None
        try:
            self.index_dir.mkdir(parents=True, exist_ok=True)
            conn = connect(self.db_path)
            load_sqlite_vec(conn)
            stored = self._stored_fingerprint()
            if stored != self.fingerprint and self._table_exists(conn):
                logger.info(
                    "embedding model changed, dropping stored vectors",
                    extra={"previous": stored, "current": self.fingerprint},
                )
                conn.execute(f"DROP TABLE {TABLE_NAME}")
            conn.execute(
                f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS {TABLE_NAME} USING vec0(
                    id text primary key,
                    embedding float[{int(self.embedder.dimension)}] distance_metric=cosine,
                    project_id text,
                    type text,
                    created_at integer
                )
                """
            )
            conn.commit()
            if stored != self.fingerprint:
                self.fingerprint_path.write_text(self.fingerprint + "\n")
        except Exception:
            if conn is not None:
                conn.close()
            self._init_task = None
            logger.exception("vector index init failed")
            raise
        self._conn = conn
        logger.info("vector index ready", extra={"fingerprint": self.fingerprint})

    @staticmethod
    def _table_exists(conn: sqlite3.Connection) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE name = ?", (TABLE_NAME,)
        ).fetchone()
        return row is not None

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("vector index not initialized")
        return self._conn

    def _check_dimension(self, vector: list[float]) -> None:
        if len(vector) != self.embedder.dimension:
            raise ValueError(
                f"embedding has {len(vector)} dimensions, index expects {self.embedder.dimension}"
            )

    async def add(
        self,
        id: str,
        text: str,
        project_id: str | None,
        type: str,
        created_at: int,
    ) -> None:
        await self.initialize()
        vector = await self.embedder.embed(f"{self.embedder.passage_prefix}{text}")
        self._check_dimension(vector)
        conn = self._require_conn()
        with conn:
            conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (id,))
            conn.execute(
                f"""
                INSERT INTO {TABLE_NAME}(id, embedding, project_id, type, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (id, sqlite_vec.serialize_float32(vector), project_id or "", type, created_at),
            )
        logger.debug("indexed observation", extra={"observation_id": id})

    async def search(
        self,
        query: str,
        *,
        project_id: str | None = None,
        limit: int = 10,
        type: str | None = None,
    ) -> list[VectorMatch]:
        if limit <= 0:
            return []
        await self.initialize()
        vector = await self.embedder.embed(f"{self.embedder.query_prefix}{query}")
        self._check_dimension(vector)
        rows = self._require_conn().execute(
            f"""
            SELECT id, distance, project_id, type, created_at
            FROM {TABLE_NAME}
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
            """,
            (sqlite_vec.serialize_float32(vector), limit * 2),
        ).fetchall()
        matches: list[VectorMatch] = []
        for row in rows:
            row_project = row["project_id"] or None
            if project_id and row_project != project_id:
                continue
            if type and row["type"] != type:
                continue
            matches.append(
                VectorMatch(
                    id=row["id"],
                    score=1.0 - float(row["distance"]),
                    project_id=row_project,
                    type=row["type"],
                    created_at=int(row["created_at"] or 0),
                )
            )
            if len(matches) >= limit:
                break
        return matches

    async def delete(self, id: str) -> None:
        try:
            await self.initialize()
            with self._require_conn() as conn:
                conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (id,))
        except Exception as exc:
            logger.error(
                "vector index delete failed", extra={"observation_id": id}, exc_info=exc
            )

    async def delete_by_project(self, project_id: str) -> None:
        try:
            await self.initialize()
            conn = self._require_conn()
            ids = [
                row["id"]
                for row in conn.execute(
                    f"SELECT id FROM {TABLE_NAME} WHERE project_id = ?", (project_id,)
                ).fetchall()
            ]
            with conn:
                conn.executemany(
                    f"DELETE FROM {TABLE_NAME} WHERE id = ?", [(item,) for item in ids]
                )
            logger.info(
                "deleted project vectors", extra={"project_id": project_id, "count": len(ids)}
            )
        except Exception as exc:
            logger.error(
                "vector index project delete failed",
                extra={"project_id": project_id},
                exc_info=exc,
            )

    async def clear(self) -> None:
        try:
            await self.initialize()
            with self._require_conn() as conn:
                conn.execute(f"DELETE FROM {TABLE_NAME}")
            logger.info("cleared vector index")
        except Exception as exc:
            logger.error("vector index clear failed", exc_info=exc)

    def count(self) -> int:
        if self._conn is None:
            return 0
        row = self._conn.execute(f"SELECT COUNT(*) AS n FROM {TABLE_NAME}").fetchone()
        return int(row["n"] or 0)

    def stats(self) -> dict[str, Any]:
        return {
            "ready": self.is_ready,
            "total_vectors": self.count(),
            "model": self.embedder.model_name,
            "dimension": self.embedder.dimension,
            "path": str(self.db_path),
        }

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._init_task = None
