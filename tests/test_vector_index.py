from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeEmbedder

from agentmem.vector_index import FINGERPRINT_FILE, VectorIndex


async def _seed(index: VectorIndex) -> None:
    await index.add("obs-1", "sqlite fts5 search ranking", "proj-a", "explore", 1)
    await index.add("obs-2", "react component rendering", "proj-a", "implement", 2)
    await index.add("obs-3", "sqlite vector search index", "proj-b", "explore", 3)


@pytest.mark.asyncio
async def test_initialize_writes_fingerprint(tmp_path: Path) -> None:
    index = VectorIndex(tmp_path / "vectors", FakeEmbedder())
    try:
        await index.initialize()
        assert index.is_ready
        assert index.count() == 0
    finally:
        index.close()

    fingerprint = (tmp_path / "vectors" / FINGERPRINT_FILE).read_text().strip()
    assert fingerprint == "test/hash-embed:16"


@pytest.mark.asyncio
async def test_search_ranks_by_similarity(tmp_path: Path) -> None:
    embedder = FakeEmbedder(query_prefix="q: ", passage_prefix="p: ")
    index = VectorIndex(tmp_path / "vectors", embedder)
    try:
        await _seed(index)
        matches = await index.search("sqlite search", limit=3)
    finally:
        index.close()

    assert matches
    assert matches[0].id in {"obs-1", "obs-3"}
    assert all(-1.0 <= m.score <= 1.0 for m in matches)
    assert matches[0].score > 0
    assert embedder.texts[0].startswith("p: ")
    assert embedder.texts[-1] == "q: sqlite search"


@pytest.mark.asyncio
async def test_search_filters_by_project_and_type(tmp_path: Path) -> None:
    index = VectorIndex(tmp_path / "vectors", FakeEmbedder())
    try:
        await _seed(index)
        scoped = await index.search("sqlite search", project_id="proj-b", limit=5)
        typed = await index.search("sqlite search", type="implement", limit=5)
        assert await index.search("sqlite", limit=0) == []
    finally:
        index.close()

    assert [m.id for m in scoped] == ["obs-3"]
    assert scoped[0].project_id == "proj-b"
    assert scoped[0].created_at == 3
    assert [m.id for m in typed] == ["obs-2"]


@pytest.mark.asyncio
async def test_add_replaces_existing_vector(tmp_path: Path) -> None:
    index = VectorIndex(tmp_path / "vectors", FakeEmbedder())
    try:
        await index.add("obs-1", "first text", "proj", "explore", 1)
        await index.add("obs-1", "second text", "proj", "edit", 2)
        assert index.count() == 1
        matches = await index.search("second text", limit=1)
    finally:
        index.close()
    assert matches[0].type == "edit"


@pytest.mark.asyncio
async def test_dimension_mismatch_is_rejected(tmp_path: Path) -> None:
    class WrongSize(FakeEmbedder):
        async def embed(self, text: str) -> list[float]:
            return [1.0, 0.0]

    index = VectorIndex(tmp_path / "vectors", WrongSize())
    try:
        with pytest.raises(ValueError, match="dimensions"):
            await index.add("obs-1", "text", "proj", "explore", 1)
    finally:
        index.close()


@pytest.mark.asyncio
async def test_model_change_drops_stored_vectors(tmp_path: Path) -> None:
    first = VectorIndex(tmp_path / "vectors", FakeEmbedder(model_name="model-a"))
    try:
        await _seed(first)
        assert first.count() == 3
    finally:
        first.close()

    same = VectorIndex(tmp_path / "vectors", FakeEmbedder(model_name="model-a"))
    try:
        await same.initialize()
        assert same.count() == 3
    finally:
        same.close()

    migrated = VectorIndex(tmp_path / "vectors", FakeEmbedder(model_name="model-b"))
    try:
        await migrated.initialize()
        assert migrated.count() == 0
        await migrated.add("obs-9", "fresh vector", "proj-a", "explore", 9)
        assert migrated.count() == 1
    finally:
        migrated.close()

    fingerprint = (tmp_path / "vectors" / FINGERPRINT_FILE).read_text().strip()
    assert fingerprint == "model-b:16"


@pytest.mark.asyncio
async def test_delete_and_delete_by_project(tmp_path: Path) -> None:
    index = VectorIndex(tmp_path / "vectors", FakeEmbedder())
    try:
        await _seed(index)
        await index.delete("obs-2")
        assert index.count() == 2

        await index.delete_by_project("proj-a")
        remaining = await index.search("sqlite search", limit=5)
        assert [m.id for m in remaining] == ["obs-3"]

        await index.clear()
        assert index.count() == 0
        stats = index.stats()
    finally:
        index.close()

    assert stats["ready"] is True
    assert stats["total_vectors"] == 0
    assert stats["model"] == "test/hash-embed"
