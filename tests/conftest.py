from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path

import pytest

from agentmem.store import MemoryStore

TEST_DIMENSION = 16


@pytest.fixture(autouse=True)
def _isolate_agentmem_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENTMEM_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("AGENTMEM_DATA_DIR", str(tmp_path / "data"))
    for name in (
        "AGENTMEM_DB_PATH",
        "AGENTMEM_INDEX_DIR",
        "AGENTMEM_MODEL_CACHE_DIR",
        "AGENTMEM_EMBEDDING_MODEL",
        "AGENTMEM_EMBEDDING_DIMENSION",
        "AGENTMEM_EMBEDDING_DISABLED",
        "AGENTMEM_SUMMARY_PROVIDER",
        "AGENTMEM_SUMMARY_MODEL",
        "AGENTMEM_LLM_API_KEY",
        "AGENTMEM_LLM_BASE_URL",
        "AGENTMEM_CONTEXT_MIN_SCORE",
        "AGENTMEM_RRF_K",
        "AGENTMEM_ENHANCE_RATE_LIMIT",
        "AGENTMEM_ENHANCE",
        "AGENTMEM_PROJECT",
    ):
        monkeypatch.delenv(name, raising=False)


def hash_vector(text: str, dimension: int = TEST_DIMENSION) -> list[float]:
    """Bag-of-words vector: texts sharing words point in similar directions."""

    vector = [0.0] * dimension
    for word in re.findall(r"[a-z0-9]+", text.lower()):
        digest = hashlib.sha1(word.encode()).digest()
        vector[digest[0] % dimension] += 1.0
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0.0:
        vector[0] = 1.0
        return vector
    return [x / norm for x in vector]


class FakeModel:
    """Stands in for a fastembed ``TextEmbedding``."""

    def __init__(self, dimension: int = TEST_DIMENSION) -> None:
        self.dimension = dimension
        self.calls: list[list[str]] = []

    def embed(self, documents: list[str]):
        self.calls.append(list(documents))
        for doc in documents:
            yield hash_vector(doc, self.dimension)


class FakeEmbedder:
    """Async embedder with the attributes the vector index reads."""

    def __init__(
        self,
        model_name: str = "test/hash-embed",
        dimension: int = TEST_DIMENSION,
        *,
        query_prefix: str = "",
        passage_prefix: str = "",
    ) -> None:
        self.model_name = model_name
        self.dimension = dimension
        self.query_prefix = query_prefix
        self.passage_prefix = passage_prefix
        self.fail = False
        self.texts: list[str] = []

    async def embed(self, text: str) -> list[float]:
        if self.fail:
            raise RuntimeError("embedder unavailable")
        self.texts.append(text)
        return hash_vector(text, self.dimension)


@pytest.fixture
def store(tmp_path: Path):
    store = MemoryStore(tmp_path / "memory.sqlite")
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()
