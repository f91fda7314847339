from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path

import pytest
from conftest import TEST_DIMENSION, FakeModel

from agentmem.embeddings import (
    EmbeddingInitError,
    EmbeddingPipeline,
    cosine_similarity,
    report_download,
    resolve_prefixes,
)


def _pipeline(tmp_path: Path, loader, **kwargs) -> EmbeddingPipeline:
    return EmbeddingPipeline(
        "test/hash-embed",
        tmp_path / "models",
        dimension=TEST_DIMENSION,
        loader=loader,
        **kwargs,
    )


def test_cosine_similarity() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0


def test_cosine_similarity_rejects_dimension_mismatch() -> None:
    with pytest.raises(ValueError, match="dimension mismatch"):
        cosine_similarity([1.0], [1.0, 2.0])


def test_prefixes_follow_model_family() -> None:
    assert resolve_prefixes("intfloat/multilingual-e5-small") == ("query: ", "passage: ")
    query, passage = resolve_prefixes("BAAI/bge-small-en-v1.5")
    assert query.startswith("Represent this sentence")
    assert passage == ""
    assert resolve_prefixes("sentence-transformers/all-MiniLM-L6-v2") == ("", "")


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_initialization(tmp_path: Path) -> None:
    loads: list[str] = []

    def loader(model_name, cache_dir, progress):
        loads.append(model_name)
        time.sleep(0.05)
        return FakeModel()

    pipeline = _pipeline(tmp_path, loader)
    try:
        vectors = await asyncio.gather(*(pipeline.embed(f"text {i}") for i in range(5)))
    finally:
        pipeline.close()

    assert loads == ["test/hash-embed"]
    assert len(vectors) == 5
    assert all(len(v) == TEST_DIMENSION for v in vectors)
    assert pipeline.get_status().status == "ready"
    assert pipeline.get_status().progress == 100


@pytest.mark.asyncio
async def test_init_timeout_leaves_pipeline_retryable(tmp_path: Path) -> None:
    attempts: list[int] = []

    def loader(model_name, cache_dir, progress):
        attempts.append(1)
        if len(attempts) == 1:
            time.sleep(0.3)
        return FakeModel()

    pipeline = _pipeline(tmp_path, loader, init_timeout_s=0.05)
    try:
        with pytest.raises(EmbeddingInitError, match="timed out"):
            await pipeline.embed("hello")
        status = pipeline.get_status()
        assert status.status == "error"
        assert status.error is not None

        vector = await pipeline.embed("hello")
    finally:
        pipeline.close()

    assert len(vector) == TEST_DIMENSION
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_loader_failure_is_reported(tmp_path: Path) -> None:
    def loader(model_name, cache_dir, progress):
        raise OSError("disk full")

    pipeline = _pipeline(tmp_path, loader)
    try:
        with pytest.raises(EmbeddingInitError, match="disk full"):
            await pipeline.ensure_ready()
        assert await pipeline.preload() is False
    finally:
        pipeline.close()
    assert pipeline.get_status().to_dict()["error"] == "disk full"


@pytest.mark.asyncio
async def test_batch_embedding_chunks_and_truncates(tmp_path: Path) -> None:
    model = FakeModel()
    pipeline = _pipeline(tmp_path, lambda *_: model, batch_size=2, max_chars=4)
    try:
        vectors = await pipeline.embed_batch(["alpha", "beta", "gamma", "delta", "epsilon"])
        assert await pipeline.embed_batch([]) == []
    finally:
        pipeline.close()

    assert len(vectors) == 5
    assert [len(call) for call in model.calls] == [2, 2, 1]
    assert model.calls[0] == ["alph", "beta"]


def test_progress_tracks_largest_file(tmp_path: Path) -> None:
    pipeline = _pipeline(tmp_path, lambda *_: FakeModel())
    try:
        pipeline.handle_progress({"status": "download", "file": "config.json", "total": 10})
        pipeline.handle_progress({"status": "download", "file": "model.onnx", "total": 1000})
        pipeline.handle_progress({"status": "done", "file": "config.json"})
        pipeline.handle_progress({"status": "progress", "file": "model.onnx", "progress": 42.4})

        status = pipeline.get_status()
    finally:
        pipeline.close()

    assert status.status == "downloading"
    assert status.progress == 42


def test_model_download_detection_and_cache_clear(tmp_path: Path) -> None:
    pipeline = EmbeddingPipeline("BAAI/bge-small-en-v1.5", tmp_path / "models")
    try:
        assert pipeline.is_model_downloaded() is False
        assert pipeline.get_status().status == "not_downloaded"

        weights = tmp_path / "models" / "models--qdrant--bge-small-en-v1.5-onnx-q" / "snap"
        weights.mkdir(parents=True)
        (weights / "model_optimized.onnx").write_bytes(b"\0")
        assert pipeline.is_model_downloaded() is True

        pipeline.clear_cache()
        assert pipeline.is_model_downloaded() is False
    finally:
        pipeline.close()


def test_report_download_polls_bytes_on_disk() -> None:
    events: list[dict] = []
    sizes = iter([100, 500])
    finished = threading.Event()

    def measure() -> int:
        size = next(sizes, 2000)
        if size == 2000:
            finished.set()
        return size

    with report_download("bge", 1000, measure, events.append, poll_s=0.001):
        assert finished.wait(5)

    assert events[0] == {"status": "download", "file": "bge", "total": 1000}
    assert events[-1] == {"status": "done", "file": "bge", "total": 1000}
    percents = [event["progress"] for event in events if event["status"] == "progress"]
    assert percents[:3] == [10.0, 50.0, 99.0]


def test_report_download_without_size_or_after_failure() -> None:
    events: list[dict] = []
    with report_download("bge", 0, lambda: 1 // 0, events.append, poll_s=0.001):
        time.sleep(0.01)
    assert [event["status"] for event in events] == ["download", "done"]

    events.clear()
    with pytest.raises(RuntimeError, match="network down"):
        with report_download("bge", 10, lambda: 0, events.append, poll_s=60):
            raise RuntimeError("network down")
    assert [event["status"] for event in events] == ["download"]
