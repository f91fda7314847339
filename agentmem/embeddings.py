from __future__ import annotations

import asyncio
import logging
import math
import shutil
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "BAAI/bge-small-en-v1.5"
DEFAULT_DIMENSION = 384
DEFAULT_MAX_CHARS = 8000
DEFAULT_BATCH_SIZE = 32
DEFAULT_INIT_TIMEOUT_S = 300.0
DOWNLOAD_POLL_S = 0.5

# (query prefix, passage prefix) keyed by a substring of the model name.
MODEL_PREFIXES: dict[str, tuple[str, str]] = {
    "e5": ("query: ", "passage: "),
    "bge-small-en": ("Represent this sentence for searching relevant passages: ", ""),
    "bge-base-en": ("Represent this sentence for searching relevant passages: ", ""),
    "bge-large-en": ("Represent this sentence for searching relevant passages: ", ""),
    "nomic-embed": ("search_query: ", "search_document: "),
}

ProgressCallback = Callable[[dict[str, Any]], None]


class EmbeddingModel(Protocol):
    def embed(self, documents: list[str]) -> Iterable[Sequence[float]]: ...


ModelLoader = Callable[[str, Path, ProgressCallback], EmbeddingModel]


class EmbeddingInitError(RuntimeError):
    pass


@dataclass
class ModelStatus:
    status: str
    model: str
    progress: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "model": self.model,
            "progress": self.progress,
        }
        if self.error:
            data["error"] = self.error
        return data


def _dir_bytes(paths: Iterable[Path]) -> int:
    total = 0
    for root in paths:
        for path in root.rglob("*"):
            try:
                if path.is_file():
                    total += path.stat().st_size
            except OSError:
                continue
    return total


def _model_cache_dirs(cache_dir: Path, model_name: str) -> list[Path]:
    if not cache_dir.exists():
        return []
    marker = model_name.rsplit("/", 1)[-1].lower()
    return [path for path in cache_dir.iterdir() if path.is_dir() and marker in path.name.lower()]


@contextmanager
def report_download(
    file_name: str,
    expected_bytes: int,
    measure: Callable[[], int],
    progress: ProgressCallback,
    *,
    poll_s: float = DOWNLOAD_POLL_S,
) -> Iterator[None]:
    """Emit download events while the body runs, polling ``measure`` for bytes on disk.

    Without an expected size only the start and end events are emitted.
    """

    progress({"status": "download", "file": file_name, "total": expected_bytes})
    stop = threading.Event()

    def poll() -> None:
        while not stop.wait(poll_s):
            percent = min(99.0, measure() * 100 / expected_bytes)
            progress(
                {
                    "status": "progress",
                    "file": file_name,
                    "progress": percent,
                    "total": expected_bytes,
                }
            )

    watcher: threading.Thread | None = None
    if expected_bytes > 0:
        watcher = threading.Thread(target=poll, name="agentmem-model-download", daemon=True)
        watcher.start()
    try:
        yield
    finally:
        stop.set()
        if watcher is not None:
            watcher.join()
    progress({"status": "done", "file": file_name, "total": expected_bytes})


def fastembed_loader(
    model_name: str, cache_dir: Path, progress: ProgressCallback
) -> EmbeddingModel:
    try:
        from fastembed import TextEmbedding
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("fastembed is required for vector search") from exc
    expected = 0
    for description in TextEmbedding.list_supported_models():
        if description.get("model") == model_name:
            expected = int(float(description.get("size_in_GB") or 0) * 1024**3)
            break
    with report_download(
        model_name,
        expected,
        lambda: _dir_bytes(_model_cache_dirs(cache_dir, model_name)),
        progress,
    ):
        return TextEmbedding(model_name=model_name, cache_dir=str(cache_dir))


def resolve_prefixes(model_name: str) -> tuple[str, str]:
    lowered = model_name.lower()
    for marker, prefixes in MODEL_PREFIXES.items():
        if marker in lowered:
            return prefixes
    return "", ""


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimension mismatch: {len(a)} vs {len(b)}")
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b, strict=True):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def _embed_sync(model: EmbeddingModel, texts: list[str]) -> list[list[float]]:
    return [[float(x) for x in vector] for vector in model.embed(texts)]


class EmbeddingPipeline:
    """Lazily loaded local embedding model.

    The first ``embed`` call loads the model; concurrent callers share that
    single attempt. Inference runs on one dedicated worker thread so calls into
    the model runtime never overlap and the event loop stays free.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        cache_dir: Path | str | None = None,
        *,
        dimension: int = DEFAULT_DIMENSION,
        loader: ModelLoader | None = None,
        init_timeout_s: float = DEFAULT_INIT_TIMEOUT_S,
        max_chars: int = DEFAULT_MAX_CHARS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.model_name = model_name
        self.dimension = dimension
        self.cache_dir = Path(cache_dir or Path("~/.agentmem/models")).expanduser()
        self.init_timeout_s = init_timeout_s
        self.max_chars = max_chars
        self.batch_size = max(1, batch_size)
        self.query_prefix, self.passage_prefix = resolve_prefixes(model_name)
        self._loader = loader or fastembed_loader
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="embedding")
        self._model: EmbeddingModel | None = None
        self._init_task: asyncio.Task[EmbeddingModel] | None = None
        self._status = "not_downloaded"
        self._error: str | None = None
        self._file_progress: dict[str, tuple[int, int]] = {}
        self._last_file: str | None = None

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    async def ensure_ready(self) -> EmbeddingModel:
        if self._model is not None:
            return self._model
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> EmbeddingModel:
        started = time.monotonic()
        self._status = "ready" if self.is_model_downloaded() else "downloading"
        self._error = None
        self._file_progress.clear()
        self._last_file = None
        logger.info("initializing embedding model", extra={"model": self.model_name})
        loop = asyncio.get_running_loop()

        def report(event: dict[str, Any]) -> None:
            loop.call_soon_threadsafe(self.handle_progress, event)

        try:
            model = await asyncio.wait_for(
                asyncio.to_thread(self._loader, self.model_name, self.cache_dir, report),
                timeout=self.init_timeout_s,
            )
        except TimeoutError as exc:
            message = f"embedding model init timed out after {self.init_timeout_s:g}s"
            self._fail(message)
            raise EmbeddingInitError(message) from exc
        except Exception as exc:
            self._fail(str(exc) or exc.__class__.__name__)
            raise EmbeddingInitError(f"embedding model init failed: {exc}") from exc
        self._model = model
        self._status = "ready"
        self._error = None
        logger.info(
            "embedding model ready",
            extra={
                "model": self.model_name,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return model

    def _fail(self, message: str) -> None:
        logger.error("embedding model init failed: %s", message, extra={"model": self.model_name})
        self._status = "error"
        self._error = message
        # Leave the pipeline retryable: the next caller starts a fresh attempt.
        self._init_task = None

    def handle_progress(self, event: dict[str, Any]) -> None:
        status = event.get("status")
        file_name = str(event.get("file") or self.model_name)
        if status == "download":
            self._status = "downloading"
            self._file_progress.setdefault(file_name, (0, int(event.get("total") or 0)))
            self._last_file = file_name
            logger.info("downloading embedding model file", extra={"file": file_name})
        elif status == "progress":
            self._status = "downloading"
            raw = event.get("progress") or 0
            progress = max(0, min(100, round(float(raw))))
            _, total = self._file_progress.get(file_name, (0, 0))
            self._file_progress[file_name] = (progress, int(event.get("total") or total))
            self._last_file = file_name
        elif status == "done":
            _, total = self._file_progress.get(file_name, (0, 0))
            self._file_progress[file_name] = (100, total)
            logger.info("downloaded embedding model file", extra={"file": file_name})

    def _overall_progress(self) -> int:
        if not self._file_progress:
            return 0
        # One large weights file dominates the download, so it stands for the whole.
        largest = max(self._file_progress.items(), key=lambda item: item[1][1])
        if largest[1][1] > 0:
            return largest[1][0]
        if self._last_file and self._last_file in self._file_progress:
            return self._file_progress[self._last_file][0]
        return 0

    def get_status(self) -> ModelStatus:
        if self._model is not None:
            return ModelStatus("ready", self.model_name, progress=100)
        if self._status == "downloading":
            return ModelStatus("downloading", self.model_name, progress=self._overall_progress())
        if self._status == "error":
            return ModelStatus("error", self.model_name, error=self._error)
        if self.is_model_downloaded():
            return ModelStatus("ready", self.model_name, progress=100)
        return ModelStatus("not_downloaded", self.model_name)

    def _model_dirs(self) -> list[Path]:
        return _model_cache_dirs(self.cache_dir, self.model_name)

    def is_model_downloaded(self) -> bool:
        return any(any(path.rglob("*.onnx")) for path in self._model_dirs())

    def clear_cache(self) -> None:
        logger.info("clearing embedding model cache", extra={"cache_dir": str(self.cache_dir)})
        self._model = None
        self._init_task = None
        self._status = "not_downloaded"
        self._error = None
        self._file_progress.clear()
        for path in self._model_dirs():
            shutil.rmtree(path, ignore_errors=True)

    async def preload(self) -> bool:
        try:
            await self.ensure_ready()
        except EmbeddingInitError as exc:
            logger.warning("embedding model preload failed", exc_info=exc)
            return False
        return True

    def _truncate(self, text: str) -> str:
        return text if len(text) <= self.max_chars else text[: self.max_chars]

    async def embed(self, text: str) -> list[float]:
        model = await self.ensure_ready()
        loop = asyncio.get_running_loop()
        vectors = await loop.run_in_executor(
            self._executor, _embed_sync, model, [self._truncate(text)]
        )
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        model = await self.ensure_ready()
        loop = asyncio.get_running_loop()
        results: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            chunk = [self._truncate(t) for t in texts[start : start + self.batch_size]]
            results.extend(await loop.run_in_executor(self._executor, _embed_sync, model, chunk))
        return results

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
