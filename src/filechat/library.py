"""Caller-facing API: targets, indexing jobs, retrieval and chat."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Sequence

from filechat.config import AppConfig, IndexSettings, RetrievalSettings
from filechat.embedding.encoder import EmbeddingConfig, EmbeddingModel
from filechat.embedding.ollama import OllamaClient
from filechat.errors import FileChatError, IndexBusy
from filechat.index.indexer import Indexer, IndexStats, ProgressCallback
from filechat.index.search import Retriever
from filechat.index.storage import SQLiteVectorStore
from filechat.index.watch import ReindexQueue
from filechat.ingestion.ocr import OcrEngine, TesseractOcr
from filechat.models import (
    ChatResult,
    FileIndexRecord,
    FilePreview,
    IndexProgress,
    IndexTarget,
    SetupStatus,
    SourceHit,
)

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a RAG assistant. Answer only using the provided sources. "
    "If the sources do not contain the answer, say you don't know. "
    "Cite sources in brackets [1], [2], etc. "
    "Respond in the same language as the user's question."
)

__all__ = ["IndexBusy", "IndexJob", "Library", "build_chat_messages", "model_installed"]


def build_chat_messages(question: str, sources: Sequence[SourceHit]) -> List[Dict[str, str]]:
    context = "".join(
        f"\n[{number}] {hit.file_path} (page {hit.page + 1})\n{hit.snippet}\n"
        for number, hit in enumerate(sources, start=1)
    )
    user = f"Question:\n{question}\n\nSources:\n{context}\n\nAnswer with citations [1], [2]:"
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def _split_tag(name: str) -> tuple[str, str | None]:
    base, sep, tag = name.partition(":")
    return base, (tag if sep else None)


def model_installed(models: Iterable[str], required: str) -> bool:
    """``llama3.1:8b`` is satisfied by itself or an untagged ``llama3.1``;
    an untagged requirement is satisfied by any tag of the same base."""
    required_base, required_tag = _split_tag(required)
    for model in models:
        base, tag = _split_tag(model)
        if required_tag is None:
            if base == required_base:
                return True
        elif model == required or (tag is None and base == required_base):
            return True
    return False


class IndexJob(threading.Thread):
    """Background indexing run with progress reporting and cooperative cancel."""

    def __init__(
        self,
        work: Callable[[ProgressCallback, threading.Event], IndexStats],
        progress: ProgressCallback | None = None,
    ) -> None:
        super().__init__(daemon=True, name="filechat-index")
        self._work = work
        self._progress = progress
        self._cancel_event = threading.Event()
        self.stats: IndexStats | None = None
        self.error: BaseException | None = None
        self.last_progress: IndexProgress | None = None

    def _emit(self, event: IndexProgress) -> None:
        self.last_progress = event
        if self._progress is not None:
            try:
                self._progress(event)
            except Exception:
                LOGGER.exception("Progress callback failed")

    def run(self) -> None:
        try:
            self.stats = self._work(self._emit, self._cancel_event)
        except Exception as exc:
            LOGGER.error("Indexing failed: %s", exc)
            self.error = exc
            self._emit(IndexProgress(current=0, total=0, file=str(exc), status="error"))
            return
        total = self.last_progress.total if self.last_progress else 0
        self._emit(IndexProgress(current=total, total=total, file="", status="done"))

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def running(self) -> bool:
        return self.is_alive()

    def wait(self, timeout: float | None = None) -> IndexStats | None:
        """Join the thread; re-raise the run's exception if it failed."""
        self.join(timeout)
        if self.error is not None:
            raise self.error
        return self.stats


class Library:
    """Facade tying the store, the Ollama client and the indexing pipeline together."""

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        store: SQLiteVectorStore | None = None,
        client: OllamaClient | None = None,
        ocr: OcrEngine | None = None,
    ) -> None:
        self.config = config or AppConfig()
        if store is None:
            db_path = self.config.resolve_db_path()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            store = SQLiteVectorStore(db_path)
        self.store = store
        self.client = client or OllamaClient(self.config.ollama_url, timeout=self.config.ollama_timeout)
        self.ocr = ocr if ocr is not None else TesseractOcr(self.config.tesseract_cmd)
        self._job: IndexJob | None = None
        self._job_lock = threading.Lock()

    def close(self) -> None:
        job = self._job
        if job is not None and job.is_alive():
            job.cancel()
            job.join(timeout=5)
        self.client.close()
        self.store.close()

    # -- building blocks --------------------------------------------------

    def embedder(self, embed_model: str | None = None) -> EmbeddingModel:
        return EmbeddingModel(
            self.client,
            EmbeddingConfig(
                model_name=embed_model or self.config.embed_model,
                batch_size=self.config.embed_batch_size,
                fallback_chars=self.config.embed_fallback_chars,
                fallback_strategy=self.config.embed_fallback_strategy,
            ),
        )

    def indexer(self, embed_model: str | None = None, settings: IndexSettings | None = None) -> Indexer:
        return Indexer(self.embedder(embed_model), self.store, settings, ocr=self.ocr)

    # -- targets ----------------------------------------------------------

    def list_targets(self) -> List[IndexTarget]:
        return self.store.list_targets()

    def save_targets(self, targets: Sequence[IndexTarget]) -> List[IndexTarget]:
        self.store.save_targets(targets)
        return self.store.list_targets()

    def prune_index(self, targets: Sequence[IndexTarget]) -> int:
        """Delete index records for files no longer covered by ``targets``."""
        return self.store.prune(targets)

    def documents(self) -> List[FileIndexRecord]:
        return self.store.list_files()

    def stats(self) -> dict:
        return self.store.get_stats()

    # -- indexing ---------------------------------------------------------

    def preview_index(
        self, targets: Sequence[IndexTarget], embed_model: str | None = None
    ) -> List[FilePreview]:
        indexer = self.indexer(embed_model)
        return indexer.preview(targets, indexer.embed_model)

    @property
    def current_job(self) -> IndexJob | None:
        return self._job

    def _start_job(
        self,
        work: Callable[[ProgressCallback, threading.Event], IndexStats],
        progress: ProgressCallback | None,
    ) -> IndexJob:
        with self._job_lock:
            if self._job is not None and self._job.is_alive():
                raise IndexBusy("An indexing job is already running")
            job = IndexJob(work, progress)
            self._job = job
            job.start()
        return job

    def start_index(
        self,
        targets: Sequence[IndexTarget],
        embed_model: str | None = None,
        settings: IndexSettings | None = None,
        progress: ProgressCallback | None = None,
    ) -> IndexJob:
        indexer = self.indexer(embed_model, settings)
        targets = list(targets)
        return self._start_job(
            lambda emit, cancel: indexer.index(targets, progress=emit, cancel=cancel), progress
        )

    def reindex_files(
        self,
        paths: Iterable[Path | str],
        embed_model: str | None = None,
        settings: IndexSettings | None = None,
        progress: ProgressCallback | None = None,
    ) -> IndexJob:
        indexer = self.indexer(embed_model, settings)
        paths = [Path(path) for path in paths]
        return self._start_job(
            lambda emit, cancel: indexer.reindex(paths, progress=emit, cancel=cancel), progress
        )

    def cancel_index(self) -> bool:
        job = self._job
        if job is None or not job.is_alive():
            return False
        job.cancel()
        return True

    def reindex_queue(
        self, embed_model: str | None = None, settings: IndexSettings | None = None
    ) -> ReindexQueue:
        """Watcher consumer that re-indexes changed files under the saved targets."""
        return ReindexQueue(
            lambda paths: self.reindex_files(paths, embed_model, settings).wait(),
            self.list_targets,
        )

    # -- querying ---------------------------------------------------------

    def retrieve(
        self,
        question: str,
        embed_model: str | None = None,
        settings: RetrievalSettings | None = None,
    ) -> List[SourceHit]:
        return Retriever(self.embedder(embed_model), self.store).retrieve(question, settings)

    def chat(
        self,
        question: str,
        llm_model: str | None = None,
        embed_model: str | None = None,
        settings: RetrievalSettings | None = None,
    ) -> ChatResult:
        sources = self.retrieve(question, embed_model, settings)
        messages = build_chat_messages(question, sources)
        answer = self.client.chat(llm_model or self.config.chat_model, messages)
        return ChatResult(answer=answer, sources=sources)

    def setup_status(self, required_models: Sequence[str] | None = None) -> SetupStatus:
        required = list(required_models or (self.config.embed_model, self.config.chat_model))
        try:
            models = self.client.list_models()
        except FileChatError as exc:
            return SetupStatus(reachable=False, missing_models=required, error=str(exc))
        missing = [name for name in required if not model_installed(models, name)]
        return SetupStatus(reachable=True, models=models, missing_models=missing)
