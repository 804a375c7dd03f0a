"""Document indexing pipeline."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Sequence

from filechat.config import IndexSettings
from filechat.embedding.encoder import EmbeddingModel
from filechat.errors import (
    DimensionMismatch,
    EmbeddingError,
    EmbeddingServiceUnavailable,
    ExtractionFailed,
    FileChatError,
    UnsupportedFormat,
)
from filechat.index.storage import SQLiteVectorStore
from filechat.ingestion.extractors import Extractor, build_chunks, extract
from filechat.ingestion.ocr import OcrEngine
from filechat.models import (
    DocumentKind,
    FileIndexRecord,
    FilePreview,
    FileStatus,
    IndexProgress,
    IndexTarget,
    PageText,
    TargetKind,
)
from filechat.utils.files import discover_files, file_fingerprint, kind_from_path, matches_any_target

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[IndexProgress], None]

# Per-file failures; anything else aborts the run
_FILE_ERRORS = (
    UnsupportedFormat,
    ExtractionFailed,
    EmbeddingServiceUnavailable,
    OSError,
)


class IndexState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    STORING = "storing"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True)
class IndexStats:
    indexed: int = 0
    skipped: int = 0
    missing: int = 0
    failed: int = 0
    cancelled: bool = False
    cleared: bool = False
    processed_files: list[Path] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def increment(self, status: str, path: Path) -> None:
        if status == "done":
            self.indexed += 1
        elif status == "skip":
            self.skipped += 1
        elif status == "missing":
            self.missing += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


@dataclass(slots=True)
class _WorkItem:
    path: Path
    kind: DocumentKind
    exists: bool = True


class Indexer:
    """Coordinates discovery, extraction, embedding and persistence."""

    def __init__(
        self,
        embedder: EmbeddingModel,
        store: SQLiteVectorStore,
        settings: IndexSettings | None = None,
        *,
        extractor: Extractor = extract,
        ocr: OcrEngine | None = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.settings = (settings or IndexSettings()).validate()
        self.extractor = extractor
        self.ocr = ocr
        self.state = IndexState.IDLE

    @property
    def embed_model(self) -> str:
        return self.embedder.model_name

    # -- scanning ---------------------------------------------------------

    @staticmethod
    def _classify(record: FileIndexRecord | None, fingerprint: str, embed_model: str | None) -> FileStatus:
        if record is None:
            return FileStatus.NEW
        if embed_model is not None and record.embedding_model != embed_model:
            return FileStatus.NEW
        if record.fingerprint == fingerprint:
            return FileStatus.INDEXED
        return FileStatus.CHANGED

    def _scan(self, targets: Sequence[IndexTarget]) -> List[_WorkItem]:
        """Discovered files plus records under ``targets`` that vanished, sorted by path."""
        items: Dict[Path, _WorkItem] = {}
        for target in targets:
            if target.kind is TargetKind.FILE and not target.path.is_file():
                kind = kind_from_path(target.path)
                if kind is not None:
                    items[target.path] = _WorkItem(target.path, kind, exists=False)
        for found in discover_files(targets):
            items[found.path] = _WorkItem(found.path, found.kind)
        for path, record in self.store.records_by_path().items():
            if path not in items and matches_any_target(path, targets) and not path.is_file():
                items[path] = _WorkItem(path, record.kind, exists=False)
        return [items[path] for path in sorted(items)]

    def preview(self, targets: Sequence[IndexTarget], embed_model: str | None = None) -> List[FilePreview]:
        """Classify every file under ``targets`` as new, indexed, changed or missing."""
        embed_model = embed_model or self.embed_model
        records = self.store.records_by_path()
        previews: List[FilePreview] = []
        for item in self._scan(targets):
            if not item.exists:
                previews.append(FilePreview(item.path, item.kind, FileStatus.MISSING, 0, 0))
                continue
            try:
                fingerprint, size, mtime = file_fingerprint(item.path)
            except OSError:
                previews.append(FilePreview(item.path, item.kind, FileStatus.MISSING, 0, 0))
                continue
            status = self._classify(records.get(item.path), fingerprint, embed_model)
            previews.append(FilePreview(item.path, item.kind, status, size, mtime))
        return previews

    # -- running ----------------------------------------------------------

    def _prepare(self, stats: IndexStats) -> None:
        dimension = self.embedder.probe_dimension()
        stats.cleared = self.store.ensure_embedding_model(self.embed_model, dimension)

    def index(
        self,
        targets: Sequence[IndexTarget],
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> IndexStats:
        """Index new and changed files under ``targets``; unchanged files are skipped."""
        return self._run(lambda: self._scan(targets), force=False, progress=progress, cancel=cancel)

    def reindex(
        self,
        paths: Iterable[Path | str],
        *,
        progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> IndexStats:
        """Run the pipeline for exactly ``paths``, even when they look unchanged."""

        def collect() -> List[_WorkItem]:
            items: Dict[Path, _WorkItem] = {}
            for raw in paths:
                path = Path(raw)
                kind = kind_from_path(path)
                if kind is None:
                    LOGGER.debug("Ignoring unsupported file %s", path)
                    continue
                items[path] = _WorkItem(path, kind, exists=path.is_file())
            return [items[path] for path in sorted(items)]

        return self._run(collect, force=True, progress=progress, cancel=cancel)

    def _run(
        self,
        collect: Callable[[], List[_WorkItem]],
        *,
        force: bool,
        progress: ProgressCallback | None,
        cancel: threading.Event | None,
    ) -> IndexStats:
        stats = IndexStats()
        emit = progress or (lambda event: None)
        try:
            self.state = IndexState.SCANNING
            self._prepare(stats)
            items = collect()
            records = self.store.records_by_path()
            total = len(items)
            emit(IndexProgress(current=0, total=total, file="", status="start"))

            for current, item in enumerate(items, start=1):
                if cancel is not None and cancel.is_set():
                    LOGGER.info("Indexing cancelled after %s of %s files", current - 1, total)
                    stats.cancelled = True
                    emit(IndexProgress(current=current - 1, total=total, file="", status="cancelled"))
                    break
                status = self._index_single(item, records.get(item.path), current, total, force, emit, stats)
                stats.increment(status, item.path)
        except Exception:
            self.state = IndexState.ERROR
            raise

        self.state = IndexState.DONE
        LOGGER.info(
            "Indexed %s, skipped %s, missing %s, failed %s",
            stats.indexed,
            stats.skipped,
            stats.missing,
            stats.failed,
        )
        return stats

    def _extract(self, path: Path) -> List[PageText]:
        try:
            return self.extractor(path, self.settings, self.ocr)
        except (FileChatError, OSError):
            raise
        except Exception as exc:
            raise ExtractionFailed(f"Cannot extract text from {path}: {exc}") from exc

    def _index_single(
        self,
        item: _WorkItem,
        record: FileIndexRecord | None,
        current: int,
        total: int,
        force: bool,
        emit: ProgressCallback,
        stats: IndexStats,
    ) -> str:
        """Index one file and return its final progress status."""
        name = str(item.path)

        def report(status: str) -> str:
            emit(IndexProgress(current=current, total=total, file=name, status=status))
            return status

        if not item.exists:
            return report("missing")
        try:
            fingerprint, size, mtime = file_fingerprint(item.path)
        except OSError:
            return report("missing")

        if not force and self._classify(record, fingerprint, self.embed_model) is FileStatus.INDEXED:
            LOGGER.debug("Unchanged: %s", item.path)
            return report("skip")

        try:
            self.state = IndexState.EXTRACTING
            report("extract")
            pages = self._extract(item.path)
            chunks = build_chunks(
                item.path,
                pages,
                max_chars=self.settings.chunk_size,
                overlap=self.settings.chunk_overlap,
            )
            self.state = IndexState.EMBEDDING
            report("embed")
            embeddings = self.embedder.embed([chunk.text for chunk in chunks])
        except DimensionMismatch:
            raise
        except (EmbeddingError, *_FILE_ERRORS) as exc:
            LOGGER.error("Failed to index %s: %s", item.path, exc)
            stats.errors[name] = str(exc)
            return report("error")

        self.state = IndexState.STORING
        self.store.upsert_file(
            FileIndexRecord(
                path=item.path,
                kind=item.kind,
                fingerprint=fingerprint,
                embedding_model=self.embed_model,
                page_count=len(pages),
                chunk_count=len(chunks),
                size=size,
                mtime=mtime,
                last_indexed_at=int(time.time()),
            ),
            chunks,
            embeddings,
        )
        if not chunks:
            LOGGER.warning("No text extracted from %s", item.path)
        return report("done")
