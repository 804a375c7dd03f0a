"""FastAPI application exposing the filechat library over HTTP."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict
from typing import Any, List, Literal

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from filechat.config import AppConfig, IndexSettings, RetrievalSettings
from filechat.errors import (
    ConfigError,
    EmbeddingError,
    FileChatError,
    IndexBusy,
    ServiceUnavailable,
    StorageError,
)
from filechat.library import IndexJob, Library
from filechat.models import IndexTarget

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="filechat API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_ERROR_STATUS: list[tuple[type[FileChatError], int]] = [
    (ConfigError, 400),
    (IndexBusy, 409),
    (ServiceUnavailable, 503),
    (EmbeddingError, 502),
    (StorageError, 500),
]

_config: AppConfig | None = None
_library: Library | None = None
_library_lock = threading.Lock()


def configure(config: AppConfig) -> None:
    """Set the configuration used when the shared library is first opened."""
    global _config
    _config = config


def get_library() -> Library:
    global _library
    with _library_lock:
        if _library is None:
            _library = Library(_config)
        return _library


class TargetPayload(BaseModel):
    path: str
    kind: Literal["file", "folder"]
    include_subfolders: bool = False

    def to_target(self) -> IndexTarget:
        return IndexTarget(path=self.path, kind=self.kind, include_subfolders=self.include_subfolders)


class IndexSettingsPayload(BaseModel):
    chunk_size: int = 1200
    chunk_overlap: int = 200
    ocr_enabled: bool = True
    ocr_lang: str = "eng"
    ocr_min_chars: int = 120
    ocr_dpi: int = 300


class RetrievalSettingsPayload(BaseModel):
    top_k: int = 8
    max_distance: float | None = None
    use_mmr: bool = False
    mmr_lambda: float = 0.7
    mmr_candidates: int = 24
    hybrid: bool = False
    snippet_chars: int = 600


class SaveTargetsPayload(BaseModel):
    targets: List[TargetPayload]
    prune: bool = False


class PreviewPayload(BaseModel):
    targets: List[TargetPayload] | None = None
    embed_model: str | None = None


class IndexPayload(BaseModel):
    targets: List[TargetPayload] | None = None
    embed_model: str | None = None
    settings: IndexSettingsPayload = Field(default_factory=IndexSettingsPayload)


class ReindexPayload(BaseModel):
    paths: List[str]
    embed_model: str | None = None
    settings: IndexSettingsPayload = Field(default_factory=IndexSettingsPayload)


class PrunePayload(BaseModel):
    targets: List[TargetPayload] | None = None


class RetrievePayload(BaseModel):
    question: str
    embed_model: str | None = None
    settings: RetrievalSettingsPayload = Field(default_factory=RetrievalSettingsPayload)


class ChatPayload(RetrievePayload):
    llm_model: str | None = None


def _targets(library: Library, payload: List[TargetPayload] | None) -> List[IndexTarget]:
    if payload is None:
        return library.list_targets()
    return [item.to_target() for item in payload]


def _target_dict(target: IndexTarget) -> dict[str, Any]:
    return {
        "path": str(target.path),
        "kind": target.kind.value,
        "include_subfolders": target.include_subfolders,
    }


def _job_dict(job: IndexJob | None) -> dict[str, Any]:
    if job is None:
        return {"running": False, "progress": None, "stats": None, "error": None}
    stats = None
    if job.stats is not None:
        stats = asdict(job.stats)
        stats["processed_files"] = [str(path) for path in job.stats.processed_files]
    return {
        "running": job.is_alive(),
        "progress": asdict(job.last_progress) if job.last_progress else None,
        "stats": stats,
        "error": str(job.error) if job.error else None,
    }


@app.exception_handler(FileChatError)
async def filechat_error_handler(request: Request, exc: FileChatError) -> JSONResponse:
    status = 500
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            status = code
            break
    if status >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    global _library
    with _library_lock:
        if _library is not None:
            _library.close()
            _library = None


@app.get("/targets")
async def list_targets(library: Library = Depends(get_library)) -> dict[str, Any]:
    targets = await asyncio.to_thread(library.list_targets)
    return {"targets": [_target_dict(t) for t in targets]}


@app.put("/targets")
async def save_targets(
    payload: SaveTargetsPayload, library: Library = Depends(get_library)
) -> dict[str, Any]:
    targets = [item.to_target() for item in payload.targets]
    saved = await asyncio.to_thread(library.save_targets, targets)
    removed = 0
    if payload.prune:
        removed = await asyncio.to_thread(library.prune_index, saved)
    return {"targets": [_target_dict(t) for t in saved], "removed_count": removed}


@app.post("/preview")
async def preview_index(payload: PreviewPayload, library: Library = Depends(get_library)) -> dict[str, Any]:
    targets = _targets(library, payload.targets)
    files = await asyncio.to_thread(library.preview_index, targets, payload.embed_model)
    return {"files": [item.to_dict() for item in files]}


@app.post("/index", status_code=202)
async def start_index(payload: IndexPayload, library: Library = Depends(get_library)) -> dict[str, Any]:
    targets = _targets(library, payload.targets)
    if not targets:
        raise HTTPException(status_code=400, detail="No targets registered")
    settings = IndexSettings(**payload.settings.model_dump())
    job = library.start_index(targets, payload.embed_model, settings)
    return {"status": "started", "job": _job_dict(job)}


@app.post("/reindex", status_code=202)
async def reindex_files(payload: ReindexPayload, library: Library = Depends(get_library)) -> dict[str, Any]:
    paths = [p.strip() for p in payload.paths if p.strip()]
    if not paths:
        raise HTTPException(status_code=400, detail="No path provided")
    if any("\0" in p for p in paths):
        raise HTTPException(status_code=400, detail="Invalid path: contains null byte")
    settings = IndexSettings(**payload.settings.model_dump())
    job = library.reindex_files(paths, payload.embed_model, settings)
    return {"status": "started", "job": _job_dict(job)}


@app.get("/index/status")
async def index_status(library: Library = Depends(get_library)) -> dict[str, Any]:
    return _job_dict(library.current_job)


@app.post("/index/cancel")
async def cancel_index(library: Library = Depends(get_library)) -> dict[str, bool]:
    return {"cancelled": library.cancel_index()}


@app.post("/prune")
async def prune_index(payload: PrunePayload, library: Library = Depends(get_library)) -> dict[str, Any]:
    targets = _targets(library, payload.targets)
    removed = await asyncio.to_thread(library.prune_index, targets)
    return {"status": "ok", "removed_count": removed}


@app.get("/documents")
async def list_documents(library: Library = Depends(get_library)) -> dict[str, Any]:
    """List all indexed files with store statistics."""
    records = await asyncio.to_thread(library.documents)
    stats = await asyncio.to_thread(library.stats)
    documents = []
    for record in records:
        item = asdict(record)
        item["path"] = str(record.path)
        item["kind"] = record.kind.value
        documents.append(item)
    return {"documents": documents, "stats": stats}


@app.post("/retrieve")
async def retrieve(payload: RetrievePayload, library: Library = Depends(get_library)) -> dict[str, Any]:
    question = payload.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Empty question")
    settings = RetrievalSettings(**payload.settings.model_dump())
    hits = await asyncio.to_thread(library.retrieve, question, payload.embed_model, settings)
    return {"sources": [hit.to_dict() for hit in hits]}


@app.post("/chat")
async def chat(payload: ChatPayload, library: Library = Depends(get_library)) -> dict[str, Any]:
    question = payload.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Empty question")
    settings = RetrievalSettings(**payload.settings.model_dump())
    result = await asyncio.to_thread(
        library.chat, question, payload.llm_model, payload.embed_model, settings
    )
    return result.to_dict()


@app.get("/status")
async def status(library: Library = Depends(get_library)) -> dict[str, Any]:
    setup = await asyncio.to_thread(library.setup_status)
    stats = await asyncio.to_thread(library.stats)
    return {"ollama": asdict(setup), "index": stats}
