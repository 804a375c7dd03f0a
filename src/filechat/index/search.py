"""Semantic retrieval over the vector store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

import numpy as np

from filechat.config import RetrievalSettings
from filechat.embedding.encoder import EmbeddingModel
from filechat.index.storage import SQLiteVectorStore
from filechat.models import SourceHit
from filechat.utils.text import detect_language

LOGGER = logging.getLogger(__name__)

MMR_POOL_CAP = 64
RRF_K = 60


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype="float32").ravel()
    b = np.asarray(b, dtype="float32").ravel()
    if a.shape != b.shape:
        return 0.0
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def mmr_pool_size(top_k: int, candidates: int) -> int:
    """Candidate pool for MMR and hybrid ranking: at least ``top_k``, at most ``min(top_k * 4, 64)``."""
    pool = max(candidates, top_k)
    pool = min(pool, top_k * 4, MMR_POOL_CAP)
    return max(pool, top_k)


def mmr_select(query: np.ndarray, candidates: Sequence[dict], top_k: int, lam: float) -> List[dict]:
    """Greedy Maximal Marginal Relevance selection.

    ``candidates`` must carry an ``embedding`` and be ordered by ascending
    distance; on equal scores the earlier (nearer) candidate wins.
    """
    remaining = list(candidates)
    relevance = [cosine_similarity(query, item["embedding"]) for item in remaining]
    selected: List[dict] = []

    while remaining and len(selected) < top_k:
        best_index = 0
        best_score = -np.inf
        for index, item in enumerate(remaining):
            redundancy = max(
                (cosine_similarity(item["embedding"], chosen["embedding"]) for chosen in selected),
                default=0.0,
            )
            score = lam * relevance[index] - (1.0 - lam) * redundancy
            if score > best_score:
                best_score = score
                best_index = index
        selected.append(remaining.pop(best_index))
        relevance.pop(best_index)
    return selected


def build_fts_query(question: str) -> str | None:
    """FTS5 query prefix-matching every word of two or more letters or digits."""
    terms = []
    for token in question.split():
        word = "".join(char for char in token if char.isalnum())
        if len(word) > 1:
            terms.append(f'"{word}"*')
    return " ".join(terms) or None


def prefer_language(rows: Sequence[dict], lang: str | None) -> List[dict]:
    """Keep chunks written in ``lang`` when there are any, else all of them."""
    if lang is None:
        return list(rows)
    same = [row for row in rows if row.get("lang") == lang]
    return same or list(rows)


def rrf_fuse(vector_hits: Sequence[dict], text_ids: Sequence[int], k: int = RRF_K) -> List[dict]:
    """Reciprocal Rank Fusion of the vector order with full-text ranks.

    Only ``vector_hits`` are ranked; a full-text match adds ``1 / (k + rank)``
    to the chunk's vector score. Equal scores keep the vector order.
    """
    text_rank = {chunk_id: rank for rank, chunk_id in enumerate(text_ids, 1)}
    scores = []
    for rank, hit in enumerate(vector_hits, 1):
        score = 1.0 / (k + rank)
        if hit["id"] in text_rank:
            score += 1.0 / (k + text_rank[hit["id"]])
        scores.append(score)
    order = sorted(range(len(vector_hits)), key=lambda i: scores[i], reverse=True)
    return [vector_hits[i] for i in order]


class Retriever:
    """High-level API to query the vector store."""

    def __init__(self, embedder: EmbeddingModel, store: SQLiteVectorStore) -> None:
        self.embedder = embedder
        self.store = store

    def _to_hit(self, row: dict, snippet_chars: int) -> SourceHit:
        return SourceHit(
            file_path=Path(row["file_path"]),
            page=int(row["page"]),
            snippet=row["text"][:snippet_chars],
            distance=float(row["distance"]),
        )

    def retrieve(self, question: str, settings: RetrievalSettings | None = None) -> List[SourceHit]:
        """Nearest chunks for ``question``.

        With ``hybrid`` the candidates are narrowed to the question's language
        when it matches any of them, then re-ranked by fusing vector and BM25
        ranks. MMR, when enabled, runs last over whatever order is left.
        """
        settings = (settings or RetrievalSettings()).validate()
        query = self.embedder.embed_query(question)

        if settings.use_mmr or settings.hybrid:
            pool = mmr_pool_size(settings.top_k, settings.mmr_candidates)
        else:
            pool = settings.top_k
        rows = self.store.search(query, top_k=pool, with_vectors=settings.use_mmr)

        if settings.max_distance is not None:
            rows = [row for row in rows if row["distance"] <= settings.max_distance]

        if settings.hybrid:
            rows = prefer_language(rows, detect_language(question))
            fts_query = build_fts_query(question)
            text_ids = self.store.text_search(fts_query, limit=pool) if fts_query else []
            rows = rrf_fuse(rows, text_ids)

        if settings.use_mmr:
            rows = mmr_select(query, rows, settings.top_k, settings.mmr_lambda)
        rows = rows[: settings.top_k]

        LOGGER.debug("Retrieved %s chunks for question of %s chars", len(rows), len(question))
        return [self._to_hit(row, settings.snippet_chars) for row in rows]
