"""Tests for semantic retrieval."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from filechat.config import RetrievalSettings
from filechat.errors import ConfigError
from filechat.index.search import (
    Retriever,
    build_fts_query,
    cosine_similarity,
    mmr_pool_size,
    mmr_select,
    prefer_language,
    rrf_fuse,
)
from filechat.models import ChunkRecord, DocumentKind, FileIndexRecord, SourceHit


def _rows(distances):
    return [
        {"id": i, "file_path": f"/docs/{i}.txt", "page": i, "ordinal": 0, "text": f"chunk {i}", "distance": d}
        for i, d in enumerate(distances)
    ]


def _mock_store(rows):
    store = MagicMock()
    store.search.side_effect = lambda query, top_k, with_vectors=False: rows[:top_k]
    return store


def _embedder(vector):
    embedder = MagicMock()
    embedder.embed_query.return_value = np.asarray(vector, dtype="float32")
    return embedder


class TestCosineSimilarity:
    def test_values(self) -> None:
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([2.0, 0.0])) == pytest.approx(1.0)
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 3.0])) == pytest.approx(0.0)
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([-1.0, 0.0])) == pytest.approx(-1.0)

    def test_degenerate_vectors(self) -> None:
        assert cosine_similarity(np.zeros(2), np.array([1.0, 0.0])) == 0.0
        assert cosine_similarity(np.ones(2), np.ones(3)) == 0.0


class TestMmrPoolSize:
    @pytest.mark.parametrize(
        ("top_k", "candidates", "expected"),
        [(3, 24, 12), (10, 24, 24), (20, 100, 64), (2, 1, 2), (40, 10, 40), (100, 0, 100)],
    )
    def test_pool_size(self, top_k: int, candidates: int, expected: int) -> None:
        assert mmr_pool_size(top_k, candidates) == expected


class TestMmrSelect:
    """Test greedy MMR selection."""

    def _candidates(self):
        return [
            {"text": "A", "embedding": np.array([1.0, 0.0, 0.0])},
            {"text": "A-duplicate", "embedding": np.array([0.99, 0.14, 0.0])},
            {"text": "B", "embedding": np.array([0.6, 0.0, 0.8])},
        ]

    def test_prefers_diverse_second_pick(self) -> None:
        selected = mmr_select(np.array([1.0, 0.0, 0.0]), self._candidates(), top_k=2, lam=0.3)

        assert [item["text"] for item in selected] == ["A", "B"]

    def test_lambda_one_is_pure_relevance(self) -> None:
        selected = mmr_select(np.array([1.0, 0.0, 0.0]), self._candidates(), top_k=3, lam=1.0)

        assert [item["text"] for item in selected] == ["A", "A-duplicate", "B"]

    def test_ties_keep_nearer_candidate(self) -> None:
        candidates = [
            {"text": "first", "embedding": np.array([1.0, 1.0])},
            {"text": "second", "embedding": np.array([1.0, 1.0])},
        ]

        selected = mmr_select(np.array([1.0, 1.0]), candidates, top_k=1, lam=0.5)

        assert [item["text"] for item in selected] == ["first"]

    def test_fewer_candidates_than_top_k(self) -> None:
        assert len(mmr_select(np.array([1.0, 0.0, 0.0]), self._candidates(), top_k=10, lam=0.5)) == 3
        assert mmr_select(np.array([1.0]), [], top_k=3, lam=0.5) == []


class TestBuildFtsQuery:
    def test_terms_are_prefix_matched(self) -> None:
        assert build_fts_query("Where are the invoices?") == '"Where"* "are"* "the"* "invoices"*'

    def test_short_and_symbol_tokens_dropped(self) -> None:
        assert build_fts_query("a C++ ~ 42") == '"42"*'
        assert build_fts_query("? ! a") is None
        assert build_fts_query("") is None

    def test_quotes_are_stripped(self) -> None:
        assert build_fts_query('say "AND" NOT') == '"say"* "AND"* "NOT"*'


class TestPreferLanguage:
    def test_keeps_same_language(self) -> None:
        rows = [{"id": 1, "lang": "de"}, {"id": 2, "lang": "en"}, {"id": 3, "lang": None}]

        assert [r["id"] for r in prefer_language(rows, "en")] == [2]

    def test_falls_back_to_all(self) -> None:
        rows = [{"id": 1, "lang": "de"}, {"id": 2, "lang": None}]

        assert prefer_language(rows, "fr") == rows
        assert prefer_language(rows, None) == rows


class TestRrfFuse:
    def test_text_match_lifts_candidate(self) -> None:
        hits = [{"id": 10}, {"id": 11}, {"id": 12}]

        fused = rrf_fuse(hits, [12])

        assert [h["id"] for h in fused] == [12, 10, 11]

    def test_scores_use_k_60(self) -> None:
        hits = [{"id": 1}, {"id": 2}]

        # 1/61 + 0 vs 1/62 + 1/61: the second candidate wins
        assert [h["id"] for h in rrf_fuse(hits, [2])] == [2, 1]
        # 1/61 + 1/62 vs 1/62 + 1/61: a tie keeps vector order
        assert [h["id"] for h in rrf_fuse(hits, [2, 1])] == [1, 2]

    def test_text_only_ids_are_ignored(self) -> None:
        hits = [{"id": 1}, {"id": 2}]

        assert rrf_fuse(hits, [99, 98]) == hits
        assert rrf_fuse([], [1]) == []


class TestRetriever:
    """Test Retriever.retrieve."""

    def test_max_distance_filters_hits(self) -> None:
        store = _mock_store(_rows([0.1, 0.3, 0.6, 0.8]))
        retriever = Retriever(_embedder([1.0, 0.0]), store)

        hits = retriever.retrieve("question", RetrievalSettings(top_k=3, max_distance=0.5))

        assert [hit.distance for hit in hits] == [0.1, 0.3]
        assert hits[0] == SourceHit(file_path=Path("/docs/0.txt"), page=0, snippet="chunk 0", distance=0.1)
        store.search.assert_called_once()
        assert store.search.call_args.kwargs["top_k"] == 3

    def test_hits_non_decreasing(self) -> None:
        retriever = Retriever(_embedder([1.0, 0.0]), _mock_store(_rows([0.05, 0.2, 0.2, 0.9])))

        hits = retriever.retrieve("question", RetrievalSettings(top_k=4))

        distances = [hit.distance for hit in hits]
        assert distances == sorted(distances)
        assert len(hits) == 4

    def test_snippet_truncated(self) -> None:
        rows = _rows([0.1])
        rows[0]["text"] = "x" * 50
        retriever = Retriever(_embedder([1.0]), _mock_store(rows))

        hits = retriever.retrieve("q", RetrievalSettings(snippet_chars=10))

        assert hits[0].snippet == "x" * 10

    def test_invalid_settings(self) -> None:
        retriever = Retriever(_embedder([1.0]), _mock_store([]))

        with pytest.raises(ConfigError):
            retriever.retrieve("q", RetrievalSettings(top_k=0))

    def test_mmr_uses_candidate_pool(self) -> None:
        rows = _rows([0.0, 0.01, 0.2])
        vectors = [[1.0, 0.0, 0.0], [0.99, 0.14, 0.0], [0.6, 0.0, 0.8]]
        for row, vector in zip(rows, vectors):
            row["embedding"] = np.asarray(vector, dtype="float32")
        store = _mock_store(rows)
        retriever = Retriever(_embedder([1.0, 0.0, 0.0]), store)

        hits = retriever.retrieve(
            "q", RetrievalSettings(top_k=2, use_mmr=True, mmr_lambda=0.3, mmr_candidates=24)
        )

        assert [hit.file_path.name for hit in hits] == ["0.txt", "2.txt"]
        assert store.search.call_args.kwargs == {"top_k": 8, "with_vectors": True}

    def test_against_real_store(self, store, tmp_path: Path) -> None:
        path = tmp_path / "notes.txt"
        record = FileIndexRecord(path, DocumentKind.TXT, "fp", "fake-embed", page_count=2, chunk_count=2)
        chunks = [
            ChunkRecord(file_path=path, page=0, ordinal=0, text="far"),
            ChunkRecord(file_path=path, page=1, ordinal=0, text="near"),
        ]
        store.upsert_file(record, chunks, np.array([[0.0, 1.0], [1.0, 0.1]], dtype="float32"))
        retriever = Retriever(_embedder([1.0, 0.0]), store)

        hits = retriever.retrieve("q", RetrievalSettings(top_k=5))

        assert [(hit.page, hit.snippet) for hit in hits] == [(1, "near"), (0, "far")]
        assert hits[0].file_path == path

    def test_empty_store(self, store) -> None:
        assert Retriever(_embedder([1.0, 0.0]), store).retrieve("q") == []

    def test_hybrid_prefers_question_language(self) -> None:
        rows = _rows([0.1, 0.2, 0.3, 0.4])
        for row, lang in zip(rows, ["en", "de", "en", "de"]):
            row["lang"] = lang
        store = _mock_store(rows)
        store.text_search.return_value = []
        retriever = Retriever(_embedder([1.0, 0.0]), store)

        with patch("filechat.index.search.detect_language", return_value="de"):
            hits = retriever.retrieve("Wo sind die Rechnungen?", RetrievalSettings(top_k=2, hybrid=True))

        assert [hit.file_path.name for hit in hits] == ["1.txt", "3.txt"]
        assert store.search.call_args.kwargs == {"top_k": 8, "with_vectors": False}
        store.text_search.assert_called_once_with('"Wo"* "sind"* "die"* "Rechnungen"*', limit=8)

    def test_hybrid_fuses_keyword_matches(self, store, tmp_path: Path) -> None:
        path = tmp_path / "notes.txt"
        record = FileIndexRecord(path, DocumentKind.TXT, "fp", "fake-embed", page_count=1, chunk_count=3)
        chunks = [
            ChunkRecord(file_path=path, page=0, ordinal=0, text="notes about taxes"),
            ChunkRecord(file_path=path, page=0, ordinal=1, text="meeting agenda"),
            ChunkRecord(file_path=path, page=0, ordinal=2, text="invoice numbers for march"),
        ]
        vectors = np.array([[1.0, 0.0], [0.95, 0.3], [0.9, 0.44]], dtype="float32")
        store.upsert_file(record, chunks, vectors)
        retriever = Retriever(_embedder([1.0, 0.0]), store)

        plain = retriever.retrieve("invoice", RetrievalSettings(top_k=3))
        hybrid = retriever.retrieve("invoice", RetrievalSettings(top_k=3, hybrid=True))

        assert [hit.snippet for hit in plain] == [
            "notes about taxes",
            "meeting agenda",
            "invoice numbers for march",
        ]
        assert [hit.snippet for hit in hybrid] == [
            "invoice numbers for march",
            "notes about taxes",
            "meeting agenda",
        ]

    def test_hybrid_respects_top_k_and_max_distance(self) -> None:
        store = _mock_store(_rows([0.1, 0.2, 0.7]))
        store.text_search.return_value = [2, 1]
        retriever = Retriever(_embedder([1.0, 0.0]), store)

        hits = retriever.retrieve("chunk words", RetrievalSettings(top_k=1, max_distance=0.5, hybrid=True))

        assert [hit.file_path.name for hit in hits] == ["1.txt"]
