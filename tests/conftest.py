"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import List

import numpy as np
import pytest

from filechat.index.storage import SQLiteVectorStore


class FakeEmbedder:
    """Deterministic letter-frequency embedder standing in for Ollama."""

    def __init__(self, model_name: str = "fake-embed", dimension: int = 27) -> None:
        self._model_name = model_name
        self.dimension = dimension
        self.calls: List[List[str]] = []

    @property
    def model_name(self) -> str:
        return self._model_name

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype="float32")
        vector[-1] = 0.1
        for char in text.lower():
            if "a" <= char <= "z":
                vector[(ord(char) - ord("a")) % (self.dimension - 1)] += 1.0
        return vector

    def embed(self, texts) -> np.ndarray:
        texts = list(texts)
        self.calls.append(texts)
        if not texts:
            return np.zeros((0, self.dimension), dtype="float32")
        return np.vstack([self._vector(text) for text in texts])

    embed_batch = embed

    def embed_query(self, text: str) -> np.ndarray:
        return self._vector(text)

    def probe_dimension(self) -> int:
        return self.dimension


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def store(tmp_path: Path):
    """Vector store backed by a temporary SQLite file."""
    db = SQLiteVectorStore(tmp_path / "library.sqlite3")
    yield db
    db.close()
