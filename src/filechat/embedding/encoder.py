"""Embedding model management on top of the Ollama embed endpoint."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence

import numpy as np

from filechat.config import (
    DEFAULT_EMBED_BATCH,
    DEFAULT_EMBED_MODEL,
    DEFAULT_FALLBACK_CHARS,
    DEFAULT_FALLBACK_STRATEGY,
    normalize_fallback_strategy,
)
from filechat.embedding.ollama import OllamaClient, is_input_too_large
from filechat.errors import (
    DimensionMismatch,
    EmbeddingError,
    EmbeddingServiceUnavailable,
    EmbeddingTimeout,
)
from filechat.utils.text import chunk_text

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_EMBED_MODEL
    batch_size: int = DEFAULT_EMBED_BATCH
    max_retries: int = 2
    backoff: float = 0.4
    fallback_chars: int = DEFAULT_FALLBACK_CHARS
    fallback_strategy: str = DEFAULT_FALLBACK_STRATEGY

    def __post_init__(self) -> None:
        self.fallback_strategy = normalize_fallback_strategy(self.fallback_strategy)


class EmbeddingModel:
    """Batching, retrying wrapper around ``OllamaClient.embed``.

    Features:
    - Splits inputs into batches of ``batch_size``
    - Retries unreachable-service errors with exponential backoff
    - Halves a batch that timed out and retries the halves
    - Splits an input the model rejects as too long, then averages the parts
      (or keeps the first one that embeds, with the "first" strategy)
    - Pins the vector dimension to the first result and rejects mismatches
    """

    def __init__(
        self,
        client: OllamaClient,
        config: EmbeddingConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.config = config or EmbeddingConfig()
        self.dimension: int | None = None
        self._sleep = sleep

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def _check_dimension(self, vectors: Sequence[Sequence[float]]) -> None:
        for vector in vectors:
            size = len(vector)
            if size == 0:
                raise EmbeddingError("Embedding service returned an empty vector")
            if self.dimension is None:
                self.dimension = size
                logger.debug("Embedding dimension for %s is %s", self.model_name, size)
            elif size != self.dimension:
                raise DimensionMismatch(
                    f"Expected {self.dimension}-dimensional vectors from {self.model_name}, got {size}"
                )

    def _request(self, batch: List[str]) -> List[List[float]]:
        vectors = self.client.embed(self.model_name, batch)
        if len(vectors) != len(batch):
            raise EmbeddingError(
                f"Embedding service returned {len(vectors)} vectors for {len(batch)} inputs"
            )
        self._check_dimension(vectors)
        return vectors

    def _request_with_retry(self, batch: List[str]) -> List[List[float]]:
        attempt = 0
        while True:
            try:
                return self._request(batch)
            except EmbeddingServiceUnavailable as exc:
                if isinstance(exc, EmbeddingTimeout) and len(batch) > 1:
                    raise
                if attempt >= self.config.max_retries:
                    raise
                delay = self.config.backoff * (2**attempt)
                logger.warning("Embedding request failed (%s), retrying in %.1fs", exc, delay)
                self._sleep(delay)
                attempt += 1

    def _embed_split(self, text: str, cause: EmbeddingError) -> List[float]:
        if len(text) <= self.config.fallback_chars:
            raise EmbeddingError(
                f"Embedding model rejected input of {len(text)} chars", status=cause.status, body=cause.body
            ) from cause
        parts = chunk_text(text, max_chars=self.config.fallback_chars, overlap=0)
        logger.info("Input of %s chars too large, embedding %s parts", len(text), len(parts))
        vectors: List[List[float]] = []
        for part in parts:
            try:
                vectors.extend(self._embed_resilient([part]))
            except DimensionMismatch:
                raise
            except EmbeddingError as exc:
                if not is_input_too_large(exc.status, exc.body):
                    raise
                logger.warning("Skipping part of %s chars rejected by %s", len(part), self.model_name)
                continue
            if self.config.fallback_strategy == "first":
                break
        if not vectors:
            raise EmbeddingError(
                f"Embedding model rejected every part of input of {len(text)} chars",
                status=cause.status,
                body=cause.body,
            ) from cause
        return np.mean(np.asarray(vectors, dtype="float32"), axis=0).tolist()

    def _embed_resilient(self, batch: List[str]) -> List[List[float]]:
        try:
            return self._request_with_retry(batch)
        except EmbeddingTimeout:
            if len(batch) == 1:
                raise
            mid = len(batch) // 2
            logger.info("Embedding batch of %s timed out, splitting", len(batch))
            return self._embed_resilient(batch[:mid]) + self._embed_resilient(batch[mid:])
        except DimensionMismatch:
            raise
        except EmbeddingError as exc:
            if not is_input_too_large(exc.status, exc.body):
                raise
            if len(batch) > 1:
                out: List[List[float]] = []
                for text in batch:
                    out.extend(self._embed_resilient([text]))
                return out
            return [self._embed_split(batch[0], exc)]

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings for input texts, one row per text."""
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension or 0), dtype="float32")

        rows: List[List[float]] = []
        size = max(1, self.config.batch_size)
        for start in range(0, len(sentences), size):
            rows.extend(self._embed_resilient(sentences[start : start + size]))
        return np.asarray(rows, dtype="float32")

    embed_batch = embed

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]

    def probe_dimension(self) -> int:
        """Embed a short probe text and return the model's vector dimension."""
        self.embed_query("dimension probe")
        if self.dimension is None:
            raise EmbeddingError(f"Embedding service returned no vector for {self.model_name}")
        return self.dimension
