"""Text helpers including boundary-aware chunking."""

from __future__ import annotations

from typing import Iterable, List, Tuple

from langdetect import DetectorFactory, LangDetectException, detect

from filechat.errors import ConfigError

# Seeded so the same text always gets the same language
DetectorFactory.seed = 0

_BOUNDARY_PUNCTUATION = frozenset(".!?;,:)]}")


def is_chunk_boundary(char: str) -> bool:
    return char.isspace() or char in _BOUNDARY_PUNCTUATION


def _check_window(max_chars: int, overlap: int) -> None:
    if max_chars <= 0:
        raise ConfigError(f"chunk size must be positive, got {max_chars}")
    if overlap < 0 or overlap >= max_chars:
        raise ConfigError(f"overlap must be in [0, {max_chars}), got {overlap}")


def _last_boundary(text: str, start: int, end: int) -> int | None:
    for idx in range(end - 1, start - 1, -1):
        if is_chunk_boundary(text[idx]):
            return idx + 1
    return None


def chunk_text(text: str, *, max_chars: int = 1200, overlap: int = 200) -> List[str]:
    """Split text into overlapping character windows.

    A window that does not reach the end of the text is cut just after the
    last whitespace or punctuation inside it, as long as that keeps at least
    a third of ``max_chars`` and still moves the next window forward by a
    third of ``max_chars - overlap``; otherwise it is a hard cut. Consecutive
    windows share ``overlap`` characters, so every character of the input
    lands in at least one chunk.
    """
    _check_window(max_chars, overlap)
    text = text.strip()
    if not text:
        return []

    length = len(text)
    min_boundary_len = max_chars // 3
    min_stride = max(1, (max_chars - overlap) // 3)
    chunks: List[str] = []
    start = 0
    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            boundary = _last_boundary(text, start, end)
            if (
                boundary is not None
                and boundary - start >= min_boundary_len
                and boundary - overlap - start >= min_stride
            ):
                end = boundary

        piece = text[start:end]
        if piece.strip():
            chunks.append(piece)
        if end == length:
            break
        start = max(end - overlap, start + 1)
    return chunks


def chunk_page(
    page: int, text: str, *, max_chars: int = 1200, overlap: int = 200
) -> List[Tuple[int, int, str]]:
    """Chunk one page, returning ``(page, ordinal, text)`` triples."""
    return [
        (page, ordinal, piece)
        for ordinal, piece in enumerate(chunk_text(text, max_chars=max_chars, overlap=overlap))
    ]


def clean_text(text: str) -> str:
    """Replace NUL bytes and trim surrounding whitespace."""
    return text.replace("\x00", " ").strip()


def split_pages(raw: str) -> List[str]:
    """Split text on form feeds, keeping empty pages so numbering is stable."""
    return [clean_text(part) for part in raw.split("\x0c")]


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def detect_language(text: str) -> str | None:
    """ISO 639-1 code for the language of ``text``, or None if undetectable."""
    if not any(char.isalpha() for char in text):
        return None
    try:
        return detect(text)
    except LangDetectException:
        return None
