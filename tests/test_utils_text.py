"""Tests for text utility functions."""

from __future__ import annotations

import pytest

from filechat.errors import ConfigError
from filechat.utils.text import (
    chunk_page,
    chunk_text,
    clean_text,
    is_chunk_boundary,
    normalize_whitespace,
    split_pages,
)


class TestChunkText:
    """Test chunk_text function."""

    def test_exact_window_arithmetic(self) -> None:
        """Stride is max_chars - overlap when no boundary is available."""
        assert chunk_text("abcdefghij", max_chars=4, overlap=2) == ["abcd", "cdef", "efgh", "ghij"]

    def test_chunk_short_text(self) -> None:
        """Should return single chunk for short text."""
        assert chunk_text("Short text", max_chars=100, overlap=10) == ["Short text"]

    def test_chunk_empty_text(self) -> None:
        """Should handle empty and whitespace-only text."""
        assert chunk_text("", max_chars=100, overlap=10) == []
        assert chunk_text(" \n\t ", max_chars=100, overlap=10) == []

    def test_strips_surrounding_whitespace(self) -> None:
        assert chunk_text("   padded   ", max_chars=100, overlap=0) == ["padded"]

    def test_cuts_after_boundary(self) -> None:
        """Should end a window just after the last space or punctuation."""
        chunks = chunk_text("Hello world. This is long", max_chars=15, overlap=0)

        assert chunks == ["Hello world. ", "This is long"]

    def test_hard_cut_when_boundary_too_early(self) -> None:
        """A boundary keeping less than a third of the window is ignored."""
        chunks = chunk_text("a bcdefghijklmnop", max_chars=9, overlap=0)

        assert chunks[0] == "a bcdefgh"

    def test_chunks_respect_max_chars(self) -> None:
        text = "x" * 1000
        chunks = chunk_text(text, max_chars=300, overlap=50)

        assert all(len(chunk) <= 300 for chunk in chunks)
        assert chunks[0][-50:] == chunks[1][:50]

    def test_chunks_cover_whole_text(self) -> None:
        """No character range may fall between two chunks."""
        text = " ".join(f"word{i}." for i in range(300))
        chunks = chunk_text(text, max_chars=120, overlap=30)

        pos = 0
        covered_until = 0
        for chunk in chunks:
            start = text.index(chunk, pos)
            assert start <= covered_until
            covered_until = max(covered_until, start + len(chunk))
            pos = start + 1
        assert covered_until == len(text)

    def test_large_overlap_keeps_moving_forward(self) -> None:
        """Boundary cuts that would barely advance the next window fall back to hard cuts."""
        text = ("x" * 120 + " ") * 10
        chunks = chunk_text(text, max_chars=300, overlap=250)

        starts = []
        pos = 0
        for chunk in chunks:
            pos = text.index(chunk, pos)
            starts.append(pos)
            pos += 1
        strides = [b - a for a, b in zip(starts, starts[1:])]
        assert min(strides) >= (300 - 250) // 3
        assert len(chunks) <= len(text.strip()) // 16 + 1
        assert starts[-1] + len(chunks[-1]) == len(text.strip())

    @pytest.mark.parametrize(("max_chars", "overlap"), [(0, 0), (-5, 0), (10, 10), (10, 12), (10, -1)])
    def test_invalid_window(self, max_chars: int, overlap: int) -> None:
        with pytest.raises(ConfigError):
            chunk_text("some text", max_chars=max_chars, overlap=overlap)


class TestChunkPage:
    """Test chunk_page function."""

    def test_ordinals_are_contiguous(self) -> None:
        triples = chunk_page(3, "abcdefghij", max_chars=4, overlap=2)

        assert [t[0] for t in triples] == [3, 3, 3, 3]
        assert [t[1] for t in triples] == [0, 1, 2, 3]
        assert triples[-1][2] == "ghij"

    def test_empty_page(self) -> None:
        assert chunk_page(0, "   ", max_chars=10, overlap=2) == []


class TestHelpers:
    """Test small text helpers."""

    @pytest.mark.parametrize("char", [" ", "\n", ".", "!", "?", ";", ",", ":", ")", "]", "}"])
    def test_boundaries(self, char: str) -> None:
        assert is_chunk_boundary(char)

    @pytest.mark.parametrize("char", ["a", "(", "-", "7"])
    def test_non_boundaries(self, char: str) -> None:
        assert not is_chunk_boundary(char)

    def test_clean_text_strips_nul(self) -> None:
        assert clean_text("  a\x00b  ") == "a b"

    def test_split_pages_keeps_empty_pages(self) -> None:
        assert split_pages("one\x0c\x0c three ") == ["one", "", "three"]

    def test_split_pages_without_form_feed(self) -> None:
        assert split_pages("single page") == ["single page"]


class TestNormalizeWhitespace:
    """Test normalize_whitespace function."""

    def test_normalize_simple(self) -> None:
        """Should join and strip lines."""
        lines = ["  Line 1  ", "  Line 2  ", "  Line 3  "]

        assert normalize_whitespace(lines) == "Line 1\nLine 2\nLine 3"

    def test_normalize_empty_lines(self) -> None:
        """Should skip empty lines."""
        lines = ["Line 1", "", "  ", "Line 2", "\n", "Line 3"]

        assert normalize_whitespace(lines) == "Line 1\nLine 2\nLine 3"

    def test_normalize_all_empty(self) -> None:
        assert normalize_whitespace(["", "  ", "\n", "\t"]) == ""
