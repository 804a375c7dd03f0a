"""Tests for the change-driven re-index queue."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from filechat.errors import IndexBusy, StorageError
from filechat.index.watch import ChangeEvent, ChangeKind, ReindexQueue
from filechat.models import IndexTarget, TargetKind


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    return tmp_path / "docs"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def _queue(docs: Path, clock: FakeClock, reindex=None) -> ReindexQueue:
    targets = [IndexTarget(path=docs, kind=TargetKind.FOLDER, include_subfolders=True)]
    return ReindexQueue(reindex or MagicMock(), lambda: targets, retry_delay=0.0, clock=clock)


class TestChangeEvent:
    def test_coerces_fields(self) -> None:
        event = ChangeEvent("/docs/a.txt", "modified")

        assert event.path == Path("/docs/a.txt")
        assert event.kind is ChangeKind.MODIFIED


class TestReindexQueue:
    """Test event filtering, debouncing and dispatch."""

    def test_accepts_supported_file_under_target(self, docs: Path, clock: FakeClock) -> None:
        queue = _queue(docs, clock)

        assert queue.submit(ChangeEvent(docs / "a.pdf", ChangeKind.CREATED)) is True

    def test_filters_events(self, docs: Path, clock: FakeClock, tmp_path: Path) -> None:
        queue = _queue(docs, clock)

        assert queue.submit(ChangeEvent(docs / "image.png", ChangeKind.MODIFIED)) is False
        assert queue.submit(ChangeEvent(tmp_path / "elsewhere.txt", ChangeKind.MODIFIED)) is False
        assert queue.submit(ChangeEvent(docs / "a.txt", ChangeKind.REMOVED)) is False
        assert queue.drain() == 0

    def test_debounces_repeated_events(self, docs: Path, clock: FakeClock) -> None:
        queue = _queue(docs, clock)
        path = docs / "notes.md"

        assert queue.submit(ChangeEvent(path, ChangeKind.MODIFIED)) is True
        clock.now += 1.0
        assert queue.submit(ChangeEvent(path, ChangeKind.MODIFIED)) is False
        clock.now += 1.5
        assert queue.submit(ChangeEvent(path, ChangeKind.MODIFIED)) is True

    def test_drain_dispatches_sorted_batch(self, docs: Path, clock: FakeClock) -> None:
        reindex = MagicMock()
        queue = _queue(docs, clock, reindex)
        queue.submit(ChangeEvent(docs / "b.txt", ChangeKind.MODIFIED))
        queue.submit(ChangeEvent(docs / "sub" / "a.docx", ChangeKind.CREATED))
        queue.submit(ChangeEvent(docs / "a.txt", ChangeKind.CREATED))

        assert queue.drain() == 3

        reindex.assert_called_once_with([docs / "a.txt", docs / "b.txt", docs / "sub" / "a.docx"])
        assert queue.drain() == 0

    def test_busy_indexer_is_retried(self, docs: Path, clock: FakeClock) -> None:
        reindex = MagicMock(side_effect=[IndexBusy("busy"), IndexBusy("busy"), None])
        queue = _queue(docs, clock, reindex)
        queue.submit(ChangeEvent(docs / "a.txt", ChangeKind.MODIFIED))

        queue.drain()

        assert reindex.call_count == 3

    def test_failed_batch_is_dropped(self, docs: Path, clock: FakeClock) -> None:
        reindex = MagicMock(side_effect=StorageError("disk full"))
        queue = _queue(docs, clock, reindex)
        queue.submit(ChangeEvent(docs / "a.txt", ChangeKind.MODIFIED))

        queue.drain()

        assert reindex.call_count == 1

    def test_unexpected_error_drops_batch(self, docs: Path, clock: FakeClock) -> None:
        reindex = MagicMock(side_effect=[RuntimeError("boom"), None])
        queue = _queue(docs, clock, reindex)
        queue.submit(ChangeEvent(docs / "a.txt", ChangeKind.MODIFIED))

        assert queue.drain() == 1

        queue.submit(ChangeEvent(docs / "b.txt", ChangeKind.MODIFIED))
        assert queue.drain() == 1
        assert reindex.call_args_list[1].args == ([docs / "b.txt"],)

    def test_thread_survives_unexpected_error(self, docs: Path, clock: FakeClock) -> None:
        reindex = MagicMock(side_effect=[RuntimeError("boom"), None])
        queue = ReindexQueue(
            reindex,
            lambda: [IndexTarget(path=docs, kind=TargetKind.FOLDER)],
            batch_window=0.05,
            clock=clock,
        )
        queue.start()
        try:
            queue.submit(ChangeEvent(docs / "a.txt", ChangeKind.MODIFIED))
            for _ in range(100):
                if reindex.call_count >= 1:
                    break
                time.sleep(0.02)
            queue.submit(ChangeEvent(docs / "b.txt", ChangeKind.MODIFIED))
            for _ in range(100):
                if reindex.call_count >= 2:
                    break
                time.sleep(0.02)
            assert queue.is_alive()
        finally:
            queue.stop()

        assert reindex.call_count == 2
        assert reindex.call_args.args == ([docs / "b.txt"],)

    def test_thread_processes_events(self, docs: Path, clock: FakeClock) -> None:
        reindex = MagicMock()
        queue = ReindexQueue(
            reindex,
            lambda: [IndexTarget(path=docs, kind=TargetKind.FOLDER)],
            batch_window=0.05,
            clock=clock,
        )
        queue.start()
        try:
            queue.submit(ChangeEvent(docs / "a.txt", ChangeKind.MODIFIED))
            for _ in range(100):
                if reindex.called:
                    break
                time.sleep(0.02)
        finally:
            queue.stop()

        reindex.assert_called_once_with([docs / "a.txt"])
        assert not queue.is_alive()
