"""Queue that turns filesystem change notifications into re-index batches."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

from filechat.errors import FileChatError, IndexBusy
from filechat.models import IndexTarget
from filechat.utils.files import is_supported_document, matches_any_target

LOGGER = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 2.0


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(slots=True)
class ChangeEvent:
    path: Path
    kind: ChangeKind

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.kind = ChangeKind(self.kind)


class ReindexQueue(threading.Thread):
    """Consumer thread feeding changed files into an incremental re-index.

    ``reindex`` is called with a sorted batch of paths and should block until
    the run finishes. Removal events are dropped: the file shows up as
    missing on the next preview and only an explicit prune deletes it.
    """

    def __init__(
        self,
        reindex: Callable[[List[Path]], Any],
        targets: Callable[[], Sequence[IndexTarget]],
        *,
        debounce: float = DEBOUNCE_SECONDS,
        batch_window: float = 0.5,
        retry_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(daemon=True, name="filechat-reindex")
        self._reindex = reindex
        self._targets = targets
        self.debounce = debounce
        self.batch_window = batch_window
        self.retry_delay = retry_delay
        self._clock = clock
        self._pending: "queue.Queue[Path]" = queue.Queue()
        self._last_seen: Dict[Path, float] = {}
        self._seen_lock = threading.Lock()
        self._stopping = threading.Event()

    def _should_process(self, path: Path) -> bool:
        now = self._clock()
        with self._seen_lock:
            previous = self._last_seen.get(path)
            if previous is not None and now - previous < self.debounce:
                return False
            self._last_seen[path] = now
        return True

    def submit(self, event: ChangeEvent) -> bool:
        """Queue ``event`` for re-indexing; return False when it was filtered out."""
        path = event.path
        if event.kind is ChangeKind.REMOVED:
            LOGGER.debug("Ignoring removal of %s", path)
            return False
        if not is_supported_document(path):
            return False
        if not matches_any_target(path, self._targets()):
            LOGGER.debug("Ignoring change outside targets: %s", path)
            return False
        if not self._should_process(path):
            return False
        self._pending.put(path)
        return True

    def _collect(self, timeout: float | None) -> List[Path]:
        try:
            first = self._pending.get(timeout=timeout)
        except queue.Empty:
            return []
        batch = {first}
        deadline = time.monotonic() + self.batch_window
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.add(self._pending.get(timeout=remaining))
            except queue.Empty:
                break
        return sorted(batch)

    def _dispatch(self, batch: List[Path]) -> None:
        while not self._stopping.is_set():
            try:
                LOGGER.info("Re-indexing %s changed files", len(batch))
                self._reindex(batch)
                return
            except IndexBusy:
                LOGGER.debug("Indexer busy, retrying in %.1fs", self.retry_delay)
                self._stopping.wait(self.retry_delay)
            except FileChatError as exc:
                LOGGER.error("Re-index of %s files failed: %s", len(batch), exc)
                return
            except Exception:
                LOGGER.exception("Unexpected error re-indexing %s files, dropping batch", len(batch))
                return

    def drain(self) -> int:
        """Process everything queued so far on the calling thread."""
        batch = set()
        while True:
            try:
                batch.add(self._pending.get_nowait())
            except queue.Empty:
                break
        if batch:
            self._dispatch(sorted(batch))
        return len(batch)

    def run(self) -> None:
        while not self._stopping.is_set():
            batch = self._collect(timeout=0.2)
            if batch:
                self._dispatch(batch)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stopping.set()
        if self.is_alive():
            self.join(timeout)
