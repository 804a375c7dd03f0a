"""Utility helpers for discovering and fingerprinting files."""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, Iterator, List, Tuple

from filechat.models import DiscoveredFile, DocumentKind, IndexTarget, TargetKind

LOGGER = logging.getLogger(__name__)

_EXTENSION_KINDS = {
    ".pdf": DocumentKind.PDF,
    ".txt": DocumentKind.TXT,
    ".md": DocumentKind.MD,
    ".markdown": DocumentKind.MD,
    ".docx": DocumentKind.DOCX,
}


def kind_from_path(path: Path) -> DocumentKind | None:
    """Return the document kind for a path, or None when unsupported."""
    return _EXTENSION_KINDS.get(Path(path).suffix.lower())


def is_supported_document(path: Path) -> bool:
    return kind_from_path(path) is not None


def file_fingerprint(path: Path) -> Tuple[str, int, int]:
    """Return ``(fingerprint, size, mtime)`` for a file.

    The fingerprint hashes the path with the size and nanosecond mtime, so it
    changes whenever the file is rewritten without reading its content.
    """
    stat = Path(path).stat()
    sha = hashlib.sha256()
    sha.update(str(path).encode("utf-8", "surrogateescape"))
    sha.update(stat.st_size.to_bytes(8, "little", signed=True))
    sha.update(stat.st_mtime_ns.to_bytes(16, "little", signed=True))
    return sha.hexdigest(), stat.st_size, int(stat.st_mtime)


def _walk_folder(root: Path, recursive: bool) -> Iterator[Path]:
    if not recursive:
        try:
            entries = sorted(root.iterdir())
        except OSError as exc:
            LOGGER.debug("Cannot list %s: %s", root, exc)
            return
        for entry in entries:
            if entry.is_file():
                yield entry
        return

    visited: set[Tuple[int, int]] = set()
    for dirpath, dirnames, filenames in os.walk(root, followlinks=True, onerror=_log_walk_error):
        try:
            stat = os.stat(dirpath)
        except OSError:
            dirnames[:] = []
            continue
        key = (stat.st_dev, stat.st_ino)
        if key in visited:
            # Symlink loop or a directory reachable twice
            dirnames[:] = []
            continue
        visited.add(key)
        dirnames.sort()
        for name in sorted(filenames):
            candidate = Path(dirpath) / name
            if candidate.is_file():
                yield candidate


def _log_walk_error(exc: OSError) -> None:
    LOGGER.debug("Skipping unreadable entry: %s", exc)


def iter_target_paths(targets: Iterable[IndexTarget]) -> Iterator[Path]:
    """Yield supported document paths under the given targets (may repeat)."""
    for target in targets:
        base = Path(target.path)
        if target.kind is TargetKind.FILE:
            if base.is_file() and is_supported_document(base):
                yield base
            continue
        if not base.is_dir():
            continue
        for path in _walk_folder(base, target.include_subfolders):
            if is_supported_document(path):
                yield path


def discover_files(targets: Iterable[IndexTarget]) -> List[DiscoveredFile]:
    """Expand targets into a deduplicated, path-sorted list of files."""
    seen: dict[Path, DiscoveredFile] = {}
    for path in iter_target_paths(targets):
        if path in seen:
            continue
        kind = kind_from_path(path)
        try:
            stat = path.stat()
        except OSError as exc:
            LOGGER.debug("Cannot stat %s: %s", path, exc)
            continue
        seen[path] = DiscoveredFile(path=path, kind=kind, size=stat.st_size, mtime=int(stat.st_mtime))
    return [seen[path] for path in sorted(seen)]


def matches_any_target(path: Path, targets: Iterable[IndexTarget]) -> bool:
    return any(target.covers(path) for target in targets)
