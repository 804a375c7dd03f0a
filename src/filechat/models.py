"""Core filechat data models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List


class TargetKind(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class DocumentKind(str, Enum):
    PDF = "pdf"
    TXT = "txt"
    MD = "md"
    DOCX = "docx"


class FileStatus(str, Enum):
    """Preview status of a file relative to the index."""

    NEW = "new"
    INDEXED = "indexed"
    CHANGED = "changed"
    MISSING = "missing"


@dataclass(slots=True)
class IndexTarget:
    """A user-registered file or folder that drives discovery."""

    path: Path
    kind: TargetKind
    include_subfolders: bool = False

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.kind = TargetKind(self.kind)

    def covers(self, path: Path) -> bool:
        """Return True when ``path`` falls under this target."""
        if not str(self.path).strip():
            return False
        path = Path(path)
        if self.kind is TargetKind.FILE:
            return path == self.path
        if self.include_subfolders:
            return path != self.path and path.is_relative_to(self.path)
        return path.parent == self.path


@dataclass(slots=True)
class DiscoveredFile:
    path: Path
    kind: DocumentKind
    size: int
    mtime: int


@dataclass(slots=True)
class FileIndexRecord:
    """Persisted state of one successfully indexed file."""

    path: Path
    kind: DocumentKind
    fingerprint: str
    embedding_model: str
    page_count: int
    chunk_count: int
    size: int = 0
    mtime: int = 0
    last_indexed_at: int = 0


@dataclass(slots=True)
class PageText:
    page: int
    text: str


@dataclass(slots=True)
class ChunkRecord:
    """Chunk of document text paired with its page location."""

    file_path: Path
    page: int
    ordinal: int
    text: str
    id: int | None = None
    lang: str | None = None


@dataclass(slots=True)
class FilePreview:
    path: Path
    kind: DocumentKind
    status: FileStatus
    size: int
    mtime: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "kind": self.kind.value,
            "status": self.status.value,
            "size": self.size,
            "mtime": self.mtime,
        }


@dataclass(slots=True)
class IndexProgress:
    current: int
    total: int
    file: str
    status: str


@dataclass(slots=True)
class SourceHit:
    file_path: Path
    page: int
    snippet: str
    distance: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["file_path"] = str(self.file_path)
        return data


@dataclass(slots=True)
class ChatResult:
    answer: str
    sources: List[SourceHit] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"answer": self.answer, "sources": [s.to_dict() for s in self.sources]}


@dataclass(slots=True)
class SetupStatus:
    reachable: bool
    models: List[str] = field(default_factory=list)
    missing_models: List[str] = field(default_factory=list)
    error: str | None = None
