"""Application configuration defaults and per-call settings."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from filechat.errors import ConfigError

DEFAULT_EMBED_MODEL = "qwen3-embedding"
DEFAULT_CHAT_MODEL = "llama3.1:8b"
DEFAULT_OLLAMA_BASE = "http://127.0.0.1:11434/api"
DEFAULT_OLLAMA_TIMEOUT = 300.0
DEFAULT_EMBED_BATCH = 4
DEFAULT_FALLBACK_CHARS = 800
DEFAULT_FALLBACK_STRATEGY = "average"
FALLBACK_STRATEGIES = ("average", "first")


def _user_data_dir() -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))


def _get_default_db_path() -> Path:
    """Get the default database path based on environment and execution context."""
    from_env = os.environ.get("FILECHAT_DB")
    if from_env:
        return Path(from_env)

    user_db = _user_data_dir() / "FileChat" / "library.sqlite3"
    if getattr(sys, "frozen", False):
        return user_db

    # When running from source, prefer local data/ if it exists
    local_db = Path("data/library.sqlite3")
    if local_db.exists():
        return local_db
    return user_db


def normalize_ollama_base(raw: str | None) -> str:
    """Turn ``host:port`` style values into an ``http://host:port/api`` base URL."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return DEFAULT_OLLAMA_BASE
    base = trimmed if "://" in trimmed else f"http://{trimmed}"
    base = base.rstrip("/")
    if base.endswith("/api"):
        return base
    return f"{base}/api"


def ollama_base_url() -> str:
    return normalize_ollama_base(os.environ.get("OLLAMA_BASE_URL") or os.environ.get("OLLAMA_HOST"))


def _positive_env(name: str, default, cast=int):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def normalize_fallback_strategy(raw: str | None) -> str:
    """Map a strategy name to ``first`` or ``average``; anything unknown averages."""
    value = (raw or "").strip().lower()
    return value if value in FALLBACK_STRATEGIES else DEFAULT_FALLBACK_STRATEGY


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    embed_model: str = DEFAULT_EMBED_MODEL
    chat_model: str = DEFAULT_CHAT_MODEL
    ollama_url: str = field(default_factory=ollama_base_url)
    ollama_timeout: float = field(
        default_factory=lambda: _positive_env("OLLAMA_TIMEOUT_SECS", DEFAULT_OLLAMA_TIMEOUT, float)
    )
    embed_batch_size: int = field(
        default_factory=lambda: _positive_env("OLLAMA_EMBED_BATCH", DEFAULT_EMBED_BATCH)
    )
    embed_fallback_chars: int = field(
        default_factory=lambda: _positive_env("OLLAMA_EMBED_FALLBACK_CHARS", DEFAULT_FALLBACK_CHARS)
    )
    embed_fallback_strategy: str = field(
        default_factory=lambda: normalize_fallback_strategy(os.environ.get("OLLAMA_EMBED_FALLBACK_STRATEGY"))
    )
    tesseract_cmd: str | None = field(default_factory=lambda: os.environ.get("TESSERACT_CMD"))

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path


@dataclass(slots=True)
class IndexSettings:
    """Extraction and chunking options for one indexing run."""

    chunk_size: int = 1200
    chunk_overlap: int = 200
    ocr_enabled: bool = True
    ocr_lang: str = "eng"
    ocr_min_chars: int = 120
    ocr_dpi: int = 300

    def validate(self) -> "IndexSettings":
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap} "
                f"with chunk_size {self.chunk_size}"
            )
        if self.ocr_min_chars < 0:
            raise ConfigError("ocr_min_chars must not be negative")
        if self.ocr_dpi <= 0:
            raise ConfigError("ocr_dpi must be positive")
        return self


@dataclass(slots=True)
class RetrievalSettings:
    """Query-time retrieval options."""

    top_k: int = 8
    max_distance: float | None = None
    use_mmr: bool = False
    mmr_lambda: float = 0.7
    mmr_candidates: int = 24
    hybrid: bool = False
    snippet_chars: int = 600

    def validate(self) -> "RetrievalSettings":
        if self.top_k <= 0:
            raise ConfigError(f"top_k must be positive, got {self.top_k}")
        if not 0.0 <= self.mmr_lambda <= 1.0:
            raise ConfigError(f"mmr_lambda must be between 0 and 1, got {self.mmr_lambda}")
        if self.max_distance is not None and self.max_distance < 0:
            raise ConfigError("max_distance must not be negative")
        return self
