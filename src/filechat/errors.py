"""Exception hierarchy shared by the indexing and retrieval engine."""

from __future__ import annotations


class FileChatError(Exception):
    """Base class for all engine errors."""


class ConfigError(FileChatError, ValueError):
    """Invalid index or retrieval settings."""


class UnsupportedFormat(FileChatError):
    """The file extension is not one we know how to extract."""


class ExtractionFailed(FileChatError):
    """The file could not be opened or parsed."""


class OcrFailed(FileChatError):
    """Tesseract could not produce text for an image."""


class ServiceUnavailable(FileChatError):
    """The Ollama service could not be reached."""


class EmbeddingServiceUnavailable(ServiceUnavailable):
    """The embedding service could not be reached (retryable)."""


class EmbeddingTimeout(EmbeddingServiceUnavailable):
    """An embedding request timed out."""


class EmbeddingError(FileChatError):
    """The embedding model rejected an input."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class DimensionMismatch(EmbeddingError):
    """A vector came back with a different dimension than the run expects."""


class ChatServiceUnavailable(ServiceUnavailable):
    """The chat service could not be reached."""


class ChatError(FileChatError):
    """The chat model returned an error or an empty answer."""


class StorageError(FileChatError):
    """The vector store failed to read or write."""


class IndexBusy(FileChatError):
    """An indexing job is already running."""
