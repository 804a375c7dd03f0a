"""Minimal HTTP client for the local Ollama server."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Type

import requests

from filechat.config import DEFAULT_OLLAMA_TIMEOUT, normalize_ollama_base, ollama_base_url
from filechat.errors import (
    ChatError,
    ChatServiceUnavailable,
    EmbeddingError,
    EmbeddingServiceUnavailable,
    EmbeddingTimeout,
    FileChatError,
    ServiceUnavailable,
)

LOGGER = logging.getLogger(__name__)

_TOO_LARGE_STATUSES = {400, 413, 422, 500}


def is_input_too_large(status: int | None, body: str) -> bool:
    """Detect the ways Ollama reports that an input exceeds the model context."""
    if status == 413:
        return True
    if status not in _TOO_LARGE_STATUSES:
        return False
    text = body.lower()
    if "context" in text and ("length" in text or "too long" in text or "limit" in text):
        return True
    if "input" in text and ("too long" in text or "limit" in text or "tokens" in text):
        return True
    return False


class OllamaClient:
    """Blocking client for ``/api/embed``, ``/api/chat`` and ``/api/tags``."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float = DEFAULT_OLLAMA_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = normalize_ollama_base(base_url) if base_url else ollama_base_url()
        self.timeout = timeout
        self._session = session or requests.Session()
        # Local server: never route through a system proxy
        self._session.trust_env = False

    def close(self) -> None:
        self._session.close()

    def _send(
        self,
        method: str,
        endpoint: str,
        payload: Dict[str, Any] | None,
        unavailable: Type[ServiceUnavailable],
        failure: Type[FileChatError],
        timeout_exc: Type[ServiceUnavailable] | None = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = self._session.request(method, url, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            raise (timeout_exc or unavailable)(f"Ollama request to {url} timed out") from exc
        except requests.RequestException as exc:
            raise unavailable(f"Ollama not reachable at {self.base_url}: {exc}") from exc

        if not response.ok:
            body = response.text or ""
            LOGGER.debug("Ollama %s returned %s: %s", endpoint, response.status_code, body[:500])
            if response.status_code >= 500 and not is_input_too_large(response.status_code, body):
                raise unavailable(f"Ollama {endpoint} failed with {response.status_code}: {body[:200]}")
            if failure is EmbeddingError:
                raise EmbeddingError(
                    f"Ollama {endpoint} failed with {response.status_code}: {body[:200]}",
                    status=response.status_code,
                    body=body,
                )
            raise failure(f"Ollama {endpoint} failed with {response.status_code}: {body[:200]}")

        try:
            return response.json()
        except ValueError as exc:
            raise failure(f"Ollama {endpoint} returned invalid JSON") from exc

    def embed(self, model: str, inputs: str | Sequence[str]) -> List[List[float]]:
        payload = {
            "model": model,
            "input": inputs if isinstance(inputs, str) else list(inputs),
            "truncate": True,
        }
        data = self._send(
            "POST", "embed", payload, EmbeddingServiceUnavailable, EmbeddingError, EmbeddingTimeout
        )
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise EmbeddingError("No embeddings in Ollama response")
        return embeddings

    def chat(self, model: str, messages: Sequence[Dict[str, str]]) -> str:
        payload = {"model": model, "messages": list(messages), "stream": False}
        data = self._send("POST", "chat", payload, ChatServiceUnavailable, ChatError)
        message = data.get("message") or {}
        content = message.get("content")
        if content is None:
            raise ChatError("No message content in Ollama response")
        return content

    def list_models(self) -> List[str]:
        data = self._send("GET", "tags", None, ServiceUnavailable, FileChatError)
        return [model["name"] for model in data.get("models", []) if "name" in model]
