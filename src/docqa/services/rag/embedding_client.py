from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from docqa.config import Settings
from docqa.errors import (
    EmbeddingError,
    ProviderUnavailableError,
    RequestTimeoutError,
    ShapeMismatchError,
)
from docqa.retry import call_with_retry, deadline_after, time_left
from docqa.services.rag.embedder import HashingEmbeddingClient

logger = logging.getLogger(__name__)


class EmbeddingClient(Protocol):
    def embed_texts(
        self, texts: list[str], *, timeout: float | None = None
    ) -> list[list[float]]: ...


class _EmbeddingItem(BaseModel):
    index: int | None = None
    embedding: list[float] = Field(min_length=1)


class _EmbeddingsResponse(BaseModel):
    data: list[_EmbeddingItem]


def parse_embeddings_payload(payload: Any, *, expected: int) -> list[list[float]]:
    """Normalize an OpenAI-style ``/embeddings`` response into vectors in input order."""
    try:
        parsed = _EmbeddingsResponse.model_validate(payload)
    except ValidationError as exc:
        raise EmbeddingError(
            "Invalid embeddings payload",
            diagnostic=str(exc),
        ) from exc

    items = parsed.data
    indices = [item.index for item in items if item.index is not None]
    if indices:
        # Indices, when given, must be a permutation of 0..n-1.
        if len(indices) != len(items) or sorted(indices) != list(range(len(items))):
            raise ShapeMismatchError(
                f"Invalid embeddings payload: indices {indices} are not a permutation "
                f"of 0..{len(items) - 1}"
            )
        items = sorted(items, key=lambda item: item.index)

    vectors = [list(item.embedding) for item in items]
    if len(vectors) != expected:
        raise ShapeMismatchError(
            f"Invalid embeddings payload: expected {expected} vectors, got {len(vectors)}"
        )
    return vectors


class OpenAIEmbeddingClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        max_batch_size: int = 64,
        max_attempts: int = 1,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_batch_size = max_batch_size
        self._max_attempts = max_attempts

    def embed_texts(
        self, texts: list[str], *, timeout: float | None = None
    ) -> list[list[float]]:
        """Embed ``texts`` in order.

        ``timeout`` bounds the whole call, every batch and retry included.
        """
        if not texts:
            return []

        deadline = deadline_after(timeout)
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self._max_batch_size):
            batch = texts[offset : offset + self._max_batch_size]
            vectors.extend(
                call_with_retry(
                    lambda batch=batch: self._embed_batch(batch, deadline=deadline),
                    max_attempts=self._max_attempts,
                    label="embedding request",
                    deadline=deadline,
                )
            )
        return vectors

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    def _embed_batch(self, batch: list[str], *, deadline: float | None) -> list[list[float]]:
        timeout = time_left(deadline, limit=self._timeout_seconds, label="Embedding request")
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": batch},
                headers=self._headers(),
                timeout=timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"Embedding request timed out after {timeout:g}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise EmbeddingError(
                f"Embedding request failed with status {exc.response.status_code}",
                status_code=exc.response.status_code,
                diagnostic=exc.response.text[:500],
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Embedding provider unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingError("Embedding response is not JSON", diagnostic=str(exc)) from exc

        vectors = parse_embeddings_payload(payload, expected=len(batch))
        logger.debug("embedded batch size=%d model=%s", len(batch), self._model)
        return vectors


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embedding_provider == "hashing":
        return HashingEmbeddingClient(dimensions=settings.embedding_dim)
    return OpenAIEmbeddingClient(
        base_url=settings.openai_base_url,
        model=settings.openai_embedding_model,
        api_key=settings.openai_api_key,
        timeout_seconds=settings.request_timeout_seconds,
        max_batch_size=settings.embedding_batch_size,
        max_attempts=settings.provider_max_attempts,
    )
