from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
import json
import logging
from time import monotonic
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from docqa.config import Settings
from docqa.errors import (
    GenerationError,
    ProviderUnavailableError,
    RequestTimeoutError,
)
from docqa.retry import call_with_retry, deadline_after, time_left

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class ChatClient(Protocol):
    def complete(
        self, messages: list[ChatMessage], *, timeout: float | None = None
    ) -> ChatResult: ...


class _Message(BaseModel):
    content: str | None = None


class _Choice(BaseModel):
    message: _Message


class _ChatCompletion(BaseModel):
    choices: list[_Choice] = Field(min_length=1)


class _Delta(BaseModel):
    content: str | None = None


class _StreamChoice(BaseModel):
    delta: _Delta = Field(default_factory=_Delta)


class _ChatCompletionChunk(BaseModel):
    choices: list[_StreamChoice] = Field(default_factory=list)


def parse_chat_completion(payload: Any) -> str:
    try:
        parsed = _ChatCompletion.model_validate(payload)
    except ValidationError as exc:
        raise GenerationError("Invalid chat completion payload", diagnostic=str(exc)) from exc

    content = parsed.choices[0].message.content
    if content is None or not content.strip():
        raise GenerationError("Invalid chat completion payload: missing assistant content")
    return content.strip()


def iter_stream_deltas(lines: Iterable[str], *, deadline: float | None = None) -> Iterator[str]:
    """Yield content deltas from server-sent ``data:`` lines until ``[DONE]``.

    Raises ``RequestTimeoutError`` once ``deadline`` (a ``time.monotonic`` value)
    passes, however steadily the provider keeps sending.
    """
    for raw_line in lines:
        if deadline is not None and monotonic() > deadline:
            raise RequestTimeoutError("Chat completion stream ran past its deadline")
        line = raw_line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return
        try:
            chunk = _ChatCompletionChunk.model_validate(json.loads(data))
        except (ValueError, ValidationError) as exc:
            raise GenerationError("Invalid chat completion stream event", diagnostic=data[:500]) from exc
        for choice in chunk.choices:
            if choice.delta.content:
                yield choice.delta.content


class OpenAIChatClient:
    """Blocking ``/chat/completions`` client for OpenAI-compatible providers."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        fallback_model: str = "",
        api_key: str = "",
        timeout_seconds: float = 30.0,
        max_attempts: int = 1,
        temperature: float = 0.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._fallback_model = fallback_model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max_attempts
        self._temperature = temperature

    def complete(
        self, messages: list[ChatMessage], *, timeout: float | None = None
    ) -> ChatResult:
        deadline = deadline_after(timeout)
        candidates = self._model_candidates()
        for position, (model, used_fallback) in enumerate(candidates):
            try:
                content = call_with_retry(
                    lambda model=model: self._request(
                        model=model, messages=messages, deadline=deadline
                    ),
                    max_attempts=self._max_attempts,
                    label="chat completion",
                    deadline=deadline,
                )
            except (GenerationError, ProviderUnavailableError) as exc:
                if position == len(candidates) - 1:
                    raise
                logger.warning("chat model failed model=%s error=%s; trying fallback", model, exc)
                continue

            return ChatResult(answer=content, model=model, used_fallback=used_fallback)

        raise GenerationError("No model candidates configured")

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._model, False)]
        if self._fallback_model and self._fallback_model != self._model:
            candidates.append((self._fallback_model, True))
        return candidates

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            return {}
        return {"Authorization": f"Bearer {self._api_key}"}

    def _body(self, *, model: str, messages: list[ChatMessage]) -> dict[str, Any]:
        return {"model": model, "messages": messages, "temperature": self._temperature}

    def _request(
        self, *, model: str, messages: list[ChatMessage], deadline: float | None
    ) -> str:
        timeout = time_left(deadline, limit=self._timeout_seconds, label="Chat completion")
        try:
            response = httpx.post(
                f"{self._base_url}/chat/completions",
                json=self._body(model=model, messages=messages),
                headers=self._headers(),
                timeout=timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"Chat completion timed out after {timeout:g}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise GenerationError(
                f"Chat completion failed with status {exc.response.status_code}",
                status_code=exc.response.status_code,
                diagnostic=exc.response.text[:500],
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Chat provider unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise GenerationError("Chat completion response is not JSON", diagnostic=str(exc)) from exc
        return parse_chat_completion(payload)


class OpenAIStreamingChatClient(OpenAIChatClient):
    """Streams the completion and returns it once the stream is drained."""

    def _body(self, *, model: str, messages: list[ChatMessage]) -> dict[str, Any]:
        body = super()._body(model=model, messages=messages)
        body["stream"] = True
        return body

    def _request(
        self, *, model: str, messages: list[ChatMessage], deadline: float | None
    ) -> str:
        timeout = time_left(deadline, limit=self._timeout_seconds, label="Chat completion")
        stream_deadline = monotonic() + timeout
        parts: list[str] = []
        try:
            with httpx.stream(
                "POST",
                f"{self._base_url}/chat/completions",
                json=self._body(model=model, messages=messages),
                headers=self._headers(),
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    response.read()
                    raise GenerationError(
                        f"Chat completion failed with status {response.status_code}",
                        status_code=response.status_code,
                        diagnostic=response.text[:500],
                    )
                for delta in iter_stream_deltas(response.iter_lines(), deadline=stream_deadline):
                    parts.append(delta)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"Chat completion stream timed out after {timeout:g}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Chat provider stream failed: {exc}") from exc

        answer = "".join(parts).strip()
        if not answer:
            raise GenerationError("Chat completion stream produced no content")
        return answer


def build_chat_client(settings: Settings) -> ChatClient:
    client_class = (
        OpenAIStreamingChatClient if settings.generation_mode == "streaming" else OpenAIChatClient
    )
    return client_class(
        base_url=settings.openai_base_url,
        model=settings.openai_chat_model,
        fallback_model=settings.openai_fallback_chat_model,
        api_key=settings.openai_api_key,
        timeout_seconds=settings.request_timeout_seconds,
        max_attempts=settings.provider_max_attempts,
    )
