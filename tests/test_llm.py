import itertools
import json
from typing import Iterator

import httpx
import pytest

from docqa.config import get_settings
from docqa.errors import GenerationError, ProviderUnavailableError, RequestTimeoutError
from docqa.llm import (
    OpenAIChatClient,
    OpenAIStreamingChatClient,
    build_chat_client,
    iter_stream_deltas,
)

MESSAGES = [
    {"role": "system", "content": "be brief"},
    {"role": "user", "content": "Context:\n...\n\nQuestion: hi"},
]


class _FakeResponse:
    def __init__(self, payload: object, *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
            response = httpx.Response(self.status_code, request=request, text="upstream error")
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> object:
        return self._payload


class _FakeStream:
    def __init__(self, lines: list[str], *, status_code: int = 200) -> None:
        self._lines = lines
        self.status_code = status_code
        self.text = ""

    def __enter__(self) -> "_FakeStream":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def read(self) -> bytes:
        self.text = "stream rejected"
        return self.text.encode()

    def iter_lines(self) -> Iterator[str]:
        yield from self._lines


def _completion(content: str | None) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _event(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]})


def _client(cls=OpenAIChatClient, **overrides: object):
    options: dict[str, object] = {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o",
        "api_key": "sk-test",
        "timeout_seconds": 5,
    }
    options.update(overrides)
    return cls(**options)


def test_blocking_client_returns_stripped_answer(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float):
        captured.update(url=url, json=json, headers=headers, timeout=timeout)
        return _FakeResponse(_completion("  Record earnings.  "))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    result = _client().complete(MESSAGES)

    assert result.answer == "Record earnings."
    assert result.model == "gpt-4o"
    assert result.used_fallback is False
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["json"] == {"model": "gpt-4o", "messages": MESSAGES, "temperature": 0.0}
    assert captured["headers"] == {"Authorization": "Bearer sk-test"}


@pytest.mark.parametrize("payload", [_completion(""), _completion(None), {"choices": []}, {}])
def test_blocking_client_rejects_empty_or_malformed_answers(
    monkeypatch: pytest.MonkeyPatch, payload: dict[str, object]
) -> None:
    monkeypatch.setattr("docqa.llm.httpx.post", lambda url, **kwargs: _FakeResponse(payload))

    with pytest.raises(GenerationError):
        _client().complete(MESSAGES)


def test_blocking_client_maps_status_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "docqa.llm.httpx.post", lambda url, **kwargs: _FakeResponse({}, status_code=500)
    )

    with pytest.raises(GenerationError, match="status 500") as exc_info:
        _client().complete(MESSAGES)

    assert exc_info.value.diagnostic == "upstream error"


def test_blocking_client_maps_timeout_and_connection_errors(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def timeout_post(url: str, **kwargs: object):
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr("docqa.llm.httpx.post", timeout_post)
    with pytest.raises(RequestTimeoutError):
        _client().complete(MESSAGES)

    def refused_post(url: str, **kwargs: object):
        raise httpx.ConnectError("refused")

    monkeypatch.setattr("docqa.llm.httpx.post", refused_post)
    with pytest.raises(ProviderUnavailableError):
        _client().complete(MESSAGES)


def test_blocking_client_uses_fallback_model(monkeypatch: pytest.MonkeyPatch) -> None:
    models: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], **kwargs: object):
        models.append(str(json["model"]))
        if json["model"] == "gpt-4o":
            return _FakeResponse({}, status_code=503)
        return _FakeResponse(_completion("fallback answer"))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    result = _client(fallback_model="gpt-4o-mini").complete(MESSAGES)

    assert models == ["gpt-4o", "gpt-4o-mini"]
    assert result.answer == "fallback answer"
    assert result.model == "gpt-4o-mini"
    assert result.used_fallback is True


def test_timeout_does_not_fall_back(monkeypatch: pytest.MonkeyPatch) -> None:
    models: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], **kwargs: object):
        models.append(str(json["model"]))
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    with pytest.raises(RequestTimeoutError):
        _client(fallback_model="gpt-4o-mini").complete(MESSAGES)

    assert models == ["gpt-4o"]


def test_streaming_client_concatenates_deltas_in_order(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}
    lines = [
        ": keep-alive",
        _event("Record "),
        "",
        "data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}),
        _event("operating "),
        _event("earnings."),
        "data: [DONE]",
        _event(" ignored after done"),
    ]

    def fake_stream(method: str, url: str, *, json: dict[str, object], **kwargs: object):
        captured.update(method=method, url=url, json=json)
        return _FakeStream(lines)

    monkeypatch.setattr("docqa.llm.httpx.stream", fake_stream)

    result = _client(OpenAIStreamingChatClient).complete(MESSAGES)

    assert result.answer == "Record operating earnings."
    assert captured["method"] == "POST"
    assert captured["json"]["stream"] is True


def test_streaming_client_rejects_empty_stream(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "docqa.llm.httpx.stream", lambda method, url, **kwargs: _FakeStream(["data: [DONE]"])
    )

    with pytest.raises(GenerationError, match="no content"):
        _client(OpenAIStreamingChatClient).complete(MESSAGES)


def test_streaming_client_maps_status_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "docqa.llm.httpx.stream",
        lambda method, url, **kwargs: _FakeStream([], status_code=429),
    )

    with pytest.raises(GenerationError, match="status 429") as exc_info:
        _client(OpenAIStreamingChatClient).complete(MESSAGES)

    assert exc_info.value.diagnostic == "stream rejected"
    assert exc_info.value.retryable is True


def test_streaming_client_stops_a_stream_that_outlives_its_timeout(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    ticks = itertools.count(step=2.0)
    lines = [_event(f"part {number} ") for number in range(5)] + ["data: [DONE]"]
    monkeypatch.setattr("docqa.llm.monotonic", lambda: next(ticks))
    monkeypatch.setattr(
        "docqa.llm.httpx.stream", lambda method, url, **kwargs: _FakeStream(lines)
    )

    with pytest.raises(RequestTimeoutError, match="past its deadline"):
        _client(OpenAIStreamingChatClient).complete(MESSAGES)


def test_blocking_client_caps_http_timeout_by_budget(monkeypatch: pytest.MonkeyPatch) -> None:
    timeouts: list[float] = []

    def fake_post(url: str, *, timeout: float, **kwargs: object):
        timeouts.append(timeout)
        return _FakeResponse(_completion("ok"))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    _client().complete(MESSAGES, timeout=0.25)
    _client().complete(MESSAGES)

    assert 0 < timeouts[0] <= 0.25
    assert timeouts[1] == 5


def test_spent_budget_fails_without_calling_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, **kwargs: object):
        raise AssertionError("provider must not be called")

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    with pytest.raises(RequestTimeoutError, match="ran out of time"):
        _client(fallback_model="gpt-4o-mini").complete(MESSAGES, timeout=0)


def test_iter_stream_deltas_rejects_garbage_event() -> None:
    with pytest.raises(GenerationError, match="stream event"):
        list(iter_stream_deltas(["data: {not json"]))


def test_build_chat_client_selects_variant_once(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RAG_GENERATION_MODE", "streaming")
    assert isinstance(build_chat_client(get_settings()), OpenAIStreamingChatClient)

    get_settings.cache_clear()
    monkeypatch.setenv("RAG_GENERATION_MODE", "blocking")
    client = build_chat_client(get_settings())
    assert type(client) is OpenAIChatClient
