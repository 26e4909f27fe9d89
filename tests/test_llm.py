import asyncio
import json

import httpx
import pytest

from chatbot.app import config, llm
from chatbot.app.models import DEFAULT_CHAT_MODEL, provider_model_for, resolve_chat_model


def _patch_transport(monkeypatch, handler):
    real = httpx.AsyncClient

    def factory(**kwargs):
        return real(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(llm.httpx, "AsyncClient", factory)


def _collect(agen):
    async def run():
        return [piece async for piece in agen]

    return asyncio.run(run())


def test_build_messages_prepends_system_and_drops_unknown_roles():
    out = llm.build_messages(
        [
            {"role": "user", "content": "hi"},
            {"role": "tool", "content": "ignored"},
            {"role": "assistant", "content": "hello"},
        ]
    )
    assert out[0] == {"role": "system", "content": llm.SYSTEM_PROMPT}
    assert [m["role"] for m in out[1:]] == ["user", "assistant"]


def test_model_resolution(monkeypatch):
    monkeypatch.setattr(config, "LLM_MODEL", "gpt-test")
    assert resolve_chat_model("nope") == DEFAULT_CHAT_MODEL
    assert resolve_chat_model(None) == DEFAULT_CHAT_MODEL
    assert provider_model_for("chat-model") == "gpt-test"


def test_chat_completion_parses_choice(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "pong"}}]})

    _patch_transport(monkeypatch, handler)
    out = asyncio.run(llm.chat_completion([{"role": "user", "content": "ping"}], base_url="http://llm.test"))

    assert out == "pong"
    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["body"]["stream"] is False


def test_chat_completion_stream_yields_deltas(monkeypatch):
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}),
        "data: " + json.dumps({"choices": [{"delta": {"content": "Hel"}}]}),
        ": keep-alive",
        "data: not-json",
        "data: " + json.dumps({"choices": [{"delta": {"content": "lo"}}]}),
        "data: [DONE]",
        "data: " + json.dumps({"choices": [{"delta": {"content": "ignored"}}]}),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="\n\n".join(lines) + "\n\n")

    _patch_transport(monkeypatch, handler)
    pieces = _collect(llm.chat_completion_stream([], base_url="http://llm.test"))
    assert pieces == ["Hel", "lo"]


def test_http_errors_become_llm_errors(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    _patch_transport(monkeypatch, handler)
    with pytest.raises(llm.LLMError):
        asyncio.run(llm.chat_completion([], base_url="http://llm.test"))
    with pytest.raises(llm.LLMError):
        _collect(llm.chat_completion_stream([], base_url="http://llm.test"))


def test_unexpected_shape(monkeypatch):
    _patch_transport(monkeypatch, lambda request: httpx.Response(200, json={"oops": True}))
    with pytest.raises(llm.LLMError):
        asyncio.run(llm.chat_completion([], base_url="http://llm.test"))
