from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from . import config
from .logging_utils import get_logger
from .models import provider_model_for

log = get_logger(__name__)

SYSTEM_PROMPT = "You are a friendly assistant! Keep your responses concise and helpful."


class LLMError(RuntimeError):
    pass


def _headers() -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if config.LLM_API_KEY:
        headers["Authorization"] = f"Bearer {config.LLM_API_KEY}"
    return headers


def _wrap_http_error(e: httpx.HTTPError, timeout_s: float) -> LLMError:
    if isinstance(e, httpx.TimeoutException):
        return LLMError(f"Completion request timed out after {timeout_s:.1f}s ({type(e).__name__}).")
    detail = None
    response = getattr(e, "response", None)
    if response is not None:
        try:
            detail = response.text
        except httpx.ResponseNotRead:
            detail = None
    msg = str(e).strip() or repr(e)
    return LLMError(f"Completion request failed ({type(e).__name__}): {msg} {detail or ''}".strip())


def build_messages(history: list[dict[str, Any]], system_prompt: str = SYSTEM_PROMPT) -> list[dict[str, str]]:
    out = [{"role": "system", "content": system_prompt}]
    for m in history:
        role = str(m.get("role") or "")
        if role not in ("user", "assistant"):
            continue
        out.append({"role": role, "content": str(m.get("content") or "")})
    return out


async def chat_completion(
    messages: list[dict[str, Any]],
    chat_model: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 800,
    timeout_s: float | None = None,
) -> str:
    base_url = (base_url or config.LLM_BASE_URL).rstrip("/")
    timeout_s = float(timeout_s or config.LLM_TIMEOUT_S)
    payload = {
        "model": provider_model_for(chat_model),
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": False,
    }
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)) as client:
        try:
            resp = await client.post(f"{base_url}/v1/chat/completions", json=payload, headers=_headers())
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise _wrap_http_error(e, timeout_s) from e

        data = resp.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Unexpected completion response shape: {data}") from e


async def chat_completion_stream(
    messages: list[dict[str, Any]],
    chat_model: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 800,
    timeout_s: float | None = None,
) -> AsyncIterator[str]:
    base_url = (base_url or config.LLM_BASE_URL).rstrip("/")
    timeout_s = float(timeout_s or config.LLM_TIMEOUT_S)
    payload = {
        "model": provider_model_for(chat_model),
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": True,
    }

    # For streaming, read timeout is per-chunk; keep it generous.
    timeout = httpx.Timeout(timeout_s, connect=10.0, read=timeout_s, write=10.0, pool=10.0)
    async with httpx.AsyncClient(timeout=timeout) as client:
        try:
            async with client.stream(
                "POST", f"{base_url}/v1/chat/completions", json=payload, headers=_headers()
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    s = line.strip()
                    if not s.startswith("data:"):
                        continue
                    data_str = s[len("data:") :].strip()
                    if not data_str:
                        continue
                    if data_str == "[DONE]":
                        break
                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError:
                        log.debug("Skipping malformed stream line: %r", data_str[:200])
                        continue
                    choice0 = (data.get("choices") or [{}])[0] or {}
                    content = (choice0.get("delta") or {}).get("content")
                    if content:
                        yield str(content)
        except httpx.HTTPError as e:
            raise _wrap_http_error(e, timeout_s) from e
