"""Async provider adapters for chat models (Ollama, OpenAI-compatible, Anthropic).

Every adapter speaks the same small contract: a message list in, a
``ChatCompletion`` (text, tool calls, usage) out, or a stream of
``StreamChunk`` objects. Non-2xx responses are raised as
``ProviderAPIError`` so the orchestrator can classify them without knowing
which provider produced them.

Usage::

    async with OpenAIModel("gpt-4o-mini", api_key=key) as model:
        completion = await model.chat(
            [ChatMessage(role="user", content="Hello")],
        )
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import BaseModel

from jenn.llm.errors import ProviderAPIError, ProviderRetryError
from jenn.schemas.llm import (
    ChatCompletion,
    ChatMessage,
    ModelOptions,
    ModelTarget,
    StreamChunk,
    ToolCall,
    Usage,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 120.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_BASE_DELAY_S = 1.0


class ProviderSettings(BaseModel):
    """Endpoints and credentials for every supported provider."""

    ollama_base_url: str = "http://localhost:11434"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_api_key: str = ""
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_retries: int = DEFAULT_MAX_RETRIES


async def _raise_for_status(response: httpx.Response, provider: str) -> None:
    """Convert an httpx status error into a ProviderAPIError."""
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        if not response.is_closed:
            await response.aread()
        raise ProviderAPIError.from_http_error(exc, provider) from exc


class LanguageModel:
    """Base class for provider adapters.

    Subclasses implement ``chat`` and ``stream_chat``. ``tools`` are plain
    dicts of ``{"name", "description", "parameters"}`` where ``parameters``
    is a JSON schema. Non-streaming requests are retried on connection
    errors, ``max_retries`` times with a doubling delay.
    """

    provider = "unknown"

    def __init__(self, name: str, *, base_url: str, headers: dict[str, str] | None = None,
                 timeout: float = DEFAULT_TIMEOUT_S, max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY_S) -> None:
        self.name = name
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers or {},
            timeout=timeout,
        )

    async def __aenter__(self) -> "LanguageModel":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        """POST ``payload`` and raise ProviderAPIError on a non-2xx response.

        Raises:
            ProviderRetryError: The endpoint stayed unreachable after all retries.
        """
        last_error: httpx.TransportError | None = None
        for attempt in range(self._max_retries + 1):
            if attempt:
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "%s %s unreachable (%r), retry %d/%d in %.1fs",
                    self.provider,
                    self.name,
                    last_error,
                    attempt,
                    self._max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
            try:
                response = await self._client.post(path, json=payload)
            except httpx.TransportError as exc:
                last_error = exc
                continue
            await _raise_for_status(response, self.provider)
            return response

        raise ProviderRetryError(
            f"{self.provider} request failed after {self._max_retries + 1} attempts: {last_error}",
            provider=self.provider,
        ) from last_error

    async def chat(
        self,
        messages: list[ChatMessage],
        *,
        tools: list[dict] | None = None,
        temperature: float = 0.2,
        json_mode: bool = False,
    ) -> ChatCompletion:
        raise NotImplementedError

    def stream_chat(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.2,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError


# ------------------------------------------------------------------
# Ollama
# ------------------------------------------------------------------


class OllamaModel(LanguageModel):
    """Ollama ``/api/chat`` adapter with native tool calling."""

    provider = "ollama"

    def __init__(self, name: str, *, base_url: str = "http://localhost:11434",
                 keep_alive: str = "5m", timeout: float = DEFAULT_TIMEOUT_S,
                 max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        super().__init__(name, base_url=base_url, timeout=timeout, max_retries=max_retries)
        self._keep_alive = keep_alive

    def _messages(self, messages: list[ChatMessage]) -> list[dict]:
        out = []
        for m in messages:
            entry: dict[str, Any] = {"role": m.role, "content": m.content}
            if m.tool_calls:
                entry["tool_calls"] = [
                    {"function": {"name": c.name, "arguments": c.arguments}}
                    for c in m.tool_calls
                ]
            if m.role == "tool" and m.name:
                entry["tool_name"] = m.name
            out.append(entry)
        return out

    def _payload(self, messages: list[ChatMessage], temperature: float, stream: bool) -> dict:
        return {
            "model": self.name,
            "messages": self._messages(messages),
            "stream": stream,
            "keep_alive": self._keep_alive,
            "options": {"temperature": temperature},
        }

    async def chat(self, messages, *, tools=None, temperature=0.2, json_mode=False):
        payload = self._payload(messages, temperature, stream=False)
        if tools:
            payload["tools"] = [
                {"type": "function", "function": tool} for tool in tools
            ]
        if json_mode:
            payload["format"] = "json"

        response = await self._post("/api/chat", payload)
        data = response.json()

        message = data.get("message") or {}
        calls = [
            ToolCall(
                id=f"call_{i}",
                name=c["function"]["name"],
                arguments=c["function"].get("arguments") or {},
            )
            for i, c in enumerate(message.get("tool_calls") or [])
        ]
        usage = Usage(
            prompt_tokens=data.get("prompt_eval_count", 0),
            completion_tokens=data.get("eval_count", 0),
        )
        logger.debug(
            "Ollama %s: %d prompt tokens, %d eval tokens",
            self.name,
            usage.prompt_tokens,
            usage.completion_tokens,
        )
        return ChatCompletion(
            text=message.get("content", ""),
            tool_calls=calls,
            usage=usage,
            finish_reason="tool_calls" if calls else data.get("done_reason", "stop"),
        )

    async def stream_chat(self, messages, *, temperature=0.2):
        payload = self._payload(messages, temperature, stream=True)
        async with self._client.stream("POST", "/api/chat", json=payload) as response:
            await _raise_for_status(response, self.provider)
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                data = json.loads(line)
                text = (data.get("message") or {}).get("content", "")
                if data.get("done"):
                    yield StreamChunk(
                        text=text,
                        usage=Usage(
                            prompt_tokens=data.get("prompt_eval_count", 0),
                            completion_tokens=data.get("eval_count", 0),
                        ),
                        finish_reason=data.get("done_reason", "stop"),
                    )
                elif text:
                    yield StreamChunk(text=text)


# ------------------------------------------------------------------
# OpenAI-compatible
# ------------------------------------------------------------------


def _sse_data(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None."""
    if not line.startswith("data:"):
        return None
    return line[len("data:"):].strip()


class OpenAIModel(LanguageModel):
    """OpenAI-compatible ``/chat/completions`` adapter."""

    provider = "openai"

    def __init__(self, name: str, *, api_key: str, base_url: str = "https://api.openai.com/v1",
                 timeout: float = DEFAULT_TIMEOUT_S, max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        super().__init__(
            name,
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            max_retries=max_retries,
        )

    @staticmethod
    def _messages(messages: list[ChatMessage]) -> list[dict]:
        out = []
        for m in messages:
            if m.role == "tool":
                out.append(
                    {"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content}
                )
                continue
            entry: dict[str, Any] = {"role": m.role, "content": m.content}
            if m.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": c.id,
                        "type": "function",
                        "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
                    }
                    for c in m.tool_calls
                ]
            out.append(entry)
        return out

    async def chat(self, messages, *, tools=None, temperature=0.2, json_mode=False):
        payload: dict[str, Any] = {
            "model": self.name,
            "messages": self._messages(messages),
            "temperature": temperature,
        }
        if tools:
            payload["tools"] = [{"type": "function", "function": tool} for tool in tools]
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        response = await self._post("/chat/completions", payload)
        data = response.json()

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        calls = []
        for c in message.get("tool_calls") or []:
            raw_args = c["function"].get("arguments") or "{}"
            try:
                arguments = json.loads(raw_args)
            except ValueError:
                logger.warning("Unparseable tool arguments for %s", c["function"]["name"])
                arguments = {}
            calls.append(ToolCall(id=c["id"], name=c["function"]["name"], arguments=arguments))

        usage = data.get("usage") or {}
        return ChatCompletion(
            text=message.get("content") or "",
            tool_calls=calls,
            usage=Usage(
                prompt_tokens=usage.get("prompt_tokens", 0),
                completion_tokens=usage.get("completion_tokens", 0),
            ),
            finish_reason=choice.get("finish_reason") or "",
        )

    async def stream_chat(self, messages, *, temperature=0.2):
        payload = {
            "model": self.name,
            "messages": self._messages(messages),
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        finish_reason = None
        async with self._client.stream("POST", "/chat/completions", json=payload) as response:
            await _raise_for_status(response, self.provider)
            async for line in response.aiter_lines():
                data = _sse_data(line)
                if not data:
                    continue
                if data == "[DONE]":
                    break
                event = json.loads(data)
                for choice in event.get("choices") or []:
                    finish_reason = choice.get("finish_reason") or finish_reason
                    text = (choice.get("delta") or {}).get("content")
                    if text:
                        yield StreamChunk(text=text)
                if event.get("usage"):
                    yield StreamChunk(
                        usage=Usage(
                            prompt_tokens=event["usage"].get("prompt_tokens", 0),
                            completion_tokens=event["usage"].get("completion_tokens", 0),
                        ),
                        finish_reason=finish_reason or "stop",
                    )


# ------------------------------------------------------------------
# Anthropic
# ------------------------------------------------------------------


class AnthropicModel(LanguageModel):
    """Anthropic Messages API adapter."""

    provider = "anthropic"
    API_VERSION = "2023-06-01"

    def __init__(self, name: str, *, api_key: str, base_url: str = "https://api.anthropic.com",
                 max_tokens: int = 4096, timeout: float = DEFAULT_TIMEOUT_S,
                 max_retries: int = DEFAULT_MAX_RETRIES) -> None:
        super().__init__(
            name,
            base_url=base_url,
            headers={"x-api-key": api_key, "anthropic-version": self.API_VERSION},
            timeout=timeout,
            max_retries=max_retries,
        )
        self._max_tokens = max_tokens

    @staticmethod
    def _split(messages: list[ChatMessage]) -> tuple[str, list[dict]]:
        """Separate the system prompt and convert to Anthropic content blocks.

        Consecutive tool results are merged into a single user turn.
        """
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        out: list[dict] = []
        for m in messages:
            if m.role == "system":
                continue
            if m.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": m.tool_call_id,
                    "content": m.content,
                }
                if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                    out[-1]["content"].append(block)
                else:
                    out.append({"role": "user", "content": [block]})
                continue
            if m.tool_calls:
                blocks: list[dict] = []
                if m.content:
                    blocks.append({"type": "text", "text": m.content})
                blocks.extend(
                    {"type": "tool_use", "id": c.id, "name": c.name, "input": c.arguments}
                    for c in m.tool_calls
                )
                out.append({"role": "assistant", "content": blocks})
                continue
            out.append({"role": m.role, "content": m.content})
        return system, out

    def _payload(self, messages: list[ChatMessage], temperature: float) -> dict:
        system, converted = self._split(messages)
        payload: dict[str, Any] = {
            "model": self.name,
            "max_tokens": self._max_tokens,
            "temperature": temperature,
            "messages": converted,
        }
        if system:
            payload["system"] = system
        return payload

    async def chat(self, messages, *, tools=None, temperature=0.2, json_mode=False):
        payload = self._payload(messages, temperature)
        if tools:
            payload["tools"] = [
                {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "input_schema": t["parameters"],
                }
                for t in tools
            ]

        response = await self._post("/v1/messages", payload)
        data = response.json()

        text = "".join(
            blk.get("text", "") for blk in data.get("content", []) if blk.get("type") == "text"
        )
        calls = [
            ToolCall(id=blk["id"], name=blk["name"], arguments=blk.get("input") or {})
            for blk in data.get("content", [])
            if blk.get("type") == "tool_use"
        ]
        usage = data.get("usage") or {}
        return ChatCompletion(
            text=text,
            tool_calls=calls,
            usage=Usage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
            ),
            finish_reason=data.get("stop_reason") or "",
        )

    async def stream_chat(self, messages, *, temperature=0.2):
        payload = self._payload(messages, temperature)
        payload["stream"] = True
        prompt_tokens = 0
        async with self._client.stream("POST", "/v1/messages", json=payload) as response:
            await _raise_for_status(response, self.provider)
            async for line in response.aiter_lines():
                data = _sse_data(line)
                if not data:
                    continue
                event = json.loads(data)
                kind = event.get("type")
                if kind == "message_start":
                    prompt_tokens = event["message"].get("usage", {}).get("input_tokens", 0)
                elif kind == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        yield StreamChunk(text=delta.get("text", ""))
                elif kind == "message_delta":
                    yield StreamChunk(
                        usage=Usage(
                            prompt_tokens=prompt_tokens,
                            completion_tokens=event.get("usage", {}).get("output_tokens", 0),
                        ),
                        finish_reason=(event.get("delta") or {}).get("stop_reason") or "stop",
                    )
                elif kind == "error":
                    err = event.get("error") or {}
                    raise ProviderAPIError(
                        err.get("message", "stream error"),
                        provider=self.provider,
                        error_code=err.get("type", ""),
                    )


# ------------------------------------------------------------------
# Construction from "provider:model" strings
# ------------------------------------------------------------------


def build_model(spec: str, settings: ProviderSettings) -> LanguageModel:
    """Build an adapter from a ``provider:model`` string.

    Raises:
        ValueError: If the provider is unknown or the spec is malformed.
    """
    provider, sep, name = spec.partition(":")
    if not sep or not name:
        raise ValueError(f"Model spec must look like 'provider:model', got {spec!r}")

    provider = provider.strip().lower()
    name = name.strip()
    if provider == "ollama":
        return OllamaModel(
            name,
            base_url=settings.ollama_base_url,
            timeout=settings.timeout_s,
            max_retries=settings.max_retries,
        )
    if provider == "openai":
        return OpenAIModel(
            name,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.timeout_s,
            max_retries=settings.max_retries,
        )
    if provider == "anthropic":
        return AnthropicModel(
            name,
            api_key=settings.anthropic_api_key,
            base_url=settings.anthropic_base_url,
            timeout=settings.timeout_s,
            max_retries=settings.max_retries,
        )
    raise ValueError(f"Unknown model provider: {provider!r}")


def build_model_options(
    primary: str,
    settings: ProviderSettings,
    *,
    backup: str | None = None,
    fallbacks: list[str] | None = None,
) -> ModelOptions:
    """Resolve configured model specs into ModelOptions."""
    model = build_model(primary, settings)
    targets = []
    for spec in fallbacks or []:
        fb = build_model(spec, settings)
        targets.append(ModelTarget(model=fb, name=fb.name, provider=fb.provider))
    return ModelOptions(
        model=model,
        model_name=model.name,
        provider=model.provider,
        backup_model=build_model(backup, settings) if backup else None,
        fallbacks=targets,
    )
