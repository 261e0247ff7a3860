"""Tests for the provider adapters (jenn/llm/providers.py)."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from jenn.llm.errors import ProviderAPIError, ProviderRetryError, classify_error, user_error_type
from jenn.llm.providers import (
    AnthropicModel,
    OllamaModel,
    OpenAIModel,
    ProviderSettings,
    build_model,
    build_model_options,
)
from jenn.schemas.llm import ChatMessage, ErrorType, RecoveryAction, ToolCall


def _response(status: int, payload: dict, url: str) -> httpx.Response:
    return httpx.Response(status, json=payload, request=httpx.Request("POST", url))


class TestOllamaModel:
    async def test_chat_parses_text_tool_calls_and_usage(self):
        model = OllamaModel("llama3.1:8b")
        response = _response(
            200,
            {
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"function": {"name": "order_list", "arguments": {"limit": 2}}}],
                },
                "prompt_eval_count": 12,
                "eval_count": 3,
                "done": True,
            },
            "http://localhost:11434/api/chat",
        )

        with patch.object(model._client, "post", new_callable=AsyncMock, return_value=response) as mock_post:
            completion = await model.chat(
                [ChatMessage(role="user", content="list orders")],
                tools=[{"name": "order_list", "description": "", "parameters": {}}],
                json_mode=True,
            )

        payload = mock_post.call_args.kwargs["json"]
        assert payload["model"] == "llama3.1:8b"
        assert payload["format"] == "json"
        assert payload["tools"][0]["function"]["name"] == "order_list"
        assert completion.tool_calls == [
            ToolCall(id="call_0", name="order_list", arguments={"limit": 2})
        ]
        assert completion.usage.total_tokens == 15
        assert completion.finish_reason == "tool_calls"
        await model.close()

    async def test_http_error_becomes_provider_error(self):
        model = OllamaModel("missing")
        response = _response(404, {"error": "model 'missing' not found"}, "http://localhost:11434/api/chat")

        with patch.object(model._client, "post", new_callable=AsyncMock, return_value=response):
            with pytest.raises(ProviderAPIError) as exc_info:
                await model.chat([ChatMessage(role="user", content="hi")])

        assert exc_info.value.status_code == 404
        assert exc_info.value.provider == "ollama"
        assert "not found" in exc_info.value.message
        await model.close()


class TestTransportRetries:
    async def test_connection_error_is_retried(self):
        model = OllamaModel("llama3.1:8b", max_retries=2)
        ok = _response(200, {"message": {"content": "hi"}, "done": True}, "http://localhost:11434/api/chat")

        with (
            patch.object(
                model._client,
                "post",
                new_callable=AsyncMock,
                side_effect=[httpx.ConnectError("refused"), ok],
            ) as mock_post,
            patch("jenn.llm.providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            completion = await model.chat([ChatMessage(role="user", content="hi")])

        assert completion.text == "hi"
        assert mock_post.await_count == 2
        mock_sleep.assert_awaited_once_with(1.0)
        await model.close()

    async def test_exhausted_retries_raise_provider_retry_error(self):
        model = OpenAIModel("gpt-4o-mini", api_key="k", max_retries=2)

        with (
            patch.object(
                model._client,
                "post",
                new_callable=AsyncMock,
                side_effect=httpx.ConnectTimeout("timed out"),
            ) as mock_post,
            patch("jenn.llm.providers.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            with pytest.raises(ProviderRetryError) as exc_info:
                await model.chat([ChatMessage(role="user", content="hi")])

        assert mock_post.await_count == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]
        assert exc_info.value.provider == "openai"
        assert classify_error(exc_info.value) is RecoveryAction.FATAL
        assert user_error_type(exc_info.value) is ErrorType.PROVIDER_RETRY_ERROR
        await model.close()

    async def test_status_errors_are_not_retried(self):
        model = OllamaModel("llama3.1:8b")
        response = _response(429, {"error": "rate limited"}, "http://localhost:11434/api/chat")

        with patch.object(model._client, "post", new_callable=AsyncMock, return_value=response) as mock_post:
            with pytest.raises(ProviderAPIError) as exc_info:
                await model.chat([ChatMessage(role="user", content="hi")])

        assert mock_post.await_count == 1
        assert not isinstance(exc_info.value, ProviderRetryError)
        await model.close()

    def test_build_model_passes_retry_setting(self):
        model = build_model("ollama:llama3", ProviderSettings(max_retries=5))
        assert model._max_retries == 5


class TestOpenAIModel:
    async def test_chat_sends_tool_history_and_parses_arguments(self):
        model = OpenAIModel("gpt-4o-mini", api_key="sk-test")
        response = _response(
            200,
            {
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {
                                    "id": "call_a",
                                    "type": "function",
                                    "function": {"name": "lookup", "arguments": '{"q": "x"}'},
                                }
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 20, "completion_tokens": 4},
            },
            "https://api.openai.com/v1/chat/completions",
        )
        history = [
            ChatMessage(role="user", content="find x"),
            ChatMessage(
                role="assistant",
                tool_calls=[ToolCall(id="call_0", name="lookup", arguments={"q": "y"})],
            ),
            ChatMessage(role="tool", content="[]", tool_call_id="call_0", name="lookup"),
        ]

        with patch.object(model._client, "post", new_callable=AsyncMock, return_value=response) as mock_post:
            completion = await model.chat(history)

        sent = mock_post.call_args.kwargs["json"]["messages"]
        assert sent[1]["tool_calls"][0]["function"]["arguments"] == '{"q": "y"}'
        assert sent[2] == {"role": "tool", "tool_call_id": "call_0", "content": "[]"}
        assert completion.text == ""
        assert completion.tool_calls[0].arguments == {"q": "x"}
        assert completion.usage.prompt_tokens == 20
        await model.close()

    async def test_rate_limit_error_code(self):
        model = OpenAIModel("gpt-4o-mini", api_key="sk-test")
        response = _response(
            429,
            {"error": {"message": "Rate limit reached", "type": "requests"}},
            "https://api.openai.com/v1/chat/completions",
        )

        with patch.object(model._client, "post", new_callable=AsyncMock, return_value=response):
            with pytest.raises(ProviderAPIError) as exc_info:
                await model.chat([ChatMessage(role="user", content="hi")])

        assert exc_info.value.status_code == 429
        assert exc_info.value.message == "Rate limit reached"
        await model.close()


class TestAnthropicModel:
    def test_split_merges_system_and_tool_results(self):
        system, messages = AnthropicModel._split(
            [
                ChatMessage(role="system", content="Be brief."),
                ChatMessage(role="user", content="hi"),
                ChatMessage(
                    role="assistant",
                    content="checking",
                    tool_calls=[
                        ToolCall(id="t1", name="a", arguments={}),
                        ToolCall(id="t2", name="b", arguments={}),
                    ],
                ),
                ChatMessage(role="tool", content="1", tool_call_id="t1"),
                ChatMessage(role="tool", content="2", tool_call_id="t2"),
            ]
        )

        assert system == "Be brief."
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert [b["type"] for b in messages[1]["content"]] == ["text", "tool_use", "tool_use"]
        assert [b["tool_use_id"] for b in messages[2]["content"]] == ["t1", "t2"]

    async def test_chat_parses_content_blocks(self):
        model = AnthropicModel("claude-3-5-haiku-latest", api_key="key")
        response = _response(
            200,
            {
                "content": [
                    {"type": "text", "text": "Let me look."},
                    {"type": "tool_use", "id": "tu_1", "name": "lookup", "input": {"q": "z"}},
                ],
                "usage": {"input_tokens": 30, "output_tokens": 8},
                "stop_reason": "tool_use",
            },
            "https://api.anthropic.com/v1/messages",
        )

        with patch.object(model._client, "post", new_callable=AsyncMock, return_value=response) as mock_post:
            completion = await model.chat(
                [ChatMessage(role="user", content="z?")],
                tools=[{"name": "lookup", "description": "d", "parameters": {"type": "object"}}],
            )

        assert mock_post.call_args.kwargs["json"]["tools"][0]["input_schema"] == {"type": "object"}
        assert completion.text == "Let me look."
        assert completion.tool_calls[0].id == "tu_1"
        assert completion.usage.total_tokens == 38
        await model.close()


class TestBuildModel:
    def test_builds_each_provider(self):
        settings = ProviderSettings(openai_api_key="sk", anthropic_api_key="ak")
        assert isinstance(build_model("ollama:llama3.1:8b", settings), OllamaModel)
        assert isinstance(build_model("openai:gpt-4o-mini", settings), OpenAIModel)
        assert isinstance(build_model("anthropic:claude-3-5-haiku-latest", settings), AnthropicModel)

    def test_model_name_keeps_colons(self):
        assert build_model("ollama:llama3.1:8b", ProviderSettings()).name == "llama3.1:8b"

    @pytest.mark.parametrize("spec", ["llama3", "ollama:", "bedrock:titan"])
    def test_rejects_bad_specs(self, spec):
        with pytest.raises(ValueError):
            build_model(spec, ProviderSettings())

    def test_build_model_options(self):
        options = build_model_options(
            "ollama:llama3.1:8b",
            ProviderSettings(openai_api_key="sk", anthropic_api_key="ak"),
            backup="openai:gpt-4o-mini",
            fallbacks=["anthropic:claude-3-5-haiku-latest"],
        )
        assert options.model_name == "llama3.1:8b"
        assert options.provider == "ollama"
        assert options.backup_model.name == "gpt-4o-mini"
        assert [(t.name, t.provider) for t in options.fallbacks] == [
            ("claude-3-5-haiku-latest", "anthropic")
        ]
