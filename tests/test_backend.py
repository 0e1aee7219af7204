"""Tests for model backends: conversion, retries and history truncation."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from toolchat.clients.chat_model import (
    BackendConfig,
    LangChainBackend,
    RateLimiterRegistry,
    content_to_text,
    create_backend,
    extract_tool_calls,
    to_langchain_messages,
)
from toolchat.errors import BackendError, ConfigurationError
from toolchat.models.config import ProviderConfig
from toolchat.models.llm import LLMMessage, ToolCallRequest
from toolchat.tools.base import ToolDefinition


class ToolCallingFakeModel(GenericFakeChatModel):
    """Fake chat model that accepts tool bindings."""

    def bind_tools(self, tools, **kwargs):
        return self


class StatusError(Exception):
    """Provider SDK error carrying an HTTP status."""

    def __init__(self, status_code: int, headers: dict | None = None):
        super().__init__(f"status {status_code}")
        self.status_code = status_code
        self.response = SimpleNamespace(status_code=status_code, headers=headers or {})


def provider(name: str = "Test", provider_type: str = "openai") -> ProviderConfig:
    return ProviderConfig(name=name, type=provider_type, model="test-model", api_key="sk-test")


async def noop_tool(arguments: str) -> str:
    return ""


def make_tool(name: str = "lookup") -> ToolDefinition:
    return ToolDefinition(name=name, description="Look something up", input_schema={}, handler=noop_tool)


class TestMessageConversion:
    """Tests for converting between provider-agnostic and LangChain messages."""

    def test_roles_map_to_langchain_types(self):
        """Test that every role becomes the matching LangChain message."""
        messages = [
            LLMMessage(role="system", content="Be brief"),
            LLMMessage(role="user", content="Hi"),
            LLMMessage(
                role="assistant",
                content="",
                tool_calls=[ToolCallRequest(id="c1", name="lookup", arguments='{"q": "x"}')],
            ),
            LLMMessage(role="tool", content="result", tool_call_id="c1", name="lookup"),
        ]

        converted = to_langchain_messages(messages)

        assert isinstance(converted[0], SystemMessage)
        assert isinstance(converted[1], HumanMessage)
        assert isinstance(converted[2], AIMessage)
        assert converted[2].tool_calls[0]["args"] == {"q": "x"}
        assert isinstance(converted[3], ToolMessage)
        assert converted[3].tool_call_id == "c1"

    def test_content_blocks_to_text(self):
        """Test that content block lists are reduced to their text."""
        content = [{"type": "text", "text": "Hello "}, {"type": "tool_use", "id": "x"}, "world"]

        assert content_to_text(content) == "Hello world"
        assert content_to_text("plain") == "plain"

    def test_extract_tool_calls_keeps_invalid_calls(self):
        """Test that calls with unparseable arguments still reach the tool."""
        message = AIMessage(
            content="",
            tool_calls=[{"id": "c1", "name": "lookup", "args": {"q": "x"}}],
            invalid_tool_calls=[{"id": "c2", "name": "lookup", "args": "{broken", "error": "bad json"}],
        )

        calls = extract_tool_calls(message)

        assert [call.id for call in calls] == ["c1", "c2"]
        assert calls[0].arguments == '{"q": "x"}'
        assert calls[1].arguments == "{broken"


class TestLangChainBackend:
    """Tests for LangChainBackend over fake chat models."""

    @pytest.mark.asyncio
    async def test_generate_returns_content_and_tool_calls(self):
        """Test that a completed response carries content and requested tools."""
        model = ToolCallingFakeModel(
            messages=iter(
                [AIMessage(content="Checking", tool_calls=[{"id": "c1", "name": "lookup", "args": {"q": "rain"}}])]
            )
        )
        backend = LangChainBackend(provider(), model).with_tools([make_tool()])

        response = await backend.generate([LLMMessage(role="user", content="Will it rain?")])

        assert response.content == "Checking"
        assert response.tool_calls == [ToolCallRequest(id="c1", name="lookup", arguments='{"q": "rain"}')]
        assert response.provider == "openai"

    @pytest.mark.asyncio
    async def test_stream_yields_fragments_then_done(self):
        """Test that streamed fragments concatenate to the reply and end with done."""
        model = GenericFakeChatModel(messages=iter([AIMessage(content="The answer is 42")]))
        backend = LangChainBackend(provider(), model)

        chunks = [chunk async for chunk in backend.stream([LLMMessage(role="user", content="?")])]

        assert chunks[-1].done
        assert all(not chunk.done for chunk in chunks[:-1])
        assert "".join(chunk.content for chunk in chunks) == "The answer is 42"
        assert len(chunks) > 2

    def test_supports_tools_follows_model(self):
        """Test that tool support is detected from the chat model."""
        plain = LangChainBackend(provider(), GenericFakeChatModel(messages=iter([])))
        capable = LangChainBackend(provider(), ToolCallingFakeModel(messages=iter([])))

        assert not plain.supports_tools()
        assert capable.supports_tools()

    def test_with_tools_on_unsupported_model(self):
        """Test that binding tools to a model without tool calling is rejected."""
        backend = LangChainBackend(provider(), GenericFakeChatModel(messages=iter([])))

        with pytest.raises(ConfigurationError, match="does not support tool calling"):
            backend.with_tools([make_tool()])

    def test_with_tools_returns_new_backend(self):
        """Test that binding tools leaves the original backend unchanged."""
        backend = LangChainBackend(provider(), ToolCallingFakeModel(messages=iter([])))

        bound = backend.with_tools([make_tool()])

        assert bound is not backend
        assert backend.tools == []
        assert [tool.name for tool in bound.tools] == ["lookup"]
        assert backend.with_tools([]) is backend


class TestRetries:
    """Tests for retry classification and the retry loop."""

    @pytest.fixture
    def backend(self):
        return LangChainBackend(provider(), GenericFakeChatModel(messages=iter([])), BackendConfig(retry_delay=1.0))

    def test_rate_limit_uses_retry_after(self, backend):
        """Test that 429 waits for the server-provided delay."""
        assert backend._retry_delay(StatusError(429, {"retry-after": "5"}), 0) == 5

    def test_long_retry_after_is_not_retried(self, backend):
        """Test that a very long retry-after gives up immediately."""
        assert backend._retry_delay(StatusError(429, {"retry-after": "300"}), 0) is None

    def test_server_errors_back_off_exponentially(self, backend):
        """Test that 5xx responses are retried with growing delays."""
        assert backend._retry_delay(StatusError(503), 0) == 1.0
        assert backend._retry_delay(StatusError(503), 2) == 4.0

    def test_client_errors_are_not_retried(self, backend):
        """Test that auth and bad-request failures are terminal."""
        assert backend._retry_delay(StatusError(401), 0) is None
        assert backend._retry_delay(ValueError("bad input"), 0) is None

    def test_transport_errors_are_retried(self, backend):
        """Test that errors without a status are treated as transient."""
        assert backend._retry_delay(OSError("connection reset"), 1) == 2.0

    @pytest.mark.asyncio
    async def test_request_succeeds_after_transient_failures(self, backend):
        """Test that the retry loop returns once a call succeeds."""
        call = AsyncMock(side_effect=[StatusError(503), StatusError(502), "ok"])

        with patch("toolchat.clients.chat_model.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await backend._request_with_retries(call)

        assert result == "ok"
        assert call.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_terminal_failure_raises_backend_error(self, backend):
        """Test that a non-retryable error becomes BackendError with its message."""
        call = AsyncMock(side_effect=StatusError(401))

        with pytest.raises(BackendError, match="status 401"):
            await backend._request_with_retries(call)

        assert call.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, backend):
        """Test that persistent transient failures end in BackendError."""
        call = AsyncMock(side_effect=StatusError(500))

        with patch("toolchat.clients.chat_model.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(BackendError):
                await backend._request_with_retries(call)

        assert call.await_count == backend.config.max_retries


class TestHistoryTruncation:
    """Tests for fitting the history into the context budget."""

    @pytest.fixture
    def tokenizer(self):
        tokenizer = Mock()
        with patch("toolchat.clients.chat_model.get_tokenizer", return_value=tokenizer):
            yield tokenizer

    def make_backend(self, max_tokens: int, headroom: int) -> LangChainBackend:
        config = BackendConfig(max_conversation_tokens=max_tokens, token_headroom=headroom)
        return LangChainBackend(provider(), GenericFakeChatModel(messages=iter([])), config)

    def test_history_within_limit_is_unchanged(self, tokenizer):
        """Test that short histories are not truncated."""
        tokenizer.encode.return_value = ["token"] * 100
        backend = self.make_backend(10_000, 1000)
        messages = [
            LLMMessage(role="user", content="Message 1"),
            LLMMessage(role="assistant", content="Response 1"),
            LLMMessage(role="user", content="Message 2"),
        ]

        assert backend.truncate_history(messages) == messages

    def test_oldest_messages_are_dropped(self, tokenizer):
        """Test that truncation keeps the system prompt and the newest messages."""

        def encode(text):
            if "System prompt" in text:
                return ["token"] * 500
            return ["token"] * 3000

        tokenizer.encode.side_effect = encode
        backend = self.make_backend(10_000, 1000)
        messages = [
            LLMMessage(role="system", content="System prompt"),
            LLMMessage(role="user", content="Message 1"),
            LLMMessage(role="assistant", content="Response 1"),
            LLMMessage(role="user", content="Message 2"),
            LLMMessage(role="assistant", content="Response 2"),
            LLMMessage(role="user", content="Message 3"),
        ]

        result = backend.truncate_history(messages)

        assert [m.content for m in result] == ["System prompt", "Response 2", "Message 3"]

    def test_orphaned_tool_results_are_dropped(self, tokenizer):
        """Test that a tool result never leads the kept history."""
        tokenizer.encode.return_value = ["token"] * 3000
        backend = self.make_backend(7500, 1000)
        messages = [
            LLMMessage(role="user", content="Question"),
            LLMMessage(role="assistant", tool_calls=[ToolCallRequest(id="c1", name="lookup")]),
            LLMMessage(role="tool", content="result", tool_call_id="c1"),
            LLMMessage(role="assistant", content="Answer"),
        ]

        result = backend.truncate_history(messages)

        assert [m.role for m in result] == ["assistant"]
        assert result[0].content == "Answer"

    def test_estimate_falls_back_without_tokenizer(self):
        """Test that token estimates work when no tokenizer is available."""
        backend = self.make_backend(10_000, 1000)

        with patch("toolchat.clients.chat_model.get_tokenizer", return_value=None):
            assert backend.estimate_message_tokens("a" * 400) == 100

    def test_empty_history(self, tokenizer):
        """Test truncation with an empty message list."""
        assert self.make_backend(10_000, 1000).truncate_history([]) == []


class TestCreateBackend:
    """Tests for building backends from provider configuration."""

    def test_openai_compatible_types(self):
        """Test that OpenAI-compatible providers build a backend."""
        for provider_type in ("openai", "custom", "qwen", "deepseek"):
            backend = create_backend(provider(provider_type=provider_type))
            assert isinstance(backend, LangChainBackend)
            assert backend.supports_tools()

    def test_anthropic_and_ollama(self):
        """Test that Anthropic and Ollama providers build a backend."""
        assert create_backend(provider(provider_type="claude")).provider.type == "claude"
        assert create_backend(provider(provider_type="ollama")).provider.type == "ollama"

    def test_unknown_type_is_configuration_error(self):
        """Test that an unknown provider type is rejected, not defaulted."""
        bogus = ProviderConfig.model_construct(name="Bogus", type="bogus", model="m", api_key="", base_url="")

        with pytest.raises(ConfigurationError, match="unsupported provider type"):
            create_backend(bogus)

    def test_backends_share_limiter_only_when_given_one(self):
        """Test that rate limits are shared through the registry, not between unrelated backends."""
        limiters = RateLimiterRegistry()
        shared = limiters.for_provider("Main")

        first = create_backend(provider(), rate_limiter=shared)
        second = create_backend(provider(), rate_limiter=limiters.for_provider("Main"))
        separate = create_backend(provider())

        assert first.rate_limiter is second.rate_limiter is shared
        assert separate.rate_limiter is not shared
        assert limiters.for_provider("Other") is not shared
        assert first.with_tools([make_tool()]).rate_limiter is shared
