"""Model backends: a uniform surface over LangChain chat models with rate limiting and retries."""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from functools import cache
from typing import Any, TypeVar

import tiktoken
from cuid2 import cuid_wrapper
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from toolchat.errors import BackendError, ConfigurationError
from toolchat.models.config import PROVIDER_TYPES, ProviderConfig
from toolchat.models.llm import LLMMessage, LLMResponse, LLMUsage, StreamChunk, ToolCallRequest
from toolchat.tools.base import ToolDefinition
from toolchat.utils.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)

cuid = cuid_wrapper()

OPENAI_COMPATIBLE_BASE_URLS = {
    "openai": None,
    "custom": None,
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "deepseek": "https://api.deepseek.com/v1",
}


@dataclass
class BackendConfig:
    """Configuration for model backends."""

    temperature: float = 0.7
    max_tokens: int = 4096
    request_timeout: float = 120.0
    max_retries: int = 3
    retry_delay: float = 1.0

    requests_per_minute: int = 50
    tokens_per_minute: int = 200_000

    # Token limits for truncation
    max_conversation_tokens: int = 128_000
    token_headroom: int = 4000  # Reserve tokens for response


class RateLimiter:
    """Moving-window request and token limits per provider."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 200_000):
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str) -> None:
        """Wait until the request fits within the rate limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=max(1, estimated_tokens)):
            await self._wait(self.token_limit, token_identifier, "Token")

    async def _wait(self, limit, identifier: str, kind: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{kind} rate limit exceeded for {identifier}, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class RateLimiterRegistry:
    """One rate limiter per provider name, shared by every backend built for that provider."""

    def __init__(self, config: BackendConfig | None = None):
        self.config = config or BackendConfig()
        self._limiters: dict[str, RateLimiter] = {}

    def for_provider(self, name: str) -> RateLimiter:
        if name not in self._limiters:
            self._limiters[name] = RateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)
        return self._limiters[name]


@cache
def get_tokenizer() -> tiktoken.Encoding | None:
    try:
        # Close approximation for every provider
        return tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        logger.warning(f"Tokenizer unavailable, estimating by characters: {e}")
        return None


def content_to_text(content: Any) -> str:
    """Extract the text of a LangChain message content (string or content blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text", ""))
        return "".join(parts)
    return ""


def _parse_args(arguments: str) -> dict[str, Any]:
    try:
        parsed = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def to_langchain_messages(messages: list[LLMMessage]) -> list[BaseMessage]:
    """Convert provider-agnostic messages into LangChain messages."""
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        elif message.role == "user":
            converted.append(HumanMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {"id": call.id, "name": call.name, "args": _parse_args(call.arguments), "type": "tool_call"}
                        for call in message.tool_calls
                    ],
                )
            )
        else:
            converted.append(
                ToolMessage(content=message.content, tool_call_id=message.tool_call_id or "", name=message.name)
            )
    return converted


def extract_tool_calls(message: AIMessage) -> list[ToolCallRequest]:
    """Tool calls requested by a complete (or fully aggregated) model message."""
    calls = [
        ToolCallRequest(
            id=call.get("id") or f"call_{cuid()}",
            name=call["name"],
            arguments=json.dumps(call.get("args") or {}),
        )
        for call in message.tool_calls
    ]
    # Calls whose arguments did not parse still reach the tool, which reports the error
    for call in getattr(message, "invalid_tool_calls", None) or []:
        if call.get("name"):
            calls.append(
                ToolCallRequest(
                    id=call.get("id") or f"call_{cuid()}",
                    name=call["name"],
                    arguments=call.get("args") or "",
                )
            )
    return calls


def extract_usage(message: AIMessage) -> LLMUsage | None:
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return None
    return LLMUsage(
        input_tokens=usage.get("input_tokens", 0),
        output_tokens=usage.get("output_tokens", 0),
        total_tokens=usage.get("total_tokens", 0),
    )


class ModelBackend(ABC):
    """Uniform interface to a chat-completion model."""

    provider: ProviderConfig

    @abstractmethod
    async def generate(self, history: list[LLMMessage]) -> LLMResponse:
        """Return one completed assistant response.

        Raises:
            BackendError: With the provider's failure message
        """

    @abstractmethod
    def stream(self, history: list[LLMMessage]) -> AsyncIterator[StreamChunk]:
        """Yield content fragments, then one final chunk with ``done`` set.

        The iterator owns transport resources until it is exhausted or closed.

        Raises:
            BackendError: With the provider's failure message
        """

    @abstractmethod
    def supports_tools(self) -> bool:
        """Whether the model can be given tools to call."""

    @abstractmethod
    def with_tools(self, tools: list[ToolDefinition]) -> "ModelBackend":
        """Return a backend that offers ``tools`` to the model.

        Raises:
            ConfigurationError: If the backend cannot call tools
        """


class LangChainBackend(ModelBackend):
    """Model backend over any LangChain chat model."""

    def __init__(
        self,
        provider: ProviderConfig,
        chat_model: BaseChatModel,
        config: BackendConfig | None = None,
        tools: list[ToolDefinition] | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self.provider = provider
        self.chat_model = chat_model
        self.config = config or BackendConfig()
        self.rate_limiter = rate_limiter or RateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)
        self.tools = list(tools or [])
        self._runnable = chat_model.bind_tools([t.to_openai_tool() for t in self.tools]) if self.tools else chat_model

    def supports_tools(self) -> bool:
        return type(self.chat_model).bind_tools is not BaseChatModel.bind_tools

    def with_tools(self, tools: list[ToolDefinition]) -> "LangChainBackend":
        if not tools:
            return self
        if not self.supports_tools():
            raise ConfigurationError(f"provider '{self.provider.name}' does not support tool calling")
        return LangChainBackend(self.provider, self.chat_model, self.config, tools, self.rate_limiter)

    async def generate(self, history: list[LLMMessage]) -> LLMResponse:
        messages = await self._prepare(history)

        logger.debug(f"Generating with {self.provider.name} ({len(messages)} messages, {len(self.tools)} tools)")
        response = await self._request_with_retries(lambda: self._runnable.ainvoke(messages))

        return LLMResponse(
            content=content_to_text(response.content),
            tool_calls=extract_tool_calls(response),
            stop_reason=(response.response_metadata or {}).get("stop_reason")
            or (response.response_metadata or {}).get("finish_reason"),
            usage=extract_usage(response),
            model=self.provider.model,
            provider=self.provider.type,
        )

    async def stream(self, history: list[LLMMessage]) -> AsyncIterator[StreamChunk]:
        messages = await self._prepare(history)
        logger.debug(f"Streaming from {self.provider.name} ({len(messages)} messages, {len(self.tools)} tools)")

        for attempt in range(self.config.max_retries):
            delivered = False
            aggregate = None
            try:
                async with aclosing(self._runnable.astream(messages)) as chunks:
                    async for chunk in chunks:
                        aggregate = chunk if aggregate is None else aggregate + chunk
                        text = content_to_text(chunk.content)
                        if text:
                            delivered = True
                            yield StreamChunk(content=text)
            except Exception as e:
                # Fragments already handed out cannot be taken back
                delay = None if delivered else self._retry_delay(e, attempt)
                if delay is None or attempt >= self.config.max_retries - 1:
                    raise BackendError(str(e)) from e
                logger.warning(f"{self.provider.name} stream failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            if aggregate is None:
                yield StreamChunk(done=True)
            else:
                yield StreamChunk(done=True, tool_calls=extract_tool_calls(aggregate), usage=extract_usage(aggregate))
            return

        raise BackendError(f"Failed to complete request after {self.config.max_retries} attempts")

    async def _prepare(self, history: list[LLMMessage]) -> list[BaseMessage]:
        truncated = self.truncate_history(history)
        await self.rate_limiter.check_rate_limit(self._estimate_tokens(truncated), self.provider.name)
        return to_langchain_messages(truncated)

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute a model request with retry logic."""
        for attempt in range(self.config.max_retries):
            try:
                return await call()
            except Exception as e:
                delay = self._retry_delay(e, attempt)
                if delay is None or attempt >= self.config.max_retries - 1:
                    raise BackendError(str(e)) from e
                logger.warning(f"{self.provider.name} request failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        raise BackendError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _retry_delay(self, error: Exception, attempt: int) -> float | None:
        """Seconds to wait before retrying ``error``, or None if it is not retryable."""
        status_code = getattr(error, "status_code", None)
        if status_code is None:
            status_code = getattr(getattr(error, "response", None), "status_code", None)

        if status_code == 429:  # Rate limit exceeded
            retry_after = 60
            headers = getattr(getattr(error, "response", None), "headers", None)
            if headers:
                try:
                    retry_after = int(headers.get("retry-after", 60))
                except ValueError:
                    pass
            return retry_after if retry_after < 120 else None

        backoff = self.config.retry_delay * (2**attempt)
        if isinstance(status_code, int):
            # Server errors are transient, client errors (auth, bad request) are not
            return backoff if status_code >= 500 else None
        if isinstance(error, (ValueError, TypeError, KeyError)):
            return None
        return backoff

    def _estimate_tokens(self, messages: list[LLMMessage]) -> int:
        text_content = "".join(message.content for message in messages)
        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message."""
        tokenizer = get_tokenizer()
        try:
            return len(tokenizer.encode(message)) if tokenizer else len(message) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(message) // 4

    def truncate_history(self, messages: list[LLMMessage]) -> list[LLMMessage]:
        """Drop the oldest messages until the history fits the context budget.

        System messages are always kept. Tool results are never kept without
        the assistant message that requested them.
        """
        if not messages:
            return messages

        system_messages = [m for m in messages if m.role == "system"]
        others = [m for m in messages if m.role != "system"]

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom
        available_tokens -= sum(self.estimate_message_tokens(m.content) for m in system_messages)
        if self.tools:
            tool_content = "".join(t.name + t.description + json.dumps(t.get_json_schema()) for t in self.tools)
            available_tokens -= self.estimate_message_tokens(tool_content)

        kept: list[LLMMessage] = []
        current_tokens = 0
        for message in reversed(others):
            message_tokens = self.estimate_message_tokens(message.content)
            if kept and current_tokens + message_tokens > available_tokens:
                break
            kept.insert(0, message)
            current_tokens += message_tokens

        while len(kept) > 1 and kept[0].role == "tool":
            kept.pop(0)

        if len(kept) < len(others):
            logger.warning(
                f"Truncated conversation from {len(others)} to {len(kept)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return [*system_messages, *kept]


def create_chat_model(provider: ProviderConfig, config: BackendConfig) -> BaseChatModel:
    """Build the LangChain chat model for a provider type."""
    provider_type = provider.type
    # Without an explicit key each SDK falls back to its own environment variable
    credentials: dict[str, Any] = {"api_key": provider.api_key} if provider.api_key else {}

    if provider_type in OPENAI_COMPATIBLE_BASE_URLS:
        return ChatOpenAI(
            model=provider.model,
            base_url=provider.base_url or OPENAI_COMPATIBLE_BASE_URLS[provider_type],
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.request_timeout,
            max_retries=0,
            stream_usage=True,
            **credentials,
        )
    if provider_type in ("anthropic", "claude"):
        kwargs: dict[str, Any] = dict(credentials)
        if provider.base_url:
            kwargs["base_url"] = provider.base_url
        return ChatAnthropic(
            model=provider.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.request_timeout,
            max_retries=0,
            **kwargs,
        )
    if provider_type == "ollama":
        return ChatOllama(
            model=provider.model,
            base_url=provider.base_url or None,
            temperature=config.temperature,
        )
    if provider_type == "gemini":
        return ChatGoogleGenerativeAI(
            model=provider.model,
            temperature=config.temperature,
            max_output_tokens=config.max_tokens,
            max_retries=0,
            **credentials,
        )

    raise ConfigurationError(f"unsupported provider type: {provider_type}")


def create_backend(
    provider: ProviderConfig,
    config: BackendConfig | None = None,
    rate_limiter: RateLimiter | None = None,
) -> ModelBackend:
    """Create the backend for a configured provider.

    Pass the provider's limiter from a RateLimiterRegistry to share its
    limits across backends; otherwise the backend gets limits of its own.

    Raises:
        ConfigurationError: For an unknown provider type or settings the SDK rejects
    """
    if provider.type not in PROVIDER_TYPES:
        raise ConfigurationError(f"unsupported provider type: {provider.type}")

    config = config or BackendConfig()
    try:
        chat_model = create_chat_model(provider, config)
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"cannot create backend for provider '{provider.name}': {e}") from e

    logger.info(f"Created {provider.type} backend for provider {provider.name} (model {provider.model})")
    return LangChainBackend(provider, chat_model, config, rate_limiter=rate_limiter)
