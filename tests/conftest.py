"""Shared test doubles: a scripted model backend and fake tool-provider connections."""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

import pytest

from toolchat.clients.chat_model import ModelBackend
from toolchat.errors import ConfigurationError, ToolProviderConnectionError
from toolchat.models.config import MCPServerConfig, ProviderConfig
from toolchat.models.llm import LLMMessage, LLMResponse, StreamChunk, ToolCallRequest
from toolchat.services.mcp_manager import RemoteTool
from toolchat.tools.base import ToolDefinition


@dataclass
class StreamFailure:
    """Scripted step that delivers ``partial`` and then raises ``error``."""

    error: Exception
    partial: str = ""


def tool_call(name: str, arguments: str = "{}", call_id: str | None = None) -> ToolCallRequest:
    return ToolCallRequest(id=call_id or f"call_{name}", name=name, arguments=arguments)


def reply(content: str = "", *calls: ToolCallRequest) -> LLMResponse:
    return LLMResponse(content=content, tool_calls=list(calls))


class ScriptedBackend(ModelBackend):
    """Model backend that plays back scripted responses and counts model calls.

    When the script runs out the last step repeats, so a backend scripted with
    a single tool-call response keeps requesting tools forever.
    """

    def __init__(self, *script: LLMResponse | StreamFailure, tools_supported: bool = True, name: str = "Fake"):
        self.provider = ProviderConfig(name=name, type="custom", model="fake-model")
        self.script = list(script)
        self.tools_supported = tools_supported
        self.calls = 0
        self.histories: list[list[LLMMessage]] = []
        self.bound_tools: list[ToolDefinition] = []

    def _next(self, history: list[LLMMessage]) -> LLMResponse | StreamFailure:
        self.histories.append(list(history))
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        return step

    async def generate(self, history: list[LLMMessage]) -> LLMResponse:
        step = self._next(history)
        if isinstance(step, StreamFailure):
            raise step.error
        return step

    async def stream(self, history: list[LLMMessage]) -> AsyncIterator[StreamChunk]:
        step = self._next(history)
        if isinstance(step, StreamFailure):
            if step.partial:
                yield StreamChunk(content=step.partial)
            raise step.error

        # Split on spaces so a reply arrives as several fragments
        for index, word in enumerate(step.content.split(" ")):
            yield StreamChunk(content=word if index == 0 else f" {word}")
        yield StreamChunk(done=True, tool_calls=list(step.tool_calls))

    def supports_tools(self) -> bool:
        return self.tools_supported

    def with_tools(self, tools: list[ToolDefinition]) -> "ScriptedBackend":
        if tools and not self.tools_supported:
            raise ConfigurationError(f"provider '{self.provider.name}' does not support tool calling")
        self.bound_tools = list(tools)
        return self


class HangingBackend(ScriptedBackend):
    """Streams one fragment and then waits until cancelled."""

    def __init__(self, first: str = "Hello"):
        super().__init__(reply(first))
        self.first = first
        self.started = asyncio.Event()

    async def stream(self, history: list[LLMMessage]) -> AsyncIterator[StreamChunk]:
        self._next(history)
        yield StreamChunk(content=self.first)
        self.started.set()
        await asyncio.Event().wait()
        yield StreamChunk(done=True)


def local_tool(name: str, result: str = "ok", error: Exception | None = None) -> ToolDefinition:
    """A programmatically registered tool that records its calls."""
    calls: list[str] = []

    async def handler(arguments: str) -> str:
        calls.append(arguments)
        if error is not None:
            raise error
        return result

    tool = ToolDefinition(
        name=name,
        description=f"{name} test tool",
        input_schema={"type": "object", "properties": {"query": {"type": "string"}}},
        handler=handler,
    )
    tool.metadata["calls"] = calls
    return tool


class FakeConnection:
    """Stands in for MCPConnection; behaviour is set per server name on the class."""

    tools: dict[str, list[RemoteTool]] = {}
    open_errors: dict[str, Exception] = {}
    call_errors: dict[str, Exception] = {}
    instances: list["FakeConnection"] = []

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.opened = False
        self.closed = False
        self.calls: list[tuple[str, dict]] = []
        FakeConnection.instances.append(self)

    async def open(self) -> list[RemoteTool]:
        error = self.open_errors.get(self.config.name)
        if error is not None:
            self.closed = True
            raise error
        self.opened = True
        return list(self.tools.get(self.config.name, []))

    async def call_tool(self, name: str, arguments: dict) -> str:
        self.calls.append((name, arguments))
        error = self.call_errors.get(self.config.name)
        if error is not None:
            raise error
        return f"{name} result"

    async def close(self, force: bool = False) -> None:
        self.closed = True


@pytest.fixture
def fake_connections():
    """Reset FakeConnection's per-server behaviour around each test."""
    FakeConnection.tools = {
        "files": [
            RemoteTool(
                name="read_file",
                description="Read a file",
                input_schema={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
            )
        ]
    }
    FakeConnection.open_errors = {}
    FakeConnection.call_errors = {}
    FakeConnection.instances = []
    yield FakeConnection


def server_config(name: str = "files", **kwargs) -> MCPServerConfig:
    kwargs.setdefault("command", "fake-server")
    return MCPServerConfig(name=name, **kwargs)


def connection_refused(name: str) -> ToolProviderConnectionError:
    return ToolProviderConnectionError(f"failed to start transport: {name} refused connection")
