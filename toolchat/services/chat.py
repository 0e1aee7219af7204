"""Chat service connecting conversations, providers, tools and the agent loop."""

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from toolchat.clients.chat_model import ModelBackend, RateLimiterRegistry, create_backend
from toolchat.errors import ConfigurationError, ReplyInProgressError
from toolchat.graphs.agent import DEFAULT_SYSTEM_PROMPT, AgentLoop
from toolchat.models.config import AppConfig, ProviderConfig
from toolchat.models.llm import AgentRunConfig
from toolchat.models.messages import Conversation, Message
from toolchat.services.config_store import save_config
from toolchat.services.conversation_store import ConversationStore
from toolchat.services.mcp_manager import ConnectionManager, ConnectionStatus
from toolchat.tools.registry import ToolOption, ToolRegistry
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

BackendFactory = Callable[[ProviderConfig], ModelBackend]


@dataclass
class StreamEvent:
    """One item delivered to the presentation layer while a reply is produced."""

    type: Literal["chunk", "warning", "done", "error"]
    text: str = ""
    message: Message | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.text:
            data["text"] = self.text
        if self.message is not None:
            data["message"] = self.message.model_dump(mode="json")
        if self.status is not None:
            data["status"] = self.status
        return data


class ChatService:
    """Runs user turns and owns the shared chat state.

    A reply is produced by a worker task; its events reach the consumer
    through a queue, so the consumer never waits on the model or tools
    directly. Only one reply per conversation runs at a time.
    """

    def __init__(
        self,
        config: AppConfig,
        store: ConversationStore,
        connections: ConnectionManager | None = None,
        backend_factory: BackendFactory | None = None,
        config_path: Path | None = None,
    ):
        self.config = config
        self.store = store
        self.connections = connections or ConnectionManager()
        self.registry = ToolRegistry(config.builtin_tools, self.connections)
        self.rate_limiters = RateLimiterRegistry()
        self._backend_factory = backend_factory or self._create_backend
        self._config_path = config_path
        self._active_runs: dict[str, asyncio.Event] = {}
        self._workers: set[asyncio.Task] = set()

    def _create_backend(self, provider: ProviderConfig) -> ModelBackend:
        return create_backend(provider, rate_limiter=self.rate_limiters.for_provider(provider.name))

    def current_provider(self) -> ProviderConfig | None:
        if not self.config.current_provider:
            return None
        try:
            return self.config.get_provider(self.config.current_provider)
        except ConfigurationError:
            return None

    def switch_provider(self, name: str) -> ProviderConfig:
        """Select the provider used for new conversations."""
        provider = self.config.get_provider(name)
        if not provider.enabled:
            raise ConfigurationError(f"provider '{name}' is disabled")
        self.config.current_provider = name
        if self._config_path is not None:
            save_config(self.config, self._config_path)
        logger.info(f"Switched provider to {name} ({provider.type}, {provider.model})")
        return provider

    def start_conversation(self, title: str | None = None, provider_name: str | None = None) -> Conversation:
        provider = self._enabled_provider(provider_name or self.config.current_provider)
        return self.store.create(title, provider.name, provider.model)

    def _enabled_provider(self, name: str) -> ProviderConfig:
        if not name:
            raise ConfigurationError("no provider selected")
        provider = self.config.get_provider(name)
        if not provider.enabled:
            raise ConfigurationError(f"provider '{name}' is disabled")
        return provider

    def list_tools(self) -> list[ToolOption]:
        return self.registry.list_available()

    def _run_config(self, tool_ids: list[str] | None) -> tuple[AgentRunConfig, list[str]]:
        warnings = []
        ids = list(tool_ids or [])
        if ids and not self.config.use_react_agent:
            warnings.append("tool calling is disabled in the configuration; replying without tools")
            ids = []
        run_config = AgentRunConfig(
            max_step=self.config.react_agent_max_step,
            system_prompt=DEFAULT_SYSTEM_PROMPT if ids else None,
            tool_ids=ids,
        )
        return run_config, warnings

    def is_replying(self, conversation_id: str) -> bool:
        return conversation_id in self._active_runs

    async def send_message(
        self, conversation_id: str, text: str, tool_ids: list[str] | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Append the user's message and start producing the reply.

        Returns:
            Events in order: content chunks, warnings, then ``done`` (carrying the
            persisted assistant message) or ``error``

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            ConfigurationError: If its provider is unknown, disabled or cannot be built
            ReplyInProgressError: If a reply for the conversation is already running
        """
        if self.is_replying(conversation_id):
            raise ReplyInProgressError(f"a reply is already in progress for conversation {conversation_id}")

        conversation = self.store.load(conversation_id)
        provider = self._enabled_provider(conversation.provider or self.config.current_provider)
        backend = self._backend_factory(provider)
        run_config, warnings = self._run_config(tool_ids)

        conversation.append(Message(role="user", content=text))
        self.store.save(conversation)
        logger.info(f"Processing message for conversation {conversation_id} with {provider.name}: {text[:50]}...")

        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        cancel_event = asyncio.Event()
        self._active_runs[conversation_id] = cancel_event
        for warning in warnings:
            queue.put_nowait(StreamEvent(type="warning", text=warning))

        task = asyncio.create_task(self._reply(conversation, backend, run_config, queue, cancel_event))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)

        return self._drain(queue, task, cancel_event)

    async def _reply(
        self,
        conversation: Conversation,
        backend: ModelBackend,
        run_config: AgentRunConfig,
        queue: asyncio.Queue,
        cancel_event: asyncio.Event,
    ) -> None:
        try:
            loop = AgentLoop(backend, self.registry)
            result = await loop.run(
                list(conversation.messages),
                run_config,
                on_chunk=lambda text: queue.put_nowait(StreamEvent(type="chunk", text=text)),
                cancel_event=cancel_event,
            )
            for warning in result.warnings:
                queue.put_nowait(StreamEvent(type="warning", text=warning))

            message = result.to_message()
            conversation.append(message)
            self.store.save(conversation)
            logger.info(f"Reply for conversation {conversation.id} finished: {result.status.value}")
            queue.put_nowait(StreamEvent(type="done", message=message, status=result.status.value))
        except Exception as e:
            logger.error(f"Reply for conversation {conversation.id} failed: {e}", exc_info=True)
            queue.put_nowait(StreamEvent(type="error", text=str(e)))
        finally:
            self._active_runs.pop(conversation.id, None)
            queue.put_nowait(None)

    async def _drain(
        self, queue: asyncio.Queue, task: asyncio.Task, cancel_event: asyncio.Event
    ) -> AsyncIterator[StreamEvent]:
        try:
            while (event := await queue.get()) is not None:
                yield event
        finally:
            # Consumer went away: stop the run and let it persist the partial reply
            if not task.done():
                cancel_event.set()
                await task

    def cancel(self, conversation_id: str) -> bool:
        """Stop a running reply; the partial content is kept."""
        cancel_event = self._active_runs.get(conversation_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    async def start_servers(self) -> dict[str, ConnectionStatus]:
        return await self.connections.initialize_all(self.config.mcp_servers)

    async def reinitialize_server(self, name: str) -> ConnectionStatus:
        return await self.connections.reinitialize(self.config.get_mcp_server(name))

    async def disconnect_server(self, name: str) -> None:
        await self.connections.disconnect(name)

    def server_status(self) -> list[ConnectionStatus]:
        statuses = self.connections.get_all_status()
        for server in self.config.mcp_servers:
            if server.name not in statuses:
                statuses[server.name] = ConnectionStatus(server.name, server.type)
        return list(statuses.values())

    async def shutdown(self) -> None:
        for cancel_event in self._active_runs.values():
            cancel_event.set()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        await self.connections.disconnect_all()
