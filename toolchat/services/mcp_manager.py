"""Lifecycle and status bookkeeping for MCP tool-provider connections."""

import asyncio
import threading
from collections.abc import Callable
from contextlib import AsyncExitStack, suppress
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

from toolchat.errors import ConfigurationError, ToolError, ToolProviderConnectionError
from toolchat.models.config import MCPServerConfig, TransportKind
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT = 5.0


class ConnectionState(str, Enum):
    """Lifecycle state of one tool-provider connection."""

    DISCONNECTED = "disconnected"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    ERROR = "error"


@dataclass
class RemoteTool:
    """A tool advertised by a tool provider."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionStatus:
    """Per-connection status.

    ``tools`` is non-empty and ``connection`` is set only while the state is
    ``initialized``. Snapshots handed out by the manager never carry the
    connection handle.
    """

    name: str
    transport: TransportKind
    state: ConnectionState = ConnectionState.DISCONNECTED
    error: str | None = None
    tools: list[RemoteTool] = field(default_factory=list)
    connection: "MCPConnection | None" = field(default=None, repr=False, compare=False)

    def snapshot(self) -> "ConnectionStatus":
        return replace(self, tools=list(self.tools), connection=None)


def _content_to_text(content: Any) -> str:
    text = getattr(content, "text", None)
    if text is not None:
        return text
    return f"[{getattr(content, 'type', 'unknown')} content]"


class MCPConnection:
    """One client session with a tool provider.

    The transport and session contexts are entered and exited inside a
    dedicated task, which stays parked until the connection is closed.
    """

    def __init__(self, config: MCPServerConfig):
        self.config = config
        self.failure: Exception | None = None
        self._session: ClientSession | None = None
        self._task: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._closing: asyncio.Event | None = None

    def _transport(self):
        config = self.config
        if config.type is TransportKind.STDIO:
            params = StdioServerParameters(command=config.command, args=list(config.args), env=config.env or None)
            return stdio_client(params)

        kwargs: dict[str, Any] = {"headers": config.headers or None}
        if config.timeout_seconds:
            kwargs["timeout"] = config.timeout_seconds
        if config.type is TransportKind.SSE:
            return sse_client(config.url, **kwargs)
        return streamablehttp_client(config.url, **kwargs)

    @property
    def alive(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    async def open(self) -> list[RemoteTool]:
        """Start the transport, perform the handshake and list the tools.

        On failure every resource opened so far has been released before the
        error is raised.

        Raises:
            ToolProviderConnectionError: Naming the step that failed
        """
        self._ready = asyncio.get_running_loop().create_future()
        self._closing = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"mcp:{self.config.name}")

        timeout = self.config.timeout_seconds or None
        try:
            return await asyncio.wait_for(asyncio.shield(self._ready), timeout=timeout)
        except TimeoutError as e:
            await self.close(force=True)
            raise ToolProviderConnectionError(f"timed out after {timeout}s while connecting") from e
        except asyncio.CancelledError:
            await self.close(force=True)
            raise
        except ToolProviderConnectionError:
            # _run has already left its contexts; wait for the task to finish
            await self._task
            raise

    async def _run(self) -> None:
        stage = "start transport"
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._transport())
                session = await stack.enter_async_context(ClientSession(streams[0], streams[1]))

                stage = "initialize MCP connection"
                await session.initialize()

                stage = "get tools"
                listing = await session.list_tools()
                tools = [
                    RemoteTool(name=tool.name, description=tool.description or "", input_schema=tool.inputSchema or {})
                    for tool in listing.tools
                ]

                self._session = session
                self._ready.set_result(tools)
                await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(ToolProviderConnectionError(f"failed to {stage}: {e}"))
            else:
                self.failure = e
                logger.warning(f"MCP server {self.config.name} connection lost: {e}")
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.cancel()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Call a remote tool and return its text content.

        Raises:
            ToolError: If the provider reports the call as failed
            ToolProviderConnectionError: If the session is gone
        """
        session = self._session
        if session is None:
            reason = f": {self.failure}" if self.failure else ""
            raise ToolProviderConnectionError(f"MCP server {self.config.name} is not connected{reason}")

        try:
            result = await session.call_tool(name, arguments)
        except McpError as e:
            raise ToolError(str(e)) from e

        text = "\n".join(_content_to_text(content) for content in result.content)
        if result.isError:
            raise ToolError(text or f"tool {name} failed")
        return text

    async def close(self, force: bool = False) -> None:
        """Leave the session and transport contexts, stopping any local process."""
        task = self._task
        if task is None or task.done():
            return
        if self._closing is not None:
            self._closing.set()
        if not force:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=CLOSE_TIMEOUT)
                return
            except TimeoutError:
                logger.warning(f"MCP server {self.config.name} did not close in {CLOSE_TIMEOUT}s, cancelling")
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


ConnectionFactory = Callable[[MCPServerConfig], MCPConnection]


class ConnectionManager:
    """Owns every tool-provider connection and its status.

    The status table is guarded by a lock that is only held while reading or
    replacing entries. Transitions for one connection are serialized by a
    per-name asyncio lock, and the slow handshake runs without holding the
    table lock, so status reads never wait on a connection attempt.
    """

    def __init__(self, connection_factory: ConnectionFactory = MCPConnection):
        self._connection_factory = connection_factory
        self._statuses: dict[str, ConnectionStatus] = {}
        self._lock = threading.Lock()
        self._transitions: dict[str, asyncio.Lock] = {}

    def _transition_lock(self, name: str) -> asyncio.Lock:
        with self._lock:
            return self._transitions.setdefault(name, asyncio.Lock())

    def _store(self, status: ConnectionStatus) -> None:
        with self._lock:
            self._statuses[status.name] = status

    def get_status(self, name: str) -> ConnectionStatus | None:
        with self._lock:
            status = self._statuses.get(name)
            return status.snapshot() if status else None

    def get_all_status(self) -> dict[str, ConnectionStatus]:
        with self._lock:
            return {name: status.snapshot() for name, status in self._statuses.items()}

    def get_server_tools(self, name: str) -> list[RemoteTool]:
        """Tools of an initialized connection; empty for any other state."""
        with self._lock:
            status = self._statuses.get(name)
            if status is None or status.state is not ConnectionState.INITIALIZED:
                return []
            return list(status.tools)

    def get_all_tools(self) -> dict[str, list[RemoteTool]]:
        with self._lock:
            return {
                name: list(status.tools)
                for name, status in self._statuses.items()
                if status.state is ConnectionState.INITIALIZED
            }

    def is_initialized(self, name: str) -> bool:
        with self._lock:
            status = self._statuses.get(name)
            return status is not None and status.state is ConnectionState.INITIALIZED

    async def initialize(self, config: MCPServerConfig) -> ConnectionStatus:
        """Connect to a tool provider unless it is already initialized.

        Connection failures are recorded on the returned status.

        Raises:
            ConfigurationError: If the descriptor lacks a field its transport needs
        """
        async with self._transition_lock(config.name):
            current = self.get_status(config.name)
            if current is not None and current.state is ConnectionState.INITIALIZED:
                logger.debug(f"MCP server {config.name} already initialized")
                return current

            try:
                config.validate_transport()
            except ConfigurationError as e:
                self._store(ConnectionStatus(config.name, config.type, ConnectionState.ERROR, error=str(e)))
                raise

            self._store(ConnectionStatus(config.name, config.type, ConnectionState.INITIALIZING))
            logger.info(f"Initializing MCP server {config.name} ({config.type.value})")

            connection = self._connection_factory(config)
            try:
                tools = await connection.open()
            except asyncio.CancelledError:
                self._store(
                    ConnectionStatus(config.name, config.type, ConnectionState.ERROR, error="initialization cancelled")
                )
                raise
            except Exception as e:
                logger.warning(f"MCP server {config.name} failed to initialize: {e}")
                status = ConnectionStatus(config.name, config.type, ConnectionState.ERROR, error=str(e))
                self._store(status)
                return status.snapshot()

            status = ConnectionStatus(
                config.name, config.type, ConnectionState.INITIALIZED, tools=tools, connection=connection
            )
            self._store(status)
            logger.info(f"MCP server {config.name} initialized with {len(tools)} tools")
            return status.snapshot()

    async def initialize_all(self, configs: list[MCPServerConfig]) -> dict[str, ConnectionStatus]:
        """Initialize every enabled tool provider concurrently."""
        enabled = [config for config in configs if config.enabled]
        if not enabled:
            return self.get_all_status()

        results = await asyncio.gather(*(self.initialize(config) for config in enabled), return_exceptions=True)

        succeeded = 0
        for config, result in zip(enabled, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"MCP server {config.name} was not initialized: {result}")
            elif result.state is ConnectionState.INITIALIZED:
                succeeded += 1

        logger.info(f"MCP initialization finished: {succeeded}/{len(enabled)} servers connected")
        return self.get_all_status()

    async def disconnect(self, name: str) -> None:
        """Close a connection and clear its tools.

        Raises:
            ToolProviderConnectionError: If no connection has that name
        """
        async with self._transition_lock(name):
            with self._lock:
                status = self._statuses.get(name)
                if status is None:
                    raise ToolProviderConnectionError(f"MCP server not found: {name}")
                connection = status.connection
                self._statuses[name] = ConnectionStatus(name, status.transport, ConnectionState.DISCONNECTED)

            if connection is not None:
                await connection.close()
            logger.info(f"MCP server {name} disconnected")

    async def reinitialize(self, config: MCPServerConfig) -> ConnectionStatus:
        """Drop any existing connection for ``config.name`` and connect again."""
        if self.get_status(config.name) is not None:
            await self.disconnect(config.name)
        return await self.initialize(config)

    async def disconnect_all(self) -> None:
        """Close every connection, logging failures instead of raising them."""
        with self._lock:
            names = list(self._statuses)

        results = await asyncio.gather(*(self.disconnect(name) for name in names), return_exceptions=True)
        for name, result in zip(names, results, strict=True):
            if isinstance(result, Exception):
                logger.warning(f"Failed to disconnect MCP server {name}: {result}")

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> str:
        """Invoke a tool on an initialized connection.

        A transport failure moves the connection to ``error``.

        Raises:
            ToolError: For any failure, with the cause text
        """
        with self._lock:
            status = self._statuses.get(server)
            connection = status.connection if status and status.state is ConnectionState.INITIALIZED else None
        if connection is None:
            raise ToolError(f"MCP server {server} is not initialized")

        logger.debug(f"Calling tool {tool} on MCP server {server}")
        try:
            return await connection.call_tool(tool, arguments)
        except ToolError:
            raise
        except Exception as e:
            logger.warning(f"MCP server {server} failed during tool call: {e}")
            await self._mark_failed(server, connection, str(e))
            raise ToolError(str(e)) from e

    async def _mark_failed(self, name: str, connection: MCPConnection, error: str) -> None:
        async with self._transition_lock(name):
            with self._lock:
                status = self._statuses.get(name)
                if status is None or status.connection is not connection:
                    return
                self._statuses[name] = ConnectionStatus(name, status.transport, ConnectionState.ERROR, error=error)

            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Failed to close MCP server {name} after error: {e}")
