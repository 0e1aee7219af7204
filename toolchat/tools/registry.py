"""Tool registry resolving tool identifiers into callable definitions."""

from dataclasses import dataclass
from typing import Any

from toolchat.errors import ConfigurationError
from toolchat.models.config import BuiltinToolConfig
from toolchat.services.mcp_manager import ConnectionManager, RemoteTool
from toolchat.tools.base import ToolDefinition, ToolHandler, parse_arguments
from toolchat.tools.builtin import BUILTIN_TOOL_TYPES, create_builtin_tool_definition
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

BUILTIN_PREFIX = "builtin"
PROVIDER_PREFIXES = ("mcp", "provider")


@dataclass
class ToolOption:
    """A tool the user can pick for the next run."""

    id: str
    name: str
    description: str
    origin: str
    available: bool = True


class ToolRegistry:
    """Resolves built-in, tool-provider and programmatically registered tools."""

    def __init__(
        self,
        builtin_tools: list[BuiltinToolConfig] | None = None,
        connections: ConnectionManager | None = None,
    ):
        self.builtin_tools = list(builtin_tools or [])
        self.connections = connections
        self._tools: dict[str, ToolDefinition] = {}

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a local tool, addressable by its bare name."""
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def update_builtin_tools(self, builtin_tools: list[BuiltinToolConfig]) -> None:
        self.builtin_tools = list(builtin_tools)

    def _builtin_config(self, name: str) -> BuiltinToolConfig | None:
        return next((tool for tool in self.builtin_tools if tool.name == name), None)

    def list_available(self) -> list[ToolOption]:
        """Enumerate selectable tools.

        Tool-provider tools are only listed for initialized connections.
        Built-ins that fail validation are listed as unavailable.
        """
        options = []
        for tool in self.builtin_tools:
            if not tool.enabled:
                continue
            spec = BUILTIN_TOOL_TYPES.get(tool.type)
            available = spec is not None and all(tool.config.get(f, "").strip() for f in spec.required_fields)
            options.append(
                ToolOption(
                    id=f"{BUILTIN_PREFIX}:{tool.name}",
                    name=tool.name,
                    description=spec.description if spec else "",
                    origin="builtin",
                    available=available,
                )
            )

        if self.connections is not None:
            for server, tools in sorted(self.connections.get_all_tools().items()):
                for remote in tools:
                    options.append(
                        ToolOption(
                            id=f"mcp:{server}:{remote.name}",
                            name=f"{server}:{remote.name}",
                            description=remote.description,
                            origin="mcp",
                        )
                    )

        for tool in self._tools.values():
            options.append(ToolOption(id=tool.name, name=tool.name, description=tool.description, origin=tool.origin))

        return options

    def resolve(self, identifiers: list[str]) -> tuple[list[ToolDefinition], list[str]]:
        """Build the tool set for one run.

        Resolution is best-effort: anything that cannot be resolved adds a
        warning and is left out.

        Returns:
            The resolved definitions in request order, and the warnings
        """
        tools: list[ToolDefinition] = []
        warnings: list[str] = []
        names: set[str] = set()
        seen: set[str] = set()

        for identifier in identifiers:
            if identifier in seen:
                continue
            seen.add(identifier)

            try:
                tool = self._resolve_one(identifier)
            except ConfigurationError as e:
                warnings.append(f"{identifier}: {e}")
                continue

            if tool.name in names:
                warnings.append(f"{identifier}: a tool named '{tool.name}' is already active")
                continue

            names.add(tool.name)
            tools.append(tool)

        for warning in warnings:
            logger.warning(f"Tool not activated: {warning}")
        logger.debug(f"Resolved {len(tools)} of {len(identifiers)} requested tools")
        return tools, warnings

    def _resolve_one(self, identifier: str) -> ToolDefinition:
        prefix, _, rest = identifier.partition(":")

        if prefix == BUILTIN_PREFIX and rest:
            config = self._builtin_config(rest)
            if config is None:
                raise ConfigurationError(f"unknown built-in tool '{rest}'")
            if not config.enabled:
                raise ConfigurationError(f"built-in tool '{rest}' is disabled")
            return create_builtin_tool_definition(config)

        if prefix in PROVIDER_PREFIXES and rest:
            server, _, tool_name = rest.partition(":")
            if not server or not tool_name:
                raise ConfigurationError("expected <connection>:<tool>")
            return self._resolve_remote(server, tool_name, identifier)

        if identifier in self._tools:
            return self._tools[identifier]

        raise ConfigurationError("unrecognized tool identifier")

    def _resolve_remote(self, server: str, tool_name: str, identifier: str) -> ToolDefinition:
        if self.connections is None or not self.connections.is_initialized(server):
            raise ConfigurationError(f"MCP server '{server}' is not initialized")

        remote = next((t for t in self.connections.get_server_tools(server) if t.name == tool_name), None)
        if remote is None:
            raise ConfigurationError(f"MCP server '{server}' does not provide tool '{tool_name}'")

        return ToolDefinition(
            name=remote.name,
            description=remote.description,
            input_schema=remote.input_schema,
            handler=self._remote_handler(server, remote),
            origin="mcp",
            source=server,
            identifier=identifier,
        )

    def _remote_handler(self, server: str, remote: RemoteTool) -> ToolHandler:
        connections = self.connections

        async def call_remote(arguments: str) -> str:
            params: dict[str, Any] = parse_arguments(arguments)
            return await connections.call_tool(server, remote.name, params)

        return call_remote
