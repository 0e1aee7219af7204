"""Tests for tool resolution."""

import json

import pytest
from conftest import FakeConnection, local_tool, server_config

from toolchat.errors import ToolError
from toolchat.models.config import BuiltinToolConfig
from toolchat.services.mcp_manager import ConnectionManager
from toolchat.tools.builtin import default_builtin_tools
from toolchat.tools.registry import ToolRegistry


def builtin(tool_type: str, enabled: bool = True, **config: str) -> BuiltinToolConfig:
    return BuiltinToolConfig(name=tool_type, type=tool_type, enabled=enabled, config=config)


class TestResolve:
    """Tests for ToolRegistry.resolve."""

    def test_empty_identifier_list(self):
        """Test that resolving nothing yields no tools and no warnings."""
        registry = ToolRegistry(default_builtin_tools(), ConnectionManager())

        assert registry.resolve([]) == ([], [])

    def test_builtin_tool_resolves(self):
        """Test that an enabled, fully configured built-in resolves."""
        registry = ToolRegistry([builtin("wikipedia", language="en")])

        tools, warnings = registry.resolve(["builtin:wikipedia"])

        assert warnings == []
        assert len(tools) == 1
        assert tools[0].name == "wikipedia"
        assert tools[0].origin == "builtin"
        assert tools[0].identifier == "builtin:wikipedia"
        assert "query" in tools[0].parameters
        assert tools[0].parameters["query"].required

    def test_missing_required_field_is_excluded_with_warning(self):
        """Test that a built-in missing a required field is skipped, naming the field."""
        registry = ToolRegistry([builtin("bingsearch", api_key=""), builtin("duckduckgosearch")])

        tools, warnings = registry.resolve(["builtin:bingsearch", "builtin:duckduckgosearch"])

        assert [tool.name for tool in tools] == ["duckduckgosearch"]
        assert len(warnings) == 1
        assert "builtin:bingsearch" in warnings[0]
        assert "required field 'api_key' is missing for tool 'bingsearch'" in warnings[0]

    def test_disabled_builtin_is_excluded(self):
        """Test that a disabled built-in is not activated."""
        registry = ToolRegistry([builtin("wikipedia", enabled=False)])

        tools, warnings = registry.resolve(["builtin:wikipedia"])

        assert tools == []
        assert "disabled" in warnings[0]

    def test_unrecognized_identifier(self):
        """Test that an identifier with no matching tool gives a warning."""
        registry = ToolRegistry()

        tools, warnings = registry.resolve(["nonsense"])

        assert tools == []
        assert warnings == ["nonsense: unrecognized tool identifier"]

    def test_duplicate_identifiers_resolve_once(self):
        """Test that repeated identifiers are de-duplicated silently."""
        registry = ToolRegistry([builtin("wikipedia")])

        tools, warnings = registry.resolve(["builtin:wikipedia", "builtin:wikipedia"])

        assert len(tools) == 1
        assert warnings == []

    def test_name_collision_keeps_first(self):
        """Test that a second tool with an already active name is left out."""
        registry = ToolRegistry([builtin("wikipedia")])
        registry.register_tool(local_tool("wikipedia"))

        tools, warnings = registry.resolve(["builtin:wikipedia", "wikipedia"])

        assert [tool.origin for tool in tools] == ["builtin"]
        assert "already active" in warnings[0]

    def test_registered_tool_resolves_by_name(self):
        """Test that programmatically registered tools resolve by bare name."""
        registry = ToolRegistry()
        registry.register_tool(local_tool("lookup"))

        tools, warnings = registry.resolve(["lookup"])

        assert registry.has_tool("lookup")
        assert [tool.name for tool in tools] == ["lookup"]
        assert warnings == []


class TestRemoteTools:
    """Tests for tools advertised by tool-provider connections."""

    @pytest.mark.asyncio
    async def test_remote_tool_resolves_and_calls_through(self, fake_connections):
        """Test that an initialized connection's tool resolves and dispatches remotely."""
        manager = ConnectionManager(connection_factory=FakeConnection)
        await manager.initialize(server_config("files"))
        registry = ToolRegistry(connections=manager)

        tools, warnings = registry.resolve(["mcp:files:read_file"])

        assert warnings == []
        tool = tools[0]
        assert tool.name == "read_file"
        assert tool.origin == "mcp"
        assert tool.display_name == "files:read_file"
        assert tool.parameters["path"].required

        result = await tool.invoke(json.dumps({"path": "/tmp/a.txt"}))

        assert result == "read_file result"
        assert fake_connections.instances[0].calls == [("read_file", {"path": "/tmp/a.txt"})]

    @pytest.mark.asyncio
    async def test_provider_prefix_alias(self, fake_connections):
        """Test that provider: is accepted as an alias of mcp:."""
        manager = ConnectionManager(connection_factory=FakeConnection)
        await manager.initialize(server_config("files"))

        tools, warnings = ToolRegistry(connections=manager).resolve(["provider:files:read_file"])

        assert [tool.name for tool in tools] == ["read_file"]
        assert warnings == []

    @pytest.mark.asyncio
    async def test_uninitialized_connection_is_excluded(self, fake_connections):
        """Test that tools of a failed connection are left out with a warning."""
        fake_connections.open_errors["files"] = RuntimeError("handshake failed")
        manager = ConnectionManager(connection_factory=FakeConnection)
        await manager.initialize(server_config("files"))
        registry = ToolRegistry([builtin("wikipedia")], manager)

        tools, warnings = registry.resolve(["mcp:files:read_file", "builtin:wikipedia"])

        assert [tool.name for tool in tools] == ["wikipedia"]
        assert warnings == ["mcp:files:read_file: MCP server 'files' is not initialized"]

    @pytest.mark.asyncio
    async def test_unknown_remote_tool(self, fake_connections):
        """Test that a tool the connection does not advertise is reported."""
        manager = ConnectionManager(connection_factory=FakeConnection)
        await manager.initialize(server_config("files"))

        tools, warnings = ToolRegistry(connections=manager).resolve(["mcp:files:write_file"])

        assert tools == []
        assert "does not provide tool 'write_file'" in warnings[0]

    def test_malformed_remote_identifier(self):
        """Test that an mcp identifier without a tool name is rejected."""
        tools, warnings = ToolRegistry(connections=ConnectionManager()).resolve(["mcp:files"])

        assert tools == []
        assert warnings == ["mcp:files: expected <connection>:<tool>"]

    @pytest.mark.asyncio
    async def test_invalid_arguments_raise_tool_error(self, fake_connections):
        """Test that a malformed argument payload fails the call, not the run."""
        manager = ConnectionManager(connection_factory=FakeConnection)
        await manager.initialize(server_config("files"))
        tools, _ = ToolRegistry(connections=manager).resolve(["mcp:files:read_file"])

        with pytest.raises(ToolError, match="invalid tool arguments"):
            await tools[0].invoke("{not json")


class TestListAvailable:
    """Tests for enumerating selectable tools."""

    @pytest.mark.asyncio
    async def test_lists_enabled_builtins_and_remote_tools(self, fake_connections):
        """Test that enabled built-ins and initialized connections' tools are listed."""
        manager = ConnectionManager(connection_factory=FakeConnection)
        await manager.initialize(server_config("files"))
        registry = ToolRegistry(
            [builtin("wikipedia"), builtin("bingsearch", api_key=""), builtin("httprequest", enabled=False)],
            manager,
        )

        options = {option.id: option for option in registry.list_available()}

        assert set(options) == {"builtin:wikipedia", "builtin:bingsearch", "mcp:files:read_file"}
        assert options["builtin:wikipedia"].available
        assert not options["builtin:bingsearch"].available
        assert options["mcp:files:read_file"].origin == "mcp"
