"""Tests for configuration models and the YAML configuration store."""

import pytest
import yaml
from pydantic import ValidationError

from toolchat.errors import ConfigurationError
from toolchat.models.config import AppConfig, BuiltinToolConfig, MCPServerConfig, ProviderConfig, TransportKind
from toolchat.services.config_store import default_config, get_config_path, load_config, save_config
from toolchat.tools.builtin import BUILTIN_TOOL_TYPES


class TestConfigModels:
    """Tests for configuration validation."""

    def test_provider_type_is_normalized(self):
        """Test that provider types are case-insensitive."""
        assert ProviderConfig(name="A", type="OpenAI", model="gpt-4o").type == "openai"

    def test_unknown_provider_type(self):
        """Test that an unknown provider type fails validation."""
        with pytest.raises(ValidationError, match="unsupported provider type"):
            ProviderConfig(name="A", type="mystery", model="m")

    def test_duplicate_provider_names(self):
        """Test that provider names must be unique."""
        with pytest.raises(ValidationError, match="duplicate provider names: A"):
            AppConfig(
                providers=[
                    ProviderConfig(name="A", type="openai", model="gpt-4o"),
                    ProviderConfig(name="A", type="ollama", model="llama3.2"),
                ]
            )

    def test_max_step_must_be_positive(self):
        """Test that the step limit is at least one."""
        with pytest.raises(ValidationError):
            AppConfig(react_agent_max_step=0)

    def test_get_provider(self):
        """Test provider lookup by name."""
        config = default_config()

        assert config.get_provider("Claude").type == "claude"
        with pytest.raises(ConfigurationError, match="provider not found: Nope"):
            config.get_provider("Nope")

    def test_builtin_settings_are_strings(self):
        """Test that numeric YAML values become strings."""
        tool = BuiltinToolConfig.model_validate(
            {"name": "httprequest", "type": "httprequest", "config": {"timeout": 30, "max_redirects": None}}
        )

        assert tool.config == {"timeout": "30", "max_redirects": ""}

    def test_transport_required_fields(self):
        """Test that each transport kind requires its own fields."""
        MCPServerConfig(name="ok", command="npx").validate_transport()
        MCPServerConfig(name="ok", type=TransportKind.SSE, url="http://localhost/sse").validate_transport()

        with pytest.raises(ConfigurationError, match="required field 'command' is missing for MCP server 'a'"):
            MCPServerConfig(name="a").validate_transport()
        with pytest.raises(ConfigurationError, match="required field 'url' is missing for MCP server 'b'"):
            MCPServerConfig(name="b", type=TransportKind.SSE).validate_transport()


class TestConfigStore:
    """Tests for loading and saving config.yaml."""

    def test_first_run_writes_defaults(self, tmp_path):
        """Test that a missing file is created with the default configuration."""
        path = tmp_path / "config.yaml"

        config = load_config(path)

        assert path.exists()
        assert config.current_provider == "OpenAI"
        assert not config.use_react_agent
        assert config.react_agent_max_step == 40
        assert {tool.type for tool in config.builtin_tools} == set(BUILTIN_TOOL_TYPES)
        assert not any(tool.enabled for tool in config.builtin_tools)
        assert [server.name for server in config.mcp_servers] == ["filesystem"]
        assert not config.mcp_servers[0].enabled

    def test_round_trip(self, tmp_path):
        """Test that a saved configuration loads back unchanged."""
        path = tmp_path / "config.yaml"
        config = default_config()
        config.use_react_agent = True
        config.mcp_servers.append(
            MCPServerConfig(name="search", type=TransportKind.STREAMABLE_HTTP, url="http://localhost:9000/mcp")
        )

        save_config(config, path)

        assert load_config(path) == config

    def test_missing_builtin_types_are_added(self, tmp_path):
        """Test that loading appends built-in types absent from the file."""
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "providers": [{"name": "Local", "type": "ollama", "model": "llama3.2"}],
                    "builtin_tools": [
                        {"name": "wikipedia", "type": "wikipedia", "enabled": True, "config": {"language": "de"}}
                    ],
                }
            ),
            encoding="utf-8",
        )

        config = load_config(path)

        assert len(config.builtin_tools) == len(BUILTIN_TOOL_TYPES)
        assert config.builtin_tools[0].enabled
        assert config.builtin_tools[0].config == {"language": "de"}
        assert config.current_provider == "Local"
        saved = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert len(saved["builtin_tools"]) == len(BUILTIN_TOOL_TYPES)

    def test_invalid_yaml(self, tmp_path):
        """Test that unparseable YAML is a configuration error."""
        path = tmp_path / "config.yaml"
        path.write_text("providers: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationError, match="invalid configuration file"):
            load_config(path)

    def test_unknown_provider_type_in_file(self, tmp_path):
        """Test that an unknown provider type in the file is a configuration error."""
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump({"providers": [{"name": "X", "type": "mystery", "model": "m"}]}), encoding="utf-8"
        )

        with pytest.raises(ConfigurationError, match="unsupported provider type"):
            load_config(path)

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        """Test that TOOLCHAT_CONFIG_DIR overrides the default location."""
        monkeypatch.setenv("TOOLCHAT_CONFIG_DIR", str(tmp_path))

        assert get_config_path() == tmp_path / "config.yaml"
