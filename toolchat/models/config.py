"""Configuration models for providers, tool providers and built-in tools."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from toolchat.errors import ConfigurationError

PROVIDER_TYPES = ("openai", "custom", "anthropic", "claude", "ollama", "qwen", "deepseek", "gemini")

DEFAULT_MAX_STEP = 40


class ProviderConfig(BaseModel):
    """One model backend the user can chat with."""

    name: str
    type: str
    api_key: str = ""
    base_url: str = ""
    model: str
    enabled: bool = True

    @field_validator("type")
    @classmethod
    def validate_type(cls, value: str) -> str:
        provider_type = value.strip().lower()
        if provider_type not in PROVIDER_TYPES:
            raise ValueError(f"unsupported provider type: {value}")
        return provider_type


class TransportKind(str, Enum):
    """How a tool provider is reached."""

    STDIO = "stdio"
    SSE = "sse"
    STREAMABLE_HTTP = "streamable_http"


class MCPServerConfig(BaseModel):
    """A named external tool-provider connection."""

    name: str
    type: TransportKind = TransportKind.STDIO
    enabled: bool = True

    # stdio
    command: str = ""
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    # sse / streamable_http
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: int = 0

    def validate_transport(self) -> None:
        """Check that the transport-specific fields are present.

        Raises:
            ConfigurationError: If a required field for the transport is empty
        """
        if self.type is TransportKind.STDIO and not self.command:
            raise ConfigurationError(f"required field 'command' is missing for MCP server '{self.name}'")
        if self.type in (TransportKind.SSE, TransportKind.STREAMABLE_HTTP) and not self.url:
            raise ConfigurationError(f"required field 'url' is missing for MCP server '{self.name}'")


class BuiltinToolConfig(BaseModel):
    """User settings for one built-in tool type."""

    name: str
    type: str
    enabled: bool = False
    config: dict[str, str] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def stringify_values(cls, value):
        # YAML turns `timeout: 30` into an int
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value


class AppConfig(BaseModel):
    """Top-level application configuration."""

    providers: list[ProviderConfig] = Field(default_factory=list)
    mcp_servers: list[MCPServerConfig] = Field(default_factory=list)
    builtin_tools: list[BuiltinToolConfig] = Field(default_factory=list)
    current_provider: str = ""
    use_react_agent: bool = False
    react_agent_max_step: int = DEFAULT_MAX_STEP

    @model_validator(mode="after")
    def validate_unique_names(self) -> "AppConfig":
        names = [provider.name for provider in self.providers]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"duplicate provider names: {', '.join(sorted(duplicates))}")
        if self.react_agent_max_step < 1:
            raise ValueError("react_agent_max_step must be at least 1")
        return self

    def get_provider(self, name: str) -> ProviderConfig:
        """Return the provider with the given name.

        Raises:
            ConfigurationError: If no provider has that name
        """
        for provider in self.providers:
            if provider.name == name:
                return provider
        raise ConfigurationError(f"provider not found: {name}")

    def enabled_providers(self) -> list[ProviderConfig]:
        return [provider for provider in self.providers if provider.enabled]

    def get_mcp_server(self, name: str) -> MCPServerConfig:
        for server in self.mcp_servers:
            if server.name == name:
                return server
        raise ConfigurationError(f"MCP server not found: {name}")
