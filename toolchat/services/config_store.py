"""Loading and saving the YAML configuration file."""

import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from toolchat.errors import ConfigurationError
from toolchat.models.config import AppConfig, MCPServerConfig, ProviderConfig, TransportKind
from toolchat.tools.builtin import default_builtin_tools, ensure_all_builtin_tools
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

CONFIG_FILE = "config.yaml"


def get_config_dir() -> Path:
    """Directory holding the configuration file ($TOOLCHAT_CONFIG_DIR or ~/.config/toolchat)."""
    configured = os.getenv("TOOLCHAT_CONFIG_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".config" / "toolchat"


def get_config_path() -> Path:
    return get_config_dir() / CONFIG_FILE


def default_config() -> AppConfig:
    """Configuration written on first run."""
    return AppConfig(
        providers=[
            ProviderConfig(name="OpenAI", type="openai", base_url="https://api.openai.com/v1", model="gpt-4o"),
            ProviderConfig(name="Claude", type="claude", model="claude-3-5-sonnet-20241022"),
            ProviderConfig(name="Ollama", type="ollama", base_url="http://localhost:11434", model="llama3.2"),
            ProviderConfig(name="Qwen", type="qwen", model="qwen-max", enabled=False),
            ProviderConfig(name="DeepSeek", type="deepseek", model="deepseek-chat", enabled=False),
            ProviderConfig(name="Gemini", type="gemini", model="gemini-2.0-flash", enabled=False),
        ],
        mcp_servers=[
            MCPServerConfig(
                name="filesystem",
                type=TransportKind.STDIO,
                enabled=False,
                command="npx",
                args=["-y", "@modelcontextprotocol/server-filesystem", str(Path.home())],
            )
        ],
        builtin_tools=default_builtin_tools(),
        current_provider="OpenAI",
    )


def load_config(path: Path | None = None) -> AppConfig:
    """Load the configuration, creating the default file on first run.

    Built-in tool types missing from the file are added disabled.

    Raises:
        ConfigurationError: If the file is not valid YAML or fails validation
    """
    path = path or get_config_path()

    if not path.exists():
        logger.info(f"No configuration at {path}, writing defaults")
        config = default_config()
        save_config(config, path)
        return config

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        config = AppConfig.model_validate(raw)
    except (yaml.YAMLError, ValidationError) as e:
        raise ConfigurationError(f"invalid configuration file {path}: {e}") from e

    builtin_tools, added = ensure_all_builtin_tools(config.builtin_tools)
    if added:
        logger.info("Adding new built-in tool types to configuration")
        config.builtin_tools = builtin_tools
        save_config(config, path)

    if not config.current_provider and config.enabled_providers():
        config.current_provider = config.enabled_providers()[0].name

    logger.info(
        f"Loaded configuration with {len(config.providers)} providers and {len(config.mcp_servers)} MCP servers"
    )
    return config


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Write the configuration atomically."""
    path = path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(mode="json")
    tmp_path = path.with_suffix(".yaml.tmp")
    tmp_path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
    os.replace(tmp_path, path)
    logger.debug(f"Saved configuration to {path}")
