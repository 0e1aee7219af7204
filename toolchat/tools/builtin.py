"""Catalog of built-in tool types, their settings and validation."""

from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel

from toolchat.errors import ConfigurationError
from toolchat.models.config import BuiltinToolConfig
from toolchat.tools.base import ToolDefinition, ToolHandler
from toolchat.tools.local import (
    CommandInput,
    ThoughtInput,
    create_command_line_handler,
    create_sequential_thinking_handler,
)
from toolchat.tools.web import (
    BrowseInput,
    HTTPRequestInput,
    SearchInput,
    WikipediaInput,
    create_bing_search_handler,
    create_browse_handler,
    create_duckduckgo_search_handler,
    create_google_search_handler,
    create_http_request_handler,
    create_wikipedia_handler,
)


@dataclass(frozen=True)
class BuiltinToolType:
    """Static description of one built-in tool type."""

    type: str
    description: str
    config_fields: tuple[str, ...]
    required_fields: tuple[str, ...]
    input_class: type[BaseModel]
    create_handler: Callable[[dict[str, str]], ToolHandler]


BUILTIN_TOOL_TYPES: dict[str, BuiltinToolType] = {
    spec.type: spec
    for spec in (
        BuiltinToolType(
            type="bingsearch",
            description="Search the web using the Bing Search API. Returns titles, URLs and snippets.",
            config_fields=("api_key",),
            required_fields=("api_key",),
            input_class=SearchInput,
            create_handler=create_bing_search_handler,
        ),
        BuiltinToolType(
            type="googlesearch",
            description="Search the web using Google Custom Search. Returns titles, URLs and snippets.",
            config_fields=("api_key", "search_engine_id"),
            required_fields=("api_key", "search_engine_id"),
            input_class=SearchInput,
            create_handler=create_google_search_handler,
        ),
        BuiltinToolType(
            type="wikipedia",
            description="Search Wikipedia articles for encyclopedic information about a topic.",
            config_fields=("language",),
            required_fields=(),
            input_class=WikipediaInput,
            create_handler=create_wikipedia_handler,
        ),
        BuiltinToolType(
            type="duckduckgosearch",
            description="Search the web using DuckDuckGo instant answers. No API key required.",
            config_fields=(),
            required_fields=(),
            input_class=SearchInput,
            create_handler=create_duckduckgo_search_handler,
        ),
        BuiltinToolType(
            type="httprequest",
            description="Make an HTTP request to a URL and return the status and response body.",
            config_fields=("timeout", "max_redirects"),
            required_fields=(),
            input_class=HTTPRequestInput,
            create_handler=create_http_request_handler,
        ),
        BuiltinToolType(
            type="browseruse",
            description="Open a web page and return its readable text content.",
            config_fields=("headless", "timeout"),
            required_fields=(),
            input_class=BrowseInput,
            create_handler=create_browse_handler,
        ),
        BuiltinToolType(
            type="commandline",
            description="Execute an allow-listed command on the local machine and return its output.",
            config_fields=("allowed_commands",),
            required_fields=("allowed_commands",),
            input_class=CommandInput,
            create_handler=create_command_line_handler,
        ),
        BuiltinToolType(
            type="sequentialthinking",
            description=(
                "Think through a problem one numbered step at a time. "
                "Call once per thought until next_thought_needed is false."
            ),
            config_fields=("max_iterations",),
            required_fields=(),
            input_class=ThoughtInput,
            create_handler=create_sequential_thinking_handler,
        ),
    )
}


def get_builtin_tool_type(tool_type: str) -> BuiltinToolType:
    """Look up a built-in tool type.

    Raises:
        ConfigurationError: If the type is not in the catalog
    """
    try:
        return BUILTIN_TOOL_TYPES[tool_type]
    except KeyError:
        raise ConfigurationError(f"unknown built-in tool type: {tool_type}") from None


def get_available_builtin_tools() -> list[str]:
    return list(BUILTIN_TOOL_TYPES)


def validate_builtin_tool_config(tool: BuiltinToolConfig) -> None:
    """Check that every required setting of a built-in tool has a value.

    Raises:
        ConfigurationError: Naming the first missing field
    """
    spec = get_builtin_tool_type(tool.type)
    for field_name in spec.required_fields:
        if not tool.config.get(field_name, "").strip():
            raise ConfigurationError(f"required field '{field_name}' is missing for tool '{tool.type}'")


def create_builtin_tool_definition(tool: BuiltinToolConfig) -> ToolDefinition:
    """Validate a built-in tool's settings and build its definition."""
    validate_builtin_tool_config(tool)
    spec = get_builtin_tool_type(tool.type)
    return ToolDefinition(
        name=tool.name,
        description=spec.description,
        input_schema=spec.input_class.model_json_schema(),
        handler=spec.create_handler(dict(tool.config)),
        origin="builtin",
        identifier=f"builtin:{tool.name}",
    )


def default_builtin_tools() -> list[BuiltinToolConfig]:
    """One disabled entry per built-in type, with empty settings."""
    return [
        BuiltinToolConfig(
            name=spec.type,
            type=spec.type,
            enabled=False,
            config={field_name: "" for field_name in spec.config_fields},
        )
        for spec in BUILTIN_TOOL_TYPES.values()
    ]


def ensure_all_builtin_tools(tools: list[BuiltinToolConfig]) -> tuple[list[BuiltinToolConfig], bool]:
    """Append a disabled entry for every catalog type missing from ``tools``.

    Returns:
        The completed list and whether anything was added
    """
    present = {tool.type for tool in tools}
    missing = [tool for tool in default_builtin_tools() if tool.type not in present]
    return [*tools, *missing], bool(missing)
