"""Base types and definitions for tools."""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ValidationError

from toolchat.errors import ToolError

T = TypeVar("T", bound=BaseModel)

ToolHandler = Callable[[str], Awaitable[str]]


@dataclass
class ToolParameter:
    """One named argument of a tool."""

    type: str = "string"
    description: str = ""
    required: bool = False


@dataclass
class ToolDefinition:
    """Definition of a tool available to the model.

    ``handler`` receives the serialized argument payload exactly as the model
    produced it and returns the result text.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    origin: Literal["builtin", "mcp", "local"] = "local"
    source: str | None = None
    identifier: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.identifier:
            self.identifier = self.name

    @property
    def parameters(self) -> dict[str, ToolParameter]:
        """Parameter name to type, description and required flag."""
        return parameters_from_schema(self.input_schema)

    @property
    def display_name(self) -> str:
        """Name shown to the user, namespaced by the owning connection."""
        if self.source:
            return f"{self.source}:{self.name}"
        return self.name

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        schema = dict(self.input_schema) if self.input_schema else {}
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return schema

    def to_openai_tool(self) -> dict[str, Any]:
        """Function-calling schema understood by every LangChain chat model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.get_json_schema(),
            },
        }

    async def invoke(self, arguments: str) -> str:
        """Run the handler, reporting any failure as a ToolError with the cause text."""
        try:
            return await self.handler(arguments)
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(str(e)) from e


def parameters_from_schema(schema: dict[str, Any]) -> dict[str, ToolParameter]:
    """Flatten a JSON object schema into a parameter mapping."""
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    parameters = {}
    for name, prop in properties.items():
        prop_type = prop.get("type", "string")
        if isinstance(prop_type, list):
            prop_type = next((t for t in prop_type if t != "null"), "string")
        elif "anyOf" in prop:
            prop_type = next((p.get("type") for p in prop["anyOf"] if p.get("type") not in (None, "null")), "string")
        parameters[name] = ToolParameter(
            type=prop_type,
            description=prop.get("description", ""),
            required=name in required,
        )
    return parameters


def parse_arguments(arguments: str) -> dict[str, Any]:
    """Decode a serialized argument payload into a keyword mapping.

    Raises:
        ToolError: If the payload is not a JSON object
    """
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ToolError(f"invalid tool arguments: {e}") from e
    if not isinstance(parsed, dict):
        raise ToolError("invalid tool arguments: expected a JSON object")
    return parsed


def parse_input(input_class: type[T], arguments: str) -> T:
    """Parse and validate tool input against a pydantic model."""
    try:
        return input_class.model_validate(parse_arguments(arguments))
    except ValidationError as e:
        raise ToolError(f"invalid tool arguments: {e}") from e
