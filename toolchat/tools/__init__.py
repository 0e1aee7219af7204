"""Tools the model can call during an agent run."""

from toolchat.tools.base import ToolDefinition, ToolParameter
from toolchat.tools.registry import ToolRegistry

__all__ = ["ToolDefinition", "ToolParameter", "ToolRegistry"]
