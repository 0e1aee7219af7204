"""Built-in tools that run on the local machine."""

import asyncio
import json
import os
import shlex

from pydantic import BaseModel, Field

from toolchat.errors import ConfigurationError, ToolError
from toolchat.tools.base import ToolHandler, parse_input
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

COMMAND_TIMEOUT = 30.0
MAX_OUTPUT_CHARS = 8000
DEFAULT_MAX_THOUGHTS = 10


class CommandInput(BaseModel):
    """Input for the command line tool."""

    command: str = Field(description="Command line to execute, e.g. 'ls -la'")


class ThoughtInput(BaseModel):
    """Input for the sequential thinking tool."""

    thought: str = Field(description="The current thinking step")
    thought_number: int = Field(ge=1, description="Index of this thought, starting at 1")
    total_thoughts: int = Field(ge=1, description="Estimated number of thoughts needed")
    next_thought_needed: bool = Field(default=True, description="Whether another thought step follows")


def parse_allowed_commands(value: str) -> set[str]:
    return {command.strip() for command in value.split(",") if command.strip()}


def create_command_line_handler(settings: dict[str, str]) -> ToolHandler:
    """Run allow-listed executables without a shell."""
    allowed = parse_allowed_commands(settings.get("allowed_commands", ""))

    async def command_line(arguments: str) -> str:
        request = parse_input(CommandInput, arguments)
        try:
            argv = shlex.split(request.command)
        except ValueError as e:
            raise ToolError(f"cannot parse command: {e}") from e
        if not argv:
            raise ToolError("empty command")

        executable = os.path.basename(argv[0])
        if executable not in allowed:
            raise ToolError(f"command '{executable}' is not allowed; allowed commands: {', '.join(sorted(allowed))}")

        logger.info(f"Running command: {request.command}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ToolError(f"failed to start '{executable}': {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=COMMAND_TIMEOUT)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise ToolError(f"command timed out after {COMMAND_TIMEOUT:.0f}s") from e
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

        output = stdout.decode(errors="replace")
        errors = stderr.decode(errors="replace")
        result = f"exit code: {process.returncode}\n{output}"
        if errors:
            result += f"\nstderr:\n{errors}"
        return result[:MAX_OUTPUT_CHARS]

    return command_line


def create_sequential_thinking_handler(settings: dict[str, str]) -> ToolHandler:
    """Record numbered thoughts so the model can reason step by step."""
    try:
        max_iterations = int(settings.get("max_iterations") or DEFAULT_MAX_THOUGHTS)
    except ValueError as e:
        raise ConfigurationError(f"invalid max_iterations setting: {settings.get('max_iterations')}") from e

    history: list[ThoughtInput] = []

    async def sequential_thinking(arguments: str) -> str:
        thought = parse_input(ThoughtInput, arguments)
        if thought.thought_number > max_iterations:
            raise ToolError(f"thought {thought.thought_number} exceeds the limit of {max_iterations} thoughts")

        history.append(thought)
        return json.dumps(
            {
                "thought_number": thought.thought_number,
                "total_thoughts": max(thought.total_thoughts, thought.thought_number),
                "next_thought_needed": thought.next_thought_needed,
                "thought_history_length": len(history),
                "remaining": max_iterations - thought.thought_number,
            }
        )

    return sequential_thinking
