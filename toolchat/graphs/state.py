"""State definitions for the agent graph."""

import operator
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Annotated, Literal

from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, Field

from toolchat.clients.chat_model import ModelBackend
from toolchat.models.llm import (
    AgentRunConfig,
    AgentRunResult,
    LLMMessage,
    LLMUsage,
    RunStatus,
    ToolCallRequest,
)
from toolchat.models.messages import ToolCallRecord
from toolchat.tools.base import ToolDefinition

ChunkConsumer = Callable[[str], None]

DIRECT_ANSWER_SEPARATOR = "\n\n"


class AgentState(BaseModel):
    """Graph state carried between the agent and tools nodes."""

    messages: Annotated[list[LLMMessage], operator.add] = Field(default_factory=list)

    # Completed tool dispatch cycles
    steps: int = 0
    pending_tool_calls: list[ToolCallRequest] = Field(default_factory=list)

    next_step: Literal["agent", "tools", "end"] | None = None
    truncated: bool = False
    return_direct: bool = False


@dataclass
class RunContext:
    """Everything one run needs besides the graph state.

    Content and tool-call records accumulate here rather than in the graph
    state so that a failed or cancelled run still reports what it produced.
    """

    backend: ModelBackend
    config: AgentRunConfig
    tools: dict[str, ToolDefinition] = field(default_factory=dict)
    on_chunk: ChunkConsumer | None = None
    warnings: list[str] = field(default_factory=list)

    content_parts: list[str] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    usage: LLMUsage = field(default_factory=LLMUsage)
    steps: int = 0
    model_calls: int = 0
    truncated: bool = False

    @property
    def streaming(self) -> bool:
        return self.on_chunk is not None

    def emit(self, text: str) -> None:
        """Record a content fragment and hand it to the consumer."""
        if not text:
            return
        self.content_parts.append(text)
        if self.on_chunk is not None:
            self.on_chunk(text)

    def answer_directly(self, text: str) -> None:
        """Make a return-direct tool result the whole reply.

        Text the model streamed before calling the tool was already delivered;
        the result follows it as a separate fragment after a blank line.
        """
        if self.on_chunk is not None and text:
            if self.content_parts:
                self.on_chunk(DIRECT_ANSWER_SEPARATOR)
            self.on_chunk(text)
        self.content_parts = [text]

    def result(self, status: RunStatus, error: str | None = None) -> AgentRunResult:
        if status is RunStatus.CANCELLED:
            for record in self.tool_calls:
                if record.pending:
                    record.error = "cancelled"
        return AgentRunResult(
            content="".join(self.content_parts),
            status=status,
            tool_calls=list(self.tool_calls),
            steps=self.steps,
            model_calls=self.model_calls,
            max_step=self.config.max_step,
            error=error,
            warnings=list(self.warnings),
            usage=self.usage,
        )


def get_run_context(config: RunnableConfig) -> RunContext:
    return config["configurable"]["run"]
