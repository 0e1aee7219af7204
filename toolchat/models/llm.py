"""LLM-related data models and types (provider-agnostic)."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from toolchat.models.messages import Message, ToolCallRecord


class ToolCallRequest(BaseModel):
    """A tool call the model asked for."""

    id: str
    name: str
    arguments: str = "{}"


class LLMMessage(BaseModel):
    """A message for LLM conversation."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None


@dataclass
class LLMUsage:
    """Token/resource usage information from LLM provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "LLMUsage | None") -> None:
        if other is None:
            return
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.total_tokens += other.total_tokens


@dataclass
class LLMResponse:
    """Provider-agnostic completed response from a model backend."""

    content: str
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    stop_reason: str | None = None
    usage: LLMUsage | None = None
    model: str = ""
    provider: str = ""


@dataclass
class StreamChunk:
    """One element of a streamed response.

    Content chunks carry a text fragment. The final chunk has ``done`` set and
    carries the tool calls requested by the complete response.
    """

    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    done: bool = False
    usage: LLMUsage | None = None


class RunStatus(str, Enum):
    """How an agent run ended."""

    COMPLETED = "completed"
    TRUNCATED = "truncated"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class AgentRunConfig:
    """Per-run parameters for the agent loop."""

    max_step: int = 40
    system_prompt: str | None = None
    tool_ids: list[str] = field(default_factory=list)
    return_direct: set[str] = field(default_factory=set)
    # No limit when unset
    tool_timeout: float | None = None


_STATUS_TO_MESSAGE = {
    RunStatus.COMPLETED: "complete",
    RunStatus.TRUNCATED: "truncated",
    RunStatus.FAILED: "error",
    RunStatus.CANCELLED: "cancelled",
}


@dataclass
class AgentRunResult:
    """Result from executing an agent run."""

    content: str
    status: RunStatus
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    steps: int = 0
    model_calls: int = 0
    max_step: int = 0
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    usage: LLMUsage = field(default_factory=LLMUsage)

    @property
    def truncated(self) -> bool:
        return self.status is RunStatus.TRUNCATED

    def notice(self) -> str | None:
        """User-visible note explaining a run that did not complete normally."""
        if self.status is RunStatus.TRUNCATED:
            return f"[Stopped after reaching the maximum of {self.max_step} tool steps]"
        if self.status is RunStatus.FAILED:
            return f"[Error: {self.error}]"
        if self.status is RunStatus.CANCELLED:
            return "[Generation cancelled]"
        return None

    def annotated_content(self) -> str:
        """Content with the truncation/failure notice appended."""
        notice = self.notice()
        if notice is None:
            return self.content
        if not self.content:
            return notice
        return f"{self.content}\n\n{notice}"

    def to_message(self) -> Message:
        """Build the assistant message recorded for this run."""
        return Message(
            role="assistant",
            content=self.annotated_content(),
            tool_calls=list(self.tool_calls),
            status=_STATUS_TO_MESSAGE[self.status],
            notice=self.notice(),
        )
