"""Message and conversation data models."""

from datetime import UTC, datetime
from typing import Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, Field

cuid = cuid_wrapper()

MessageStatus = Literal["complete", "truncated", "error", "cancelled"]


def _now() -> datetime:
    return datetime.now(UTC)


class ToolCallRecord(BaseModel):
    """A tool invocation made by the model during one assistant turn.

    Exactly one of ``result`` and ``error`` is set once the call has completed;
    both are empty while it is pending.
    """

    name: str
    arguments: str = ""
    result: str | None = None
    error: str | None = None

    @property
    def pending(self) -> bool:
        """Whether the call has not produced a result or an error yet."""
        return self.result is None and self.error is None

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.error is None


class Message(BaseModel):
    """One turn in a conversation."""

    id: str = Field(default_factory=cuid)
    role: Literal["user", "assistant", "system"] = Field(frozen=True)
    content: str = ""
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)
    status: MessageStatus = "complete"
    # Status note appended to content for runs that did not complete normally
    notice: str | None = None

    @property
    def reply_content(self) -> str:
        """Content without the status notice, as the model wrote it."""
        if self.notice and self.content.endswith(self.notice):
            return self.content.removesuffix(self.notice).rstrip()
        return self.content


class Conversation(BaseModel):
    """An append-only sequence of messages plus identifying metadata."""

    id: str = Field(default_factory=cuid)
    title: str
    provider: str = ""
    model: str = ""
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def append(self, message: Message) -> None:
        """Append a finalized message to the end of the conversation."""
        self.messages.append(message)

    def touch(self) -> None:
        """Refresh the updated timestamp."""
        self.updated_at = _now()

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None
