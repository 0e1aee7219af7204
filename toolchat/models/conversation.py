"""Request and response models for the HTTP API."""

from datetime import datetime

from pydantic import BaseModel, Field

from toolchat.models.messages import Conversation


class SendMessageRequest(BaseModel):
    """Request model for sending a user message."""

    message: str = Field(min_length=1)
    tool_ids: list[str] | None = None


class CreateConversationRequest(BaseModel):
    """Request model for creating a conversation."""

    title: str | None = None
    provider: str | None = None


class RenameConversationRequest(BaseModel):
    title: str = Field(min_length=1)


class ConversationSummary(BaseModel):
    """Conversation metadata without the message log."""

    id: str
    title: str
    provider: str
    model: str
    message_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationSummary":
        return cls(
            id=conversation.id,
            title=conversation.title,
            provider=conversation.provider,
            model=conversation.model,
            message_count=len(conversation.messages),
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class ProviderSummary(BaseModel):
    name: str
    type: str
    model: str
    enabled: bool
    current: bool


class SwitchProviderRequest(BaseModel):
    name: str


class ToolSummary(BaseModel):
    """A tool the user can activate."""

    id: str
    name: str
    description: str
    origin: str
    available: bool


class ServerStatusResponse(BaseModel):
    """Snapshot of one tool-provider connection."""

    name: str
    transport: str
    state: str
    error: str | None = None
    tools: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
