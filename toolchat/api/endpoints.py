"""API endpoints for the chat service."""

import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from toolchat import __version__
from toolchat.errors import (
    ConfigurationError,
    ConversationNotFoundError,
    ReplyInProgressError,
    ToolProviderConnectionError,
)
from toolchat.models.conversation import (
    ConversationSummary,
    CreateConversationRequest,
    HealthResponse,
    ProviderSummary,
    RenameConversationRequest,
    SendMessageRequest,
    ServerStatusResponse,
    SwitchProviderRequest,
    ToolSummary,
)
from toolchat.models.messages import Conversation
from toolchat.services.chat import ChatService, StreamEvent
from toolchat.services.mcp_manager import ConnectionStatus
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

_chat_service: ChatService | None = None


def set_chat_service(service: ChatService | None) -> None:
    global _chat_service
    _chat_service = service


def get_chat_service() -> ChatService:
    """Get the chat service created at application startup."""
    if _chat_service is None:
        raise HTTPException(status_code=503, detail="Chat service is not ready")
    return _chat_service


def _server_response(status: ConnectionStatus) -> ServerStatusResponse:
    return ServerStatusResponse(
        name=status.name,
        transport=status.transport.value,
        state=status.state.value,
        error=status.error,
        tools=[tool.name for tool in status.tools],
    )


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )


@router.get("/conversations", response_model=list[ConversationSummary], tags=["Conversations"])
async def list_conversations(service: ChatService = Depends(get_chat_service)) -> list[ConversationSummary]:
    return [ConversationSummary.from_conversation(c) for c in service.store.list()]


@router.post("/conversations", response_model=Conversation, status_code=201, tags=["Conversations"])
async def create_conversation(
    request: CreateConversationRequest, service: ChatService = Depends(get_chat_service)
) -> Conversation:
    try:
        return service.start_conversation(request.title, request.provider)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.get("/conversations/{conversation_id}", response_model=Conversation, tags=["Conversations"])
async def get_conversation(conversation_id: str, service: ChatService = Depends(get_chat_service)) -> Conversation:
    try:
        return service.store.load(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.patch("/conversations/{conversation_id}", response_model=Conversation, tags=["Conversations"])
async def rename_conversation(
    conversation_id: str, request: RenameConversationRequest, service: ChatService = Depends(get_chat_service)
) -> Conversation:
    if service.is_replying(conversation_id):
        raise HTTPException(status_code=409, detail="A reply is in progress for this conversation")
    try:
        return service.store.rename(conversation_id, request.title)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.delete("/conversations/{conversation_id}", status_code=204, tags=["Conversations"])
async def delete_conversation(conversation_id: str, service: ChatService = Depends(get_chat_service)) -> None:
    if service.is_replying(conversation_id):
        raise HTTPException(status_code=409, detail="A reply is in progress for this conversation")
    try:
        service.store.delete(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.post("/conversations/{conversation_id}/messages", tags=["Conversations"])
async def send_message(
    conversation_id: str, request: SendMessageRequest, service: ChatService = Depends(get_chat_service)
) -> StreamingResponse:
    """Send a user message and stream the reply as newline-delimited JSON events."""
    try:
        events = await service.send_message(conversation_id, request.message, request.tool_ids)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ReplyInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    async def encode(stream: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
        async for event in stream:
            yield json.dumps(event.to_dict()) + "\n"

    return StreamingResponse(encode(events), media_type="application/x-ndjson")


@router.post("/conversations/{conversation_id}/cancel", tags=["Conversations"])
async def cancel_reply(conversation_id: str, service: ChatService = Depends(get_chat_service)) -> dict[str, bool]:
    return {"cancelled": service.cancel(conversation_id)}


@router.get("/providers", response_model=list[ProviderSummary], tags=["Providers"])
async def list_providers(service: ChatService = Depends(get_chat_service)) -> list[ProviderSummary]:
    return [
        ProviderSummary(
            name=provider.name,
            type=provider.type,
            model=provider.model,
            enabled=provider.enabled,
            current=provider.name == service.config.current_provider,
        )
        for provider in service.config.providers
    ]


@router.put("/providers/current", response_model=ProviderSummary, tags=["Providers"])
async def switch_provider(
    request: SwitchProviderRequest, service: ChatService = Depends(get_chat_service)
) -> ProviderSummary:
    try:
        provider = service.switch_provider(request.name)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return ProviderSummary(
        name=provider.name, type=provider.type, model=provider.model, enabled=provider.enabled, current=True
    )


@router.get("/tools", response_model=list[ToolSummary], tags=["Tools"])
async def list_tools(service: ChatService = Depends(get_chat_service)) -> list[ToolSummary]:
    return [
        ToolSummary(
            id=option.id,
            name=option.name,
            description=option.description,
            origin=option.origin,
            available=option.available,
        )
        for option in service.list_tools()
    ]


@router.get("/mcp/servers", response_model=list[ServerStatusResponse], tags=["Tools"])
async def list_servers(service: ChatService = Depends(get_chat_service)) -> list[ServerStatusResponse]:
    return [_server_response(status) for status in service.server_status()]


@router.post("/mcp/servers/{name}/reinitialize", response_model=ServerStatusResponse, tags=["Tools"])
async def reinitialize_server(name: str, service: ChatService = Depends(get_chat_service)) -> ServerStatusResponse:
    try:
        status = await service.reinitialize_server(name)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _server_response(status)


@router.post("/mcp/servers/{name}/disconnect", status_code=204, tags=["Tools"])
async def disconnect_server(name: str, service: ChatService = Depends(get_chat_service)) -> None:
    try:
        await service.disconnect_server(name)
    except ToolProviderConnectionError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
