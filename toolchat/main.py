"""Main FastAPI application."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from toolchat import __version__
from toolchat.api.endpoints import router, set_chat_service
from toolchat.services.chat import ChatService
from toolchat.services.config_store import get_config_path, load_config
from toolchat.services.conversation_store import ConversationStore
from toolchat.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the chat service and connect tool providers without blocking startup."""
    setup_logging()

    config_path = get_config_path()
    service = ChatService(load_config(config_path), ConversationStore(), config_path=config_path)
    set_chat_service(service)

    startup = asyncio.create_task(service.start_servers())
    try:
        yield
    finally:
        if not startup.done():
            startup.cancel()
            await asyncio.gather(startup, return_exceptions=True)
        await service.shutdown()
        set_chat_service(None)
        logger.info("Chat service stopped")


app = FastAPI(
    title="toolchat",
    description="Multi-provider chat with a tool-calling agent loop and MCP tool providers.",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    tags_metadata=[
        {
            "name": "Conversations",
            "description": "Create, list and delete conversations, and stream replies to new messages.",
        },
        {
            "name": "Providers",
            "description": "Configured model providers and the current selection.",
        },
        {
            "name": "Tools",
            "description": "Selectable tools and MCP tool-provider connections.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("toolchat.main:app", host="127.0.0.1", port=8000, log_level="info")
