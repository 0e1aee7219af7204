"""Conversation persistence: one JSON file per conversation."""

import os
import re
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from toolchat.errors import ConversationNotFoundError
from toolchat.models.messages import Conversation
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def get_data_dir() -> Path:
    """Directory holding conversations ($TOOLCHAT_DATA_DIR or ~/.toolchat/conversations)."""
    configured = os.getenv("TOOLCHAT_DATA_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".toolchat" / "conversations"


class ConversationStore:
    """Stores conversations as self-contained JSON records keyed by identifier."""

    def __init__(self, data_dir: Path | None = None):
        self.data_dir = Path(data_dir) if data_dir else get_data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        if not _ID_RE.match(conversation_id):
            raise ConversationNotFoundError(f"conversation not found: {conversation_id}")
        return self.data_dir / f"{conversation_id}.json"

    def create(self, title: str | None = None, provider: str = "", model: str = "") -> Conversation:
        """Create and persist an empty conversation."""
        if not title:
            title = f"Chat-{datetime.now().strftime('%Y%m%d%H%M%S')}"
        conversation = Conversation(title=title, provider=provider, model=model)
        self.save(conversation)
        logger.info(f"Created conversation {conversation.id} ({title})")
        return conversation

    def save(self, conversation: Conversation) -> None:
        """Upsert a conversation, refreshing its updated timestamp."""
        conversation.touch()
        path = self._path(conversation.id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(conversation.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
        logger.debug(f"Saved conversation {conversation.id} with {len(conversation.messages)} messages")

    def load(self, conversation_id: str) -> Conversation:
        """Load one conversation.

        Raises:
            ConversationNotFoundError: If it does not exist
        """
        path = self._path(conversation_id)
        try:
            return Conversation.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConversationNotFoundError(f"conversation not found: {conversation_id}") from None

    def list(self) -> list[Conversation]:
        """All conversations, most recently updated first."""
        conversations = []
        for path in self.data_dir.glob("*.json"):
            try:
                conversations.append(Conversation.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning(f"Skipping unreadable conversation file {path.name}: {e}")
        conversations.sort(key=lambda conversation: conversation.updated_at, reverse=True)
        return conversations

    def delete(self, conversation_id: str) -> None:
        """Delete a conversation and all of its messages.

        Raises:
            ConversationNotFoundError: If it does not exist
        """
        try:
            self._path(conversation_id).unlink()
        except FileNotFoundError:
            raise ConversationNotFoundError(f"conversation not found: {conversation_id}") from None
        logger.info(f"Deleted conversation {conversation_id}")

    def rename(self, conversation_id: str, title: str) -> Conversation:
        conversation = self.load(conversation_id)
        conversation.title = title
        self.save(conversation)
        return conversation
