"""Exception types shared across the chat client."""


class ChatError(Exception):
    """Base class for errors raised by toolchat."""


class ConfigurationError(ChatError):
    """Invalid or incomplete provider, tool or tool-provider configuration."""


class BackendError(ChatError):
    """A model backend call failed (auth, network, quota)."""


class ToolError(ChatError):
    """A single tool invocation failed."""


class ToolProviderConnectionError(ChatError):
    """Connecting to, handshaking with or listing tools of a tool provider failed."""


class ConversationNotFoundError(ChatError):
    """No stored conversation matches the requested identifier."""


class ReplyInProgressError(ChatError):
    """A reply is already being generated for the conversation."""
