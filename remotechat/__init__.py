"""Resilient client for an unstable remote conversational backend."""

from .client import RemoteChatClient
from .config import ClientSettings
from .errors import (
    AttemptFailure,
    ConfigurationError,
    ContentRejectedError,
    ExhaustedError,
    RemoteChatError,
    TerminalError,
)
from .models import ConversationHandle, PersonaInfo, Reply
from .store import JsonConversationStore, MemoryConversationStore

__all__ = [
    "AttemptFailure",
    "ClientSettings",
    "ConfigurationError",
    "ContentRejectedError",
    "ConversationHandle",
    "ExhaustedError",
    "JsonConversationStore",
    "MemoryConversationStore",
    "PersonaInfo",
    "RemoteChatClient",
    "RemoteChatError",
    "Reply",
    "TerminalError",
]
