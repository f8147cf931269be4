"""Conversation session state."""
from .backend import InMemorySessionBackend, RedisSessionBackend, SessionBackend, create_session_backend
from .models import (
    DEFAULT_SYSTEM_PROMPT,
    MAX_HISTORY_MESSAGES,
    CallMetadata,
    CallSummary,
    CallType,
    ConversationContext,
    Message,
    Role,
)
from .store import SessionStore

__all__ = [
    "SessionBackend",
    "RedisSessionBackend",
    "InMemorySessionBackend",
    "create_session_backend",
    "SessionStore",
    "ConversationContext",
    "CallMetadata",
    "CallSummary",
    "CallType",
    "Message",
    "Role",
    "DEFAULT_SYSTEM_PROMPT",
    "MAX_HISTORY_MESSAGES",
]
