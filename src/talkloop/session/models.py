"""Conversation session data model."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_HISTORY_MESSAGES = 20
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Conversation roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class CallType(str, Enum):
    """How the caller reaches the agent."""
    PHONE = "phone"
    BROWSER = "browser"


class Message(BaseModel):
    """A single conversation message."""

    model_config = ConfigDict(use_enum_values=True)

    role: Role
    content: str
    timestamp: Optional[datetime] = None


class CallMetadata(BaseModel):
    """Extensible per-call metadata.

    Well-known fields are typed; anything else the caller supplies is
    kept as an extra attribute and survives serialization.
    """

    model_config = ConfigDict(extra="allow", use_enum_values=True)

    start_time: datetime = Field(default_factory=utc_now)
    caller_id: Optional[str] = None
    purpose: Optional[str] = None
    call_type: Optional[CallType] = None


class ConversationContext(BaseModel):
    """Conversation state for one active call.

    Attributes:
        call_id: Opaque session key, stable for the call's lifetime
        system_prompt: Prompt fixed at session creation
        messages: Ordered history, capped at ``MAX_HISTORY_MESSAGES``
        metadata: Call metadata (start time, caller, purpose, call type)
    """

    call_id: str
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    messages: List[Message] = Field(default_factory=list)
    metadata: CallMetadata = Field(default_factory=CallMetadata)

    def add_message(
        self,
        role: Role,
        content: str,
        max_messages: int = MAX_HISTORY_MESSAGES
    ) -> Message:
        """Append a message, evicting the oldest entries past the cap."""
        message = Message(role=role, content=content, timestamp=utc_now())
        self.messages.append(message)
        if len(self.messages) > max_messages:
            del self.messages[:len(self.messages) - max_messages]
        return message

    @property
    def last_message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None


class CallSummary(BaseModel):
    """Lightweight end-of-call summary handed to the persistence hook."""
    call_id: str
    message_count: int
    duration_ms: int
    last_message: Optional[str] = None
