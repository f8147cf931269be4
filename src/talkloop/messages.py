"""Message protocol definitions for the TalkLoop WebSocket API.

Control messages are JSON objects with a ``type`` discriminator, modelled
with Pydantic v2. Audio travels in binary frames: caller audio from the
client, mixed assistant audio from the server.

API Version: 1.0.0
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .audio.noise_mixer import NoiseType
from .orchestration.fsm import State
from .transport.sinks import Speaker

# API Version
API_VERSION = "1.0.0"


class MessageType(str, Enum):
    """All message types in the TalkLoop protocol."""

    # Client -> Server
    NOISE_UPDATE = "noise_update"
    HANGUP = "hangup"

    # Server -> Client
    TRANSCRIPT = "transcript"
    INTERRUPTED = "interrupted"
    STATE = "state"
    SPEAK = "speak"
    STATUS = "status"


class BaseMessage(BaseModel, ABC):
    """Base class for all messages.

    Attributes:
        type: Message type discriminator
        api_version: API version for compatibility checking
        timestamp: Unix timestamp in milliseconds (optional)
    """

    model_config = ConfigDict(
        use_enum_values=True,
        extra="forbid",  # Reject unknown fields
        populate_by_name=True,
    )

    type: MessageType
    api_version: str = Field(default=API_VERSION, description="API version")
    timestamp: Optional[int] = Field(
        default=None,
        description="Unix timestamp in milliseconds",
        ge=0,
    )

    @abstractmethod
    def get_type_value(self) -> str:
        """Return the string value of the message type."""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Serialize message to dictionary."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        """Serialize message to JSON string."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BaseMessage":
        """Deserialize dictionary to appropriate message type."""
        return deserialize_message(data)


# =============================================================================
# Client -> Server Messages
# =============================================================================


class NoiseUpdate(BaseMessage):
    """Background noise change.

    Either field may be omitted to keep its current value. Levels outside
    [0, 100] are clamped by the mixer.

    Example:
        {"type": "noise_update", "noise_type": "office", "level": 30}
        {"type": "noise_update", "level": 10}
    """

    type: Literal[MessageType.NOISE_UPDATE] = MessageType.NOISE_UPDATE
    noise_type: Optional[NoiseType] = Field(default=None, description="Ambient environment")
    level: Optional[float] = Field(default=None, description="Mix level in percent")

    def get_type_value(self) -> str:
        return MessageType.NOISE_UPDATE.value


class Hangup(BaseMessage):
    """Caller hung up.

    Example:
        {"type": "hangup"}
    """

    type: Literal[MessageType.HANGUP] = MessageType.HANGUP

    def get_type_value(self) -> str:
        return MessageType.HANGUP.value


# =============================================================================
# Server -> Client Messages
# =============================================================================


class Transcript(BaseMessage):
    """Transcript line for either side of the call.

    Example:
        {"type": "transcript", "speaker": "human", "text": "Hi", "confidence": 0.93, "is_final": true}
        {"type": "transcript", "speaker": "ai", "text": "Hello!", "confidence": 1.0, "is_final": true}
    """

    type: Literal[MessageType.TRANSCRIPT] = MessageType.TRANSCRIPT
    speaker: Speaker = Field(..., description="Who spoke")
    text: str = Field(..., min_length=0, description="Transcribed or generated text")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Recognition confidence")
    is_final: bool = Field(default=True, description="False for interim recognition results")

    def get_type_value(self) -> str:
        return MessageType.TRANSCRIPT.value


class Interrupted(BaseMessage):
    """The caller barged in; drop any buffered assistant audio.

    Example:
        {"type": "interrupted"}
    """

    type: Literal[MessageType.INTERRUPTED] = MessageType.INTERRUPTED

    def get_type_value(self) -> str:
        return MessageType.INTERRUPTED.value


class StateUpdate(BaseMessage):
    """Turn state update message.

    Example:
        {"type": "state", "state": "listening"}
        {"type": "state", "state": "responding"}
    """

    type: Literal[MessageType.STATE] = MessageType.STATE
    state: State = Field(..., description="Current turn state")

    def get_type_value(self) -> str:
        return MessageType.STATE.value


class Speak(BaseMessage):
    """A sentence that was just handed to synthesis.

    Example:
        {"type": "speak", "text": "Hello world."}
    """

    type: Literal[MessageType.SPEAK] = MessageType.SPEAK
    text: str = Field(..., min_length=1, description="Sentence text")

    def get_type_value(self) -> str:
        return MessageType.SPEAK.value


class StatusMessage(BaseMessage):
    """Status/notification message.

    Example:
        {"type": "status", "message": "Call started"}
    """

    type: Literal[MessageType.STATUS] = MessageType.STATUS
    message: str = Field(..., min_length=1, description="Status message text")

    def get_type_value(self) -> str:
        return MessageType.STATUS.value


# =============================================================================
# Message Union and Deserialization
# =============================================================================

ClientMessage = Union[NoiseUpdate, Hangup]
"""Union of all client-to-server messages."""

ServerMessage = Union[Transcript, Interrupted, StateUpdate, Speak, StatusMessage]
"""Union of all server-to-client messages."""

AnyMessage = Union[ClientMessage, ServerMessage]
"""Union of all messages in the protocol."""

# Mapping of message types to their model classes
_MESSAGE_TYPE_MAP: Dict[str, type] = {
    # Client -> Server
    MessageType.NOISE_UPDATE.value: NoiseUpdate,
    MessageType.HANGUP.value: Hangup,
    # Server -> Client
    MessageType.TRANSCRIPT.value: Transcript,
    MessageType.INTERRUPTED.value: Interrupted,
    MessageType.STATE.value: StateUpdate,
    MessageType.SPEAK.value: Speak,
    MessageType.STATUS.value: StatusMessage,
}


def deserialize_message(data: Dict[str, Any]) -> BaseMessage:
    """Deserialize a dictionary to the appropriate message type.

    Args:
        data: Dictionary containing message data with 'type' field

    Returns:
        Instance of the appropriate message class

    Raises:
        ValueError: If message type is unknown or data is invalid
    """
    msg_type = data.get("type")
    if not msg_type:
        raise ValueError("Message missing 'type' field")

    msg_class = _MESSAGE_TYPE_MAP.get(msg_type)
    if not msg_class:
        raise ValueError(f"Unknown message type: {msg_type}")

    try:
        return msg_class.model_validate(data)
    except Exception as e:
        raise ValueError(f"Failed to validate message of type '{msg_type}': {e}") from e


def get_all_schemas() -> Dict[str, Dict[str, Any]]:
    """Get JSON Schemas for all message types."""
    return {
        msg_type: msg_class.model_json_schema()
        for msg_type, msg_class in _MESSAGE_TYPE_MAP.items()
    }
