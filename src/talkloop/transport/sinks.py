"""Outbound contracts the orchestrator talks to.

The orchestrator never knows what carries a call: it hands mixed audio and
control signals to a ``TransportSink``, transcript lines to a
``BroadcastSink`` and the end-of-call summary to a ``PersistenceHook``.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..logging_config import setup_logger
from ..session.models import CallSummary, utc_now


class Speaker(str, Enum):
    """Who said a transcript line."""
    HUMAN = "human"
    AI = "ai"


class TranscriptEvent(BaseModel):
    """A transcript line for live display."""

    model_config = ConfigDict(use_enum_values=True)

    speaker: Speaker
    text: str
    confidence: float = 0.0
    is_final: bool = True
    timestamp: datetime = Field(default_factory=utc_now)


class TransportSink(ABC):
    """Carries assistant audio to the caller."""

    @abstractmethod
    async def send_audio(self, audio: bytes) -> None:
        """Send one chunk of mixed assistant audio."""
        pass

    @abstractmethod
    async def interrupt(self) -> None:
        """Tell the caller side to drop audio it has buffered."""
        pass

    async def speak_text(self, text: str) -> None:
        """Show a sentence as it is dispatched for synthesis."""
        pass

    async def send_state(self, state: str) -> None:
        """Report a turn state change."""
        pass


class BroadcastSink(ABC):
    """Receives transcript lines for live viewers."""

    @abstractmethod
    async def publish(self, event: TranscriptEvent) -> None:
        pass


class PersistenceHook(ABC):
    """Receives the summary of a finished call."""

    @abstractmethod
    async def save_summary(self, summary: CallSummary) -> None:
        pass


class LoggingPersistenceHook(PersistenceHook):
    """Writes call summaries to the log."""

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = setup_logger(logger_name or "talkloop.persistence")

    async def save_summary(self, summary: CallSummary) -> None:
        self._logger.info(
            f"Call {summary.call_id} ended: {summary.message_count} messages, "
            f"{summary.duration_ms} ms"
        )
