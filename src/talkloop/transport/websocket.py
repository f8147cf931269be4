"""WebSocket transport for browser calls."""
import time

import aiohttp
from aiohttp import web

from ..exceptions import TransportError
from ..logging_config import setup_logger
from ..messages import Interrupted, ServerMessage, Speak, StateUpdate, StatusMessage, Transcript
from .sinks import BroadcastSink, TranscriptEvent, TransportSink

logger = setup_logger("talkloop.websocket")


class WebSocketTransport(TransportSink, BroadcastSink):
    """Carries one call over an aiohttp WebSocket.

    Assistant audio goes out as binary frames, everything else as JSON
    protocol messages. Writes to a closed socket are dropped.
    """

    def __init__(self, ws: web.WebSocketResponse):
        self._ws = ws
        self.bytes_sent = 0

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send_audio(self, audio: bytes) -> None:
        if self._ws.closed:
            return
        try:
            await self._ws.send_bytes(audio)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Failed to send audio: {e}") from e
        self.bytes_sent += len(audio)

    async def interrupt(self) -> None:
        await self.send_message(Interrupted())

    async def speak_text(self, text: str) -> None:
        if text.strip():
            await self.send_message(Speak(text=text))

    async def send_state(self, state: str) -> None:
        await self.send_message(StateUpdate(state=state))

    async def send_status(self, message: str) -> None:
        await self.send_message(StatusMessage(message=message))

    async def publish(self, event: TranscriptEvent) -> None:
        await self.send_message(Transcript(
            speaker=event.speaker,
            text=event.text,
            confidence=event.confidence,
            is_final=event.is_final,
        ))

    async def send_message(self, message: ServerMessage) -> None:
        """Send a protocol message, stamped with the send time."""
        if self._ws.closed:
            logger.debug(f"Socket closed, dropping {message.get_type_value()} message")
            return

        message.timestamp = int(time.time() * 1000)
        try:
            await self._ws.send_json(message.to_dict())
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Failed to send {message.get_type_value()}: {e}") from e
