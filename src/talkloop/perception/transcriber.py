"""Streaming speech-to-text contract and the Deepgram adapter."""
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional
from urllib.parse import urlencode

import aiohttp

from ..config import TranscriberConfig, get_config
from ..exceptions import TranscriptionError
from ..logging_config import setup_logger
from ..session.models import CallType

logger = setup_logger("talkloop.transcriber")

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass(frozen=True)
class AudioFormat:
    """Encoding and sample rate of caller audio."""
    encoding: str
    sample_rate: int
    channels: int = 1

    @classmethod
    def for_call_type(cls, call_type: CallType) -> "AudioFormat":
        """Default format for a call type: mulaw@8k for phone, linear16@16k for browser."""
        if CallType(call_type) == CallType.PHONE:
            return cls(encoding="mulaw", sample_rate=8000)
        return cls(encoding="linear16", sample_rate=16000)


class TranscriptionEventKind(str, Enum):
    """Kinds of events a transcriber emits."""
    INTERIM = "interim"
    FINAL = "final"
    SPEECH_START = "speech_start"
    ERROR = "error"
    CLOSE = "close"


@dataclass
class TranscriptionEvent:
    """One event from the transcription stream."""
    kind: TranscriptionEventKind
    text: str = ""
    confidence: float = 0.0
    error: Optional[Exception] = None


class BaseTranscriber(ABC):
    """Base class for streaming transcribers.

    A transcriber is opened once per call with ``start_stream``, fed raw
    caller audio through ``send_audio`` and drained through ``events``.
    The event iterator ends after a ``close`` event.
    """

    @abstractmethod
    async def start_stream(self, audio_format: AudioFormat) -> None:
        """Open the recognition stream."""
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[TranscriptionEvent]:
        """Iterate transcription events until the stream closes."""
        pass

    @abstractmethod
    async def send_audio(self, audio: bytes) -> None:
        """Forward a chunk of caller audio."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the stream."""
        pass


class DeepgramTranscriber(BaseTranscriber):
    """Deepgram live transcription over a WebSocket."""

    def __init__(
        self,
        api_key: str,
        model_name: str = "nova-2",
        language: str = "en-US",
        endpointing_ms: int = 300,
        interim_results: bool = True,
        url: str = DEEPGRAM_LISTEN_URL
    ):
        self.api_key = api_key
        self.model_name = model_name
        self.language = language
        self.endpointing_ms = endpointing_ms
        self.interim_results = interim_results
        self.url = url

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.Task] = None
        self._closed = False

    def _query(self, audio_format: AudioFormat) -> str:
        params = {
            "model": self.model_name,
            "language": self.language,
            "encoding": audio_format.encoding,
            "sample_rate": audio_format.sample_rate,
            "channels": audio_format.channels,
            "smart_format": "true",
            "punctuate": "true",
            "interim_results": str(self.interim_results).lower(),
            "endpointing": self.endpointing_ms,
            "vad_events": "true",
        }
        return urlencode(params)

    async def start_stream(self, audio_format: AudioFormat) -> None:
        """Connect to Deepgram and start reading results."""
        headers = {"Authorization": f"Token {self.api_key}"}
        url = f"{self.url}?{self._query(audio_format)}"

        try:
            self._session = aiohttp.ClientSession()
            self._ws = await self._session.ws_connect(url, headers=headers, heartbeat=10.0)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if self._session is not None:
                await self._session.close()
            logger.error(f"Deepgram connection failed: {e}")
            raise TranscriptionError(f"Deepgram connection failed: {e}") from e

        if self._closed:
            # close() ran while connecting
            await self._ws.close()
            await self._session.close()
            logger.info("Deepgram stream closed before it was used")
            return

        self._reader = asyncio.create_task(self._read_loop())
        logger.info(
            f"Deepgram stream opened ({audio_format.encoding}@{audio_format.sample_rate})"
        )

    async def _read_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    event = self._parse(msg.data)
                    if event is not None:
                        await self._queue.put(event)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = TranscriptionError(f"Deepgram socket error: {self._ws.exception()}")
                    await self._queue.put(
                        TranscriptionEvent(kind=TranscriptionEventKind.ERROR, error=error)
                    )
                    break
        except aiohttp.ClientError as e:
            logger.error(f"Deepgram read failed: {e}")
            await self._queue.put(
                TranscriptionEvent(kind=TranscriptionEventKind.ERROR, error=TranscriptionError(str(e)))
            )
        finally:
            await self._queue.put(TranscriptionEvent(kind=TranscriptionEventKind.CLOSE))

    def _parse(self, raw: str) -> Optional[TranscriptionEvent]:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Unparseable Deepgram message: {raw[:100]}")
            return None

        msg_type = data.get("type")
        if msg_type == "SpeechStarted":
            return TranscriptionEvent(kind=TranscriptionEventKind.SPEECH_START)

        if msg_type != "Results":
            return None

        alternatives = data.get("channel", {}).get("alternatives", [])
        if not alternatives:
            return None

        text = alternatives[0].get("transcript", "")
        if not text:
            return None

        kind = TranscriptionEventKind.FINAL if data.get("is_final") else TranscriptionEventKind.INTERIM
        return TranscriptionEvent(
            kind=kind,
            text=text,
            confidence=float(alternatives[0].get("confidence", 0.0)),
        )

    async def events(self) -> AsyncIterator[TranscriptionEvent]:
        while True:
            event = await self._queue.get()
            yield event
            if event.kind == TranscriptionEventKind.CLOSE:
                break

    async def send_audio(self, audio: bytes) -> None:
        if self._ws is None or self._ws.closed:
            raise TranscriptionError("Deepgram stream is not open")
        try:
            await self._ws.send_bytes(audio)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TranscriptionError(f"Deepgram send failed: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._ws is not None and not self._ws.closed:
            try:
                await self._ws.send_str(json.dumps({"type": "CloseStream"}))
            except (aiohttp.ClientError, ConnectionResetError) as e:
                logger.warning(f"Deepgram CloseStream failed: {e}")
            await self._ws.close()

        if self._reader is not None:
            try:
                await asyncio.wait_for(self._reader, timeout=2.0)
            except asyncio.TimeoutError:
                self._reader.cancel()

        if self._session is not None and not self._session.closed:
            await self._session.close()

        logger.info("Deepgram stream closed")


def create_transcriber(
    api_key: Optional[str] = None,
    config: Optional[TranscriberConfig] = None
) -> DeepgramTranscriber:
    """Factory function to create a transcriber instance."""
    cfg = get_config()
    config = config or cfg.transcriber
    return DeepgramTranscriber(
        api_key=api_key if api_key is not None else cfg.api.deepgram_api_key,
        model_name=config.model_name,
        language=config.language,
        endpointing_ms=config.endpointing_ms,
        interim_results=config.interim_results,
    )
