"""Text-to-speech synthesis using the ElevenLabs streaming API."""
import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

import aiohttp

from ..config import SynthesizerConfig, get_config
from ..exceptions import SynthesisError
from ..logging_config import setup_logger
from .streaming_types import SynthesisResult

logger = setup_logger("talkloop.synthesizer")

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"


class BaseSynthesizer(ABC):
    """Base class for streaming synthesizers.

    ``stream_synthesize`` is an async generator yielding one or more audio
    chunks; the generator ending means synthesis is done and
    ``SynthesisError`` means it failed. Callers may ``aclose()`` it early.
    """

    async def connect(self) -> None:
        """Warm up the connection, if the provider has one."""
        pass

    @abstractmethod
    def stream_synthesize(self, text: str) -> AsyncIterator[SynthesisResult]:
        """Synthesize speech with streaming."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the synthesizer."""
        pass


class ElevenLabsSynthesizer(BaseSynthesizer):
    """ElevenLabs streaming HTTP synthesizer producing 16-bit PCM."""

    def __init__(
        self,
        api_key: str,
        voice_id: str = "JBFqnCBsd6RMkjVDRZzb",
        model_id: str = "eleven_turbo_v2_5",
        output_format: str = "pcm_16000",
        sample_rate: int = 16000,
        stability: float = 0.5,
        similarity_boost: float = 0.8,
        base_url: str = ELEVENLABS_BASE_URL,
        chunk_size: int = 4096
    ):
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.output_format = output_format
        self.sample_rate = sample_rate
        self.stability = stability
        self.similarity_boost = similarity_boost
        self.chunk_size = chunk_size
        self._base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def connect(self) -> None:
        """Open the pooled HTTP session ahead of the first request."""
        await self._get_session()
        logger.info(f"ElevenLabs synthesizer ready (voice={self.voice_id}, model={self.model_id})")

    async def stream_synthesize(self, text: str) -> AsyncIterator[SynthesisResult]:
        """Stream PCM audio for ``text``.

        Network chunks can split a sample in half; an odd trailing byte is
        carried into the next chunk so every yielded chunk holds whole samples.
        """
        url = f"{self._base_url}/text-to-speech/{self.voice_id}/stream"
        params = {"output_format": self.output_format}
        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": {
                "stability": self.stability,
                "similarity_boost": self.similarity_boost,
            },
        }

        carry = b""
        try:
            session = await self._get_session()
            async with session.post(url, params=params, json=payload, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"TTS API error: {response.status} - {error_text}")
                    raise SynthesisError(f"TTS API error: {response.status}")

                async for chunk in response.content.iter_chunked(self.chunk_size):
                    data = carry + chunk
                    usable = len(data) - (len(data) % 2)
                    carry = data[usable:]
                    if usable:
                        yield SynthesisResult(
                            audio=data[:usable],
                            sample_rate=self.sample_rate,
                            text=text
                        )

        except SynthesisError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"TTS stream error: {e}")
            raise SynthesisError(f"TTS stream failed: {e}") from e

        if carry:
            logger.debug("Dropping trailing half sample from synthesized audio")

        yield SynthesisResult(audio=b"", sample_rate=self.sample_rate, is_final=True, text=text)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


def create_synthesizer(
    api_key: Optional[str] = None,
    config: Optional[SynthesizerConfig] = None
) -> ElevenLabsSynthesizer:
    """Factory function to create a synthesizer instance."""
    cfg = get_config()
    config = config or cfg.synthesizer
    return ElevenLabsSynthesizer(
        api_key=api_key if api_key is not None else cfg.api.elevenlabs_api_key,
        voice_id=config.voice_id,
        model_id=config.model_id,
        output_format=config.output_format,
        sample_rate=config.sample_rate,
        stability=config.stability,
        similarity_boost=config.similarity_boost,
    )
