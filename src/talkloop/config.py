"""Configuration management for TalkLoop."""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel
from pydantic_settings import BaseSettings

from .audio.noise_mixer import NoiseProfile

DEFAULT_GREETING = "Hello! I'm an AI assistant. How can I help you today?"
FALLBACK_UTTERANCE = "I apologize, I'm having trouble processing that. Could you please repeat?"


class ApiConfig(BaseModel):
    """API configuration."""
    deepgram_api_key: str = ""
    openai_api_key: str = ""
    elevenlabs_api_key: str = ""


class StoreConfig(BaseModel):
    """Session store configuration."""
    redis_url: str = "redis://localhost:6379"
    session_ttl_seconds: int = 3600
    key_prefix: str = "conversation"
    max_messages: int = 20
    socket_timeout_seconds: float = 2.0


class TranscriberConfig(BaseModel):
    """Streaming transcription configuration."""
    model_name: str = "nova-2"
    language: str = "en-US"
    endpointing_ms: int = 300
    interim_results: bool = True


class ResponderConfig(BaseModel):
    """Reply generation configuration."""
    model_name: str = "gpt-4-turbo-preview"
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.7
    max_tokens: int = 150
    history_window: int = 10


class SynthesizerConfig(BaseModel):
    """Speech synthesis configuration."""
    voice_id: str = "JBFqnCBsd6RMkjVDRZzb"
    model_id: str = "eleven_turbo_v2_5"
    output_format: str = "pcm_16000"
    sample_rate: int = 16000
    stability: float = 0.5
    similarity_boost: float = 0.8


class ConversationConfig(BaseModel):
    """Per-call conversation defaults."""
    greeting: str = DEFAULT_GREETING
    fallback_utterance: str = FALLBACK_UTTERANCE
    purpose: str = "customer support"
    streaming: bool = True


class ServerConfig(BaseModel):
    """WebSocket server configuration."""
    host: str = "localhost"
    port: int = 8080
    cleanup_interval_seconds: float = 300.0


class Config(BaseSettings):
    """Main configuration."""
    api: ApiConfig = ApiConfig()
    store: StoreConfig = StoreConfig()
    transcriber: TranscriberConfig = TranscriberConfig()
    responder: ResponderConfig = ResponderConfig()
    synthesizer: SynthesizerConfig = SynthesizerConfig()
    noise: NoiseProfile = NoiseProfile()
    conversation: ConversationConfig = ConversationConfig()
    server: ServerConfig = ServerConfig()

    @classmethod
    def load(cls, env_path: Optional[Path] = None) -> "Config":
        """Load configuration from environment variables."""
        if env_path:
            load_dotenv(env_path)
        else:
            load_dotenv()

        return cls(
            api=ApiConfig(
                deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
                openai_api_key=os.getenv("OPENAI_API_KEY", ""),
                elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
            ),
            store=StoreConfig(
                redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            ),
            responder=ResponderConfig(
                model_name=os.getenv("OPENAI_MODEL", "gpt-4-turbo-preview"),
            ),
            synthesizer=SynthesizerConfig(
                voice_id=os.getenv("ELEVENLABS_VOICE_ID", "JBFqnCBsd6RMkjVDRZzb"),
            ),
        )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config
