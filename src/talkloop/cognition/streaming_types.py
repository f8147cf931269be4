"""Core data types for streamed replies.

Defines the data structures passed between the sentence divider, the
synthesizer and the speech worker:
- SentenceOutput: A complete sentence cut from a token stream
- SynthesisResult: One chunk of synthesized audio
"""
import re
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class SentenceOutput:
    """Sentence-level output from a reply stream.

    Represents a complete sentence ready for synthesis. Sequence numbers
    restart at zero for every reply.

    Attributes:
        sequence_number: Position within the reply (0-indexed)
        text: Sentence text as generated
        tts_text: Text prepared for synthesis (urls and emoji removed)
        is_first: Whether this is the first sentence of the reply
        is_final: Whether this sentence was flushed at the end of the reply
        metadata: Optional metadata
    """
    sequence_number: int
    text: str
    tts_text: Optional[str] = None
    is_first: bool = False
    is_final: bool = False
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.tts_text is None:
            self.tts_text = self._prepare_tts_text(self.text)

    @staticmethod
    def _prepare_tts_text(text: str) -> str:
        """Remove characters that don't translate well to speech."""
        # Remove markdown links, keep text
        text = re.sub(r'\[([^\]]+)\]\([^\)]+\)', r'\1', text)
        # Remove URLs
        text = re.sub(r'https?://\S+', '', text)
        # Remove emoji (basic range)
        text = re.sub(r'[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF\U0001F1E0-\U0001F1FF]', '', text)
        text = ' '.join(text.split())

        return text.strip()

    @property
    def effective_text(self) -> str:
        """Get the text to synthesize (defaults to tts_text)."""
        return self.tts_text or self.text


@dataclass
class SynthesisResult:
    """A chunk of synthesized 16-bit PCM audio."""
    audio: bytes
    sample_rate: int = 16000
    is_final: bool = False
    text: str = ""
