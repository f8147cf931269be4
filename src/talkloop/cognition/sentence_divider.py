"""Incremental sentence segmentation for streamed replies.

Tokens arrive in arbitrary fragments; a sentence is cut as soon as its
terminator is followed by whitespace, so the first sentence can be
synthesized while the rest of the reply is still being generated.
"""
import re
from typing import AsyncIterator, List, Optional

from ..logging_config import setup_logger
from .streaming_types import SentenceOutput

logger = setup_logger("talkloop.sentence_divider")

# One or more terminators, an optional closing quote, then whitespace or end of buffer
SENTENCE_END = re.compile(r"[.!?]+[\"']?(?=\s|$)")


class SentenceDivider:
    """Buffers reply tokens and cuts them into sentences.

    Data flow: str chunks -> feed() -> List[SentenceOutput], with flush()
    emitting the unterminated remainder when the reply ends.
    """

    def __init__(self, pattern: re.Pattern = SENTENCE_END):
        self._pattern = pattern
        self._buffer = ""
        self._sequence_number = 0

    @property
    def buffer(self) -> str:
        """Text received but not yet emitted."""
        return self._buffer

    def feed(self, chunk: str) -> List[SentenceOutput]:
        """Add a chunk and return every sentence it completes."""
        self._buffer += chunk
        sentences = []

        while True:
            match = self._pattern.search(self._buffer)
            if not match:
                break

            text = self._buffer[:match.end()].strip()
            self._buffer = self._buffer[match.end():]
            if text:
                sentences.append(self._create_sentence(text, is_final=False))

        return sentences

    def flush(self) -> Optional[SentenceOutput]:
        """Emit whatever remains in the buffer, punctuated or not."""
        text = self._buffer.strip()
        self._buffer = ""
        if not text:
            return None
        return self._create_sentence(text, is_final=True)

    def reset(self) -> None:
        """Drop buffered text and restart sequence numbering."""
        self._buffer = ""
        self._sequence_number = 0

    def _create_sentence(self, text: str, is_final: bool) -> SentenceOutput:
        sentence = SentenceOutput(
            sequence_number=self._sequence_number,
            text=text,
            is_first=self._sequence_number == 0,
            is_final=is_final
        )
        self._sequence_number += 1

        logger.debug(f"Created sentence {sentence.sequence_number}: '{text[:50]}' "
                     f"(first={sentence.is_first}, final={is_final})")
        return sentence

    async def stream_sentences(self, token_stream: AsyncIterator[str]) -> AsyncIterator[SentenceOutput]:
        """Transform an incremental token stream into a sentence stream."""
        self.reset()
        async for token in token_stream:
            for sentence in self.feed(token):
                yield sentence

        tail = self.flush()
        if tail is not None:
            yield tail
