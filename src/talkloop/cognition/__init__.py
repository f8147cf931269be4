"""Cognition layer modules (reply generation, synthesis, segmentation)."""
from .responder import BaseResponder, OpenAIResponder, build_system_prompt, create_responder
from .sentence_divider import SentenceDivider
from .streaming_types import SentenceOutput, SynthesisResult
from .synthesizer import BaseSynthesizer, ElevenLabsSynthesizer, create_synthesizer

__all__ = [
    "BaseResponder",
    "OpenAIResponder",
    "build_system_prompt",
    "create_responder",
    "SentenceDivider",
    "SentenceOutput",
    "SynthesisResult",
    "BaseSynthesizer",
    "ElevenLabsSynthesizer",
    "create_synthesizer",
]
