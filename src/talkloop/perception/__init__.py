"""Perception layer - streaming speech recognition."""
from .transcriber import (
    AudioFormat,
    BaseTranscriber,
    DeepgramTranscriber,
    TranscriptionEvent,
    TranscriptionEventKind,
    create_transcriber,
)

__all__ = [
    "AudioFormat",
    "BaseTranscriber",
    "DeepgramTranscriber",
    "TranscriptionEvent",
    "TranscriptionEventKind",
    "create_transcriber",
]
