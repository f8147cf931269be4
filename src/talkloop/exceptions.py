"""Custom exceptions for TalkLoop."""


class TalkLoopError(Exception):
    """Base exception for TalkLoop."""
    pass


class APIError(TalkLoopError):
    """Capability provider errors."""
    pass


class TranscriptionError(APIError):
    """Speech recognition errors."""
    pass


class GenerationError(APIError):
    """Reply generation errors."""
    pass


class SynthesisError(APIError):
    """Speech synthesis errors."""
    pass


class TransportError(TalkLoopError):
    """Audio I/O errors."""
    pass


class StoreUnavailable(TalkLoopError):
    """Session backing store cannot be reached."""
    pass


class OrchestrationError(TalkLoopError):
    """Turn orchestration errors."""
    pass
