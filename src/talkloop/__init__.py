"""TalkLoop - real-time turn orchestration for AI voice calls.

Architecture:
- session: conversation state with a Redis backend and in-process fallback
- audio: ambient background noise mixing
- perception: streaming transcription
- cognition: reply generation, sentence segmentation, speech synthesis
- orchestration: turn state machine
- core: turn orchestrator, events, call registry
- transport / web: sinks, WebSocket transport and server
"""
from .config import Config, get_config
from .core import CallRegistry, OrchestratorConfig, OrchestratorEvent, TurnOrchestrator, create_orchestrator
from .exceptions import (
    APIError,
    GenerationError,
    OrchestrationError,
    StoreUnavailable,
    SynthesisError,
    TalkLoopError,
    TranscriptionError,
    TransportError,
)
from .logging_config import logger, setup_logger

__version__ = "1.0.0"

__all__ = [
    # Config
    "Config",
    "get_config",
    # Logging
    "logger",
    "setup_logger",
    # Core
    "CallRegistry",
    "OrchestratorConfig",
    "OrchestratorEvent",
    "TurnOrchestrator",
    "create_orchestrator",
    # Exceptions
    "TalkLoopError",
    "APIError",
    "TranscriptionError",
    "GenerationError",
    "SynthesisError",
    "TransportError",
    "StoreUnavailable",
    "OrchestrationError",
]
