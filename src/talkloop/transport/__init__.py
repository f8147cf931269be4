"""Transport layer contracts.

The WebSocket implementation lives in ``talkloop.transport.websocket``.
"""
from .sinks import (
    BroadcastSink,
    LoggingPersistenceHook,
    PersistenceHook,
    Speaker,
    TranscriptEvent,
    TransportSink,
)

__all__ = [
    "TransportSink",
    "BroadcastSink",
    "PersistenceHook",
    "LoggingPersistenceHook",
    "Speaker",
    "TranscriptEvent",
]
