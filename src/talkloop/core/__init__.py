"""Core module (turn orchestrator, events, call registry)."""
from .events import EventBus, OrchestratorEvent
from .orchestrator import OrchestratorConfig, TurnOrchestrator, create_orchestrator
from .registry import CallRegistry

__all__ = [
    "EventBus",
    "OrchestratorEvent",
    "OrchestratorConfig",
    "TurnOrchestrator",
    "create_orchestrator",
    "CallRegistry",
]
