"""Orchestration layer modules (turn state machine)."""
from .fsm import Event, FiniteStateMachine, State, create_turn_fsm

__all__ = [
    "FiniteStateMachine",
    "State",
    "Event",
    "create_turn_fsm",
]
