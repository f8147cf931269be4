"""Finite State Machine (FSM) for call turn-taking."""
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Union

from ..logging_config import setup_logger

logger = setup_logger("talkloop.fsm")


class State(Enum):
    """Call states."""
    IDLE = "idle"
    LISTENING = "listening"
    RESPONDING = "responding"
    ENDED = "ended"


class Event(Enum):
    """Turn events."""
    CALL_STARTED = "call_started"
    REPLY_STARTED = "reply_started"
    REPLY_COMPLETE = "reply_complete"
    INTERRUPTED = "interrupted"
    TURN_FAILED = "turn_failed"
    CALL_ENDED = "call_ended"


@dataclass
class FSMTransition:
    """FSM transition definition."""
    from_state: State
    event: Event
    to_state: State


StateListener = Callable[[State, State, Event], Union[None, Awaitable[None]]]


class FiniteStateMachine:
    """Finite State Machine for one call's turn-taking."""

    def __init__(self, initial_state: State = State.IDLE):
        self.current_state = initial_state
        self._transitions: List[FSMTransition] = []
        self._listeners: List[StateListener] = []

    def add_transition(
        self,
        from_state: State,
        event: Event,
        to_state: State
    ) -> None:
        """Add a state transition."""
        self._transitions.append(FSMTransition(from_state=from_state, event=event, to_state=to_state))

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(old, new, event)`` after every state change.

        Listeners may be plain functions or coroutine functions.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def transition(self, event: Event) -> bool:
        """Process an event and transition state."""
        for transition in self._transitions:
            if (
                transition.from_state == self.current_state
                and transition.event == event
            ):
                old_state = self.current_state
                new_state = transition.to_state

                self.current_state = new_state
                logger.info(f"FSM: {old_state.value} -> {new_state.value} via {event.value}")

                if new_state != old_state:
                    for listener in list(self._listeners):
                        try:
                            result = listener(old_state, new_state, event)
                            if inspect.isawaitable(result):
                                await result
                        except Exception as e:
                            logger.exception(f"State listener error: {e}")

                return True

        logger.warning(f"No valid transition: {event.value} from {self.current_state.value}")
        return False


def create_turn_fsm() -> FiniteStateMachine:
    """Create the turn-taking FSM for a call.

    IDLE -> LISTENING -> RESPONDING -> LISTENING ... -> ENDED, where a reply
    ends by completing, being interrupted or failing. ENDED is terminal.
    """
    fsm = FiniteStateMachine(initial_state=State.IDLE)

    # IDLE -> LISTENING: Call connected
    fsm.add_transition(State.IDLE, Event.CALL_STARTED, State.LISTENING)

    # LISTENING -> RESPONDING: Reply begins (greeting or turn)
    fsm.add_transition(State.LISTENING, Event.REPLY_STARTED, State.RESPONDING)

    # RESPONDING -> LISTENING: Reply finished, barged in on, or failed
    fsm.add_transition(State.RESPONDING, Event.REPLY_COMPLETE, State.LISTENING)
    fsm.add_transition(State.RESPONDING, Event.INTERRUPTED, State.LISTENING)
    fsm.add_transition(State.RESPONDING, Event.TURN_FAILED, State.LISTENING)

    # LISTENING -> LISTENING: Turn failed after the caller already barged in
    fsm.add_transition(State.LISTENING, Event.TURN_FAILED, State.LISTENING)

    # Any live state -> ENDED: Call torn down
    for state in (State.IDLE, State.LISTENING, State.RESPONDING):
        fsm.add_transition(state, Event.CALL_ENDED, State.ENDED)

    return fsm
