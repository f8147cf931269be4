"""Per-call event bus for orchestrator lifecycle events.

A small publish-subscribe hub: listeners subscribe to an
``OrchestratorEvent`` and receive the payload the orchestrator publishes
with it. A failing listener is logged and never stops the others.
"""
import inspect
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

from ..logging_config import setup_logger

logger = setup_logger("talkloop.events")


class OrchestratorEvent(str, Enum):
    """Events an orchestrator publishes."""
    STARTED = "started"
    INTERRUPTED = "interrupted"
    SPEECH_COMPLETE = "speech_complete"
    ERROR = "error"
    STOPPED = "stopped"


EventHandler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """Routes orchestrator events to listeners.

    Example:
        bus = EventBus()
        unsubscribe = bus.subscribe(OrchestratorEvent.INTERRUPTED, on_interrupt)
        await bus.publish(OrchestratorEvent.INTERRUPTED, {"call_id": "c1"})
        unsubscribe()
    """

    def __init__(self):
        self._handlers: Dict[OrchestratorEvent, List[EventHandler]] = defaultdict(list)
        self._metrics: Dict[str, int] = defaultdict(int)

    def subscribe(self, event: OrchestratorEvent, handler: EventHandler) -> Callable[[], None]:
        """Subscribe a handler to an event.

        Args:
            event: The event to subscribe to
            handler: Sync or async function receiving the payload

        Returns:
            Unsubscribe function that removes the handler when called
        """
        self._handlers[event].append(handler)
        logger.debug(f"Subscribed handler to {event.value}")

        def unsubscribe() -> None:
            if handler in self._handlers[event]:
                self._handlers[event].remove(handler)
                logger.debug(f"Unsubscribed handler from {event.value}")

        return unsubscribe

    async def publish(self, event: OrchestratorEvent, payload: Any = None) -> None:
        """Publish an event to all subscribed handlers."""
        self._metrics[f"published.{event.value}"] += 1

        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Handler error for {event.value}: {e}")
                self._metrics[f"errors.{event.value}"] += 1

    def clear(self) -> None:
        """Detach every handler."""
        self._handlers.clear()

    def handler_count(self, event: OrchestratorEvent) -> int:
        return len(self._handlers.get(event, []))

    def get_metrics(self) -> Dict[str, int]:
        """Get event counters."""
        return dict(self._metrics)
