"""Registry of live calls, owned by whoever serves them."""
import asyncio
from typing import TYPE_CHECKING, Dict, List, Optional

from ..logging_config import setup_logger

if TYPE_CHECKING:
    from .orchestrator import TurnOrchestrator

logger = setup_logger("talkloop.registry")


class CallRegistry:
    """Maps call ids to their orchestrators."""

    def __init__(self):
        self._calls: Dict[str, "TurnOrchestrator"] = {}

    def register(self, orchestrator: "TurnOrchestrator") -> None:
        if orchestrator.call_id in self._calls:
            logger.warning(f"Call {orchestrator.call_id} already registered, replacing")
        self._calls[orchestrator.call_id] = orchestrator
        logger.debug(f"Registered call {orchestrator.call_id} ({len(self._calls)} active)")

    def unregister(self, call_id: str) -> Optional["TurnOrchestrator"]:
        orchestrator = self._calls.pop(call_id, None)
        if orchestrator is not None:
            logger.debug(f"Unregistered call {call_id} ({len(self._calls)} active)")
        return orchestrator

    def get(self, call_id: str) -> Optional["TurnOrchestrator"]:
        return self._calls.get(call_id)

    def call_ids(self) -> List[str]:
        return list(self._calls)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    async def stop_all(self) -> None:
        """Stop every registered call."""
        orchestrators = list(self._calls.values())
        if orchestrators:
            logger.info(f"Stopping {len(orchestrators)} active calls")
        await asyncio.gather(*(o.stop() for o in orchestrators))
