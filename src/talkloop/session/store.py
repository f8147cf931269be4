"""Conversation session store with an in-process fallback cache.

Contexts are written through an in-process cache to a TTL'd key/value
backend. The first backend failure switches the store into fallback mode
for the rest of the process lifetime: every later call is answered from
the cache without touching the backend again, so a store outage costs one
failed round trip instead of one per call.
"""
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..logging_config import setup_logger
from .backend import SessionBackend
from .models import (
    DEFAULT_SYSTEM_PROMPT,
    MAX_HISTORY_MESSAGES,
    CallMetadata,
    ConversationContext,
    Message,
    Role,
)

logger = setup_logger("talkloop.session_store")


class SessionStore:
    """Stores one ``ConversationContext`` per call, keyed by call id.

    Usage:
        store = SessionStore(create_session_backend())
        await store.create_session("call-1", prompt, {"caller_id": "+1555"})
        await store.add_message("call-1", Role.USER, "Hi there")
        context = await store.end_session("call-1")
    """

    def __init__(
        self,
        backend: SessionBackend,
        ttl_seconds: int = 3600,
        key_prefix: str = "conversation",
        max_messages: int = MAX_HISTORY_MESSAGES
    ):
        self._backend = backend
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix
        self.max_messages = max_messages

        self._cache: Dict[str, ConversationContext] = {}
        self._touched: Dict[str, float] = {}
        self._fallback_mode = False

    @property
    def in_fallback_mode(self) -> bool:
        """Whether the backend has been abandoned for this process."""
        return self._fallback_mode

    def _key(self, call_id: str) -> str:
        return f"{self.key_prefix}:{call_id}"

    def _enter_fallback(self, operation: str, error: Exception) -> None:
        if not self._fallback_mode:
            logger.warning(
                f"Session backend {operation} failed, switching to in-memory cache: {error}"
            )
        self._fallback_mode = True

    def _remember(self, call_id: str, context: ConversationContext) -> None:
        self._cache[call_id] = context.model_copy(deep=True)
        self._touched[call_id] = time.monotonic()

    def _cached(self, call_id: str) -> Optional[ConversationContext]:
        context = self._cache.get(call_id)
        return context.model_copy(deep=True) if context is not None else None

    def _forget(self, call_id: str) -> None:
        self._cache.pop(call_id, None)
        self._touched.pop(call_id, None)

    async def create_session(
        self,
        call_id: str,
        system_prompt: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ConversationContext:
        """Initialize and persist a new conversation context."""
        context = ConversationContext(
            call_id=call_id,
            system_prompt=system_prompt,
            metadata=CallMetadata(**(metadata or {})),
        )
        await self.save_context(call_id, context)
        logger.info(f"Created conversation session: {call_id}")
        return context

    async def get_context(self, call_id: str) -> Optional[ConversationContext]:
        """Get the context for a call, or None if there is none."""
        if self._fallback_mode:
            return self._cached(call_id)

        try:
            data = await self._backend.get(self._key(call_id))
        except Exception as e:
            self._enter_fallback("read", e)
            return self._cached(call_id)

        if not data:
            return self._cached(call_id)

        try:
            return ConversationContext.model_validate_json(data)
        except ValidationError as e:
            logger.error(f"Unreadable session payload for {call_id}, using cached copy: {e}")
            return self._cached(call_id)

    async def save_context(self, call_id: str, context: ConversationContext) -> None:
        """Save a context to the cache, then to the backend when available."""
        payload = context.model_dump_json()
        self._remember(call_id, context)

        if self._fallback_mode:
            return

        try:
            await self._backend.set(self._key(call_id), payload, self.ttl_seconds)
        except Exception as e:
            self._enter_fallback("write", e)

    async def add_message(self, call_id: str, role: Role, content: str) -> ConversationContext:
        """Append a message to a call's history.

        A missing context is recreated on the fly with the default system
        prompt so a lost session never blocks the conversation.
        """
        context = await self.get_context(call_id)

        if context is None:
            logger.warning(f"No conversation context found for {call_id}, creating new context")
            context = ConversationContext(call_id=call_id, system_prompt=DEFAULT_SYSTEM_PROMPT)

        context.add_message(role, content, max_messages=self.max_messages)
        await self.save_context(call_id, context)
        return context

    async def get_history(self, call_id: str) -> List[Message]:
        """Get a call's message history."""
        context = await self.get_context(call_id)
        return list(context.messages) if context else []

    async def update_metadata(self, call_id: str, **fields: Any) -> None:
        """Merge fields into a call's metadata."""
        context = await self.get_context(call_id)

        if context is None:
            logger.error(f"No conversation context found for {call_id}")
            return

        merged = {**context.metadata.model_dump(), **fields}
        context.metadata = CallMetadata(**merged)
        await self.save_context(call_id, context)

    async def end_session(self, call_id: str) -> Optional[ConversationContext]:
        """Remove a call's context and return its final state."""
        context = await self.get_context(call_id)
        self._forget(call_id)

        if not self._fallback_mode:
            try:
                await self._backend.delete(self._key(call_id))
            except Exception as e:
                self._enter_fallback("delete", e)

        if context is not None:
            logger.info(f"Ended conversation session: {call_id}")
        return context

    async def get_active_sessions_count(self) -> int:
        """Count stored sessions."""
        if self._fallback_mode:
            return len(self._cache)

        try:
            keys = await self._backend.keys(f"{self.key_prefix}:*")
        except Exception as e:
            self._enter_fallback("keys", e)
            return len(self._cache)
        return len(keys)

    async def cleanup(self) -> int:
        """Evict cache entries idle for longer than the TTL.

        Backend entries expire through the TTL on their own; this only
        bounds the in-process cache.
        """
        cutoff = time.monotonic() - self.ttl_seconds
        stale = [call_id for call_id, touched in self._touched.items() if touched < cutoff]
        for call_id in stale:
            self._forget(call_id)

        logger.info(f"Conversation cleanup completed, evicted {len(stale)} cached sessions")
        return len(stale)

    async def close(self) -> None:
        """Close the backend."""
        await self._backend.close()
