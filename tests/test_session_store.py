"""Tests for session store, backends and models."""
from typing import List, Optional

import pytest

from talkloop.exceptions import StoreUnavailable
from talkloop.session.backend import InMemorySessionBackend, SessionBackend
from talkloop.session.models import (
    DEFAULT_SYSTEM_PROMPT,
    CallMetadata,
    CallType,
    ConversationContext,
    Role,
)
from talkloop.session.store import SessionStore


class FlakyBackend(SessionBackend):
    """Backend that works until ``fail`` is set, counting every call."""

    def __init__(self):
        self.inner = InMemorySessionBackend()
        self.fail = False
        self.calls = 0

    async def _guard(self) -> None:
        self.calls += 1
        if self.fail:
            raise StoreUnavailable("backend down")

    async def get(self, key: str) -> Optional[str]:
        await self._guard()
        return await self.inner.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._guard()
        await self.inner.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._guard()
        await self.inner.delete(key)

    async def keys(self, pattern: str) -> List[str]:
        await self._guard()
        return await self.inner.keys(pattern)


class TestConversationContext:
    """Test ConversationContext model."""

    def test_add_message_caps_history(self):
        context = ConversationContext(call_id="c1")
        for i in range(25):
            context.add_message(Role.USER, f"m{i}")

        assert len(context.messages) == 20
        assert context.messages[0].content == "m5"
        assert context.last_message.content == "m24"

    def test_round_trip_keeps_extra_metadata(self):
        context = ConversationContext(
            call_id="c1",
            system_prompt="Be brief.",
            metadata=CallMetadata(caller_id="+1555", call_type=CallType.PHONE, campaign="spring"),
        )
        context.add_message(Role.ASSISTANT, "Hello")

        restored = ConversationContext.model_validate_json(context.model_dump_json())

        assert restored.metadata.caller_id == "+1555"
        assert restored.metadata.call_type == "phone"
        assert restored.metadata.model_extra["campaign"] == "spring"
        assert restored.messages[0].role == "assistant"
        assert restored.metadata.start_time == context.metadata.start_time


class TestInMemorySessionBackend:
    """Test InMemorySessionBackend."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self):
        backend = InMemorySessionBackend()
        await backend.set("conversation:a", "x", ttl_seconds=60)
        assert await backend.get("conversation:a") == "x"
        await backend.delete("conversation:a")
        assert await backend.get("conversation:a") is None

    @pytest.mark.asyncio
    async def test_keys_pattern(self):
        backend = InMemorySessionBackend()
        await backend.set("conversation:a", "1")
        await backend.set("conversation:b", "2")
        await backend.set("other:c", "3")
        assert sorted(await backend.keys("conversation:*")) == ["conversation:a", "conversation:b"]

    @pytest.mark.asyncio
    async def test_expiry(self):
        backend = InMemorySessionBackend()
        await backend.set("k", "v", ttl_seconds=10)
        value, expires_at = backend._data["k"]
        backend._data["k"] = (value, expires_at - 11)

        assert await backend.get("k") is None
        assert await backend.keys("*") == []


class TestSessionStore:
    """Test SessionStore against a healthy backend."""

    @pytest.fixture
    def store(self):
        return SessionStore(InMemorySessionBackend())

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        await store.create_session("c1", "Prompt", {"caller_id": "+1555", "purpose": "support"})
        context = await store.get_context("c1")

        assert context.system_prompt == "Prompt"
        assert context.metadata.caller_id == "+1555"
        assert context.metadata.start_time is not None
        assert context.messages == []

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get_context("nope") is None

    @pytest.mark.asyncio
    async def test_add_message_persists(self, store):
        await store.create_session("c1", "Prompt")
        await store.add_message("c1", Role.USER, "Hi")
        await store.add_message("c1", Role.ASSISTANT, "Hello")

        history = await store.get_history("c1")
        assert [(m.role, m.content) for m in history] == [("user", "Hi"), ("assistant", "Hello")]

    @pytest.mark.asyncio
    async def test_add_message_without_session_creates_minimal_context(self, store):
        context = await store.add_message("ghost", Role.USER, "Hello?")

        assert context.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert len(context.messages) == 1
        assert (await store.get_context("ghost")).messages[0].content == "Hello?"

    @pytest.mark.asyncio
    async def test_message_cap(self, store):
        await store.create_session("c1", "Prompt")
        for i in range(30):
            await store.add_message("c1", Role.USER, str(i))

        history = await store.get_history("c1")
        assert len(history) == 20
        assert history[0].content == "10"

    @pytest.mark.asyncio
    async def test_update_metadata(self, store):
        await store.create_session("c1", "Prompt", {"caller_id": "+1"})
        await store.update_metadata("c1", purpose="sales", campaign="q3")

        metadata = (await store.get_context("c1")).metadata
        assert metadata.caller_id == "+1"
        assert metadata.purpose == "sales"
        assert metadata.model_extra["campaign"] == "q3"

    @pytest.mark.asyncio
    async def test_update_metadata_missing_is_noop(self, store):
        await store.update_metadata("nope", purpose="sales")
        assert await store.get_context("nope") is None

    @pytest.mark.asyncio
    async def test_end_session_returns_final_context(self, store):
        await store.create_session("c1", "Prompt")
        await store.add_message("c1", Role.USER, "Bye")

        final = await store.end_session("c1")

        assert final.messages[-1].content == "Bye"
        assert await store.get_context("c1") is None
        assert await store.get_active_sessions_count() == 0

    @pytest.mark.asyncio
    async def test_active_sessions_count(self, store):
        await store.create_session("c1", "P")
        await store.create_session("c2", "P")
        assert await store.get_active_sessions_count() == 2

    @pytest.mark.asyncio
    async def test_unreadable_payload_uses_cache(self, store):
        await store.create_session("c1", "Prompt")
        await store._backend.set("conversation:c1", "{not json", 60)

        context = await store.get_context("c1")

        assert context.system_prompt == "Prompt"
        assert store.in_fallback_mode is False

    @pytest.mark.asyncio
    async def test_cleanup_evicts_idle_cache_entries(self):
        store = SessionStore(InMemorySessionBackend(), ttl_seconds=60)
        await store.create_session("old", "P")
        await store.create_session("new", "P")
        store._touched["old"] -= 61

        assert await store.cleanup() == 1
        assert "old" not in store._cache
        assert "new" in store._cache

    @pytest.mark.asyncio
    async def test_returned_context_is_detached(self, store):
        await store.create_session("c1", "P")
        context = await store.get_context("c1")
        context.add_message(Role.USER, "not saved")
        assert await store.get_history("c1") == []

    @pytest.mark.asyncio
    async def test_created_context_does_not_alias_cache(self):
        backend = FlakyBackend()
        backend.fail = True
        store = SessionStore(backend)

        context = await store.create_session("c1", "P")
        context.add_message(Role.USER, "not saved")

        assert store.in_fallback_mode is True
        assert await store.get_history("c1") == []


class TestSessionStoreFallback:
    """Test degradation to the in-process cache."""

    @pytest.mark.asyncio
    async def test_backend_calls_plateau_after_first_failure(self):
        backend = FlakyBackend()
        store = SessionStore(backend)

        await store.create_session("c1", "Prompt")
        await store.add_message("c1", Role.USER, "before outage")

        backend.fail = True
        await store.add_message("c1", Role.ASSISTANT, "first during outage")
        assert store.in_fallback_mode is True
        calls_after_failure = backend.calls

        await store.add_message("c1", Role.USER, "second during outage")
        await store.get_context("c1")
        await store.save_context("c1", await store.get_context("c1"))
        await store.get_active_sessions_count()
        await store.end_session("other")

        assert backend.calls == calls_after_failure

    @pytest.mark.asyncio
    async def test_saves_before_failure_remain_readable(self):
        backend = FlakyBackend()
        store = SessionStore(backend)

        await store.create_session("c1", "Prompt")
        await store.add_message("c1", Role.USER, "kept")
        backend.fail = True

        context = await store.get_context("c1")

        assert context is not None
        assert [m.content for m in context.messages] == ["kept"]

    @pytest.mark.asyncio
    async def test_fallback_read_and_write(self):
        backend = FlakyBackend()
        backend.fail = True
        store = SessionStore(backend)

        await store.create_session("c1", "Prompt")
        await store.add_message("c1", Role.USER, "Hi")

        assert store.in_fallback_mode is True
        assert [m.content for m in await store.get_history("c1")] == ["Hi"]
        assert await store.get_active_sessions_count() == 1

        final = await store.end_session("c1")
        assert final.messages[0].content == "Hi"
        assert await store.get_context("c1") is None

    @pytest.mark.asyncio
    async def test_fallback_is_sticky(self):
        backend = FlakyBackend()
        store = SessionStore(backend)
        backend.fail = True
        await store.get_context("c1")

        backend.fail = False
        await store.create_session("c2", "Prompt")

        assert store.in_fallback_mode is True
        assert await backend.inner.get("conversation:c2") is None
