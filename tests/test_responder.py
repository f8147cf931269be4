"""Tests for cognition.responder."""
from typing import AsyncIterator, List

import pytest

from talkloop.cognition.responder import (
    BaseResponder,
    OpenAIResponder,
    build_system_prompt,
    check_reply_length,
)
from talkloop.session.models import ConversationContext, Role


class ListResponder(BaseResponder):
    """Responder that streams a fixed token list."""

    def __init__(self, tokens: List[str]):
        self.tokens = tokens

    async def generate(self, context: ConversationContext, utterance: str) -> str:
        return "".join(self.tokens)

    async def stream(self, context: ConversationContext, utterance: str) -> AsyncIterator[str]:
        for token in self.tokens:
            yield token


class TestGenerateStreaming:
    """Test BaseResponder.generate_streaming."""

    @pytest.mark.asyncio
    async def test_sync_callback(self):
        responder = ListResponder(["Hel", "lo", "."])
        chunks = []

        reply = await responder.generate_streaming(ConversationContext(call_id="c"), "hi", chunks.append)

        assert reply == "Hello."
        assert chunks == ["Hel", "lo", "."]

    @pytest.mark.asyncio
    async def test_async_callback(self):
        responder = ListResponder(["a", "b"])
        chunks = []

        async def on_chunk(chunk):
            chunks.append(chunk)

        reply = await responder.generate_streaming(ConversationContext(call_id="c"), "hi", on_chunk)

        assert reply == "ab"
        assert chunks == ["a", "b"]


class TestOpenAIResponder:
    """Test request construction for OpenAIResponder."""

    def test_build_messages_uses_history_window(self):
        responder = OpenAIResponder(api_key="k", history_window=10)
        context = ConversationContext(call_id="c", system_prompt="Be brief.")
        for i in range(14):
            context.add_message(Role.USER if i % 2 == 0 else Role.ASSISTANT, f"m{i}")

        messages = responder.build_messages(context, "latest")

        assert messages[0] == {"role": "system", "content": "Be brief."}
        assert [m["content"] for m in messages[1:-1]] == [f"m{i}" for i in range(4, 14)]
        assert messages[-1] == {"role": "user", "content": "latest"}
        assert len(messages) == 12

    def test_payload_defaults(self):
        responder = OpenAIResponder(api_key="k")
        payload = responder._payload(ConversationContext(call_id="c"), "hi", stream=True)

        assert payload["model"] == "gpt-4-turbo-preview"
        assert payload["max_tokens"] == 150
        assert payload["temperature"] == 0.7
        assert payload["stream"] is True


class TestPrompts:
    """Test prompt helpers."""

    def test_system_prompt_mentions_purpose(self):
        prompt = build_system_prompt("billing questions")
        assert "Purpose: billing questions" in prompt
        assert prompt.startswith("You are a helpful AI assistant speaking with a customer over the phone.")

    def test_check_reply_length(self):
        assert check_reply_length("One. Two. Three.") is True
        assert check_reply_length("One. Two. Three. Four.") is False
