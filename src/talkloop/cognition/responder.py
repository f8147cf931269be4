"""Reply generation using an OpenAI-compatible chat completions API."""
import asyncio
import inspect
import json
import re
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp

from ..config import ResponderConfig, get_config
from ..exceptions import GenerationError
from ..logging_config import setup_logger
from ..session.models import ConversationContext

logger = setup_logger("talkloop.responder")

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]


def build_system_prompt(purpose: str = "general assistant") -> str:
    """Default system prompt for a phone agent."""
    return f"""You are a helpful AI assistant speaking with a customer over the phone.

Guidelines:
- Be concise and natural in your responses
- Speak in short sentences (1-2 sentences at a time)
- Use a friendly, professional tone
- Ask clarifying questions when needed
- If you don't know something, admit it honestly
- Listen carefully and respond appropriately
- Avoid long explanations unless specifically asked

Purpose: {purpose}

Remember: You are having a voice conversation, so keep responses brief and conversational."""


def check_reply_length(reply: str, max_sentences: int = 3) -> bool:
    """Warn when a reply is too long to speak comfortably."""
    sentences = [s for s in re.split(r"[.!?]+", reply) if s.strip()]
    if len(sentences) > max_sentences:
        logger.warning(f"Reply has {len(sentences)} sentences, consider breaking it up")
        return False
    return True


class BaseResponder(ABC):
    """Base class for reply generators."""

    @abstractmethod
    async def generate(self, context: ConversationContext, utterance: str) -> str:
        """Generate a whole reply to ``utterance``."""
        pass

    @abstractmethod
    def stream(self, context: ConversationContext, utterance: str) -> AsyncIterator[str]:
        """Stream reply tokens for ``utterance``."""
        pass

    async def generate_streaming(
        self,
        context: ConversationContext,
        utterance: str,
        on_chunk: ChunkCallback
    ) -> str:
        """Stream a reply, calling ``on_chunk`` per token, and return the full text.

        ``on_chunk`` may be a plain function or a coroutine function.
        """
        is_async = inspect.iscoroutinefunction(on_chunk)
        parts = []

        async for chunk in self.stream(context, utterance):
            parts.append(chunk)
            if is_async:
                await on_chunk(chunk)
            else:
                on_chunk(chunk)

        return "".join(parts)

    async def close(self) -> None:
        """Release resources."""
        pass


class OpenAIResponder(BaseResponder):
    """Chat completions responder over aiohttp."""

    def __init__(
        self,
        api_key: str,
        model_name: str = "gpt-4-turbo-preview",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.7,
        max_tokens: int = 150,
        history_window: int = 10
    ):
        self.api_key = api_key
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.history_window = history_window
        self._base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_messages(self, context: ConversationContext, utterance: str) -> List[Dict[str, str]]:
        """System prompt, the recent history window, then the new utterance."""
        messages = [{"role": "system", "content": context.system_prompt}]
        recent = context.messages[-self.history_window:] if self.history_window > 0 else []
        messages.extend({"role": m.role, "content": m.content} for m in recent)
        messages.append({"role": "user", "content": utterance})
        return messages

    def _payload(self, context: ConversationContext, utterance: str, stream: bool) -> dict:
        payload = {
            "model": self.model_name,
            "messages": self.build_messages(context, utterance),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if stream:
            payload["stream"] = True
        return payload

    async def generate(self, context: ConversationContext, utterance: str) -> str:
        """Send a chat request and return the reply text."""
        url = f"{self._base_url}/chat/completions"

        try:
            session = await self._get_session()
            async with session.post(
                url, json=self._payload(context, utterance, stream=False), headers=self._headers()
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Chat API error: {response.status} - {error_text}")
                    raise GenerationError(f"Chat API error: {response.status}")

                result = await response.json()

        except GenerationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Chat request error: {e}")
            raise GenerationError(f"Chat request failed: {e}") from e

        choices = result.get("choices") or []
        if not choices:
            raise GenerationError("No choices in chat result")

        reply = (choices[0].get("message", {}).get("content") or "").strip()
        check_reply_length(reply)
        return reply

    async def stream(self, context: ConversationContext, utterance: str) -> AsyncIterator[str]:
        """Send a streaming chat request and yield content deltas."""
        url = f"{self._base_url}/chat/completions"

        try:
            session = await self._get_session()
            async with session.post(
                url, json=self._payload(context, utterance, stream=True), headers=self._headers()
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Chat stream error: {response.status} - {error_text}")
                    raise GenerationError(f"Chat stream error: {response.status}")

                async for line in response.content:
                    line = line.decode().strip()
                    if not line.startswith("data: "):
                        continue

                    data_str = line[6:]
                    if data_str == "[DONE]":
                        break

                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue

                    choices = data.get("choices") or []
                    if not choices:
                        continue
                    content = choices[0].get("delta", {}).get("content")
                    if content:
                        yield content

        except GenerationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Chat stream error: {e}")
            raise GenerationError(f"Chat stream failed: {e}") from e

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()


def create_responder(
    api_key: Optional[str] = None,
    config: Optional[ResponderConfig] = None
) -> OpenAIResponder:
    """Factory function to create a responder instance."""
    cfg = get_config()
    config = config or cfg.responder
    return OpenAIResponder(
        api_key=api_key if api_key is not None else cfg.api.openai_api_key,
        model_name=config.model_name,
        base_url=config.base_url,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        history_window=config.history_window,
    )
