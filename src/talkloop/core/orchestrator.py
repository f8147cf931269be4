"""Turn orchestrator - runs one call's conversation loop.

Coordinates:
- Transcriber (caller audio in, interim/final/speech-start events out)
- Responder (token-streamed or whole replies)
- Sentence divider (cuts the token stream into speakable sentences)
- Synthesizer + NoiseMixer (sentence audio, blended with ambience)
- SessionStore (conversation history)
- Transport / broadcast / persistence sinks

Every reply gets a turn id. Barge-in bumps the id before any await, so
chunks, queued sentences and synthesized audio that belong to an older id
are ignored wherever they surface.
"""
import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set, Tuple

from ..audio.noise_mixer import NoiseMixer
from ..cognition.responder import BaseResponder, build_system_prompt
from ..cognition.sentence_divider import SentenceDivider
from ..cognition.streaming_types import SentenceOutput
from ..cognition.synthesizer import BaseSynthesizer
from ..config import DEFAULT_GREETING, FALLBACK_UTTERANCE
from ..exceptions import GenerationError, OrchestrationError, TranscriptionError, TransportError
from ..logging_config import setup_logger
from ..orchestration.fsm import Event, State, create_turn_fsm
from ..perception.transcriber import (
    AudioFormat,
    BaseTranscriber,
    TranscriptionEvent,
    TranscriptionEventKind,
)
from ..session.models import CallSummary, CallType, ConversationContext, Role
from ..session.store import SessionStore
from ..transport.sinks import BroadcastSink, PersistenceHook, Speaker, TranscriptEvent, TransportSink
from .events import EventBus, EventHandler, OrchestratorEvent
from .registry import CallRegistry

logger = setup_logger("talkloop.orchestrator")

# (turn id, sentence to speak or None for the end of the reply, event that ends the reply)
SpeechItem = Tuple[int, Optional[SentenceOutput], Event]


@dataclass
class OrchestratorConfig:
    """Per-call configuration for the orchestrator."""
    call_type: CallType = CallType.BROWSER
    audio_format: Optional[AudioFormat] = None
    system_prompt: Optional[str] = None
    greeting: str = DEFAULT_GREETING
    fallback_utterance: str = FALLBACK_UTTERANCE
    streaming: bool = True
    caller_id: Optional[str] = None
    purpose: str = "customer support"


class TurnOrchestrator:
    """Orchestrates the turns of a single call.

    Usage:
        orchestrator = TurnOrchestrator(call_id, store, transcriber, responder, synthesizer)
        await orchestrator.start()
        await orchestrator.process_audio(frame)
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        call_id: str,
        store: SessionStore,
        transcriber: BaseTranscriber,
        responder: BaseResponder,
        synthesizer: BaseSynthesizer,
        noise_mixer: Optional[NoiseMixer] = None,
        transport: Optional[TransportSink] = None,
        broadcast: Optional[BroadcastSink] = None,
        persistence: Optional[PersistenceHook] = None,
        registry: Optional[CallRegistry] = None,
        config: Optional[OrchestratorConfig] = None
    ):
        self.call_id = call_id
        self.store = store
        self.transcriber = transcriber
        self.responder = responder
        self.synthesizer = synthesizer
        self.transport = transport
        self.broadcast = broadcast
        self.persistence = persistence
        self.registry = registry
        self.config = config or OrchestratorConfig()

        self._noise_mixer = noise_mixer or NoiseMixer()
        self._audio_format = self.config.audio_format or AudioFormat.for_call_type(self.config.call_type)
        self.system_prompt = self.config.system_prompt or build_system_prompt(self.config.purpose)

        self.fsm = create_turn_fsm()
        self.fsm.add_listener(self._on_state_change)
        self._events = EventBus()
        self._divider = SentenceDivider()

        # Turn state
        self._is_active = False
        self._is_responding = False
        self._turn_id = 0
        self._turn_lock = asyncio.Lock()
        self._reply_idle = asyncio.Event()
        self._reply_idle.set()
        self._speech_queue: asyncio.Queue = asyncio.Queue()

        # Tasks
        self._consumer_task: Optional[asyncio.Task] = None
        self._speaker_task: Optional[asyncio.Task] = None
        self._turn_tasks: Set[asyncio.Task] = set()

        self._started = False
        self._stopped = False
        self._start_time: Optional[float] = None

    # Accessors
    @property
    def state(self) -> State:
        return self.fsm.current_state

    @property
    def is_active(self) -> bool:
        return self._is_active

    @property
    def is_responding(self) -> bool:
        return self._is_responding

    @property
    def audio_format(self) -> AudioFormat:
        return self._audio_format

    @property
    def noise_mixer(self) -> NoiseMixer:
        return self._noise_mixer

    def add_listener(self, event: OrchestratorEvent, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to an orchestrator event; returns the unsubscribe function."""
        return self._events.subscribe(event, handler)

    # Lifecycle
    async def start(self, greeting: Optional[str] = None) -> None:
        """Open the call and speak the greeting.

        Returns once the greeting has been played or interrupted, or as soon
        as ``stop()`` lands while the call is still starting.

        Raises:
            TranscriptionError: If the transcription stream cannot be opened
            OrchestrationError: If the call was already stopped
        """
        if self._stopped:
            raise OrchestrationError(f"Call {self.call_id} was stopped and cannot be restarted")
        if self._started:
            logger.warning(f"Call {self.call_id} already started")
            return
        self._started = True
        self._start_time = time.monotonic()

        logger.info(f"Starting call {self.call_id} ({self._audio_format.encoding}@{self._audio_format.sample_rate})")

        metadata = {
            "caller_id": self.config.caller_id,
            "purpose": self.config.purpose,
            "call_type": self.config.call_type,
        }
        try:
            await self.store.create_session(self.call_id, self.system_prompt, metadata)
        except Exception as e:
            logger.error(f"Failed to create session for {self.call_id}: {e}")
        if self._stopped:
            await self._abandon_start()
            return

        try:
            await self.transcriber.start_stream(self._audio_format)
        except TranscriptionError:
            raise
        except Exception as e:
            raise TranscriptionError(f"Failed to open transcription stream: {e}") from e
        if self._stopped:
            await self._abandon_start()
            return

        # Tasks exist before the next await so a concurrent stop() can cancel them
        self._is_active = True
        self._consumer_task = asyncio.create_task(self._consume_transcripts())
        self._speaker_task = asyncio.create_task(self._speech_worker())
        await self.fsm.transition(Event.CALL_STARTED)

        try:
            await self.synthesizer.connect()
        except Exception as e:
            logger.warning(f"Synthesizer warm-up failed, continuing: {e}")
        if self._stopped:
            await self._abandon_start()
            return

        if self.registry is not None:
            self.registry.register(self)

        text = greeting or self.config.greeting
        async with self._turn_lock:
            if self._stopped:
                return
            turn_id = await self._begin_reply()
            for sentence in self._divider.feed(text):
                await self._dispatch(turn_id, sentence)
            await self._complete_reply(turn_id)
            await self._record_assistant(text)

        if self._stopped:
            return
        await self._events.publish(OrchestratorEvent.STARTED, {"call_id": self.call_id})
        await self._reply_idle.wait()
        logger.info(f"Call {self.call_id} started")

    async def _abandon_start(self) -> None:
        """Release what start() opened after stop() had already run."""
        logger.info(f"Call {self.call_id} stopped while starting")
        self._is_active = False
        await self._cancel_tasks()
        await self._close_providers()

        try:
            await self.store.end_session(self.call_id)
        except Exception as e:
            logger.error(f"Error ending session for {self.call_id}: {e}")

    async def stop(self) -> None:
        """Tear the call down. Safe to call more than once; never raises."""
        if self._stopped:
            return
        self._stopped = True

        logger.info(f"Stopping call {self.call_id}")
        self._is_active = False
        self._is_responding = False
        self._turn_id += 1
        self._drain_queue()
        self._reply_idle.set()

        await self._close_providers()
        await self._cancel_tasks()

        try:
            await self.fsm.transition(Event.CALL_ENDED)
        except Exception as e:
            logger.error(f"Error ending state machine for {self.call_id}: {e}")

        await self._save_summary()

        await self._events.publish(OrchestratorEvent.STOPPED, {"call_id": self.call_id})
        self._events.clear()

        if self.registry is not None:
            self.registry.unregister(self.call_id)

        logger.info(f"Call {self.call_id} stopped")

    async def _close_providers(self) -> None:
        providers = (
            ("transcriber", self.transcriber),
            ("responder", self.responder),
            ("synthesizer", self.synthesizer),
        )
        for name, provider in providers:
            try:
                await provider.close()
            except Exception as e:
                logger.error(f"Error closing {name} for {self.call_id}: {e}")

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task for task in (self._consumer_task, self._speaker_task, *self._turn_tasks)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _save_summary(self) -> None:
        try:
            context = await self.store.end_session(self.call_id)
        except Exception as e:
            logger.error(f"Error ending session for {self.call_id}: {e}")
            context = None

        duration_ms = 0
        if self._start_time is not None:
            duration_ms = int((time.monotonic() - self._start_time) * 1000)

        last = context.last_message if context else None
        summary = CallSummary(
            call_id=self.call_id,
            message_count=len(context.messages) if context else 0,
            duration_ms=duration_ms,
            last_message=last.content if last else None,
        )

        if self.persistence is None:
            return
        try:
            await self.persistence.save_summary(summary)
        except Exception as e:
            logger.error(f"Failed to save call summary for {self.call_id}: {e}")

    async def wait_for_reply(self) -> None:
        """Wait until pending turns have run and the current reply has been spoken."""
        while True:
            pending = [task for task in self._turn_tasks if not task.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self._reply_idle.wait()
            if not any(not task.done() for task in self._turn_tasks):
                return

    # Audio in
    async def process_audio(self, audio: bytes) -> None:
        """Forward a frame of caller audio; dropped while the call is inactive."""
        if not self._is_active:
            return
        try:
            await self.transcriber.send_audio(audio)
        except (TranscriptionError, TransportError) as e:
            logger.warning(f"Dropped audio frame for {self.call_id}: {e}")

    # Transcript events
    async def _consume_transcripts(self) -> None:
        try:
            async for event in self.transcriber.events():
                await self.handle_transcription_event(event)
                if event.kind == TranscriptionEventKind.CLOSE:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Transcript consumer for {self.call_id} failed: {e}")

    async def handle_transcription_event(self, event: TranscriptionEvent) -> Optional[asyncio.Task]:
        """React to one transcription event.

        Final transcripts start a turn task, which is returned.
        """
        kind = TranscriptionEventKind(event.kind)

        if kind == TranscriptionEventKind.SPEECH_START:
            await self._handle_speech_start()
        elif kind == TranscriptionEventKind.INTERIM:
            if event.text.strip():
                await self._broadcast(Speaker.HUMAN, event.text, event.confidence, is_final=False)
        elif kind == TranscriptionEventKind.FINAL:
            text = event.text.strip()
            if text and self._is_active:
                logger.info(f"Final transcript for {self.call_id}: {text}")
                task = asyncio.create_task(self._run_turn(text, event.confidence))
                self._turn_tasks.add(task)
                task.add_done_callback(self._turn_tasks.discard)
                return task
        elif kind == TranscriptionEventKind.ERROR:
            logger.error(f"Transcription error for {self.call_id}: {event.error}")
            await self._events.publish(
                OrchestratorEvent.ERROR, {"call_id": self.call_id, "error": str(event.error)}
            )
        elif kind == TranscriptionEventKind.CLOSE:
            logger.info(f"Transcription stream closed for {self.call_id}")

        return None

    async def _handle_speech_start(self) -> None:
        """Barge-in: abandon the reply in flight."""
        if not self._is_responding:
            return

        self._is_responding = False
        self._turn_id += 1
        self._divider.reset()
        self._drain_queue()
        self._reply_idle.set()

        logger.info(f"Caller interrupted reply on {self.call_id}")
        await self.fsm.transition(Event.INTERRUPTED)
        await self._events.publish(OrchestratorEvent.INTERRUPTED, {"call_id": self.call_id})

        if self.transport is not None:
            try:
                await self.transport.interrupt()
            except TransportError as e:
                logger.warning(f"Failed to signal interruption on {self.call_id}: {e}")

    # Turns
    async def _run_turn(self, utterance: str, confidence: float) -> None:
        try:
            async with self._turn_lock:
                if not self._is_active:
                    return
                await self._respond(utterance, confidence)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Turn failed unexpectedly on {self.call_id}: {e}")

    async def _respond(self, utterance: str, confidence: float) -> None:
        await self._broadcast(Speaker.HUMAN, utterance, confidence, is_final=True)

        # History as it was before this utterance; the responder appends it itself
        context = await self.store.get_context(self.call_id)
        if context is None:
            context = ConversationContext(call_id=self.call_id, system_prompt=self.system_prompt)
        await self.store.add_message(self.call_id, Role.USER, utterance)

        turn_id = await self._begin_reply()

        async def on_chunk(chunk: str) -> None:
            if turn_id != self._turn_id:
                return
            for sentence in self._divider.feed(chunk):
                await self._dispatch(turn_id, sentence)

        try:
            if self.config.streaming:
                reply = await self.responder.generate_streaming(context, utterance, on_chunk)
            else:
                reply = await self.responder.generate(context, utterance)
                await on_chunk(reply)

            if not reply or not reply.strip():
                raise GenerationError("Responder returned an empty reply")
        except Exception as e:
            await self._recover_turn(turn_id, e)
            await self._record_assistant(self.config.fallback_utterance)
            return

        await self._complete_reply(turn_id)
        await self._record_assistant(reply.strip())

    async def _begin_reply(self) -> int:
        self._turn_id += 1
        self._divider.reset()
        self._is_responding = True
        self._reply_idle.clear()
        await self.fsm.transition(Event.REPLY_STARTED)
        return self._turn_id

    async def _complete_reply(self, turn_id: int) -> None:
        """Flush the divider and queue the end-of-reply marker."""
        if turn_id != self._turn_id:
            return
        tail = self._divider.flush()
        if tail is not None:
            await self._dispatch(turn_id, tail)
        self._speech_queue.put_nowait((turn_id, None, Event.REPLY_COMPLETE))

    async def _end_reply(self, turn_id: int, event: Event) -> None:
        if turn_id != self._turn_id or not self._is_responding:
            return
        self._is_responding = False
        self._reply_idle.set()
        await self.fsm.transition(event)
        if event == Event.REPLY_COMPLETE:
            await self._events.publish(OrchestratorEvent.SPEECH_COMPLETE, {"call_id": self.call_id})

    async def _recover_turn(self, turn_id: int, error: Exception) -> None:
        """Replace a failed reply with the fallback utterance."""
        logger.error(f"Turn failed on {self.call_id}: {error}")
        await self._events.publish(
            OrchestratorEvent.ERROR, {"call_id": self.call_id, "error": str(error)}
        )

        if turn_id != self._turn_id or not self._is_responding:
            logger.info(f"Caller already barged in on {self.call_id}, skipping fallback")
            return

        self._turn_id += 1
        self._divider.reset()
        self._drain_queue()

        fallback_turn = self._turn_id
        sentence = SentenceOutput(
            sequence_number=0,
            text=self.config.fallback_utterance,
            is_first=True,
            is_final=True,
            metadata={"fallback": True},
        )
        await self._dispatch(fallback_turn, sentence)
        self._speech_queue.put_nowait((fallback_turn, None, Event.TURN_FAILED))

    async def _record_assistant(self, text: str) -> None:
        if not self._is_active:
            return
        await self.store.add_message(self.call_id, Role.ASSISTANT, text)
        await self._broadcast(Speaker.AI, text, 1.0, is_final=True)

    # Speech out
    async def _dispatch(self, turn_id: int, sentence: SentenceOutput) -> None:
        """Queue a sentence for synthesis and show it live."""
        self._speech_queue.put_nowait((turn_id, sentence, Event.REPLY_COMPLETE))
        if self.transport is not None:
            try:
                await self.transport.speak_text(sentence.text)
            except TransportError as e:
                logger.warning(f"Failed to send sentence text on {self.call_id}: {e}")

    def _drain_queue(self) -> None:
        while True:
            try:
                self._speech_queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    async def _speech_worker(self) -> None:
        """Synthesize queued sentences in order."""
        while True:
            turn_id, sentence, end_event = await self._speech_queue.get()
            if turn_id != self._turn_id:
                continue

            if sentence is None:
                await self._end_reply(turn_id, end_event)
                continue

            try:
                await self._speak(turn_id, sentence)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if sentence.metadata.get("fallback"):
                    logger.error(f"Fallback synthesis failed on {self.call_id}: {e}")
                    await self._events.publish(
                        OrchestratorEvent.ERROR, {"call_id": self.call_id, "error": str(e)}
                    )
                    await self._end_reply(turn_id, Event.TURN_FAILED)
                else:
                    await self._recover_turn(turn_id, e)

    async def _speak(self, turn_id: int, sentence: SentenceOutput) -> None:
        logger.debug(f"Synthesizing sentence {sentence.sequence_number} for {self.call_id}")
        async with aclosing(self.synthesizer.stream_synthesize(sentence.effective_text)) as stream:
            async for result in stream:
                if turn_id != self._turn_id:
                    logger.debug(f"Dropping stale synthesis on {self.call_id}")
                    break
                if not result.audio:
                    continue
                audio = self._noise_mixer.mix_audio(result.audio)
                if self.transport is None:
                    continue
                try:
                    await self.transport.send_audio(audio)
                except TransportError as e:
                    logger.warning(f"Failed to send audio on {self.call_id}: {e}")

    # Sinks
    async def _broadcast(self, speaker: Speaker, text: str, confidence: float, is_final: bool) -> None:
        if self.broadcast is None:
            return
        event = TranscriptEvent(speaker=speaker, text=text, confidence=confidence, is_final=is_final)
        try:
            await self.broadcast.publish(event)
        except Exception as e:
            logger.warning(f"Transcript broadcast failed on {self.call_id}: {e}")

    async def _on_state_change(self, old: State, new: State, event: Event) -> None:
        if self.transport is None:
            return
        try:
            await self.transport.send_state(new.value)
        except TransportError as e:
            logger.warning(f"Failed to send state on {self.call_id}: {e}")


def create_orchestrator(
    call_id: str,
    store: SessionStore,
    transport: Optional[TransportSink] = None,
    broadcast: Optional[BroadcastSink] = None,
    persistence: Optional[PersistenceHook] = None,
    registry: Optional[CallRegistry] = None,
    config: Optional[OrchestratorConfig] = None,
    noise_mixer: Optional[NoiseMixer] = None,
    transcriber: Optional[BaseTranscriber] = None,
    responder: Optional[BaseResponder] = None,
    synthesizer: Optional[BaseSynthesizer] = None
) -> TurnOrchestrator:
    """Factory function to create an orchestrator wired to the configured providers."""
    from ..cognition.responder import create_responder
    from ..cognition.synthesizer import create_synthesizer
    from ..perception.transcriber import create_transcriber

    return TurnOrchestrator(
        call_id=call_id,
        store=store,
        transcriber=transcriber or create_transcriber(),
        responder=responder or create_responder(),
        synthesizer=synthesizer or create_synthesizer(),
        noise_mixer=noise_mixer,
        transport=transport,
        broadcast=broadcast,
        persistence=persistence,
        registry=registry,
        config=config,
    )
