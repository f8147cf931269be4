"""WebSocket call server."""
import asyncio
import json
import uuid
from typing import Callable, Optional

import aiohttp
from aiohttp import web

from ..audio.noise_mixer import NoiseMixer, NoiseProfile, NoiseType
from ..config import Config, get_config
from ..core.events import OrchestratorEvent
from ..core.orchestrator import OrchestratorConfig, TurnOrchestrator, create_orchestrator
from ..core.registry import CallRegistry
from ..exceptions import TranscriptionError, TransportError
from ..logging_config import setup_logger
from ..messages import Hangup, NoiseUpdate, deserialize_message
from ..session.backend import create_session_backend
from ..session.models import CallType
from ..session.store import SessionStore
from ..transport.sinks import LoggingPersistenceHook, PersistenceHook
from ..transport.websocket import WebSocketTransport

logger = setup_logger("talkloop.web")

OrchestratorFactory = Callable[..., TurnOrchestrator]


class CallServer:
    """Serves one call per WebSocket connection.

    Owns the session store, the registry of live calls and the periodic
    session cleanup task.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[SessionStore] = None,
        registry: Optional[CallRegistry] = None,
        persistence: Optional[PersistenceHook] = None,
        orchestrator_factory: OrchestratorFactory = create_orchestrator
    ):
        self.config = config or get_config()
        self.store = store or SessionStore(
            create_session_backend(self.config.store),
            ttl_seconds=self.config.store.session_ttl_seconds,
            key_prefix=self.config.store.key_prefix,
            max_messages=self.config.store.max_messages,
        )
        self.registry = registry or CallRegistry()
        self.persistence = persistence or LoggingPersistenceHook()
        self._orchestrator_factory = orchestrator_factory
        self._cleanup_task: Optional[asyncio.Task] = None

    def _noise_profile(self, request: web.Request) -> NoiseProfile:
        default = self.config.noise
        noise = request.query.get("noise")
        level = request.query.get("level")
        return NoiseProfile(
            type=NoiseType(noise) if noise else default.type,
            level=float(level) if level else default.level,
        )

    def _orchestrator_config(self, call_type: CallType) -> OrchestratorConfig:
        conversation = self.config.conversation
        return OrchestratorConfig(
            call_type=call_type,
            greeting=conversation.greeting,
            fallback_utterance=conversation.fallback_utterance,
            streaming=conversation.streaming,
            purpose=conversation.purpose,
        )

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        """Handle one call over a WebSocket connection."""
        try:
            call_type = CallType(request.query.get("call_type", CallType.BROWSER.value))
            profile = self._noise_profile(request)
        except ValueError as e:
            raise web.HTTPBadRequest(text=f"Invalid call parameters: {e}")

        ws = web.WebSocketResponse()
        await ws.prepare(request)

        call_id = f"call-{uuid.uuid4().hex[:12]}"
        transport = WebSocketTransport(ws)
        orchestrator = self._orchestrator_factory(
            call_id=call_id,
            store=self.store,
            transport=transport,
            broadcast=transport,
            persistence=self.persistence,
            registry=self.registry,
            config=self._orchestrator_config(call_type),
            noise_mixer=NoiseMixer(profile, sample_rate=self.config.synthesizer.sample_rate),
        )

        async def report_error(payload: dict) -> None:
            await transport.send_status(f"Error: {payload.get('error', 'unknown')}")

        orchestrator.add_listener(OrchestratorEvent.ERROR, report_error)

        logger.info(f"WebSocket call {call_id} connected ({call_type.value})")
        start_task = asyncio.create_task(self._start_call(orchestrator, transport, ws))

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    await orchestrator.process_audio(msg.data)
                elif msg.type == aiohttp.WSMsgType.TEXT:
                    if not await self._handle_message(orchestrator, msg.data):
                        break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"WebSocket error on {call_id}: {ws.exception()}")
        finally:
            await orchestrator.stop()
            await asyncio.gather(start_task, return_exceptions=True)
            if not ws.closed:
                await ws.close()
            logger.info(f"WebSocket call {call_id} disconnected")

        return ws

    async def _start_call(
        self,
        orchestrator: TurnOrchestrator,
        transport: WebSocketTransport,
        ws: web.WebSocketResponse
    ) -> None:
        try:
            await orchestrator.start()
        except TranscriptionError as e:
            logger.error(f"Call {orchestrator.call_id} could not start: {e}")
            try:
                await transport.send_status("Speech recognition unavailable")
            except TransportError as send_error:
                logger.warning(f"Failed to report start failure: {send_error}")
            await ws.close()

    async def _handle_message(self, orchestrator: TurnOrchestrator, raw: str) -> bool:
        """Handle a control message. Returns False when the call should end."""
        try:
            message = deserialize_message(json.loads(raw))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Ignoring invalid message on {orchestrator.call_id}: {e}")
            return True

        if isinstance(message, NoiseUpdate):
            orchestrator.noise_mixer.update_config(noise_type=message.noise_type, level=message.level)
        elif isinstance(message, Hangup):
            logger.info(f"Caller hung up {orchestrator.call_id}")
            return False

        return True

    async def handle_health(self, request: web.Request) -> web.Response:
        """Report live calls and stored sessions."""
        return web.json_response({
            "status": "ok",
            "active_calls": len(self.registry),
            "stored_sessions": await self.store.get_active_sessions_count(),
            "store_fallback": self.store.in_fallback_mode,
        })

    async def _cleanup_loop(self) -> None:
        interval = self.config.server.cleanup_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.store.cleanup()
            except Exception as e:
                logger.error(f"Session cleanup failed: {e}")

    async def on_startup(self, app: web.Application) -> None:
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def on_cleanup(self, app: web.Application) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
        await self.registry.stop_all()
        await self.store.close()


def create_app(server: Optional[CallServer] = None) -> web.Application:
    """Create the aiohttp application."""
    server = server or CallServer()

    app = web.Application()
    app["server"] = server

    app.router.add_get("/ws", server.handle_websocket)
    app.router.add_get("/health", server.handle_health)

    app.on_startup.append(server.on_startup)
    app.on_cleanup.append(server.on_cleanup)

    return app


async def run_server(host: Optional[str] = None, port: Optional[int] = None):
    """Run the web server."""
    cfg = get_config()
    host = host or cfg.server.host
    port = port or cfg.server.port

    app = create_app()
    logger.info(f"Starting server on {host}:{port}")
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Server running at ws://{host}:{port}/ws")

    # Keep server running
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Server shutting down")
        raise
    finally:
        await runner.cleanup()


def main():
    """CLI entry point."""
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
