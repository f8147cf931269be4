"""Tests for the WebSocket transport and call server."""
import json
from unittest.mock import MagicMock

import aiohttp
import pytest
from aiohttp import web

from talkloop.audio.noise_mixer import NoiseMixer, NoiseProfile, NoiseType
from talkloop.config import Config
from talkloop.core.registry import CallRegistry
from talkloop.exceptions import TransportError
from talkloop.session.backend import InMemorySessionBackend
from talkloop.session.store import SessionStore
from talkloop.transport.sinks import Speaker, TranscriptEvent
from talkloop.transport.websocket import WebSocketTransport
from talkloop.web.server import CallServer, create_app


class FakeWebSocket:
    """Records frames the transport writes."""

    def __init__(self, fail: bool = False):
        self.closed = False
        self.fail = fail
        self.binary = []
        self.json = []

    async def send_bytes(self, data: bytes) -> None:
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.binary.append(data)

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise aiohttp.ClientConnectionError("peer gone")
        self.json.append(data)


class TestWebSocketTransport:
    """Test outbound frames."""

    @pytest.mark.asyncio
    async def test_audio_sent_as_binary(self):
        ws = FakeWebSocket()
        transport = WebSocketTransport(ws)

        await transport.send_audio(b"\x01\x02\x03\x04")

        assert ws.binary == [b"\x01\x02\x03\x04"]
        assert transport.bytes_sent == 4

    @pytest.mark.asyncio
    async def test_control_messages(self):
        ws = FakeWebSocket()
        transport = WebSocketTransport(ws)

        await transport.interrupt()
        await transport.speak_text("Hello world.")
        await transport.speak_text("   ")
        await transport.send_state("listening")
        await transport.send_status("Call started")

        assert [m["type"] for m in ws.json] == ["interrupted", "speak", "state", "status"]
        assert ws.json[1]["text"] == "Hello world."
        assert ws.json[2]["state"] == "listening"
        assert all(m["timestamp"] > 0 for m in ws.json)

    @pytest.mark.asyncio
    async def test_transcript_published(self):
        ws = FakeWebSocket()
        transport = WebSocketTransport(ws)

        await transport.publish(TranscriptEvent(speaker=Speaker.HUMAN, text="Hi", confidence=0.8))

        message = ws.json[0]
        assert message["type"] == "transcript"
        assert message["speaker"] == "human"
        assert message["confidence"] == 0.8
        assert message["is_final"] is True

    @pytest.mark.asyncio
    async def test_closed_socket_drops_writes(self):
        ws = FakeWebSocket()
        ws.closed = True
        transport = WebSocketTransport(ws)

        await transport.send_audio(b"\x00\x00")
        await transport.send_state("ended")

        assert ws.binary == []
        assert ws.json == []
        assert transport.bytes_sent == 0

    @pytest.mark.asyncio
    async def test_send_failures_raise_transport_error(self):
        transport = WebSocketTransport(FakeWebSocket(fail=True))

        with pytest.raises(TransportError):
            await transport.send_audio(b"\x00\x00")
        with pytest.raises(TransportError):
            await transport.interrupt()


@pytest.fixture
def server():
    return CallServer(
        config=Config(),
        store=SessionStore(InMemorySessionBackend()),
        registry=CallRegistry(),
    )


def fake_call(mixer: NoiseMixer) -> MagicMock:
    call = MagicMock()
    call.call_id = "call-1"
    call.noise_mixer = mixer
    return call


class TestCallServer:
    """Test the server's request handling."""

    @pytest.mark.asyncio
    async def test_noise_update_applied(self, server):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.NONE, level=0), seed=3)
        call = fake_call(mixer)

        keep_going = await server._handle_message(
            call, json.dumps({"type": "noise_update", "noise_type": "coffeeshop", "level": 40})
        )

        assert keep_going is True
        profile = mixer.get_config()
        assert profile.type == NoiseType.COFFEESHOP
        assert profile.level == 40

    @pytest.mark.asyncio
    async def test_level_only_update(self, server):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=10), seed=3)

        await server._handle_message(fake_call(mixer), json.dumps({"type": "noise_update", "level": 250}))

        profile = mixer.get_config()
        assert profile.type == NoiseType.OFFICE
        assert profile.level == 100

    @pytest.mark.asyncio
    async def test_hangup_ends_call(self, server):
        call = fake_call(NoiseMixer())
        assert await server._handle_message(call, json.dumps({"type": "hangup"})) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"type": "dance"}),
        json.dumps({"level": 10}),
    ])
    async def test_invalid_messages_ignored(self, server, raw):
        call = fake_call(NoiseMixer())
        assert await server._handle_message(call, raw) is True

    @pytest.mark.asyncio
    async def test_bad_call_parameters_rejected(self, server):
        request = MagicMock()
        request.query = {"call_type": "fax"}

        with pytest.raises(web.HTTPBadRequest):
            await server.handle_websocket(request)

    @pytest.mark.asyncio
    async def test_health(self, server):
        await server.store.create_session("call-1", "You are terse.")

        response = await server.handle_health(MagicMock())

        body = json.loads(response.text)
        assert body == {
            "status": "ok",
            "active_calls": 0,
            "stored_sessions": 1,
            "store_fallback": False,
        }

    def test_routes(self, server):
        app = create_app(server)
        paths = {resource.canonical for resource in app.router.resources()}
        assert paths == {"/ws", "/health"}
        assert app["server"] is server
