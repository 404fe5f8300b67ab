import asyncio
import json
from contextlib import asynccontextmanager
from http import HTTPStatus
from urllib.parse import parse_qs, urlsplit

import pytest
from websockets.asyncio.server import serve

from live_transcriber.adapters.websocket_transport import (
    DeepgramWebSocketTransport,
    build_handshake,
)
from live_transcriber.domain.errors import HandshakeError
from live_transcriber.domain.session_config import SessionConfig


class RecordingListener:
    def __init__(self) -> None:
        self.messages: list = []
        self.errors: list[Exception] = []
        self.closed: list = []

    def on_transport_message(self, raw) -> None:
        self.messages.append(raw)

    def on_transport_error(self, error: Exception) -> None:
        self.errors.append(error)

    async def on_transport_closed(self, event) -> None:
        self.closed.append(event)


@asynccontextmanager
async def fake_service(handler, **kwargs):
    async with serve(handler, "127.0.0.1", 0, **kwargs) as server:
        port = server.sockets[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}/v1/listen"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class TestBuildHandshake:
    def test_encodes_every_non_null_option(self):
        config = SessionConfig({"language": None, "utterance_end_ms": 1500})
        handshake = build_handshake("wss://api.example/v1/listen", config, "secret")

        query = parse_qs(urlsplit(handshake.url).query)
        assert "language" not in query
        assert query["model"] == ["nova-2"]
        assert query["punctuate"] == ["true"]
        assert query["utterance_end_ms"] == ["1500"]
        assert handshake.headers == {"Authorization": "Token secret"}

    def test_key_not_leaked_into_url(self):
        handshake = build_handshake("wss://api.example/v1/listen", SessionConfig(), "secret")
        assert "secret" not in handshake.url

    def test_no_credential_means_no_header(self):
        handshake = build_handshake("wss://api.example/v1/listen", SessionConfig(), "")
        assert handshake.headers == {}

    def test_endpoint_with_existing_query(self):
        handshake = build_handshake("wss://api.example/v1/listen?tier=x", SessionConfig(), "k")
        assert handshake.url.startswith("wss://api.example/v1/listen?tier=x&model=")


class TestDeepgramWebSocketTransport:
    @pytest.mark.asyncio
    async def test_connect_sends_options_and_credential(self):
        seen = {}

        async def handler(ws):
            seen["path"] = ws.request.path
            seen["auth"] = ws.request.headers.get("Authorization")
            await ws.wait_closed()

        def add_request_id(connection, request, response):
            response.headers["dg-request-id"] = "req-42"

        async with fake_service(handler, process_response=add_request_id) as url:
            transport = DeepgramWebSocketTransport(api_key="secret", endpoint=url)
            listener = RecordingListener()
            handle = await transport.connect(SessionConfig({"model": "nova-3"}), listener)

            assert transport.is_open
            assert handle.request_id == "req-42"
            await transport.close()

        query = parse_qs(urlsplit(seen["path"]).query)
        assert query["model"] == ["nova-3"]
        assert query["sample_rate"] == ["16000"]
        assert seen["auth"] == "Token secret"

    @pytest.mark.asyncio
    async def test_inbound_messages_forwarded_in_order(self):
        payloads = [json.dumps({"type": "Metadata", "n": n}) for n in range(3)]

        async def handler(ws):
            for payload in payloads:
                await ws.send(payload)
            await ws.wait_closed()

        async with fake_service(handler) as url:
            transport = DeepgramWebSocketTransport(api_key="k", endpoint=url)
            listener = RecordingListener()
            await transport.connect(SessionConfig(), listener)
            await wait_until(lambda: len(listener.messages) == 3)
            await transport.close()

        assert listener.messages == payloads

    @pytest.mark.asyncio
    async def test_audio_and_control_reach_service(self):
        received: list = []

        async def handler(ws):
            async for message in ws:
                received.append(message)

        async with fake_service(handler) as url:
            transport = DeepgramWebSocketTransport(api_key="k", endpoint=url)
            await transport.connect(SessionConfig(), RecordingListener())
            await transport.send(b"\x01\x02")
            await transport.send(b"")
            await transport.send(b"\x03\x04")
            assert await transport.send_control({"type": "Finalize"}) is True
            await wait_until(lambda: len(received) == 3)
            await transport.close()

        assert received[:2] == [b"\x01\x02", b"\x03\x04"]
        assert json.loads(received[2]) == {"type": "Finalize"}

    @pytest.mark.asyncio
    async def test_remote_close_is_reported_once(self):
        async def handler(ws):
            await ws.close(code=1011, reason="boom")

        async with fake_service(handler) as url:
            transport = DeepgramWebSocketTransport(api_key="k", endpoint=url)
            listener = RecordingListener()
            await transport.connect(SessionConfig(), listener)
            await wait_until(lambda: listener.closed)

            assert not transport.is_open
            await transport.close()

        assert len(listener.closed) == 1
        assert listener.closed[0].code == 1011
        assert listener.closed[0].reason == "boom"

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_late_sends_are_dropped(self):
        async def handler(ws):
            await ws.wait_closed()

        async with fake_service(handler) as url:
            transport = DeepgramWebSocketTransport(api_key="k", endpoint=url)
            listener = RecordingListener()
            await transport.connect(SessionConfig(), listener)

            await transport.close()
            await transport.close()
            await transport.send(b"\x00\x01")
            assert await transport.send_control({"type": "Finalize"}) is False

        assert len(listener.closed) == 1
        assert listener.closed[0].code == 1000
        assert listener.errors == []

    @pytest.mark.asyncio
    async def test_refused_connection_raises_handshake_error(self):
        async def handler(ws):
            await ws.wait_closed()

        async with fake_service(handler) as url:
            pass

        transport = DeepgramWebSocketTransport(api_key="k", endpoint=url, open_timeout=2.0)
        with pytest.raises(HandshakeError):
            await transport.connect(SessionConfig(), RecordingListener())
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_rejected_credentials_raise_handshake_error(self):
        async def handler(ws):
            await ws.wait_closed()

        def reject(connection, request):
            return connection.respond(HTTPStatus.UNAUTHORIZED, "invalid credentials\n")

        async with fake_service(handler, process_request=reject) as url:
            transport = DeepgramWebSocketTransport(api_key="bad", endpoint=url)
            with pytest.raises(HandshakeError, match="401"):
                await transport.connect(SessionConfig(), RecordingListener())
