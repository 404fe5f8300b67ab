import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.protocol import State

from live_transcriber.domain.errors import HandshakeError
from live_transcriber.domain.results import CloseEvent
from live_transcriber.domain.session_config import SessionConfig
from live_transcriber.ports.transport import ConnectionHandle, TransportListener

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "wss://api.deepgram.com/v1/listen"


@dataclass(frozen=True)
class Handshake:
    url: str
    headers: dict[str, str] = field(default_factory=dict)


def build_handshake(endpoint: str, config: SessionConfig, api_key: str) -> Handshake:
    query = urlencode(config.to_query_params())
    url = endpoint
    if query:
        separator = "&" if "?" in endpoint else "?"
        url = f"{endpoint}{separator}{query}"
    headers = {"Authorization": f"Token {api_key}"} if api_key else {}
    return Handshake(url=url, headers=headers)


class DeepgramWebSocketTransport:
    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        open_timeout: float = 10.0,
        close_timeout: float = 5.0,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._open_timeout = open_timeout
        self._close_timeout = close_timeout
        self._socket: ClientConnection | None = None
        self._receive_task: asyncio.Task | None = None

    @property
    def is_open(self) -> bool:
        return self._socket is not None and self._socket.state is State.OPEN

    async def connect(self, config: SessionConfig, listener: TransportListener) -> ConnectionHandle:
        if self._socket is not None:
            logger.warning("Transport already connected, closing previous connection")
            await self.close()

        handshake = build_handshake(self._endpoint, config, self._api_key)
        logger.debug("Connecting to %s", handshake.url)
        try:
            socket = await connect(
                handshake.url,
                additional_headers=handshake.headers,
                open_timeout=self._open_timeout,
                close_timeout=self._close_timeout,
            )
        except InvalidStatus as exc:
            raise HandshakeError(
                f"Service rejected the connection (HTTP {exc.response.status_code})"
            ) from exc
        except (WebSocketException, OSError, asyncio.TimeoutError) as exc:
            raise HandshakeError(f"Failed to connect to {self._endpoint}: {exc}") from exc

        request_id = socket.response.headers.get("dg-request-id") if socket.response else None
        self._socket = socket
        self._receive_task = asyncio.create_task(self._receive_loop(socket, listener))
        logger.info("WebSocket connected (request_id=%s)", request_id)
        return ConnectionHandle(endpoint=handshake.url, request_id=request_id)

    async def send(self, chunk: bytes) -> None:
        socket = self._socket
        if not chunk or socket is None or socket.state is not State.OPEN:
            return
        try:
            await socket.send(chunk)
        except ConnectionClosed:
            logger.debug("Dropped %d-byte chunk, connection closed", len(chunk))

    async def send_control(self, message: Mapping[str, Any]) -> bool:
        socket = self._socket
        if socket is None or socket.state is not State.OPEN:
            return False
        try:
            await socket.send(json.dumps(dict(message)))
        except ConnectionClosed:
            logger.debug("Control message %s not sent, connection closed", message.get("type"))
            return False
        return True

    async def close(self) -> None:
        socket, receive_task = self._socket, self._receive_task
        self._socket = None
        self._receive_task = None
        if socket is not None:
            await socket.close()
        if receive_task is not None and receive_task is not asyncio.current_task():
            await asyncio.gather(receive_task, return_exceptions=True)

    async def _receive_loop(self, socket: ClientConnection, listener: TransportListener) -> None:
        try:
            async for message in socket:
                listener.on_transport_message(message)
        except ConnectionClosed:
            pass
        except Exception as exc:
            logger.exception("WebSocket receive loop failed")
            listener.on_transport_error(exc)
            await socket.close()

        event = CloseEvent(code=socket.close_code, reason=socket.close_reason or "")
        logger.info("WebSocket closed: %s %s", event.code, event.reason)
        if self._socket is socket:
            self._socket = None
        await listener.on_transport_closed(event)
