from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from live_transcriber.domain.results import CloseEvent
from live_transcriber.domain.session_config import SessionConfig


@dataclass(frozen=True)
class ConnectionHandle:
    endpoint: str
    request_id: str | None = None


class TransportListener(Protocol):
    def on_transport_message(self, raw: str | bytes) -> None: ...
    def on_transport_error(self, error: Exception) -> None: ...
    async def on_transport_closed(self, event: CloseEvent) -> None: ...


class TransportPort(Protocol):
    @property
    def is_open(self) -> bool: ...
    async def connect(self, config: SessionConfig, listener: TransportListener) -> ConnectionHandle: ...
    async def send(self, chunk: bytes) -> None: ...
    async def send_control(self, message: Mapping[str, Any]) -> bool: ...
    async def close(self) -> None: ...
