import asyncio
import json
from typing import Any

import pytest

from live_transcriber.domain.results import CloseEvent
from live_transcriber.domain.session import SessionCallbacks, TranscriptionSession
from live_transcriber.domain.session_config import SessionConfig
from live_transcriber.ports.capture import CaptureHandle
from live_transcriber.ports.transport import ConnectionHandle


def results_message(
    transcript: str = "hello",
    confidence: float = 0.98,
    is_final: bool = True,
    speech_final: bool = False,
    words: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    message = {
        "type": "Results",
        "channel_index": [0, 1],
        "duration": 1.2,
        "start": 0.5,
        "is_final": is_final,
        "speech_final": speech_final,
        "channel": {
            "alternatives": [
                {"transcript": transcript, "confidence": confidence, "words": words or []},
            ],
        },
        "metadata": {"request_id": "req-1", "model_info": {"name": "general-nova-2"}},
    }
    message.update(extra)
    return message


def empty_results_message(**extra: Any) -> dict[str, Any]:
    message = {"type": "Results", "is_final": True, "channel": {"alternatives": []}}
    message.update(extra)
    return message


class FakeTransport:
    def __init__(
        self,
        fail_with: Exception | None = None,
        connect_delay: float = 0.0,
        acknowledge_finalize: bool = True,
    ) -> None:
        self._fail_with = fail_with
        self._connect_delay = connect_delay
        self._acknowledge_finalize = acknowledge_finalize
        self._open = False
        self.listener = None
        self.last_config: SessionConfig | None = None
        self.connect_calls = 0
        self.close_calls = 0
        self.sent_chunks: list[bytes] = []
        self.control_messages: list[dict[str, Any]] = []

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self, config: SessionConfig, listener) -> ConnectionHandle:
        self.connect_calls += 1
        self.last_config = config
        if self._connect_delay:
            await asyncio.sleep(self._connect_delay)
        if self._fail_with is not None:
            raise self._fail_with
        self.listener = listener
        self._open = True
        return ConnectionHandle(endpoint="wss://transcriber.test/v1/listen", request_id="req-1")

    async def send(self, chunk: bytes) -> None:
        if self._open and chunk:
            self.sent_chunks.append(chunk)

    async def send_control(self, message: dict[str, Any]) -> bool:
        if not self._open:
            return False
        self.control_messages.append(dict(message))
        if self._acknowledge_finalize and message.get("type") == "Finalize":
            self.deliver(empty_results_message(from_finalize=True))
        return True

    async def close(self) -> None:
        self.close_calls += 1
        if not self._open:
            return
        self._open = False
        await self.listener.on_transport_closed(CloseEvent(code=1000, reason=""))

    def deliver(self, message: dict[str, Any] | str | bytes) -> None:
        if isinstance(message, dict):
            message = json.dumps(message)
        self.listener.on_transport_message(message)

    async def drop(self, code: int = 1011, reason: str = "internal error") -> None:
        self._open = False
        await self.listener.on_transport_closed(CloseEvent(code=code, reason=reason))


class FakeCapture:
    def __init__(self, fail_with: Exception | None = None, acquire_delay: float = 0.0) -> None:
        self._fail_with = fail_with
        self._acquire_delay = acquire_delay
        self.acquire_calls = 0
        self.handle: CaptureHandle | None = None
        self.released: list[CaptureHandle] = []
        self.interval_ms: int | None = None
        self._on_chunk = None
        self._on_error = None

    async def acquire(self, config: SessionConfig) -> CaptureHandle:
        self.acquire_calls += 1
        if self._acquire_delay:
            await asyncio.sleep(self._acquire_delay)
        if self._fail_with is not None:
            raise self._fail_with
        self.handle = CaptureHandle(
            device="fake-mic",
            sample_rate=config.sample_rate,
            channels=config.channels,
        )
        return self.handle

    def start_emitting(self, handle: CaptureHandle, interval_ms: int, on_chunk, on_error) -> None:
        self.interval_ms = interval_ms
        self._on_chunk = on_chunk
        self._on_error = on_error

    def fail(self, error: Exception) -> None:
        self._on_error(error)

    async def emit(self, chunk: bytes) -> None:
        if self.handle is None or self.handle.released or self._on_chunk is None:
            return
        if chunk:
            await self._on_chunk(chunk)

    async def release(self, handle: CaptureHandle | None) -> None:
        if handle is None or handle.released:
            return
        handle.released = True
        self.released.append(handle)


class CallbackRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def callbacks(self) -> SessionCallbacks:
        return SessionCallbacks(
            on_transcript=lambda result: self.events.append(("transcript", result)),
            on_interim_result=lambda result: self.events.append(("interim", result)),
            on_error=lambda error: self.events.append(("error", error)),
            on_open=lambda: self.events.append(("open", None)),
            on_close=lambda event: self.events.append(("close", event)),
            on_metadata=lambda payload: self.events.append(("metadata", payload)),
            on_speech_started=lambda payload: self.events.append(("speech_started", payload)),
            on_utterance_end=lambda payload: self.events.append(("utterance_end", payload)),
        )

    def named(self, name: str) -> list[Any]:
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest.fixture
def recorder():
    return CallbackRecorder()


@pytest.fixture
def session(fake_transport, fake_capture, recorder):
    return TranscriptionSession(
        transport=fake_transport,
        capture=fake_capture,
        callbacks=recorder.callbacks(),
        finalize_timeout_seconds=0.05,
    )
