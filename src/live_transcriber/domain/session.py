import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from live_transcriber.domain.demultiplexer import MessageDemultiplexer
from live_transcriber.domain.errors import (
    HandshakeError,
    ServiceError,
    SessionCancelledError,
    StateError,
)
from live_transcriber.domain.results import CloseEvent, TranscriptionResult
from live_transcriber.domain.session_config import SessionConfig
from live_transcriber.domain.state import SessionState, validate_transition
from live_transcriber.ports.capture import CaptureHandle, CapturePort
from live_transcriber.ports.transport import ConnectionHandle, TransportPort

logger = logging.getLogger(__name__)

FINALIZE_MESSAGE = {"type": "Finalize"}


@dataclass(frozen=True)
class SessionCallbacks:
    on_transcript: Callable[[TranscriptionResult], None] | None = None
    on_interim_result: Callable[[TranscriptionResult], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_open: Callable[[], None] | None = None
    on_close: Callable[[CloseEvent], None] | None = None
    on_metadata: Callable[[dict[str, Any]], None] | None = None
    on_speech_started: Callable[[dict[str, Any]], None] | None = None
    on_utterance_end: Callable[[dict[str, Any]], None] | None = None


class TranscriptionSession:
    """Drives one capture-to-transcription session at a time.

    ``start()`` connects the transport, acquires the capture device and
    starts forwarding chunks; ``stop()`` releases capture, asks the service
    to flush pending results and closes the connection. Calls that do not
    fit the current state are logged and ignored. Callbacks run
    synchronously wherever the triggering event arrives; an exception in a
    callback is logged and does not reach the session.
    """

    def __init__(
        self,
        transport: TransportPort,
        capture: CapturePort,
        config: SessionConfig | None = None,
        callbacks: SessionCallbacks | None = None,
        chunk_interval_ms: int = 100,
        finalize_timeout_seconds: float = 1.0,
    ) -> None:
        self._transport = transport
        self._capture = capture
        self._config = config or SessionConfig()
        self._callbacks = callbacks or SessionCallbacks()
        self._chunk_interval_ms = chunk_interval_ms
        self._finalize_timeout_seconds = finalize_timeout_seconds
        self._demultiplexer = MessageDemultiplexer(self)

        self._state = SessionState.IDLE
        self._connection: ConnectionHandle | None = None
        self._capture_handle: CaptureHandle | None = None
        self._startup_task: asyncio.Task | None = None
        self._stop_task: asyncio.Task | None = None
        self._cancel_requested = False
        self._finalize_acknowledged = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def connection(self) -> ConnectionHandle | None:
        return self._connection

    @property
    def callbacks(self) -> SessionCallbacks:
        return self._callbacks

    def is_streaming(self) -> bool:
        return self._state is SessionState.STREAMING

    def register_callbacks(self, callbacks: SessionCallbacks) -> None:
        self._callbacks = callbacks

    def update_config(self, patch: Mapping[str, Any]) -> bool:
        if self._state not in (SessionState.IDLE, SessionState.CLOSED):
            error = StateError(
                f"Cannot update options while {self._state.name}. Stop streaming first."
            )
            logger.warning("%s", error)
            self._emit_error(error)
            return False

        updated = self._config.merged(patch)
        if self._state is SessionState.CLOSED:
            self._transition_to(SessionState.IDLE)
        self._config = updated
        logger.info("Session options updated: %s", ", ".join(sorted(patch)))
        return True

    def _transition_to(self, target: SessionState) -> None:
        validate_transition(self._state, target)
        logger.info("State: %s -> %s", self._state.name, target.name)
        self._state = target

    async def start(self) -> None:
        if self._state is SessionState.CLOSED:
            self._transition_to(SessionState.IDLE)
        if self._state is not SessionState.IDLE:
            logger.warning("start() ignored, session is %s", self._state.name)
            return

        self._transition_to(SessionState.CONNECTING)
        self._cancel_requested = False
        self._finalize_acknowledged.clear()
        startup = asyncio.create_task(self._open_session(self._config))
        self._startup_task = startup
        try:
            await startup
        except asyncio.CancelledError:
            if not self._cancel_requested or not startup.cancelled():
                raise
            raise SessionCancelledError("Session start cancelled by stop()") from None
        finally:
            self._startup_task = None

    async def stop(self) -> None:
        stopping = self._begin_stop()
        if stopping is None:
            logger.warning("stop() ignored, session is %s", self._state.name)
            return
        await stopping

    async def cleanup(self) -> None:
        if self._state in (SessionState.CONNECTING, SessionState.STREAMING):
            self._begin_stop()
        stopping = self._stop_task
        if stopping is not None:
            await asyncio.wait({stopping})
        await self._release_capture()
        await self._close_transport()
        if self._state is SessionState.STOPPING:
            self._transition_to(SessionState.CLOSED)

    def _begin_stop(self) -> asyncio.Task | None:
        # STOPPING is entered before the first await.
        if self._state is SessionState.CONNECTING:
            self._transition_to(SessionState.STOPPING)
            self._cancel_requested = True
            startup = self._startup_task
            if startup is not None:
                startup.cancel()
            operation = self._finish_cancelled_start(startup)
        elif self._state is SessionState.STREAMING:
            self._transition_to(SessionState.STOPPING)
            operation = self._shutdown()
        else:
            return None
        stopping = asyncio.create_task(operation)
        self._stop_task = stopping
        stopping.add_done_callback(self._clear_stop_task)
        return stopping

    def _clear_stop_task(self, task: asyncio.Task) -> None:
        if self._stop_task is task:
            self._stop_task = None

    async def _shutdown(self) -> None:
        await self._release_capture()
        await self._finalize()
        await self._close_transport()
        self._transition_to(SessionState.CLOSED)
        logger.info("Streaming stopped")

    async def _open_session(self, config: SessionConfig) -> None:
        try:
            self._connection = await self._transport.connect(config, self)
            self._emit("on_open")
            handle = await self._capture.acquire(config)
            self._capture_handle = handle
            if not self._transport.is_open:
                raise HandshakeError("Connection closed before streaming started")
            self._capture.start_emitting(
                handle, self._chunk_interval_ms, self._transport.send, self.on_capture_error
            )
        except asyncio.CancelledError:
            await self._release_capture()
            await self._close_transport()
            if not self._cancel_requested:
                self._transition_to(SessionState.CLOSED)
            raise
        except Exception as exc:
            logger.error("Failed to start streaming: %s", exc)
            await self._release_capture()
            await self._close_transport()
            self._transition_to(SessionState.CLOSED)
            self._emit_error(exc)
            raise

        self._transition_to(SessionState.STREAMING)
        logger.info("Streaming started")

    async def _finish_cancelled_start(self, startup: asyncio.Task | None) -> None:
        if startup is not None:
            await asyncio.wait({startup})
        await self._release_capture()
        await self._close_transport()
        self._transition_to(SessionState.CLOSED)
        logger.info("Session start cancelled")

    async def _finalize(self) -> None:
        try:
            sent = await self._transport.send_control(FINALIZE_MESSAGE)
        except Exception as exc:
            logger.exception("Failed to send finalize signal")
            self._emit_error(exc)
            return
        if not sent:
            logger.debug("Finalize not sent, connection already closed")
            return
        try:
            await asyncio.wait_for(
                self._finalize_acknowledged.wait(),
                timeout=self._finalize_timeout_seconds,
            )
            logger.debug("Finalize acknowledged")
        except asyncio.TimeoutError:
            logger.debug(
                "No finalize acknowledgment after %.2fs, closing anyway",
                self._finalize_timeout_seconds,
            )

    async def _release_capture(self) -> None:
        handle, self._capture_handle = self._capture_handle, None
        if handle is None:
            return
        try:
            await self._capture.release(handle)
        except Exception as exc:
            logger.exception("Failed to release capture device")
            self._emit_error(exc)

    async def _close_transport(self) -> None:
        self._connection = None
        try:
            await self._transport.close()
        except Exception as exc:
            logger.exception("Failed to close transport")
            self._emit_error(exc)

    def on_transport_message(self, raw: str | bytes) -> None:
        self._demultiplexer.dispatch(raw)

    def on_transport_error(self, error: Exception) -> None:
        logger.error("Transport error: %s", error)
        self._emit_error(error)

    async def on_transport_closed(self, event: CloseEvent) -> None:
        self._connection = None
        self._finalize_acknowledged.set()
        lost_while_streaming = self._state is SessionState.STREAMING
        handle = None
        if lost_while_streaming:
            logger.warning(
                "Connection lost while streaming (code=%s, reason=%s)",
                event.code, event.reason or "none",
            )
            handle, self._capture_handle = self._capture_handle, None
            self._transition_to(SessionState.CLOSED)
        self._emit("on_close", event)
        if handle is not None:
            try:
                await self._capture.release(handle)
            except Exception as exc:
                logger.exception("Failed to release capture device")
                self._emit_error(exc)

    def on_capture_error(self, error: Exception) -> None:
        if self._state is not SessionState.STREAMING:
            logger.debug("Capture error ignored while %s: %s", self._state.name, error)
            return
        logger.error("Capture failed while streaming: %s", error)
        self._emit_error(error)
        self._begin_stop()

    def on_final(self, result: TranscriptionResult) -> None:
        logger.info("Transcript: %s", result.transcript)
        self._emit("on_transcript", result)

    def on_interim(self, result: TranscriptionResult) -> None:
        self._emit("on_interim_result", result)

    def on_metadata(self, payload: dict[str, Any]) -> None:
        self._emit("on_metadata", payload)

    def on_speech_started(self, payload: dict[str, Any]) -> None:
        self._emit("on_speech_started", payload)

    def on_utterance_end(self, payload: dict[str, Any]) -> None:
        self._emit("on_utterance_end", payload)

    def on_service_error(self, error: ServiceError) -> None:
        self._emit_error(error)

    def on_finalize_ack(self) -> None:
        self._finalize_acknowledged.set()

    def _emit_error(self, error: Exception) -> None:
        self._emit("on_error", error)

    def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self._callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("%s callback failed", name)
