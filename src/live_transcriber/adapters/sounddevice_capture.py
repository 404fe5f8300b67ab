import asyncio
import logging
import os
from dataclasses import dataclass

import janus
import numpy as np
import sounddevice as sd

from live_transcriber.domain.errors import DeviceError
from live_transcriber.domain.session_config import SessionConfig
from live_transcriber.ports.capture import CaptureHandle, ChunkSink, ErrorSink

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class SounddeviceCaptureHandle(CaptureHandle):
    stream: sd.InputStream | None = None
    queue: janus.Queue[bytes] | None = None
    emitter: asyncio.Task | None = None


class SounddeviceCapture:
    def __init__(
        self,
        device: str | int | None = None,
        echo_cancel_source: str = "echo-cancel-source",
        echo_cancellation: bool = True,
        noise_suppression: bool = True,
        pipewire_routing: bool = False,
        gain: float = 1.0,
        queue_size: int = 100,
        drain_timeout: float = 0.5,
    ) -> None:
        self._device = device
        self._echo_cancel_source = echo_cancel_source
        self._echo_cancellation = echo_cancellation
        self._noise_suppression = noise_suppression
        self._pipewire_routing = pipewire_routing
        self._gain = gain
        self._queue_size = queue_size
        self._drain_timeout = drain_timeout

    async def acquire(self, config: SessionConfig) -> SounddeviceCaptureHandle:
        try:
            device = self._resolve_device()
            sd.check_input_settings(
                device=device,
                channels=config.channels,
                samplerate=config.sample_rate,
                dtype="int16",
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceError(
                f"Capture device unavailable for {config.channels}ch @ {config.sample_rate}Hz: {exc}"
            ) from exc

        logger.info(
            "Capture device acquired (device=%s, rate=%d, channels=%d)",
            device, config.sample_rate, config.channels,
        )
        return SounddeviceCaptureHandle(
            device=device,
            sample_rate=config.sample_rate,
            channels=config.channels,
        )

    def start_emitting(
        self,
        handle: CaptureHandle,
        interval_ms: int,
        on_chunk: ChunkSink,
        on_error: ErrorSink,
    ) -> None:
        if not isinstance(handle, SounddeviceCaptureHandle) or handle.released:
            raise DeviceError("Capture handle is not active")
        if handle.emitter is not None:
            raise DeviceError("Capture handle is already emitting")

        blocksize = max(1, int(handle.sample_rate * interval_ms / 1000))
        queue: janus.Queue[bytes] = janus.Queue(maxsize=self._queue_size)
        gain = self._gain
        loop = asyncio.get_running_loop()

        def stream_finished() -> None:
            # Runs on the PortAudio thread once the stream goes inactive.
            if handle.released:
                return
            error = DeviceError(f"Capture stream on device {handle.device!r} stopped unexpectedly")
            try:
                loop.call_soon_threadsafe(on_error, error)
            except RuntimeError:
                logger.warning("Capture stream stopped after the event loop closed")

        def audio_callback(indata: np.ndarray, frames: int, time_info, status) -> None:
            if status:
                logger.warning("Audio capture status: %s", status)
            samples = indata
            if gain != 1.0:
                samples = np.clip(indata.astype(np.float32) * gain, -32768, 32767).astype(np.int16)
            chunk = samples.tobytes()
            if not chunk:
                return
            try:
                queue.sync_q.put_nowait(chunk)
            except janus.SyncQueueFull:
                logger.warning("Capture queue full, dropping chunk")
            except janus.SyncQueueShutDown:
                pass

        try:
            stream = sd.InputStream(
                device=handle.device,
                samplerate=handle.sample_rate,
                channels=handle.channels,
                dtype="int16",
                blocksize=blocksize,
                callback=audio_callback,
                finished_callback=stream_finished,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            queue.close()
            raise DeviceError(f"Failed to open capture stream: {exc}") from exc

        handle.stream = stream
        handle.queue = queue
        handle.emitter = asyncio.create_task(self._emit_loop(queue, on_chunk))
        logger.info("Audio capture started (interval=%dms, blocksize=%d)", interval_ms, blocksize)

    async def release(self, handle: CaptureHandle | None) -> None:
        if handle is None or handle.released:
            return
        handle.released = True
        if not isinstance(handle, SounddeviceCaptureHandle):
            return

        stream, handle.stream = handle.stream, None
        try:
            if stream is not None:
                try:
                    stream.stop()
                finally:
                    stream.close()
        finally:
            await self._close_queue(handle)
        logger.info("Audio capture released")

    async def _close_queue(self, handle: SounddeviceCaptureHandle) -> None:
        if handle.queue is not None:
            await self._drain(handle.queue)
            handle.queue.close()
            await handle.queue.wait_closed()
            handle.queue = None

        if handle.emitter is not None:
            try:
                await asyncio.wait_for(handle.emitter, timeout=self._drain_timeout)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            handle.emitter = None

    async def _emit_loop(self, queue: janus.Queue[bytes], on_chunk: ChunkSink) -> None:
        while True:
            try:
                chunk = await queue.async_q.get()
            except janus.AsyncQueueShutDown:
                break
            if not chunk:
                continue
            try:
                await on_chunk(chunk)
            except Exception:
                logger.warning("Failed to forward audio chunk", exc_info=True)

    async def _drain(self, queue: janus.Queue[bytes]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._drain_timeout
        while not queue.async_q.empty() and loop.time() < deadline:
            await asyncio.sleep(0.01)

    def _resolve_device(self) -> str | int | None:
        target = self._device
        if target in (None, "") and (self._echo_cancellation or self._noise_suppression):
            target = self._echo_cancel_source
        if target in (None, ""):
            return None
        if isinstance(target, int):
            return target
        try:
            return int(target)
        except ValueError:
            pass
        for i, dev in enumerate(sd.query_devices()):
            if target.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                logger.info("Resolved device '%s' -> %d (%s)", target, i, dev["name"])
                return i
        if self._pipewire_routing:
            os.environ["PIPEWIRE_NODE"] = target
            logger.info("Device '%s' not in PortAudio, set PIPEWIRE_NODE for PipeWire routing", target)
            return None
        if self._device in (None, ""):
            raise DeviceError(
                f"Echo cancellation and noise suppression need the '{target}' input, "
                "which PortAudio does not list"
            )
        raise DeviceError(f"Capture device '{target}' not found")
