from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from live_transcriber.domain.session_config import SessionConfig

ChunkSink = Callable[[bytes], Awaitable[None]]
ErrorSink = Callable[[Exception], None]


@dataclass(eq=False)
class CaptureHandle:
    device: str | int | None
    sample_rate: int
    channels: int
    released: bool = False


class CapturePort(Protocol):
    async def acquire(self, config: SessionConfig) -> CaptureHandle: ...
    def start_emitting(
        self, handle: CaptureHandle, interval_ms: int, on_chunk: ChunkSink, on_error: ErrorSink
    ) -> None: ...
    async def release(self, handle: CaptureHandle | None) -> None: ...
