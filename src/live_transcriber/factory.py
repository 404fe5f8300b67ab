import logging
from collections.abc import Mapping
from typing import Any

from live_transcriber.adapters.sounddevice_capture import SounddeviceCapture
from live_transcriber.adapters.websocket_transport import DeepgramWebSocketTransport
from live_transcriber.config import TranscriberSettings
from live_transcriber.domain.session import SessionCallbacks, TranscriptionSession
from live_transcriber.domain.session_config import SessionConfig

logger = logging.getLogger(__name__)


def create_transport(settings: TranscriberSettings) -> DeepgramWebSocketTransport:
    return DeepgramWebSocketTransport(
        api_key=settings.read_secret(settings.api_key_file),
        endpoint=settings.endpoint_url,
        open_timeout=settings.connect_timeout_seconds,
        close_timeout=settings.close_timeout_seconds,
    )


def create_capture(settings: TranscriberSettings) -> SounddeviceCapture:
    return SounddeviceCapture(
        device=settings.capture_device or None,
        echo_cancel_source=settings.echo_cancel_source,
        echo_cancellation=settings.echo_cancellation,
        noise_suppression=settings.noise_suppression,
        pipewire_routing=settings.pipewire_routing,
        gain=settings.capture_gain,
    )


def create_session(
    settings: TranscriberSettings,
    overrides: Mapping[str, Any] | None = None,
    callbacks: SessionCallbacks | None = None,
) -> TranscriptionSession:
    config = SessionConfig({**settings.transcription, **(overrides or {})})
    logger.debug("Session options: %s", dict(config))
    return TranscriptionSession(
        transport=create_transport(settings),
        capture=create_capture(settings),
        config=config,
        callbacks=callbacks,
        chunk_interval_ms=settings.chunk_interval_ms,
        finalize_timeout_seconds=settings.finalize_timeout_seconds,
    )
