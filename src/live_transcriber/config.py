from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class TranscriberSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LIVE_TRANSCRIBER_")

    endpoint_url: str = "wss://api.deepgram.com/v1/listen"
    api_key_file: str = ""
    connect_timeout_seconds: float = 10.0
    close_timeout_seconds: float = 5.0

    capture_device: str = ""
    echo_cancel_source: str = "echo-cancel-source"
    echo_cancellation: bool = True
    noise_suppression: bool = True
    pipewire_routing: bool = False
    capture_gain: float = 1.0

    chunk_interval_ms: int = 100
    finalize_timeout_seconds: float = 1.0

    transcription: dict[str, Any] = {}

    def read_secret(self, path: str) -> str:
        if not path:
            return ""
        try:
            with open(path) as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""
