from collections.abc import Mapping
from typing import Any


class LiveTranscriberError(Exception):
    pass


class ConfigError(LiveTranscriberError):
    pass


class HandshakeError(LiveTranscriberError):
    pass


class DeviceError(LiveTranscriberError):
    pass


class ProtocolError(LiveTranscriberError):
    pass


class StateError(LiveTranscriberError):
    pass


class SessionCancelledError(LiveTranscriberError):
    pass


class ServiceError(LiveTranscriberError):
    def __init__(self, payload: Mapping[str, Any]) -> None:
        self.payload = dict(payload)
        description = (
            self.payload.get("description")
            or self.payload.get("message")
            or "unknown service error"
        )
        super().__init__(description)

    @property
    def variant(self) -> str | None:
        return self.payload.get("variant")
