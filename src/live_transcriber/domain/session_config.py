from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, NonNegativeInt, PositiveInt, StrictBool, ValidationError

from live_transcriber.domain.errors import ConfigError


class TranscriptionOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str | None = "nova-2"
    language: str | None = "en"
    punctuate: StrictBool | None = True
    interim_results: StrictBool | None = True
    endpointing: StrictBool | NonNegativeInt | None = 10
    sample_rate: PositiveInt = 16000
    encoding: str | None = "linear16"
    channels: PositiveInt = 1
    filler_words: StrictBool | None = False
    diarize: StrictBool | None = False
    smart_format: StrictBool | None = True
    vad_events: StrictBool | None = False


DEFAULT_OPTIONS: Mapping[str, Any] = MappingProxyType(TranscriptionOptions().model_dump())


class SessionConfig(Mapping[str, Any]):
    """Immutable snapshot of the options sent to the service at connect time.

    Built from the defaults merged with caller overrides, key by key. Option
    names the service may add later are accepted and forwarded as-is; a value
    of ``None`` leaves the option out of the handshake.
    """

    def __init__(self, overrides: Mapping[str, Any] | None = None) -> None:
        overrides = dict(overrides or {})
        bad_keys = [key for key in overrides if not isinstance(key, str) or not key]
        if bad_keys:
            raise ConfigError(f"Option names must be non-empty strings: {bad_keys!r}")
        try:
            validated = TranscriptionOptions.model_validate(overrides)
        except ValidationError as exc:
            raise ConfigError(_describe_validation_error(exc)) from exc
        self._options: Mapping[str, Any] = MappingProxyType(validated.model_dump())

    @classmethod
    def from_overrides(cls, overrides: Mapping[str, Any] | None = None) -> "SessionConfig":
        return cls(overrides)

    def merged(self, patch: Mapping[str, Any]) -> "SessionConfig":
        return SessionConfig({**self._options, **patch})

    @property
    def sample_rate(self) -> int:
        return self._options["sample_rate"]

    @property
    def channels(self) -> int:
        return self._options["channels"]

    def to_query_params(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        for key, value in self._options.items():
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                params.extend((key, _render(item)) for item in value if item is not None)
            else:
                params.append((key, _render(value)))
        return params

    def __getitem__(self, key: str) -> Any:
        return self._options[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._options)

    def __len__(self) -> int:
        return len(self._options)

    def __repr__(self) -> str:
        return f"SessionConfig({dict(self._options)!r})"


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        problems.append(f"{location}: {error['msg']}")
    return "Invalid session option(s): " + "; ".join(problems)
