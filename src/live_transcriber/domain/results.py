from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


@dataclass(frozen=True)
class Word:
    word: str
    start: float
    end: float
    confidence: float
    punctuated_word: str | None = None
    speaker: int | None = None


@dataclass(frozen=True)
class TranscriptionResult:
    transcript: str
    confidence: float
    words: tuple[Word, ...] = ()
    is_final: bool = False
    speech_final: bool = False
    duration: float = 0.0
    start: float = 0.0
    metadata: Mapping[str, Any] = field(default_factory=dict)
    from_finalize: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class CloseEvent:
    code: int | None = None
    reason: str = ""

    @property
    def clean(self) -> bool:
        return self.code in (1000, 1001)
