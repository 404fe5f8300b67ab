import json
import logging
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, StrictBool, StrictFloat, StrictInt, StrictStr, ValidationError

from live_transcriber.domain.errors import ProtocolError, ServiceError
from live_transcriber.domain.results import TranscriptionResult, Word

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    RESULTS = "Results"
    METADATA = "Metadata"
    SPEECH_STARTED = "SpeechStarted"
    UTTERANCE_END = "UtteranceEnd"
    ERROR = "Error"
    UNKNOWN = "Unknown"

    @classmethod
    def classify(cls, discriminant: Any) -> "MessageType":
        try:
            return cls(discriminant)
        except ValueError:
            return cls.UNKNOWN


class MessageHandler(Protocol):
    def on_final(self, result: TranscriptionResult) -> None: ...
    def on_interim(self, result: TranscriptionResult) -> None: ...
    def on_metadata(self, payload: dict[str, Any]) -> None: ...
    def on_speech_started(self, payload: dict[str, Any]) -> None: ...
    def on_utterance_end(self, payload: dict[str, Any]) -> None: ...
    def on_service_error(self, error: ServiceError) -> None: ...
    def on_finalize_ack(self) -> None: ...


class MessageDemultiplexer:
    """Routes inbound service messages to a handler by their ``type`` field.

    A malformed message is logged and dropped; it never raises and never
    affects the session. Messages with a type this client does not know are
    dropped with a debug note so newer service versions keep working.
    """

    def __init__(self, handler: MessageHandler) -> None:
        self._handler = handler

    def dispatch(self, raw: str | bytes) -> MessageType | None:
        try:
            message = decode_message(raw)
            kind = MessageType.classify(message.get("type"))
            self._route(kind, message)
        except ProtocolError as exc:
            logger.warning("Dropping malformed message: %s", exc)
            return None
        return kind

    def _route(self, kind: MessageType, message: dict[str, Any]) -> None:
        if kind is MessageType.RESULTS:
            self._handle_results(message)
        elif kind is MessageType.METADATA:
            logger.debug("Metadata received: request_id=%s", message.get("request_id"))
            self._handler.on_metadata(message)
        elif kind is MessageType.SPEECH_STARTED:
            logger.debug("Speech started (timestamp=%s)", message.get("timestamp"))
            self._handler.on_speech_started(message)
        elif kind is MessageType.UTTERANCE_END:
            logger.debug("Utterance ended (last_word_end=%s)", message.get("last_word_end"))
            self._handler.on_utterance_end(message)
        elif kind is MessageType.ERROR:
            error = ServiceError(message)
            logger.error("Service error: %s", error)
            self._handler.on_service_error(error)
        else:
            logger.debug("Unknown message type: %r", message.get("type"))

    def _handle_results(self, message: dict[str, Any]) -> None:
        result = parse_result(message)
        if result is not None:
            if result.is_final:
                logger.debug("Results (final): %s", result.transcript)
                self._handler.on_final(result)
            else:
                logger.debug("Results (interim): %s", result.transcript)
                self._handler.on_interim(result)
        if message.get("from_finalize") is True:
            self._handler.on_finalize_ack()


def decode_message(raw: str | bytes) -> dict[str, Any]:
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"not valid JSON ({exc})") from exc
    if not isinstance(message, dict):
        raise ProtocolError(f"expected a JSON object, got {type(message).__name__}")
    return message


class WordPayload(BaseModel):
    word: StrictStr = ""
    start: StrictFloat = 0.0
    end: StrictFloat = 0.0
    confidence: StrictFloat = 0.0
    punctuated_word: StrictStr | None = None
    speaker: StrictInt | None = None


class AlternativePayload(BaseModel):
    transcript: StrictStr = ""
    confidence: StrictFloat = 0.0
    words: list[WordPayload] | None = None


class ChannelPayload(BaseModel):
    alternatives: list[AlternativePayload] | None = None


class ResultsPayload(BaseModel):
    channel: ChannelPayload | None = None
    is_final: StrictBool = False
    speech_final: StrictBool = False
    from_finalize: StrictBool = False
    duration: StrictFloat = 0.0
    start: StrictFloat = 0.0
    metadata: dict[str, Any] | None = None


def parse_result(message: dict[str, Any]) -> TranscriptionResult | None:
    try:
        payload = ResultsPayload.model_validate(message)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ProtocolError(f"Results payload rejected ({problems})") from exc

    if payload.channel is None or not payload.channel.alternatives:
        return None
    alternative = payload.channel.alternatives[0]
    return TranscriptionResult(
        transcript=alternative.transcript,
        confidence=alternative.confidence,
        words=tuple(
            Word(
                word=word.word,
                start=word.start,
                end=word.end,
                confidence=word.confidence,
                punctuated_word=word.punctuated_word,
                speaker=word.speaker,
            )
            for word in alternative.words or ()
        ),
        is_final=payload.is_final,
        speech_final=payload.speech_final,
        duration=payload.duration,
        start=payload.start,
        metadata=payload.metadata or {},
        from_finalize=payload.from_finalize,
    )
