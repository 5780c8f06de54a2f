"""
Gemini Live wire messages.

Inbound frames are parsed into small event dataclasses so the session
controller can route them through a single dispatch table. Outbound messages
are plain dicts serialized with ``json``.
"""
import base64
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)

INPUT_AUDIO_MIME = "audio/pcm;rate={rate}"


@dataclass(frozen=True)
class SetupComplete:
    pass


@dataclass(frozen=True)
class TextFragment:
    text: str


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class AudioPart:
    data: str
    mime_type: str | None = None


Part = Union[TextPart, AudioPart]


@dataclass(frozen=True)
class ModelTurn:
    parts: Tuple[Part, ...] = field(default_factory=tuple)

    @property
    def audio_parts(self) -> Tuple[AudioPart, ...]:
        return tuple(p for p in self.parts if isinstance(p, AudioPart))


@dataclass(frozen=True)
class Transcription:
    text: str


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class ServerError:
    message: str
    code: int | None = None


ServerEvent = Union[SetupComplete, TextFragment, ModelTurn, Transcription, TurnComplete, ServerError]


def _parse_parts(raw_parts) -> Tuple[Part, ...]:
    parts: List[Part] = []
    for raw in raw_parts or []:
        if not isinstance(raw, dict):
            continue
        if raw.get("text"):
            parts.append(TextPart(text=raw["text"]))
        inline = raw.get("inlineData")
        if isinstance(inline, dict) and "data" in inline:
            # Empty payloads are kept here; the accumulator rejects them.
            parts.append(AudioPart(data=inline.get("data") or "", mime_type=inline.get("mimeType")))
    return tuple(parts)


def parse_server_message(raw: Union[str, bytes]) -> List[ServerEvent]:
    """
    Parse one inbound websocket frame into events, in the order they must be handled.

    Returns an empty list for frames that cannot be decoded or carry nothing
    the session cares about.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("unparseable_server_frame", reason="not utf-8", size=len(raw))
            return []
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning("unparseable_server_frame", error=str(e))
        return []
    if not isinstance(message, dict):
        logger.warning("unparseable_server_frame", reason="not an object")
        return []

    events: List[ServerEvent] = []
    if "setupComplete" in message:
        events.append(SetupComplete())

    if message.get("text"):
        events.append(TextFragment(text=message["text"]))

    content = message.get("serverContent")
    if isinstance(content, dict):
        model_turn = content.get("modelTurn")
        if isinstance(model_turn, dict):
            parts = _parse_parts(model_turn.get("parts"))
            if parts:
                events.append(ModelTurn(parts=parts))

        transcription = content.get("outputTranscription")
        if isinstance(transcription, dict) and transcription.get("text"):
            events.append(Transcription(text=transcription["text"]))

        if content.get("turnComplete"):
            events.append(TurnComplete())
    elif message.get("data"):
        # Bare audio payload without a serverContent envelope.
        events.append(ModelTurn(parts=(AudioPart(data=message["data"]),)))

    error = message.get("error")
    if error:
        if isinstance(error, dict):
            events.append(ServerError(message=error.get("message") or "Server error", code=error.get("code")))
        else:
            events.append(ServerError(message=str(error)))

    if not events:
        logger.debug("server_frame_ignored", keys=list(message))
    return events


def build_setup(model: str, voice: str, system_instruction: str) -> Dict[str, Any]:
    return {
        "setup": {
            "model": model if model.startswith("models/") else f"models/{model}",
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {
                        "prebuiltVoiceConfig": {"voiceName": voice},
                    },
                },
            },
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "outputAudioTranscription": {},
        }
    }


def build_audio(pcm: bytes, sample_rate: int = 16000) -> Dict[str, Any]:
    return {
        "realtimeInput": {
            "audio": {
                "data": base64.b64encode(pcm).decode("ascii"),
                "mimeType": INPUT_AUDIO_MIME.format(rate=sample_rate),
            }
        }
    }


def build_audio_stream_end() -> Dict[str, Any]:
    return {"realtimeInput": {"audioStreamEnd": True}}


def build_client_text(text: str) -> Dict[str, Any]:
    return {
        "clientContent": {
            "turns": [{"role": "user", "parts": [{"text": text}]}],
            "turnComplete": True,
        }
    }


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message)
