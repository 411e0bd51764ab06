"""Wire codecs for the two sides of a relayed call.

Both vendor protocols are JSON objects dispatched on a discriminator field
(``event`` for Twilio Media Streams, ``type`` for ElevenLabs Conversational AI).
Decoding maps each known tag onto one frozen event class; anything else raises
``ProtocolError`` so the caller can drop the frame and keep the session alive.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from agents.errors import ProtocolError

# Signaling side (Twilio Media Streams)


@dataclass(frozen=True)
class StreamStarted:
    stream_sid: str
    call_sid: str
    custom_parameters: dict[str, str] = field(default_factory=dict)

    @property
    def prompt(self) -> str | None:
        return self.custom_parameters.get("prompt") or None

    @property
    def first_message(self) -> str | None:
        return self.custom_parameters.get("first_message") or None


@dataclass(frozen=True)
class MediaReceived:
    stream_sid: str | None
    payload: str


@dataclass(frozen=True)
class StreamStopped:
    stream_sid: str | None


@dataclass(frozen=True)
class SignalingFailure:
    """The caller-side socket went away or failed."""

    reason: str
    stream_sid: str | None = None


@dataclass(frozen=True)
class SignalingNotice:
    """Provider housekeeping frames that carry nothing for the bridge."""

    kind: str
    stream_sid: str | None = None


SignalingEvent = Union[StreamStarted, MediaReceived, StreamStopped, SignalingFailure, SignalingNotice]


# Agent side (ElevenLabs Conversational AI)


@dataclass(frozen=True)
class AgentReady:
    conversation_id: str | None = None
    output_format: str | None = None
    input_format: str | None = None


@dataclass(frozen=True)
class AgentAudio:
    payload: str


@dataclass(frozen=True)
class AgentInterrupt:
    event_id: str | None = None


@dataclass(frozen=True)
class AgentPing:
    event_id: str


@dataclass(frozen=True)
class AgentTranscript:
    role: str
    text: str


@dataclass(frozen=True)
class AgentError:
    message: str


@dataclass(frozen=True)
class AgentClosed:
    code: int | None = None
    reason: str = ""


AgentEvent = Union[AgentReady, AgentAudio, AgentInterrupt, AgentPing, AgentTranscript, AgentError, AgentClosed]

_SIGNALING_NOTICES = frozenset({"connected", "mark", "dtmf"})


def _load_object(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Binary frame is not valid UTF-8") from exc
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Frame is not valid JSON: {exc.msg}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("Frame is not a JSON object")
    return message


def _section(message: dict[str, Any], key: str) -> dict[str, Any]:
    value = message.get(key)
    return value if isinstance(value, dict) else {}


def decode_signaling_frame(raw: str | bytes) -> SignalingEvent:
    """Decode one Twilio Media Streams frame."""

    message = _load_object(raw)
    event = message.get("event")
    stream_sid = message.get("streamSid") or None

    if event == "start":
        start = _section(message, "start")
        stream_sid = start.get("streamSid") or stream_sid
        call_sid = start.get("callSid")
        if not stream_sid or not call_sid:
            raise ProtocolError("start frame is missing streamSid or callSid")
        params = {str(k): str(v) for k, v in _section(start, "customParameters").items() if v is not None}
        return StreamStarted(stream_sid=str(stream_sid), call_sid=str(call_sid), custom_parameters=params)

    if event == "media":
        media = _section(message, "media")
        track = media.get("track")
        if track and track != "inbound":
            return SignalingNotice(kind=f"media:{track}", stream_sid=stream_sid)
        payload = media.get("payload")
        if not isinstance(payload, str) or not payload:
            raise ProtocolError("media frame has no payload")
        return MediaReceived(stream_sid=stream_sid, payload=payload)

    if event == "stop":
        stop = _section(message, "stop")
        return StreamStopped(stream_sid=stream_sid or stop.get("streamSid") or None)

    if event in _SIGNALING_NOTICES:
        return SignalingNotice(kind=str(event), stream_sid=stream_sid)

    raise ProtocolError(f"Unrecognized signaling event: {event!r}")


def _audio_payload(message: dict[str, Any]) -> str | None:
    audio_event = _section(message, "audio_event")
    if isinstance(audio_event.get("audio_base_64"), str):
        return audio_event["audio_base_64"]
    audio = message.get("audio")
    if isinstance(audio, dict) and isinstance(audio.get("chunk"), str):
        return audio["chunk"]
    if isinstance(audio, str):
        return audio
    return None


def decode_agent_message(raw: str | bytes) -> AgentEvent:
    """Decode one ElevenLabs Conversational AI message."""

    message = _load_object(raw)
    kind = message.get("type")

    if kind == "conversation_initiation_metadata":
        meta = _section(message, "conversation_initiation_metadata_event")
        return AgentReady(
            conversation_id=meta.get("conversation_id"),
            output_format=meta.get("agent_output_audio_format"),
            input_format=meta.get("user_input_audio_format"),
        )

    if kind == "audio":
        payload = _audio_payload(message)
        if not payload:
            raise ProtocolError("audio message has no payload")
        return AgentAudio(payload=payload)

    if kind == "interruption":
        return AgentInterrupt(event_id=_section(message, "interruption_event").get("event_id"))

    if kind == "ping":
        event_id = _section(message, "ping_event").get("event_id", message.get("event_id"))
        if event_id is None or event_id == "":
            raise ProtocolError("ping message has no event_id")
        return AgentPing(event_id=str(event_id))

    if kind == "agent_response":
        text = _section(message, "agent_response_event").get("agent_response") or ""
        return AgentTranscript(role="agent", text=str(text))

    if kind == "user_transcript":
        text = _section(message, "user_transcription_event").get("user_transcript") or ""
        return AgentTranscript(role="user", text=str(text))

    if kind == "error":
        error = message.get("error")
        if isinstance(error, dict):
            detail = f"{error.get('code', 'unknown')}: {error.get('message', 'unspecified')}"
        else:
            detail = message.get("message") or error or message.get("text") or "unspecified"
        return AgentError(message=str(detail))

    raise ProtocolError(f"Unrecognized agent message type: {kind!r}")


# Outbound frames


def twilio_media_frame(stream_sid: str, payload: str) -> dict[str, Any]:
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": payload}}


def twilio_clear_frame(stream_sid: str) -> dict[str, Any]:
    return {"event": "clear", "streamSid": stream_sid}


def twilio_mark_frame(stream_sid: str, name: str) -> dict[str, Any]:
    return {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}


def agent_initiation_frame(prompt: str, first_message: str) -> dict[str, Any]:
    return {
        "type": "conversation_initiation_client_data",
        "conversation_config_override": {
            "agent": {
                "prompt": {"prompt": prompt},
                "first_message": first_message,
            },
        },
    }


def agent_audio_frame(payload: str) -> dict[str, Any]:
    return {"user_audio_chunk": payload}


def agent_pong_frame(event_id: str) -> dict[str, Any]:
    return {"type": "pong", "event_id": event_id}
