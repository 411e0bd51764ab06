from __future__ import annotations

import json

import pytest

from agents.errors import ProtocolError
from telephony.frames import (
    AgentAudio,
    AgentError,
    AgentInterrupt,
    AgentPing,
    AgentReady,
    AgentTranscript,
    MediaReceived,
    SignalingNotice,
    StreamStarted,
    StreamStopped,
    agent_initiation_frame,
    decode_agent_message,
    decode_signaling_frame,
    twilio_mark_frame,
)


def test_start_frame_carries_ids_and_custom_parameters():
    event = decode_signaling_frame(
        json.dumps(
            {
                "event": "start",
                "sequenceNumber": "1",
                "start": {
                    "streamSid": "MZ1",
                    "callSid": "CA1",
                    "customParameters": {"prompt": "Be brief.", "first_message": "Hi there"},
                },
                "streamSid": "MZ1",
            }
        )
    )
    assert isinstance(event, StreamStarted)
    assert event.stream_sid == "MZ1"
    assert event.call_sid == "CA1"
    assert event.prompt == "Be brief."
    assert event.first_message == "Hi there"


def test_start_without_parameters_has_no_overrides():
    event = decode_signaling_frame('{"event": "start", "start": {"streamSid": "MZ1", "callSid": "CA1"}}')
    assert event.prompt is None
    assert event.first_message is None


def test_start_missing_call_sid_is_rejected():
    with pytest.raises(ProtocolError):
        decode_signaling_frame('{"event": "start", "start": {"streamSid": "MZ1"}}')


def test_media_and_stop_frames_accept_binary_input():
    media = decode_signaling_frame(b'{"event": "media", "streamSid": "MZ1", "media": {"payload": "AAEC"}}')
    assert media == MediaReceived(stream_sid="MZ1", payload="AAEC")

    stop = decode_signaling_frame(b'{"event": "stop", "streamSid": "MZ1", "stop": {"callSid": "CA1"}}')
    assert stop == StreamStopped(stream_sid="MZ1")


def test_outbound_track_media_is_only_a_notice():
    event = decode_signaling_frame('{"event": "media", "media": {"track": "outbound", "payload": "AA"}}')
    assert event == SignalingNotice(kind="media:outbound")


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"event": "media", "media": {}}',
        '{"event": "bogus"}',
        b"\xff\xfe",
    ],
)
def test_malformed_signaling_frames_raise_protocol_error(raw):
    with pytest.raises(ProtocolError):
        decode_signaling_frame(raw)


def test_housekeeping_frames_are_notices():
    assert decode_signaling_frame('{"event": "connected", "protocol": "Call"}') == SignalingNotice(kind="connected")
    assert decode_signaling_frame('{"event": "mark", "streamSid": "MZ1"}').kind == "mark"


def test_initiation_metadata_means_ready():
    event = decode_agent_message(
        json.dumps(
            {
                "type": "conversation_initiation_metadata",
                "conversation_initiation_metadata_event": {
                    "conversation_id": "conv-9",
                    "agent_output_audio_format": "ulaw_8000",
                    "user_input_audio_format": "ulaw_8000",
                },
            }
        )
    )
    assert event == AgentReady(conversation_id="conv-9", output_format="ulaw_8000", input_format="ulaw_8000")


def test_audio_payload_is_read_from_either_field():
    nested = decode_agent_message('{"type": "audio", "audio_event": {"audio_base_64": "QUJD", "event_id": 3}}')
    chunk = decode_agent_message('{"type": "audio", "audio": {"chunk": "REVG"}}')
    assert nested == AgentAudio(payload="QUJD")
    assert chunk == AgentAudio(payload="REVG")


def test_audio_without_payload_is_rejected():
    with pytest.raises(ProtocolError):
        decode_agent_message('{"type": "audio", "audio_event": {}}')


def test_ping_event_id_is_preserved():
    assert decode_agent_message('{"type": "ping", "ping_event": {"event_id": "abc123", "ping_ms": 40}}') == AgentPing(
        event_id="abc123"
    )
    assert decode_agent_message('{"type": "ping", "ping_event": {"event_id": 7}}') == AgentPing(event_id="7")

    with pytest.raises(ProtocolError):
        decode_agent_message('{"type": "ping", "ping_event": {}}')


def test_transcripts_interruptions_and_errors():
    assert decode_agent_message(
        '{"type": "agent_response", "agent_response_event": {"agent_response": "Hello!"}}'
    ) == AgentTranscript(role="agent", text="Hello!")
    assert decode_agent_message(
        '{"type": "user_transcript", "user_transcription_event": {"user_transcript": "Hi"}}'
    ) == AgentTranscript(role="user", text="Hi")
    assert decode_agent_message('{"type": "interruption", "interruption_event": {"event_id": 4}}') == AgentInterrupt(
        event_id=4
    )
    error = decode_agent_message('{"type": "error", "error": {"code": "quota", "message": "limit reached"}}')
    assert error == AgentError(message="quota: limit reached")


def test_unknown_agent_type_is_a_protocol_error():
    with pytest.raises(ProtocolError):
        decode_agent_message('{"type": "vad_score", "vad_score_event": {"vad_score": 0.9}}')
    with pytest.raises(ProtocolError):
        decode_agent_message('{"no_type": true}')


def test_outbound_frames_match_wire_shapes():
    assert twilio_mark_frame("MZ1", "conversation-complete") == {
        "event": "mark",
        "streamSid": "MZ1",
        "mark": {"name": "conversation-complete"},
    }
    init = agent_initiation_frame("Be kind.", "Hello")
    assert init["type"] == "conversation_initiation_client_data"
    assert init["conversation_config_override"]["agent"] == {
        "prompt": {"prompt": "Be kind."},
        "first_message": "Hello",
    }
