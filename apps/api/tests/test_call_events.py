from __future__ import annotations

import pytest

from callsync.telephony.errors import EventDecodeError
from callsync.telephony.events import (
    INBOUND,
    OUTBOUND,
    decode_call_completed,
    decode_recording_completed,
    decode_summary_completed,
    decode_transcript_completed,
    normalize_e164,
)


def test_call_completed_nested_envelope() -> None:
    event = decode_call_completed(
        {
            "id": "EV1",
            "type": "call.completed",
            "createdAt": "2026-10-18T12:00:00.000Z",
            "data": {
                "object": {
                    "id": "AC1",
                    "direction": "outgoing",
                    "from": "+15550000",
                    "to": "+1 (555) 010-0",
                    "status": "completed",
                    "duration": 42,
                    "media": [{"url": "https://media.openphone.test/AC1.mp3"}],
                    "answeredAt": "2026-10-18T11:59:00Z",
                    "completedAt": "2026-10-18T12:00:00Z",
                }
            },
        }
    )

    assert event.call_id == "AC1"
    assert event.direction == OUTBOUND
    assert event.participant_number == "+15550100"
    assert event.duration_sec == 42
    assert event.recording_url == "https://media.openphone.test/AC1.mp3"
    assert event.completed_at is not None and event.completed_at.tzinfo is not None
    assert event.event_id == "EV1"


def test_call_completed_flat_fallback_uses_from_for_inbound() -> None:
    event = decode_call_completed(
        {
            "type": "call.completed",
            "data": {
                "id": "AC2",
                "direction": "incoming",
                "from": "+15550100",
                "to": "+15550000",
                "duration": 7,
                "recordingUrl": "https://media.openphone.test/AC2.mp3",
                "transcription": {"text": "hello there"},
            },
        }
    )

    assert event.direction == INBOUND
    assert event.participant_number == "+15550100"
    assert event.recording_url == "https://media.openphone.test/AC2.mp3"
    assert event.transcript_text == "hello there"


def test_call_completed_without_id_is_rejected() -> None:
    with pytest.raises(EventDecodeError):
        decode_call_completed({"type": "call.completed", "data": {"object": {"direction": "incoming"}}})


def test_transcript_dialogue_is_rendered_per_speaker() -> None:
    event = decode_transcript_completed(
        {
            "type": "call.transcript.completed",
            "data": {
                "object": {
                    "callId": "AC3",
                    "dialogue": [
                        {"identifier": "+15550100", "content": "Hi", "start": 0},
                        {"userId": "US1", "content": "Hello, thanks for calling", "start": 1.2},
                        {"content": "   "},
                    ],
                }
            },
        }
    )

    assert event.call_id == "AC3"
    assert event.transcript_text == "+15550100: Hi\nUS1: Hello, thanks for calling"


def test_recording_uses_call_id_not_object_id() -> None:
    event = decode_recording_completed(
        {
            "type": "call.recording.completed",
            "data": {"object": {"id": "REC1", "callId": "AC4", "media": [{"url": "https://r/AC4.mp3", "duration": 31}]}},
        }
    )

    assert event.call_id == "AC4"
    assert event.recording_url == "https://r/AC4.mp3"
    assert event.duration_sec == 31


def test_summary_joins_summary_and_next_steps() -> None:
    event = decode_summary_completed(
        {
            "type": "call.summary.completed",
            "data": {
                "object": {
                    "callId": "AC5",
                    "summary": ["Lead wants a demo", "Budget approved"],
                    "nextSteps": ["Send calendar invite"],
                }
            },
        }
    )

    assert event.summary_text == "Lead wants a demo\nBudget approved\nNext steps:\n- Send calendar invite"


def test_normalize_e164() -> None:
    assert normalize_e164("+1 (555) 010-0100") == "+15550100100"
    assert normalize_e164("") is None
    assert normalize_e164("ext.") is None
