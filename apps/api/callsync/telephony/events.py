"""Typed call-lifecycle events decoded from OpenPhone webhook envelopes.

Deliveries come in two shapes: the current envelope keeps the call under
``data.object`` while older integrations post the fields flat under ``data``.
Both are accepted here so the handlers only ever see one representation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from callsync.telephony.errors import EventDecodeError

CALL_COMPLETED = "call.completed"
RECORDING_COMPLETED = "call.recording.completed"
TRANSCRIPT_COMPLETED = "call.transcript.completed"
SUMMARY_COMPLETED = "call.summary.completed"

OUTBOUND = "outbound"
INBOUND = "inbound"

_DIRECTION_ALIASES = {
    "outbound": OUTBOUND,
    "outgoing": OUTBOUND,
    "inbound": INBOUND,
    "incoming": INBOUND,
}
_NON_DIGIT_RE = re.compile(r"[^+\d]")


def normalize_e164(phone: str | None) -> str | None:
    if not phone:
        return None
    normalized = _NON_DIGIT_RE.sub("", phone)
    return normalized or None


def normalize_direction(value: Any) -> str:
    if isinstance(value, str):
        return _DIRECTION_ALIASES.get(value.strip().lower(), OUTBOUND)
    return OUTBOUND


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True, slots=True)
class CallCompleted:
    call_id: str
    direction: str
    from_number: str | None
    to_number: str | None
    status: str | None = None
    duration_sec: int | None = None
    recording_url: str | None = None
    transcript_text: str | None = None
    answered_at: datetime | None = None
    completed_at: datetime | None = None
    event_id: str | None = None
    type: str = CALL_COMPLETED

    @property
    def participant_number(self) -> str | None:
        raw = self.to_number if self.direction == OUTBOUND else self.from_number
        return normalize_e164(raw)


@dataclass(frozen=True, slots=True)
class RecordingCompleted:
    call_id: str
    recording_url: str | None
    duration_sec: int | None = None
    event_id: str | None = None
    type: str = RECORDING_COMPLETED


@dataclass(frozen=True, slots=True)
class TranscriptCompleted:
    call_id: str
    transcript_text: str | None
    event_id: str | None = None
    type: str = TRANSCRIPT_COMPLETED


@dataclass(frozen=True, slots=True)
class SummaryCompleted:
    call_id: str
    summary_text: str | None
    event_id: str | None = None
    type: str = SUMMARY_COMPLETED


CallEvent = Union[CallCompleted, RecordingCompleted, TranscriptCompleted, SummaryCompleted]


def _payload_parts(envelope: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    data = envelope.get("data")
    flat = data if isinstance(data, dict) else {}
    nested = flat.get("object")
    return (nested if isinstance(nested, dict) else {}), flat


def _first(nested: dict[str, Any], flat: dict[str, Any], *keys: str) -> Any:
    for source in (nested, flat):
        for key in keys:
            value = source.get(key)
            if value is not None:
                return value
    return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _media_url(nested: dict[str, Any], flat: dict[str, Any]) -> str | None:
    for source in (nested, flat):
        media = source.get("media")
        if isinstance(media, list):
            for item in media:
                if isinstance(item, dict) and isinstance(item.get("url"), str) and item["url"]:
                    return item["url"]
        url = source.get("recordingUrl") or source.get("url")
        if isinstance(url, str) and url:
            return url
    return None


def render_dialogue(dialogue: Any) -> str | None:
    if not isinstance(dialogue, list):
        return None
    lines: list[str] = []
    for segment in dialogue:
        if not isinstance(segment, dict):
            continue
        content = segment.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        speaker = segment.get("identifier") or segment.get("userId") or "Unknown"
        lines.append(f"{speaker}: {content}")
    return "\n".join(lines) or None


def _transcript_text(nested: dict[str, Any], flat: dict[str, Any]) -> str | None:
    for source in (flat, nested):
        transcription = source.get("transcription")
        if isinstance(transcription, dict) and isinstance(transcription.get("text"), str) and transcription["text"]:
            return transcription["text"]
    return render_dialogue(nested.get("dialogue") if "dialogue" in nested else flat.get("dialogue"))


def _summary_text(nested: dict[str, Any], flat: dict[str, Any]) -> str | None:
    summary = _first(nested, flat, "summary")
    if isinstance(summary, list):
        summary_lines = [str(item) for item in summary if str(item).strip()]
    elif isinstance(summary, str) and summary.strip():
        summary_lines = [summary]
    else:
        summary_lines = []

    next_steps = _first(nested, flat, "nextSteps")
    if isinstance(next_steps, list) and next_steps:
        summary_lines.append("Next steps:")
        summary_lines.extend(f"- {step}" for step in next_steps if str(step).strip())
    return "\n".join(summary_lines) or None


def _require_call_id(event_type: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise EventDecodeError(event_type, "missing call id")
    return value.strip()


def decode_call_completed(envelope: dict[str, Any]) -> CallCompleted:
    nested, flat = _payload_parts(envelope)
    return CallCompleted(
        call_id=_require_call_id(CALL_COMPLETED, _first(nested, flat, "id")),
        direction=normalize_direction(_first(nested, flat, "direction")),
        from_number=_first(nested, flat, "from"),
        to_number=_first(nested, flat, "to"),
        status=_first(nested, flat, "status"),
        duration_sec=_as_int(_first(nested, flat, "duration")),
        recording_url=_media_url(nested, flat),
        transcript_text=_transcript_text(nested, flat),
        answered_at=parse_timestamp(_first(nested, flat, "answeredAt")),
        completed_at=parse_timestamp(_first(nested, flat, "completedAt")),
        event_id=envelope.get("id"),
    )


def decode_recording_completed(envelope: dict[str, Any]) -> RecordingCompleted:
    nested, flat = _payload_parts(envelope)
    media = nested.get("media") if isinstance(nested.get("media"), list) else []
    media_duration = media[0].get("duration") if media and isinstance(media[0], dict) else None
    return RecordingCompleted(
        call_id=_require_call_id(RECORDING_COMPLETED, _first(nested, flat, "callId", "id")),
        recording_url=_media_url(nested, flat),
        duration_sec=_as_int(media_duration if media_duration is not None else _first(nested, flat, "duration")),
        event_id=envelope.get("id"),
    )


def decode_transcript_completed(envelope: dict[str, Any]) -> TranscriptCompleted:
    nested, flat = _payload_parts(envelope)
    return TranscriptCompleted(
        call_id=_require_call_id(TRANSCRIPT_COMPLETED, _first(nested, flat, "callId", "id")),
        transcript_text=_transcript_text(nested, flat),
        event_id=envelope.get("id"),
    )


def decode_summary_completed(envelope: dict[str, Any]) -> SummaryCompleted:
    nested, flat = _payload_parts(envelope)
    return SummaryCompleted(
        call_id=_require_call_id(SUMMARY_COMPLETED, _first(nested, flat, "callId", "id")),
        summary_text=_summary_text(nested, flat),
        event_id=envelope.get("id"),
    )


DECODERS = {
    CALL_COMPLETED: decode_call_completed,
    RECORDING_COMPLETED: decode_recording_completed,
    TRANSCRIPT_COMPLETED: decode_transcript_completed,
    SUMMARY_COMPLETED: decode_summary_completed,
}


def extract_call_id(envelope: dict[str, Any]) -> str | None:
    nested, flat = _payload_parts(envelope)
    value = _first(nested, flat, "callId", "id")
    return value if isinstance(value, str) and value else None
