from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from callsync.telephony.events import normalize_e164


class DialAttemptCreate(BaseModel):
    lead_id: str = Field(min_length=1, max_length=128)
    dialed_number: str = Field(min_length=1, max_length=32)
    direction: Literal["outbound", "inbound"] = "outbound"
    from_number: str | None = None
    openphone_call_id: str | None = Field(default=None, max_length=128)
    started_at: datetime | None = None

    @field_validator("dialed_number")
    @classmethod
    def _normalize_dialed_number(cls, value: str) -> str:
        normalized = normalize_e164(value)
        if normalized is None or len(normalized.lstrip("+")) < 3:
            raise ValueError("dialed_number must be a phone number")
        return normalized


class DialAttemptRead(BaseModel):
    attempt_id: UUID
    session_id: UUID
    lead_id: str
    dialed_number: str
    openphone_call_id: str | None
    status: str
    started_at: datetime


class CallArtifactsRead(BaseModel):
    session_id: UUID
    attempt_id: UUID | None
    recording_url: str | None
    transcript_text: str | None
    status: str


class ProcessedCallLinkRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_call_id: str
    attempt_id: UUID
    lead_id: str
    created_at: datetime


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str | None = None
    error: str | None = None


class BackfillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lead_phone_number: str = Field(alias="leadPhoneNumber", min_length=1)
    days_back: int = Field(default=7, alias="daysBack", ge=1, le=365)


class TranscriptSegment(BaseModel):
    speaker: str | None = None
    start: float | None = None
    end: float | None = None
    text: str


class BackfilledCall(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(serialization_alias="callId")
    direction: str | None = None
    from_number: str | None = Field(default=None, serialization_alias="from")
    to_number: str | None = Field(default=None, serialization_alias="to")
    answered_at: str | None = Field(default=None, serialization_alias="answeredAt")
    completed_at: str | None = Field(default=None, serialization_alias="completedAt")
    duration: int | None = None
    recording_url: str | None = Field(default=None, serialization_alias="recordingUrl")
    transcript: list[TranscriptSegment] | None = None


class BackfillResult(BaseModel):
    success: bool = True
    calls_imported: int = Field(serialization_alias="callsImported")
    sessions_updated: int = Field(serialization_alias="sessionsUpdated")
    calls: list[BackfilledCall]


class PhoneNumberRead(BaseModel):
    id: str
    phone_number: str | None = Field(default=None, serialization_alias="phoneNumber")
    name: str | None = None


def transcript_segments_to_text(segments: list[TranscriptSegment] | None) -> str | None:
    if not segments:
        return None
    lines = [f"{segment.speaker or 'Unknown'}: {segment.text}" for segment in segments if segment.text.strip()]
    return "\n".join(lines) or None


def coerce_segments(raw: Any) -> list[TranscriptSegment] | None:
    if not isinstance(raw, list):
        return None
    segments: list[TranscriptSegment] = []
    for item in raw:
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            segments.append(
                TranscriptSegment(
                    speaker=item.get("speaker") or item.get("identifier"),
                    start=item.get("start"),
                    end=item.get("end"),
                    text=item["text"],
                )
            )
    return segments
