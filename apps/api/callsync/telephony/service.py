from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from callsync.context import reset_webhook_event_id, set_webhook_event_id
from callsync.core.config import Settings
from callsync.metrics import observe_signature_failure
from callsync.telephony import signature
from callsync.telephony.client import OpenPhoneClient
from callsync.telephony.correlator import CallCorrelator
from callsync.telephony.errors import (
    ArtifactPersistenceError,
    EventDecodeError,
    IntegrationNotConfiguredError,
    OpenPhoneAPIError,
    WebhookSignatureError,
)
from callsync.telephony.events import (
    CALL_COMPLETED,
    RECORDING_COMPLETED,
    SUMMARY_COMPLETED,
    TRANSCRIPT_COMPLETED,
    CallCompleted,
    RecordingCompleted,
    SummaryCompleted,
    TranscriptCompleted,
    decode_call_completed,
    extract_call_id,
    normalize_direction,
)
from callsync.telephony.merger import ArtifactMerger
from callsync.telephony.models import CallSession, WebhookEvent, utcnow
from callsync.telephony.registry import PendingAttemptRegistry, ProcessedCallLinkStore
from callsync.telephony.router import EventRouter, RouteOutcome
from callsync.telephony.schemas import (
    BackfilledCall,
    BackfillRequest,
    BackfillResult,
    CallArtifactsRead,
    DialAttemptCreate,
    DialAttemptRead,
    PhoneNumberRead,
    ProcessedCallLinkRead,
    coerce_segments,
    transcript_segments_to_text,
)


logger = logging.getLogger("callsync.telephony.service")
tracer = trace.get_tracer("callsync.telephony.service")


def authenticate_delivery(raw_body: bytes, signature_header: str | None, signing_secret: str | None) -> bool:
    """Return True when the delivery was verified, False when verification is disabled.

    Raises WebhookSignatureError when a secret is configured and the signature does not check out.
    """
    if not signing_secret:
        logger.warning("webhook.signature_skipped", extra={"outcome": "no_signing_secret"})
        return False
    if signature.verify(raw_body, signature_header, signing_secret):
        return True
    reason = signature.signature_failure_reason(signature_header)
    observe_signature_failure(reason)
    logger.warning("webhook.signature_rejected", extra={"outcome": reason})
    raise WebhookSignatureError(reason)


def record_webhook_event(session: Session, envelope: dict[str, Any], *, verified: bool) -> None:
    event_type = envelope.get("type") if isinstance(envelope.get("type"), str) else "unknown"
    provider_event_id = envelope.get("id") if isinstance(envelope.get("id"), str) else None
    try:
        session.add(
            WebhookEvent(
                provider_event_id=provider_event_id,
                event_type=event_type,
                call_id=extract_call_id(envelope),
                payload_json=json.dumps(envelope, default=str),
                signature_verified=verified,
            )
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("webhook.event_log_failed", extra={"event_type": event_type, "error": str(exc)})


def build_event_router(
    correlator: CallCorrelator | None = None,
    merger: ArtifactMerger | None = None,
) -> EventRouter:
    correlator = correlator or CallCorrelator()
    merger = merger or ArtifactMerger()

    def on_call_completed(session: Session, event: CallCompleted) -> dict[str, Any]:
        correlation = correlator.correlate(session, event)
        merge = merger.apply_call_completed(session, event, allow_link_fallback=True)
        return {
            "correlation": correlation.result,
            "merge": merge.status,
            "session_id": str(merge.session_id) if merge.session_id else None,
        }

    def on_recording_completed(session: Session, event: RecordingCompleted) -> dict[str, Any]:
        merge = merger.apply_recording(session, event, allow_link_fallback=True)
        return {"merge": merge.status, "session_id": str(merge.session_id) if merge.session_id else None}

    def on_transcript_completed(session: Session, event: TranscriptCompleted) -> dict[str, Any]:
        merge = merger.apply_transcript(session, event, allow_link_fallback=True)
        return {"merge": merge.status, "session_id": str(merge.session_id) if merge.session_id else None}

    def on_summary_completed(session: Session, event: SummaryCompleted) -> dict[str, Any]:
        merge = merger.apply_summary(session, event, allow_link_fallback=True)
        return {"merge": merge.status, "session_id": str(merge.session_id) if merge.session_id else None}

    return EventRouter(
        {
            CALL_COMPLETED: on_call_completed,
            RECORDING_COMPLETED: on_recording_completed,
            TRANSCRIPT_COMPLETED: on_transcript_completed,
            SUMMARY_COMPLETED: on_summary_completed,
        }
    )


def parse_envelope(raw_body: bytes) -> dict[str, Any] | None:
    try:
        envelope = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        return None
    return envelope if isinstance(envelope, dict) else None


@dataclass(slots=True)
class WebhookService:
    router: EventRouter = field(default_factory=build_event_router)

    def process_delivery(self, session: Session, raw_body: bytes, *, verified: bool) -> dict[str, Any]:
        envelope = parse_envelope(raw_body)
        if envelope is None:
            logger.warning("webhook.payload_invalid", extra={"error": "body is not a JSON object"})
            return {"received": True, "outcome": "invalid", "error": "invalid_payload"}

        event_id = envelope.get("id") if isinstance(envelope.get("id"), str) else None
        token = set_webhook_event_id(event_id)
        try:
            with tracer.start_as_current_span("webhook.process") as span:
                span.set_attribute("event_type", str(envelope.get("type")))
                span.set_attribute("signature_verified", verified)
                logger.info(
                    "webhook.received",
                    extra={"event_type": envelope.get("type"), "call_id": extract_call_id(envelope)},
                )
                record_webhook_event(session, envelope, verified=verified)
                outcome = self.router.route(session, envelope)
        finally:
            reset_webhook_event_id(token)
        return self._ack(outcome)

    @staticmethod
    def _ack(outcome: RouteOutcome) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True, "outcome": outcome.outcome}
        if outcome.error:
            body["error"] = outcome.error
        return body


@dataclass(slots=True)
class LegacyCallWebhookService:
    """Deterministic call.completed handling keyed by the call id stored at dial time."""

    merger: ArtifactMerger = field(default_factory=ArtifactMerger)

    def handle(self, session: Session, body: Any) -> tuple[int, dict[str, Any]]:
        if not isinstance(body, dict):
            return 400, {"error": "Invalid payload"}

        event_type = body.get("type")
        if event_type != CALL_COMPLETED:
            return 200, {"status": "ignored", "reason": f"not a call.completed event: {event_type}"}

        try:
            event = decode_call_completed(body)
        except EventDecodeError:
            return 400, {"error": "Missing call ID"}

        try:
            result = self.merger.apply_call_completed(session, event)
        except ArtifactPersistenceError:
            return 500, {"error": "Update failed"}
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "call.session_lookup_failed",
                extra={"call_id": event.call_id, "event_type": CALL_COMPLETED, "error": str(exc)},
            )
            return 500, {"error": "Update failed"}

        if result.status == "no_match":
            return 200, {"status": "no_match", "callId": event.call_id}
        if result.status == "already_processed":
            return 200, {"status": "already_processed", "sessionId": str(result.session_id)}
        return 200, {"status": "updated", "sessionId": str(result.session_id)}


@dataclass(slots=True)
class DialAttemptService:
    registry: PendingAttemptRegistry = field(default_factory=PendingAttemptRegistry)
    links: ProcessedCallLinkStore = field(default_factory=ProcessedCallLinkStore)

    def register_attempt(self, session: Session, payload: DialAttemptCreate) -> DialAttemptRead:
        started_at = payload.started_at or utcnow()
        attempt = self.registry.register(
            session,
            lead_id=payload.lead_id,
            dialed_number=payload.dialed_number,
            started_at=started_at,
        )
        direction = normalize_direction(payload.direction)
        call_session = CallSession(
            attempt_id=attempt.id,
            lead_id=payload.lead_id,
            openphone_call_id=payload.openphone_call_id or None,
            direction=direction,
            from_number=payload.from_number if direction == "outbound" else payload.dialed_number,
            to_number=payload.dialed_number if direction == "outbound" else payload.from_number,
            status="initiated",
            started_at=started_at,
        )
        session.add(call_session)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ValueError("openphone_call_id is already attached to another call session") from exc

        logger.info(
            "call.attempt_registered",
            extra={
                "attempt_id": str(attempt.id),
                "lead_id": payload.lead_id,
                "session_id": str(call_session.id),
                "call_id": payload.openphone_call_id,
            },
        )
        return DialAttemptRead(
            attempt_id=attempt.id,
            session_id=call_session.id,
            lead_id=payload.lead_id,
            dialed_number=payload.dialed_number,
            openphone_call_id=call_session.openphone_call_id,
            status=call_session.status,
            started_at=started_at,
        )

    def get_link(self, session: Session, provider_call_id: str) -> ProcessedCallLinkRead | None:
        link = self.links.get(session, provider_call_id)
        return ProcessedCallLinkRead.model_validate(link) if link is not None else None


@dataclass(slots=True)
class CallQueryService:
    def get_artifacts(
        self,
        session: Session,
        *,
        attempt_id: uuid.UUID | None = None,
        session_id: uuid.UUID | None = None,
    ) -> CallArtifactsRead | None:
        query = select(CallSession)
        if attempt_id is not None:
            query = query.where(CallSession.attempt_id == attempt_id)
        elif session_id is not None:
            query = query.where(CallSession.id == session_id)
        else:
            return None

        row = session.scalar(query.order_by(CallSession.created_at.desc()).limit(1))
        if row is None:
            return None
        return CallArtifactsRead(
            session_id=row.id,
            attempt_id=row.attempt_id,
            recording_url=row.recording_url,
            transcript_text=row.transcript_text,
            status=row.status,
        )


ClientFactory = Callable[[Settings], OpenPhoneClient]


@dataclass(slots=True)
class OpenPhoneIntegrationService:
    client_factory: ClientFactory = OpenPhoneClient.from_settings
    merger: ArtifactMerger = field(default_factory=ArtifactMerger)

    def check_connection(self, settings: Settings) -> list[PhoneNumberRead]:
        with self.client_factory(settings) as client:
            numbers = client.list_phone_numbers()
        return [
            PhoneNumberRead(id=str(item.get("id")), phone_number=item.get("phoneNumber"), name=item.get("name"))
            for item in numbers
        ]

    def backfill(self, session: Session, settings: Settings, payload: BackfillRequest) -> BackfillResult:
        missing = [
            name
            for name, value in (
                ("OPENPHONE_API_KEY", settings.openphone_api_key),
                ("OPENPHONE_PHONE_NUMBER_ID", settings.openphone_phone_number_id),
            )
            if not value
        ]
        if missing:
            raise IntegrationNotConfiguredError(missing)

        created_after = datetime.now(timezone.utc) - timedelta(days=payload.days_back)
        with self.client_factory(settings) as client:
            raw_calls = client.list_calls(
                settings.openphone_phone_number_id or "",
                payload.lead_phone_number,
                created_after,
            )
            calls = [self._enrich(client, raw) for raw in raw_calls if isinstance(raw.get("id"), str)]

        sessions_updated = 0
        for call in calls:
            sessions_updated += self._apply(session, call)

        logger.info(
            "openphone.backfill_completed",
            extra={"count": len(calls), "status": f"sessions_updated={sessions_updated}"},
        )
        return BackfillResult(calls_imported=len(calls), sessions_updated=sessions_updated, calls=calls)

    @staticmethod
    def _enrich(client: OpenPhoneClient, raw: dict[str, Any]) -> BackfilledCall:
        call_id = raw["id"]
        recording_url: str | None = None
        transcript = None
        try:
            recording_url = client.get_call_recording_url(call_id)
        except OpenPhoneAPIError as exc:
            logger.info("openphone.recording_unavailable", extra={"call_id": call_id, "error": exc.message})
        try:
            transcript = coerce_segments(client.get_call_transcript(call_id))
        except OpenPhoneAPIError as exc:
            logger.info("openphone.transcript_unavailable", extra={"call_id": call_id, "error": exc.message})

        duration = raw.get("duration")
        return BackfilledCall(
            call_id=call_id,
            direction=raw.get("direction"),
            from_number=raw.get("from"),
            to_number=raw.get("to"),
            answered_at=raw.get("answeredAt"),
            completed_at=raw.get("completedAt"),
            duration=int(duration) if isinstance(duration, (int, float)) else None,
            recording_url=recording_url,
            transcript=transcript,
        )

    def _apply(self, session: Session, call: BackfilledCall) -> int:
        recording = self.merger.apply_recording(
            session, RecordingCompleted(call_id=call.call_id, recording_url=call.recording_url)
        )
        if recording.status == "no_match":
            return 0
        transcript = self.merger.apply_transcript(
            session,
            TranscriptCompleted(call_id=call.call_id, transcript_text=transcript_segments_to_text(call.transcript)),
        )
        return 1 if "updated" in {recording.status, transcript.status} else 0
