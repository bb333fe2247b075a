from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from callsync.metrics import observe_artifact_merge
from callsync.telephony.errors import ArtifactPersistenceError
from callsync.telephony.events import (
    CALL_COMPLETED,
    CallCompleted,
    RecordingCompleted,
    SummaryCompleted,
    TranscriptCompleted,
)
from callsync.telephony.models import CallSession, utcnow
from callsync.telephony.registry import ProcessedCallLinkStore


logger = logging.getLogger("callsync.telephony.merger")

MergeStatus = Literal["updated", "already_processed", "no_match", "no_artifact"]
MatchSource = Literal["call_id", "link"]


@dataclass(frozen=True, slots=True)
class MergeResult:
    status: MergeStatus
    call_id: str
    event_type: str
    session_id: uuid.UUID | None = None
    matched_by: MatchSource | None = None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(slots=True)
class ArtifactMerger:
    """Applies provider artifacts to the durable call session.

    Every write is a single conditional UPDATE so two deliveries racing on the
    same call cannot regress a populated field.
    """

    links: ProcessedCallLinkStore = field(default_factory=ProcessedCallLinkStore)

    def locate(
        self,
        session: Session,
        call_id: str,
        *,
        allow_link_fallback: bool = False,
    ) -> tuple[CallSession | None, MatchSource | None]:
        row = session.scalar(select(CallSession).where(CallSession.openphone_call_id == call_id))
        if row is not None:
            return row, "call_id"
        if not allow_link_fallback:
            return None, None

        link = self.links.get(session, call_id)
        if link is None:
            return None, None
        row = session.scalar(
            select(CallSession)
            .where(CallSession.attempt_id == link.attempt_id, CallSession.openphone_call_id.is_(None))
            .order_by(CallSession.created_at.desc())
            .limit(1)
        )
        return (row, "link") if row is not None else (None, None)

    def apply_call_completed(
        self,
        session: Session,
        event: CallCompleted,
        *,
        allow_link_fallback: bool = False,
    ) -> MergeResult:
        row, matched_by = self.locate(session, event.call_id, allow_link_fallback=allow_link_fallback)
        if row is None:
            return self._finish(MergeResult(status="no_match", call_id=event.call_id, event_type=CALL_COMPLETED))

        session_id = row.id
        values: dict[str, Any] = {
            "duration_sec": event.duration_sec or 0,
            "status": "completed",
            "completed_at": event.completed_at or utcnow(),
        }
        recording_url = _clean(event.recording_url)
        if recording_url is not None:
            values["recording_url"] = func.coalesce(CallSession.recording_url, recording_url)
        transcript_text = _clean(event.transcript_text)
        if transcript_text is not None:
            values["transcript_text"] = func.coalesce(CallSession.transcript_text, transcript_text)
        if matched_by == "link":
            values["openphone_call_id"] = func.coalesce(CallSession.openphone_call_id, event.call_id)

        statement = (
            update(CallSession)
            .where(
                CallSession.id == session_id,
                or_(CallSession.duration_sec.is_(None), CallSession.duration_sec <= 0),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        rowcount = self._execute(session, statement, event.call_id, CALL_COMPLETED, sorted(values))
        status: MergeStatus = "updated" if rowcount else "already_processed"
        return self._finish(
            MergeResult(
                status=status,
                call_id=event.call_id,
                event_type=CALL_COMPLETED,
                session_id=session_id,
                matched_by=matched_by,
            )
        )

    def apply_recording(
        self, session: Session, event: RecordingCompleted, *, allow_link_fallback: bool = False
    ) -> MergeResult:
        return self._write_once(
            session, event.call_id, event.type, "recording_url", event.recording_url, allow_link_fallback
        )

    def apply_transcript(
        self, session: Session, event: TranscriptCompleted, *, allow_link_fallback: bool = False
    ) -> MergeResult:
        return self._write_once(
            session, event.call_id, event.type, "transcript_text", event.transcript_text, allow_link_fallback
        )

    def apply_summary(
        self, session: Session, event: SummaryCompleted, *, allow_link_fallback: bool = False
    ) -> MergeResult:
        return self._write_once(
            session, event.call_id, event.type, "summary_text", event.summary_text, allow_link_fallback
        )

    def _write_once(
        self,
        session: Session,
        call_id: str,
        event_type: str,
        field_name: str,
        value: str | None,
        allow_link_fallback: bool,
    ) -> MergeResult:
        row, matched_by = self.locate(session, call_id, allow_link_fallback=allow_link_fallback)
        if row is None:
            return self._finish(MergeResult(status="no_match", call_id=call_id, event_type=event_type))

        session_id = row.id
        cleaned = _clean(value)
        if cleaned is None:
            return self._finish(
                MergeResult(
                    status="no_artifact",
                    call_id=call_id,
                    event_type=event_type,
                    session_id=session_id,
                    matched_by=matched_by,
                )
            )

        column = getattr(CallSession, field_name)
        values: dict[str, Any] = {field_name: cleaned}
        if matched_by == "link":
            values["openphone_call_id"] = func.coalesce(CallSession.openphone_call_id, call_id)
        statement = (
            update(CallSession)
            .where(CallSession.id == session_id, column.is_(None))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        rowcount = self._execute(session, statement, call_id, event_type, sorted(values))
        return self._finish(
            MergeResult(
                status="updated" if rowcount else "already_processed",
                call_id=call_id,
                event_type=event_type,
                session_id=session_id,
                matched_by=matched_by,
            )
        )

    def _execute(self, session: Session, statement: Any, call_id: str, event_type: str, fields: list[str]) -> int:
        try:
            result = session.execute(statement)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "call.artifact_write_failed",
                extra={"call_id": call_id, "event_type": event_type, "error": f"{fields}: {exc}"},
            )
            raise ArtifactPersistenceError(call_id, event_type, fields) from exc
        return result.rowcount or 0

    @staticmethod
    def _finish(result: MergeResult) -> MergeResult:
        observe_artifact_merge(result.event_type, result.status)
        level = logging.INFO if result.status in {"updated", "no_match"} else logging.DEBUG
        logger.log(
            level,
            "call.artifact_merge",
            extra={
                "call_id": result.call_id,
                "event_type": result.event_type,
                "status": result.status,
                "session_id": str(result.session_id) if result.session_id else None,
            },
        )
        return result
