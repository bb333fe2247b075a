from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from callsync.telephony.events import normalize_e164
from callsync.telephony.models import PendingCallAttempt, ProcessedCallLink, utcnow


@dataclass(slots=True)
class PendingAttemptRegistry:
    """Durable registry of dial attempts awaiting a provider call id.

    Writes are flushed, never committed: the caller owns the transaction so a
    claim and the link it produces land together.
    """

    def register(
        self,
        session: Session,
        *,
        lead_id: str,
        dialed_number: str,
        started_at: datetime | None = None,
        attempt_id: uuid.UUID | None = None,
    ) -> PendingCallAttempt:
        number = normalize_e164(dialed_number)
        if number is None:
            raise ValueError("dialed_number must contain digits")
        attempt = PendingCallAttempt(
            id=attempt_id or uuid.uuid4(),
            lead_id=lead_id,
            dialed_number=number,
            started_at=started_at or utcnow(),
        )
        session.add(attempt)
        session.flush()
        return attempt

    def find_match(self, session: Session, number: str, *, since: datetime) -> PendingCallAttempt | None:
        return session.scalar(
            select(PendingCallAttempt)
            .where(
                PendingCallAttempt.dialed_number == number,
                PendingCallAttempt.started_at >= since,
            )
            .order_by(PendingCallAttempt.started_at.desc(), PendingCallAttempt.created_at.desc())
            .limit(1)
        )

    def claim(self, session: Session, attempt_id: uuid.UUID) -> bool:
        result = session.execute(
            delete(PendingCallAttempt)
            .where(PendingCallAttempt.id == attempt_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def purge_expired(self, session: Session, *, before: datetime) -> int:
        result = session.execute(
            delete(PendingCallAttempt)
            .where(PendingCallAttempt.started_at < before)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def list_pending(self, session: Session) -> list[PendingCallAttempt]:
        return list(session.scalars(select(PendingCallAttempt).order_by(PendingCallAttempt.started_at)))


@dataclass(slots=True)
class ProcessedCallLinkStore:
    """Links are keyed by provider call id; the unique constraint makes creation at-most-once."""

    def get(self, session: Session, provider_call_id: str) -> ProcessedCallLink | None:
        return session.scalar(select(ProcessedCallLink).where(ProcessedCallLink.provider_call_id == provider_call_id))

    def add(self, session: Session, *, provider_call_id: str, attempt_id: uuid.UUID, lead_id: str) -> ProcessedCallLink:
        link = ProcessedCallLink(provider_call_id=provider_call_id, attempt_id=attempt_id, lead_id=lead_id)
        session.add(link)
        session.flush()
        return link
