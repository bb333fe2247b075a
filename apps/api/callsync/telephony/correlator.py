from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from callsync.core.config import get_settings
from callsync.metrics import observe_correlation
from callsync.telephony.events import CallCompleted
from callsync.telephony.models import utcnow
from callsync.telephony.registry import PendingAttemptRegistry, ProcessedCallLinkStore


logger = logging.getLogger("callsync.telephony.correlator")

CorrelationStatus = Literal["linked", "already_linked", "unmatched"]


@dataclass(frozen=True, slots=True)
class CorrelationResult:
    result: CorrelationStatus
    provider_call_id: str
    attempt_id: uuid.UUID | None = None
    lead_id: str | None = None


@dataclass(slots=True)
class CallCorrelator:
    """Heuristic phone-number + time-window matching of call.completed events.

    Links produced here are best-effort UI context. The durable call session
    is only written by the artifact merger.
    """

    registry: PendingAttemptRegistry = field(default_factory=PendingAttemptRegistry)
    links: ProcessedCallLinkStore = field(default_factory=ProcessedCallLinkStore)
    window: timedelta | None = None
    clock: Callable[[], datetime] = utcnow

    def resolve_window(self) -> timedelta:
        """Explicit window, else the configured one read at call time."""
        if self.window is not None:
            return self.window
        return timedelta(minutes=get_settings().correlation_window_minutes)

    def correlate(self, session: Session, event: CallCompleted) -> CorrelationResult:
        existing = self.links.get(session, event.call_id)
        if existing is not None:
            observe_correlation("already_linked")
            return CorrelationResult(
                result="already_linked",
                provider_call_id=event.call_id,
                attempt_id=existing.attempt_id,
                lead_id=existing.lead_id,
            )

        number = event.participant_number
        cutoff = self.clock() - self.resolve_window()
        purged = self.registry.purge_expired(session, before=cutoff)
        if purged:
            logger.info("call.pending_attempts_expired", extra={"count": purged})

        candidate = self.registry.find_match(session, number, since=cutoff) if number else None
        if candidate is None:
            session.commit()
            observe_correlation("unmatched")
            logger.info(
                "call.unmatched",
                extra={"call_id": event.call_id, "participant_number": number},
            )
            return CorrelationResult(result="unmatched", provider_call_id=event.call_id)

        attempt_id = candidate.id
        lead_id = candidate.lead_id
        if not self.registry.claim(session, attempt_id):
            session.rollback()
            observe_correlation("unmatched")
            logger.info("call.attempt_already_claimed", extra={"call_id": event.call_id, "attempt_id": str(attempt_id)})
            return CorrelationResult(result="unmatched", provider_call_id=event.call_id)

        try:
            self.links.add(session, provider_call_id=event.call_id, attempt_id=attempt_id, lead_id=lead_id)
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = self.links.get(session, event.call_id)
            observe_correlation("already_linked")
            return CorrelationResult(
                result="already_linked",
                provider_call_id=event.call_id,
                attempt_id=existing.attempt_id if existing is not None else None,
                lead_id=existing.lead_id if existing is not None else None,
            )

        observe_correlation("linked")
        logger.info(
            "call.correlated",
            extra={"call_id": event.call_id, "attempt_id": str(attempt_id), "lead_id": lead_id},
        )
        return CorrelationResult(
            result="linked",
            provider_call_id=event.call_id,
            attempt_id=attempt_id,
            lead_id=lead_id,
        )
