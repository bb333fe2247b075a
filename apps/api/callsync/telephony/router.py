from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from callsync.metrics import observe_webhook_delivery
from callsync.telephony.errors import EventDecodeError
from callsync.telephony.events import DECODERS, CallEvent, extract_call_id


logger = logging.getLogger("callsync.telephony.router")
tracer = trace.get_tracer("callsync.telephony.router")

EventHandler = Callable[[Session, Any], dict[str, Any]]
EventDecoder = Callable[[dict[str, Any]], CallEvent]
RouteStatus = Literal["handled", "ignored", "invalid", "error"]
UNKNOWN_EVENT_LABEL = "unknown"


@dataclass(frozen=True, slots=True)
class RouteOutcome:
    event_type: str
    outcome: RouteStatus
    call_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class EventRouter:
    """Dispatches verified webhook envelopes to the handler registered for their type.

    Handlers are fixed at construction. Unknown types are dropped, and a
    handler failure is rolled back and reported in the outcome rather than
    raised, so the transport can still acknowledge the delivery.
    """

    def __init__(
        self,
        handlers: Mapping[str, EventHandler],
        decoders: Mapping[str, EventDecoder] | None = None,
    ) -> None:
        self._handlers = MappingProxyType(dict(handlers))
        self._decoders = MappingProxyType(dict(decoders if decoders is not None else DECODERS))
        missing = sorted(set(self._handlers) - set(self._decoders))
        if missing:
            raise ValueError(f"no decoder for event types: {', '.join(missing)}")

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def route(self, session: Session, envelope: dict[str, Any]) -> RouteOutcome:
        raw_type = envelope.get("type")
        event_type = raw_type if isinstance(raw_type, str) else ""
        call_id = extract_call_id(envelope)

        with tracer.start_as_current_span("webhook.route") as span:
            span.set_attribute("event_type", event_type)
            if call_id:
                span.set_attribute("call_id", call_id)

            handler = self._handlers.get(event_type)
            if handler is None:
                logger.info("webhook.event_ignored", extra={"event_type": event_type, "call_id": call_id})
                return self._record(RouteOutcome(event_type=event_type, outcome="ignored", call_id=call_id))

            try:
                event = self._decoders[event_type](envelope)
            except EventDecodeError as exc:
                logger.warning(
                    "webhook.event_invalid",
                    extra={"event_type": event_type, "call_id": call_id, "error": exc.reason},
                )
                return self._record(
                    RouteOutcome(event_type=event_type, outcome="invalid", call_id=call_id, error=exc.reason)
                )

            try:
                detail = handler(session, event)
            except Exception as exc:
                session.rollback()
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))
                logger.exception(
                    "webhook.handler_failed",
                    extra={"event_type": event_type, "call_id": event.call_id, "error": str(exc)},
                )
                return self._record(
                    RouteOutcome(event_type=event_type, outcome="error", call_id=event.call_id, error=str(exc))
                )

            return self._record(
                RouteOutcome(event_type=event_type, outcome="handled", call_id=event.call_id, detail=detail)
            )

    def _record(self, outcome: RouteOutcome) -> RouteOutcome:
        # label only registered types; envelope types are caller-controlled
        label = outcome.event_type if outcome.event_type in self._handlers else UNKNOWN_EVENT_LABEL
        observe_webhook_delivery(label, outcome.outcome)
        return outcome
