from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from callsync.core.config import Settings, get_settings
from callsync.core.database import get_db
from callsync.telephony.errors import IntegrationNotConfiguredError, OpenPhoneAPIError, WebhookSignatureError
from callsync.telephony.schemas import (
    BackfillRequest,
    CallArtifactsRead,
    DialAttemptCreate,
    DialAttemptRead,
    ProcessedCallLinkRead,
)
from callsync.telephony.service import (
    CallQueryService,
    DialAttemptService,
    LegacyCallWebhookService,
    OpenPhoneIntegrationService,
    WebhookService,
    parse_envelope,
    authenticate_delivery,
)
from callsync.telephony.signature import LEGACY_SIGNATURE_HEADER, SIGNATURE_HEADER


logger = logging.getLogger("callsync.telephony.api")

webhooks_router = APIRouter(prefix="/api/webhooks", tags=["telephony.webhooks"])
calls_router = APIRouter(prefix="/api/calls", tags=["telephony.calls"])
integrations_router = APIRouter(prefix="/api/integrations", tags=["telephony.integrations"])

webhook_service = WebhookService()
legacy_webhook_service = LegacyCallWebhookService()
dial_attempt_service = DialAttemptService()
call_query_service = CallQueryService()


def get_integration_service() -> OpenPhoneIntegrationService:
    return OpenPhoneIntegrationService()


def _signature_header(request: Request) -> str | None:
    return request.headers.get(SIGNATURE_HEADER) or request.headers.get(LEGACY_SIGNATURE_HEADER)


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"error": "Invalid signature"})


def _integration_error(exc: IntegrationNotConfiguredError | OpenPhoneAPIError) -> JSONResponse:
    if isinstance(exc, IntegrationNotConfiguredError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": str(exc), "missing": exc.missing},
        )
    content: dict[str, Any] = {"error": exc.message}
    if exc.details:
        content["details"] = exc.details[:500]
    return JSONResponse(status_code=exc.status_code, content=content)


@webhooks_router.post("/openphone")
async def receive_openphone_webhook(
    request: Request,
    session: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    raw_body = await request.body()
    try:
        verified = authenticate_delivery(raw_body, _signature_header(request), settings.openphone_webhook_secret)
    except WebhookSignatureError:
        return _unauthorized()

    try:
        body = await run_in_threadpool(webhook_service.process_delivery, session, raw_body, verified=verified)
    except Exception as exc:
        logger.exception("webhook.processing_failed", extra={"error": str(exc)})
        body = {"received": True, "outcome": "error", "error": "internal_error"}
    return JSONResponse(status_code=status.HTTP_200_OK, content=body)


@webhooks_router.get("/openphone")
def openphone_webhook_status() -> dict[str, str]:
    return {"status": "OpenPhone webhook endpoint active"}


@webhooks_router.post("/openphone/calls")
async def receive_legacy_call_webhook(
    request: Request,
    session: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    raw_body = await request.body()
    try:
        authenticate_delivery(raw_body, _signature_header(request), settings.openphone_webhook_secret)
    except WebhookSignatureError:
        return _unauthorized()

    body = parse_envelope(raw_body)
    status_code, content = await run_in_threadpool(legacy_webhook_service.handle, session, body)
    return JSONResponse(status_code=status_code, content=content)


@calls_router.post("/attempts", response_model=DialAttemptRead, status_code=status.HTTP_201_CREATED)
def register_dial_attempt(payload: DialAttemptCreate, session: Session = Depends(get_db)) -> DialAttemptRead:
    try:
        return dial_attempt_service.register_attempt(session, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@calls_router.get("/artifacts", response_model=CallArtifactsRead)
def get_call_artifacts(
    attempt_id: uuid.UUID | None = Query(default=None),
    session_id: uuid.UUID | None = Query(default=None),
    session: Session = Depends(get_db),
) -> CallArtifactsRead:
    if attempt_id is None and session_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="attempt_id or session_id is required")
    artifacts = call_query_service.get_artifacts(session, attempt_id=attempt_id, session_id=session_id)
    if artifacts is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="call not found")
    return artifacts


@calls_router.get("/links/{provider_call_id}", response_model=ProcessedCallLinkRead)
def get_call_link(provider_call_id: str, session: Session = Depends(get_db)) -> ProcessedCallLinkRead:
    link = dial_attempt_service.get_link(session, provider_call_id)
    if link is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="call link not found")
    return link


@integrations_router.get("/openphone")
def check_openphone_integration(
    settings: Settings = Depends(get_settings),
    integration: OpenPhoneIntegrationService = Depends(get_integration_service),
) -> JSONResponse:
    try:
        numbers = integration.check_connection(settings)
    except (IntegrationNotConfiguredError, OpenPhoneAPIError) as exc:
        return _integration_error(exc)
    return JSONResponse(
        content={
            "success": True,
            "phoneNumbers": [number.model_dump(by_alias=True) for number in numbers],
        }
    )


@integrations_router.post("/openphone/backfill")
def backfill_openphone_calls(
    payload: BackfillRequest,
    session: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    integration: OpenPhoneIntegrationService = Depends(get_integration_service),
) -> JSONResponse:
    try:
        result = integration.backfill(session, settings, payload)
    except (IntegrationNotConfiguredError, OpenPhoneAPIError) as exc:
        logger.warning(
            "openphone.backfill_failed",
            extra={"error": str(exc), "status": type(exc).__name__},
        )
        return _integration_error(exc)
    return JSONResponse(content=result.model_dump(by_alias=True, mode="json"))
