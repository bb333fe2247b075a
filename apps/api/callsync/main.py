from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from callsync.api.routes import router as api_router
from callsync.core.config import get_settings
from callsync.logging import configure_logging
from callsync.middleware.correlation_id import CorrelationIdMiddleware
from callsync.middleware.request_logging import RequestLoggingMiddleware
from callsync.otel import SERVICE_NAME, get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("callsync.lifecycle")


def _log_integration_posture() -> None:
    settings = get_settings()
    if not settings.openphone_webhook_secret:
        logger.warning("webhook.signature_verification_disabled", extra={"outcome": "no_signing_secret"})
    missing = [
        name
        for name, value in (
            ("OPENPHONE_API_KEY", settings.openphone_api_key),
            ("OPENPHONE_PHONE_NUMBER_ID", settings.openphone_phone_number_id),
        )
        if not value
    ]
    if missing:
        logger.info("openphone.integration_incomplete", extra={"error": ", ".join(missing)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    _log_integration_posture()
    logger.info("system.started", extra={"status": "ok"})
    yield
    logger.info("system.stopped", extra={"status": "ok"})


app = FastAPI(title="CallSync API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel(SERVICE_NAME, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
