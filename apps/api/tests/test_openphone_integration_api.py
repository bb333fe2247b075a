from __future__ import annotations

import uuid
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from callsync.core.config import Settings, get_settings
from callsync.core.database import Base, get_db
from callsync.main import app
from callsync.telephony.api import get_integration_service
from callsync.telephony.client import OpenPhoneClient
from callsync.telephony.models import CallSession
from callsync.telephony.service import OpenPhoneIntegrationService


def _openphone_api(request: httpx.Request) -> httpx.Response:
    if request.headers.get("authorization") == "op-proxy-key":
        return httpx.Response(200, text="<html>gateway maintenance</html>")
    if request.headers.get("authorization") != "op-test-key":
        return httpx.Response(401, json={"message": "Unauthorized"})

    path = request.url.path
    if path == "/v1/phone-numbers":
        return httpx.Response(200, json={"data": [{"id": "PN1", "phoneNumber": "+15550000", "name": "Sales"}]})
    if path == "/v1/calls":
        assert request.url.params["phoneNumberId"] == "PN1"
        assert request.url.params["participants"] == "+15550100"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "C1", "direction": "outgoing", "from": "+15550000", "to": "+15550100", "duration": 61},
                    {"id": "C2", "direction": "incoming", "from": "+15550100", "to": "+15550000", "duration": 0},
                ]
            },
        )
    if path == "/v1/call-recordings/C1":
        return httpx.Response(200, json={"data": [{"url": "https://r/C1.mp3"}]})
    if path == "/v1/call-transcripts/C1":
        return httpx.Response(
            200,
            json={"data": {"dialogue": [{"identifier": "+15550100", "text": "Hi there", "start": 0.0, "end": 1.2}]}},
        )
    return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("OPENPHONE_API_KEY", "op-test-key")
    monkeypatch.setenv("OPENPHONE_PHONE_NUMBER_ID", "PN1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def client_factory(settings: Settings) -> OpenPhoneClient:
        return OpenPhoneClient.from_settings(settings, transport=httpx.MockTransport(_openphone_api))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_integration_service] = lambda: OpenPhoneIntegrationService(client_factory=client_factory)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_connection_check_lists_phone_numbers(client: TestClient) -> None:
    response = client.get("/api/integrations/openphone")

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "phoneNumbers": [{"id": "PN1", "phoneNumber": "+15550000", "name": "Sales"}],
    }


def test_connection_check_without_api_key(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENPHONE_API_KEY")
    get_settings.cache_clear()

    response = client.get("/api/integrations/openphone")

    assert response.status_code == 400
    assert response.json()["missing"] == ["OPENPHONE_API_KEY"]


def test_connection_check_surfaces_provider_errors(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENPHONE_API_KEY", "revoked-key")
    get_settings.cache_clear()

    response = client.get("/api/integrations/openphone")

    assert response.status_code == 401
    assert response.json()["error"] == "API key validation failed"


def test_backfill_enriches_calls_and_updates_sessions(client: TestClient, db_session: Session) -> None:
    registered = client.post(
        "/api/calls/attempts",
        json={"lead_id": "L1", "dialed_number": "+15550100", "openphone_call_id": "C1"},
    ).json()

    response = client.post("/api/integrations/openphone/backfill", json={"leadPhoneNumber": "+15550100"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["callsImported"] == 2
    assert body["sessionsUpdated"] == 1

    calls = {call["callId"]: call for call in body["calls"]}
    assert calls["C1"]["recordingUrl"] == "https://r/C1.mp3"
    assert calls["C1"]["transcript"][0]["speaker"] == "+15550100"
    assert calls["C2"]["recordingUrl"] is None
    assert calls["C2"]["transcript"] is None

    call_session = db_session.get(CallSession, uuid.UUID(registered["session_id"]))
    db_session.refresh(call_session)
    assert call_session.recording_url == "https://r/C1.mp3"
    assert call_session.transcript_text == "+15550100: Hi there"


def test_backfill_is_idempotent(client: TestClient) -> None:
    client.post(
        "/api/calls/attempts",
        json={"lead_id": "L1", "dialed_number": "+15550100", "openphone_call_id": "C1"},
    )

    first = client.post("/api/integrations/openphone/backfill", json={"leadPhoneNumber": "+15550100"})
    second = client.post("/api/integrations/openphone/backfill", json={"leadPhoneNumber": "+15550100"})

    assert first.json()["sessionsUpdated"] == 1
    assert second.json()["sessionsUpdated"] == 0


def test_backfill_requires_phone_number_id(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENPHONE_PHONE_NUMBER_ID")
    get_settings.cache_clear()

    response = client.post("/api/integrations/openphone/backfill", json={"leadPhoneNumber": "+15550100"})

    assert response.status_code == 400
    assert response.json()["missing"] == ["OPENPHONE_PHONE_NUMBER_ID"]


def test_non_json_provider_response_maps_to_502(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENPHONE_API_KEY", "op-proxy-key")
    get_settings.cache_clear()

    check = client.get("/api/integrations/openphone")
    backfill = client.post("/api/integrations/openphone/backfill", json={"leadPhoneNumber": "+15550100"})

    assert check.status_code == 502
    assert check.json()["error"] == "Invalid response from OpenPhone API"
    assert backfill.status_code == 502
    assert backfill.json()["error"] == "Invalid response from OpenPhone API"
