from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from callsync.core.auth import AuthUser, get_current_user
from callsync.core.config import get_settings
from callsync.core.database import Base, get_db
from callsync.main import app


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
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("OPENPHONE_WEBHOOK_SECRET", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_webhook_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["webhook_signature_verification"] is False

    attempt = client.post("/api/calls/attempts", json={"lead_id": "L-metrics", "dialed_number": "+15550900"})
    assert attempt.status_code == 201

    delivery = client.post(
        "/api/webhooks/openphone",
        json={
            "id": "EV-metrics",
            "type": "call.completed",
            "data": {"object": {"id": "C-metrics", "direction": "outgoing", "to": "+15550900", "duration": 12}},
        },
    )
    assert delivery.status_code == 200

    link = client.get("/api/calls/links/C-metrics")
    assert link.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "webhook_deliveries_total" in body
    assert "call_correlation_total" in body
    assert "call_artifact_merge_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/calls/links/{id}"' in body
    assert 'event_type="call.completed"' in body
    assert 'result="linked"' in body


def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="viewer", roles=[])

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
