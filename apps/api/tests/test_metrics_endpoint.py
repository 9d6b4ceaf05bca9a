from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from oppflow.core.config import get_settings
from oppflow.core.database import Base, get_db
from oppflow.crm.triggers import notifications
from oppflow.main import app


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
    monkeypatch.setenv("NOTIFICATION_BACKEND", "stub")
    get_settings.cache_clear()
    notifications.sent_messages.clear()
    yield
    get_settings.cache_clear()
    notifications.sent_messages.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_trigger_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    created = client.post(
        "/api/crm/opportunities",
        json=[{"name": "Metrics Won", "stage_name": "Closed Won"}, {"name": "Metrics Open", "stage_name": "Prospecting"}],
    )
    assert created.status_code == 201
    ids = [item["id"] for item in created.json()]

    deleted = client.post("/api/crm/opportunities/delete", json={"ids": ids})
    assert deleted.status_code == 200

    fetched = client.get(f"/api/crm/opportunities/{uuid.uuid4()}")
    assert fetched.status_code == 404

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_trigger_runs_total" in body
    assert "crm_trigger_duration_seconds" in body
    assert "crm_trigger_rejections_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/opportunities/{id}"' in body
    assert REGISTRY.get_sample_value(
        "crm_trigger_runs_total",
        {"phase": "after", "operation": "insert", "status": "Succeeded"},
    )
    assert REGISTRY.get_sample_value(
        "crm_trigger_rejections_total",
        {"reason": "Cannot delete closed opportunity"},
    )


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
