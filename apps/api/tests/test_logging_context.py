from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agencydesk.core.config import get_settings
from agencydesk.core.database import Base, get_db
from agencydesk.logging import JsonLogFormatter
from agencydesk.main import app
from agencydesk.middleware.rate_limit import reset_rate_limiter
from agencydesk.pipeline.api import get_current_user
from agencydesk.pipeline.service import ActorUser, draft_registry


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    draft_registry.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    draft_registry.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(user_id="user-1", correlation_id=getattr(request.state, "correlation_id", None))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/pipeline/opportunities/4040", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "agencydesk.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/pipeline/opportunities/{opportunity_id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_transition_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    created = client.post(
        "/api/pipeline/opportunities",
        json={"title": "Log Opportunity", "client_name": "Log Client"},
        headers={"X-Correlation-Id": "abc-456"},
    ).json()
    moved = client.post(
        f"/api/pipeline/opportunities/{created['id']}/transitions",
        json={"transition": "forward"},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert moved.status_code == 200
    rejected = client.post(
        f"/api/pipeline/opportunities/{created['id']}/transitions",
        json={"transition": "won"},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert rejected.status_code == 422

    pipeline_records = [record for record in caplog.records if record.name == "agencydesk.pipeline"]
    assert any(
        record.getMessage() == "opportunity.transitioned"
        and getattr(record, "opportunity_id", None) == created["id"]
        and getattr(record, "from_stage", None) == "prospecting"
        and getattr(record, "to_stage", None) == "qualification"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in pipeline_records
    )
    assert any(
        record.getMessage() == "opportunity.transition_rejected"
        and getattr(record, "transition", None) == "won"
        and getattr(record, "from_stage", None) == "qualification"
        for record in pipeline_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "agencydesk.pipeline",
            "levelname": "INFO",
            "msg": "opportunity.transitioned",
            "opportunity_id": 7,
            "to_stage": "closed_won",
            "secret": "do-not-log",
            "correlation_id": "corr-fmt-1",
            "error": "x" * 900,
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "opportunity.transitioned"
    assert payload["correlation_id"] == "corr-fmt-1"
    assert payload["fields"]["opportunity_id"] == 7
    assert payload["fields"]["to_stage"] == "closed_won"
    assert "secret" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_health_probe_is_not_request_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "ok"

    assert not [
        record
        for record in caplog.records
        if record.name == "agencydesk.request" and getattr(record, "path", None) == "/health"
    ]
