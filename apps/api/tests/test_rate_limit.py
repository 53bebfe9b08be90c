from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from agencydesk.core.config import get_settings
from agencydesk.core.database import Base, get_db
from agencydesk.main import app
from agencydesk.middleware.rate_limit import MutationLimiter, reset_rate_limiter, route_group
from agencydesk.pipeline.api import get_current_user
from agencydesk.pipeline.service import ActorUser


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


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


def test_mutating_pipeline_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = []
    for index in range(5):
        response = client.post(
            "/api/pipeline/opportunities",
            json={"title": f"Rate Limit Opportunity {index}", "client_name": "Acme Corp"},
        )
        responses.append(response)

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "rate_limited"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_route_groups_have_separate_buckets(client: TestClient) -> None:
    for index in range(3):
        assert client.post("/api/clients", json={"name": f"Client {index}"}).status_code == 201

    assert client.post("/api/clients", json={"name": "Client 4"}).status_code == 429
    assert client.post("/api/strategies", json={"title": "Still allowed"}).status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    create = client.post(
        "/api/pipeline/opportunities",
        json={"title": "Readable Opportunity", "client_name": "Acme Corp"},
    )
    assert create.status_code == 201

    responses = [client.get("/api/pipeline/opportunities") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_transitions_have_their_own_bucket(client: TestClient) -> None:
    created = []
    for index in range(3):
        response = client.post(
            "/api/pipeline/opportunities",
            json={"title": f"Bucket Opportunity {index}", "client_name": "Acme Corp"},
        )
        assert response.status_code == 201
        created.append(response.json())

    assert (
        client.post(
            "/api/pipeline/opportunities",
            json={"title": "One too many", "client_name": "Acme Corp"},
        ).status_code
        == 429
    )

    moved = client.post(
        f"/api/pipeline/opportunities/{created[0]['id']}/transitions",
        json={"transition": "forward"},
    )
    assert moved.status_code == 200


def test_route_group_splits_workflow_actions() -> None:
    assert route_group("/api/pipeline/opportunities") == "pipeline"
    assert route_group("/api/pipeline/opportunities/4/transitions") == "pipeline.transitions"
    assert route_group("/api/pipeline/opportunities/4/conversion/confirm") == "pipeline.conversion.confirm"
    assert route_group("/api/pipeline/opportunities/4/conversion/cancel") == "pipeline.conversion.cancel"
    assert route_group("/api/strategies/9/transitions") == "strategies.transitions"
    assert route_group("/api/clients/2") == "clients"


def test_limiter_refills_over_the_window() -> None:
    now = [100.0]
    limiter = MutationLimiter(clock=lambda: now[0])
    key = ("user-1", "clients")

    assert [limiter.acquire(key, capacity=2, window_seconds=2) for _ in range(2)] == [0, 0]
    assert limiter.acquire(key, capacity=2, window_seconds=2) == 1

    now[0] += 1
    assert limiter.acquire(key, capacity=2, window_seconds=2) == 0
    assert limiter.acquire(key, capacity=2, window_seconds=2) == 1
    assert limiter.acquire(("user-2", "clients"), capacity=2, window_seconds=2) == 0
