from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from agencydesk import events
from agencydesk.core.events import InProcessEventBus, InternalEvent, event_bus
from agencydesk.main import app


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def test_subscribe_is_idempotent_and_ordered() -> None:
    bus = InProcessEventBus()
    seen: list[str] = []

    def first(event: InternalEvent) -> None:
        seen.append(f"first:{event.payload['n']}")

    def second(event: InternalEvent) -> None:
        seen.append(f"second:{event.payload['n']}")

    bus.subscribe("pipeline.opportunity.closed_won", first)
    bus.subscribe("pipeline.opportunity.closed_won", second)
    bus.subscribe("pipeline.opportunity.closed_won", first)
    bus.publish("pipeline.opportunity.closed_won", {"n": 1})

    assert seen == ["first:1", "second:1"]

    bus.unsubscribe("pipeline.opportunity.closed_won", first)
    bus.publish("pipeline.opportunity.closed_won", {"n": 2})
    assert seen == ["first:1", "second:1", "second:2"]
    assert bus.handlers_for("unknown") == []


def test_emit_records_envelope_and_dispatches() -> None:
    received: list[InternalEvent] = []

    def handler(event: InternalEvent) -> None:
        received.append(event)

    event_bus.subscribe("clients.client.created", handler)
    try:
        envelope = events.emit("clients.client.created", {"client_id": 3}, actor_user_id="user-9")
    finally:
        event_bus.unsubscribe("clients.client.created", handler)

    assert events.published_events == [envelope]
    assert envelope["version"] == 1
    assert envelope["actor_user_id"] == "user-9"
    assert envelope["payload"] == {"client_id": 3}
    assert received[0].payload is envelope


def test_lifespan_registers_handlers_once(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    with TestClient(app):
        pass
    with TestClient(app):
        pass

    assert len(event_bus.handlers_for("pipeline.opportunity.closed_won")) == 1
    started = [
        record
        for record in caplog.records
        if record.name == "agencydesk.lifecycle" and record.getMessage() == "system_event"
    ]
    assert len(started) == 2
