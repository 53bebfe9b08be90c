from __future__ import annotations

from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest

from agencydesk.pipeline.conversion import (
    ConversionState,
    ConversionWorkflow,
    DraftRegistry,
    draft_from_opportunity,
)
from agencydesk.pipeline.errors import ConversionNotPending, PersistenceFailure, ValidationError


TODAY = date(2024, 6, 12)


class RecordingClients:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.created: list[dict[str, Any]] = []

    def create(self, fields: dict[str, Any]) -> SimpleNamespace:
        if self.fail:
            raise PersistenceFailure(None, "client store failure: OperationalError")
        self.created.append(dict(fields))
        return SimpleNamespace(id=len(self.created), **fields)


def _won_opportunity(**overrides: Any) -> SimpleNamespace:
    data = {
        "id": 7,
        "title": "Website Revamp",
        "client_name": "Acme Corp",
        "email": "buyer@acme.com",
        "phone": None,
        "value": Decimal("5000.00"),
        "stage": "closed_won",
    }
    data.update(overrides)
    return SimpleNamespace(**data)


@pytest.fixture()
def workflow() -> ConversionWorkflow:
    return ConversionWorkflow(DraftRegistry(), today=lambda: TODAY)


def test_draft_prefills_from_opportunity() -> None:
    draft = draft_from_opportunity(_won_opportunity(), today=TODAY)

    assert draft.opportunity_id == 7
    assert draft.name == "Acme Corp"
    assert draft.company == "Acme Corp"
    assert draft.contact_person == "Acme Corp"
    assert draft.email == "buyer@acme.com"
    assert draft.monthly_value == Decimal("5000.00")
    assert draft.status == "active"
    assert draft.start_date == TODAY
    assert draft.notes == "Cliente convertido da oportunidade: Website Revamp"
    assert draft.industry is None


def test_note_prefix_is_configurable() -> None:
    draft = draft_from_opportunity(_won_opportunity(), today=TODAY, note_prefix="Converted from: ")
    assert draft.notes == "Converted from: Website Revamp"


def test_start_leaves_draft_pending(workflow: ConversionWorkflow) -> None:
    assert workflow.state(7) is ConversionState.IDLE
    workflow.start(_won_opportunity())

    assert workflow.state(7) is ConversionState.DRAFT_PENDING
    assert workflow.pending(7).name == "Acme Corp"


def test_confirm_persists_merged_fields(workflow: ConversionWorkflow) -> None:
    clients = RecordingClients()
    workflow.start(_won_opportunity())

    client = workflow.confirm(7, {"industry": "Retail", "monthly_value": Decimal("1200")}, clients)

    assert client.id == 1
    assert clients.created[0]["industry"] == "Retail"
    assert clients.created[0]["monthly_value"] == Decimal("1200")
    assert clients.created[0]["name"] == "Acme Corp"
    assert workflow.state(7) is ConversionState.PERSISTED
    with pytest.raises(ConversionNotPending):
        workflow.pending(7)


def test_second_confirm_sees_nothing_pending(workflow: ConversionWorkflow) -> None:
    clients = RecordingClients()
    workflow.start(_won_opportunity())
    workflow.confirm(7, {}, clients)

    with pytest.raises(ConversionNotPending):
        workflow.confirm(7, {}, clients)
    assert len(clients.created) == 1


def test_unknown_edit_keys_are_ignored(workflow: ConversionWorkflow) -> None:
    clients = RecordingClients()
    workflow.start(_won_opportunity())
    workflow.confirm(7, {"opportunity_id": 99, "stage": "prospecting"}, clients)

    assert "opportunity_id" not in clients.created[0]
    assert "stage" not in clients.created[0]


def test_blank_name_keeps_draft_pending(workflow: ConversionWorkflow) -> None:
    clients = RecordingClients()
    workflow.start(_won_opportunity())

    with pytest.raises(ValidationError) as exc_info:
        workflow.confirm(7, {"name": "   "}, clients)

    assert exc_info.value.fields == {"name": "must not be empty"}
    assert clients.created == []
    assert workflow.state(7) is ConversionState.DRAFT_PENDING


def test_store_failure_is_tagged_and_draft_survives(workflow: ConversionWorkflow) -> None:
    workflow.start(_won_opportunity())

    with pytest.raises(PersistenceFailure) as exc_info:
        workflow.confirm(7, {"industry": "Retail"}, RecordingClients(fail=True))

    assert exc_info.value.step == PersistenceFailure.CLIENT_CREATE
    assert exc_info.value.code == "client_create_failed"
    assert workflow.state(7) is ConversionState.DRAFT_PENDING
    assert workflow.pending(7).industry is None

    clients = RecordingClients()
    workflow.confirm(7, {}, clients)
    assert len(clients.created) == 1


def test_cancel_drops_draft_without_writing(workflow: ConversionWorkflow) -> None:
    workflow.start(_won_opportunity())
    cancelled = workflow.cancel(7)

    assert cancelled.opportunity_id == 7
    assert workflow.state(7) is ConversionState.CANCELLED
    with pytest.raises(ConversionNotPending):
        workflow.cancel(7)


def test_discard_resets_to_idle(workflow: ConversionWorkflow) -> None:
    workflow.start(_won_opportunity())
    assert workflow.discard(7) is True
    assert workflow.state(7) is ConversionState.IDLE
    assert workflow.discard(7) is False


def test_new_draft_replaces_previous_outcome(workflow: ConversionWorkflow) -> None:
    workflow.start(_won_opportunity())
    workflow.cancel(7)
    workflow.start(_won_opportunity(title="Website Revamp II"))

    assert workflow.state(7) is ConversionState.DRAFT_PENDING
    assert workflow.pending(7).notes.endswith("Website Revamp II")


def test_drafts_are_tracked_per_opportunity(workflow: ConversionWorkflow) -> None:
    workflow.start(_won_opportunity(id=1, client_name="One"))
    workflow.start(_won_opportunity(id=2, client_name="Two"))
    workflow.cancel(1)

    assert workflow.state(1) is ConversionState.CANCELLED
    assert workflow.pending(2).name == "Two"


def test_only_recent_outcomes_are_remembered() -> None:
    workflow = ConversionWorkflow(DraftRegistry(max_settled=2), today=lambda: TODAY)
    for opportunity_id in (1, 2, 3):
        workflow.start(_won_opportunity(id=opportunity_id))
        workflow.cancel(opportunity_id)

    assert workflow.state(1) is ConversionState.IDLE
    assert workflow.state(2) is ConversionState.CANCELLED
    assert workflow.state(3) is ConversionState.CANCELLED
