"""Won-opportunity to client conversion.

A ``won`` transition leaves a client draft pending for its opportunity. The
draft is only written to the client store when the caller confirms it;
cancelling drops the draft and never touches the opportunity's stage.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from agencydesk.pipeline.errors import ConversionNotPending, PersistenceFailure, ValidationError


DEFAULT_NOTE_PREFIX = "Cliente convertido da oportunidade: "

CLIENT_FIELDS = (
    "name",
    "company",
    "email",
    "phone",
    "industry",
    "contact_person",
    "monthly_value",
    "status",
    "start_date",
    "notes",
)


class ConversionState(str, Enum):
    IDLE = "idle"
    DRAFT_PENDING = "draft_pending"
    PERSISTED = "persisted"
    CANCELLED = "cancelled"


class ConvertibleOpportunity(Protocol):
    id: int
    title: str
    client_name: str
    email: str | None
    phone: str | None
    value: Decimal | None


class ClientCreator(Protocol):
    def create(self, fields: dict[str, Any]) -> Any: ...


@dataclass
class ClientDraft:
    opportunity_id: int
    name: str
    company: str | None
    email: str | None
    phone: str | None
    industry: str | None
    contact_person: str | None
    monthly_value: Decimal | None
    status: str
    start_date: date | None
    notes: str | None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def client_fields(self) -> dict[str, Any]:
        data = asdict(self)
        return {key: data[key] for key in CLIENT_FIELDS}


def draft_from_opportunity(
    opportunity: ConvertibleOpportunity,
    *,
    today: date,
    note_prefix: str = DEFAULT_NOTE_PREFIX,
) -> ClientDraft:
    # monthly_value copies the one-off deal value verbatim
    return ClientDraft(
        opportunity_id=opportunity.id,
        name=opportunity.client_name,
        company=opportunity.client_name,
        email=opportunity.email,
        phone=opportunity.phone,
        industry=None,
        contact_person=opportunity.client_name,
        monthly_value=opportunity.value,
        status="active",
        start_date=today,
        notes=f"{note_prefix}{opportunity.title}",
    )


class DraftRegistry:
    """Process-local store of pending drafts, at most one per opportunity.

    Settled outcomes are kept only for the most recent ``max_settled``
    opportunities; older ones read back as idle.
    """

    def __init__(self, max_settled: int = 1024) -> None:
        self._lock = threading.Lock()
        self._drafts: dict[int, ClientDraft] = {}
        self._outcomes: OrderedDict[int, ConversionState] = OrderedDict()
        self.max_settled = max_settled

    def put(self, draft: ClientDraft) -> None:
        with self._lock:
            self._drafts[draft.opportunity_id] = draft
            self._outcomes.pop(draft.opportunity_id, None)

    def get(self, opportunity_id: int) -> ClientDraft | None:
        with self._lock:
            return self._drafts.get(opportunity_id)

    def claim(self, opportunity_id: int) -> ClientDraft | None:
        with self._lock:
            return self._drafts.pop(opportunity_id, None)

    def restore(self, draft: ClientDraft) -> None:
        with self._lock:
            self._drafts.setdefault(draft.opportunity_id, draft)

    def settle(self, opportunity_id: int, outcome: ConversionState) -> None:
        with self._lock:
            self._drafts.pop(opportunity_id, None)
            self._outcomes.pop(opportunity_id, None)
            self._outcomes[opportunity_id] = outcome
            while len(self._outcomes) > self.max_settled:
                self._outcomes.popitem(last=False)

    def forget(self, opportunity_id: int) -> bool:
        with self._lock:
            self._outcomes.pop(opportunity_id, None)
            return self._drafts.pop(opportunity_id, None) is not None

    def state(self, opportunity_id: int) -> ConversionState:
        with self._lock:
            if opportunity_id in self._drafts:
                return ConversionState.DRAFT_PENDING
            return self._outcomes.get(opportunity_id, ConversionState.IDLE)

    def clear(self) -> None:
        with self._lock:
            self._drafts.clear()
            self._outcomes.clear()


class ConversionWorkflow:
    def __init__(
        self,
        registry: DraftRegistry | None = None,
        *,
        note_prefix: str = DEFAULT_NOTE_PREFIX,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.registry = registry or DraftRegistry()
        self.note_prefix = note_prefix
        self.today = today

    def start(self, opportunity: ConvertibleOpportunity) -> ClientDraft:
        draft = draft_from_opportunity(opportunity, today=self.today(), note_prefix=self.note_prefix)
        self.registry.put(draft)
        return draft

    def pending(self, opportunity_id: int) -> ClientDraft:
        draft = self.registry.get(opportunity_id)
        if draft is None:
            raise ConversionNotPending(opportunity_id)
        return draft

    def state(self, opportunity_id: int) -> ConversionState:
        return self.registry.state(opportunity_id)

    def confirm(self, opportunity_id: int, edits: dict[str, Any], clients: ClientCreator) -> Any:
        """Persist the pending draft merged with ``edits``.

        The draft is claimed before the write so a second confirm for the same
        opportunity sees nothing pending. Validation and store failures put the
        draft back so the caller can resubmit.
        """
        draft = self.registry.claim(opportunity_id)
        if draft is None:
            raise ConversionNotPending(opportunity_id)

        fields = draft.client_fields()
        fields.update({key: value for key, value in edits.items() if key in CLIENT_FIELDS})
        name = fields.get("name")
        if not isinstance(name, str) or not name.strip():
            self.registry.restore(draft)
            raise ValidationError({"name": "must not be empty"})
        fields["name"] = name.strip()

        try:
            client = clients.create(fields)
        except PersistenceFailure as exc:
            self.registry.restore(draft)
            raise exc.for_step(PersistenceFailure.CLIENT_CREATE) from exc

        self.registry.settle(opportunity_id, ConversionState.PERSISTED)
        return client

    def cancel(self, opportunity_id: int) -> ClientDraft:
        draft = self.registry.claim(opportunity_id)
        if draft is None:
            raise ConversionNotPending(opportunity_id)
        self.registry.settle(opportunity_id, ConversionState.CANCELLED)
        return draft

    def discard(self, opportunity_id: int) -> bool:
        return self.registry.forget(opportunity_id)
