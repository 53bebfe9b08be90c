from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from agencydesk.pipeline.periods import Period
from agencydesk.pipeline.stages import StrategyTransition, Transition


StageName = Literal["prospecting", "qualification", "proposal", "negotiation", "closed_won", "closed_lost"]
ClientStatus = Literal["prospect", "active", "inactive"]
StrategyStatusName = Literal["created", "under_review", "approved", "rejected", "executing"]
StrategyType = Literal["marketing_strategy", "content_strategy", "growth_strategy"]


class _ContactFields(BaseModel):
    @field_validator("email", "phone", mode="before", check_fields=False)
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class OpportunityCreate(_ContactFields):
    title: str = Field(min_length=1)
    client_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    value: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None


class OpportunityUpdate(_ContactFields):
    model_config = ConfigDict(extra="forbid")

    row_version: int | None = Field(default=None, ge=1)
    title: str | None = None
    client_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    value: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    client_name: str
    email: str | None
    phone: str | None
    value: Decimal | None
    probability: int | None
    stage: StageName
    expected_close_date: date | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int
    available_transitions: list[str] = Field(default_factory=list)


class OpportunityTransitionRequest(BaseModel):
    transition: Transition


class ClientDraftRead(BaseModel):
    opportunity_id: int
    name: str
    company: str | None
    email: str | None
    phone: str | None
    industry: str | None
    contact_person: str | None
    monthly_value: Decimal | None
    status: ClientStatus
    start_date: date | None
    notes: str | None
    created_at: datetime


class OpportunityTransitionRead(BaseModel):
    opportunity: OpportunityRead
    draft: ClientDraftRead | None = None


class ClientCreate(_ContactFields):
    name: str = Field(min_length=1)
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    industry: str | None = None
    contact_person: str | None = None
    monthly_value: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    status: ClientStatus = "active"
    start_date: date | None = None
    notes: str | None = None


class ClientUpdate(_ContactFields):
    model_config = ConfigDict(extra="forbid")

    row_version: int | None = Field(default=None, ge=1)
    name: str | None = None
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    industry: str | None = None
    contact_person: str | None = None
    monthly_value: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    status: ClientStatus | None = None
    start_date: date | None = None
    notes: str | None = None


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    company: str | None
    email: str | None
    phone: str | None
    industry: str | None
    contact_person: str | None
    monthly_value: Decimal | None
    status: ClientStatus
    start_date: date | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class StageBucketRead(BaseModel):
    stage: StageName
    count: int
    total_value: Decimal
    opportunities: list[OpportunityRead]


class PipelineBoardRead(BaseModel):
    period: Period
    total_count: int
    total_value: Decimal
    buckets: list[StageBucketRead]


class StrategyCreate(BaseModel):
    title: str = Field(min_length=1)
    client_name: str | None = None
    strategy_type: StrategyType = "marketing_strategy"
    content: str = ""


class StrategyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    client_name: str | None
    strategy_type: StrategyType
    content: str
    status: StrategyStatusName
    rejection_reason: str | None
    generated_at: datetime
    updated_at: datetime
    row_version: int
    available_transitions: list[str] = Field(default_factory=list)


class StrategyTransitionRequest(BaseModel):
    transition: StrategyTransition
    reason: str | None = None


class StrategyBucketRead(BaseModel):
    status: StrategyStatusName
    count: int
    strategies: list[StrategyRead]


class StrategyBoardRead(BaseModel):
    total_count: int
    buckets: list[StrategyBucketRead]


class ConversionConfirmRequest(_ContactFields):
    """Edits applied on top of the pending draft; omitted fields keep the draft's value."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    company: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    industry: str | None = None
    contact_person: str | None = None
    monthly_value: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    status: ClientStatus | None = None
    start_date: date | None = None
    notes: str | None = None
