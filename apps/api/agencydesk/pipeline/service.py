from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from sqlalchemy.orm import Session

from agencydesk import audit, events
from agencydesk.core.config import get_settings
from agencydesk.metrics import observe_conversion, observe_transition
from agencydesk.otel import domain_span
from agencydesk.pipeline.board import board_total, group_by_stage
from agencydesk.pipeline.conversion import ClientDraft, ConversionWorkflow, DraftRegistry
from agencydesk.pipeline.errors import InvalidTransition, PersistenceFailure, ValidationError
from agencydesk.pipeline.models import AIStrategy, Opportunity
from agencydesk.pipeline.periods import Clock, Period, PeriodFilter
from agencydesk.pipeline.repositories import (
    IdempotencyRepository,
    SqlAlchemyClientStore,
    SqlAlchemyOpportunityStore,
    SqlAlchemyStrategyStore,
)
from agencydesk.pipeline.schemas import (
    ClientCreate,
    ClientDraftRead,
    ClientRead,
    ClientUpdate,
    ConversionConfirmRequest,
    OpportunityCreate,
    OpportunityRead,
    OpportunityTransitionRead,
    OpportunityUpdate,
    PipelineBoardRead,
    StageBucketRead,
    StrategyBoardRead,
    StrategyBucketRead,
    StrategyCreate,
    StrategyRead,
    StrategyTransitionRequest,
)
from agencydesk.pipeline.stages import (
    PIPELINE_MACHINE,
    STRATEGY_MACHINE,
    Stage,
    StrategyStatus,
    Transition,
)


logger = logging.getLogger("agencydesk.pipeline")
tracer = trace.get_tracer("agencydesk.pipeline")

draft_registry = DraftRegistry()


@dataclass
class ActorUser:
    user_id: str
    correlation_id: str | None = None


def _require_text(payload: dict[str, Any], names: tuple[str, ...], *, partial: bool = False) -> None:
    problems: dict[str, str] = {}
    for name in names:
        if partial and name not in payload:
            continue
        value = payload.get(name)
        if not isinstance(value, str) or not value.strip():
            problems[name] = "must not be empty"
            continue
        payload[name] = value.strip()
    if problems:
        raise ValidationError(problems)


def _request_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


class OpportunityService:
    entity_type = "pipeline.opportunity"
    required_fields = ("title", "client_name")

    def __init__(self, registry: DraftRegistry | None = None, clock: Clock | None = None) -> None:
        self.registry = registry or draft_registry
        self.clock = clock

    def period_filter(self) -> PeriodFilter:
        return PeriodFilter.from_settings(get_settings(), clock=self.clock)

    def workflow(self) -> ConversionWorkflow:
        return ConversionWorkflow(
            self.registry,
            note_prefix=get_settings().conversion_note_prefix,
            today=self.period_filter().today,
        )

    def list_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        period: Period = Period.ALL,
    ) -> list[OpportunityRead]:
        rows = SqlAlchemyOpportunityStore(session).list()
        return [self._to_read(row) for row in self.period_filter().apply(rows, period)]

    def get_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: int) -> OpportunityRead:
        return self._to_read(SqlAlchemyOpportunityStore(session).get(opportunity_id))

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        payload = dto.model_dump(mode="python")
        _require_text(payload, self.required_fields)
        payload["stage"] = PIPELINE_MACHINE.initial

        opportunity = SqlAlchemyOpportunityStore(session).create(payload)
        created = self._to_read(opportunity)
        audit.record(
            entity_type=self.entity_type,
            entity_id=opportunity.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit(
            "pipeline.opportunity.created",
            {"opportunity_id": opportunity.id, "stage": opportunity.stage},
            actor_user_id=actor_user.user_id,
        )
        return created

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: int,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        store = SqlAlchemyOpportunityStore(session)
        payload = dto.model_dump(exclude_unset=True)
        row_version = payload.pop("row_version", None)
        _require_text(payload, self.required_fields, partial=True)

        opportunity = store.get(opportunity_id)
        if not payload:
            return self._to_read(opportunity)

        before = self._to_read(opportunity).model_dump(mode="json")
        updated = self._to_read(store.update(opportunity_id, payload, expected_version=row_version))
        audit.record(
            entity_type=self.entity_type,
            entity_id=opportunity_id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit(
            "pipeline.opportunity.updated",
            {"opportunity_id": opportunity_id, "fields": sorted(payload), "row_version": updated.row_version},
            actor_user_id=actor_user.user_id,
        )
        return updated

    def delete_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: int) -> None:
        store = SqlAlchemyOpportunityStore(session)
        before = self._to_read(store.get(opportunity_id)).model_dump(mode="json")
        store.delete(opportunity_id)
        self.registry.forget(opportunity_id)
        audit.record(
            entity_type=self.entity_type,
            entity_id=opportunity_id,
            action="delete",
            before=before,
            after=None,
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit("pipeline.opportunity.deleted", {"opportunity_id": opportunity_id}, actor_user_id=actor_user.user_id)

    def transition(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: int,
        transition: Transition,
        idempotency_key: str | None = None,
    ) -> OpportunityTransitionRead:
        """Apply a transition verb, recomputing the target from the stored stage.

        A ``won`` transition also opens a client draft. The stage write is
        committed before the draft exists and is never rolled back by anything
        that happens to the draft afterwards.
        """
        verb = Transition(transition).value
        endpoint = f"pipeline.opportunity.transition:{opportunity_id}"
        request_hash = _request_hash({"transition": verb})
        idempotency = IdempotencyRepository(session)
        stored = idempotency.load(endpoint, idempotency_key, request_hash)
        if stored is not None:
            replayed = OpportunityTransitionRead.model_validate(stored)
            if replayed.draft is not None:
                # the draft may have been confirmed, cancelled or replaced since
                pending = self.registry.get(opportunity_id)
                replayed.draft = self._to_draft_read(pending) if pending is not None else None
            return replayed

        store = SqlAlchemyOpportunityStore(session)
        with domain_span(tracer, "pipeline.transition", opportunity_id=opportunity_id, transition=verb):

            opportunity = store.get(opportunity_id)
            try:
                change = PIPELINE_MACHINE.resolve(opportunity.stage, verb)
            except InvalidTransition:
                observe_transition(PIPELINE_MACHINE.name, verb, "rejected")
                logger.info(
                    "opportunity.transition_rejected",
                    extra={"opportunity_id": opportunity_id, "transition": verb, "from_stage": opportunity.stage},
                )
                raise

            before = self._to_read(opportunity).model_dump(mode="json")
            try:
                opportunity = store.update(opportunity_id, {"stage": change.to_stage})
            except PersistenceFailure as exc:
                logger.warning(
                    "opportunity.transition_failed",
                    extra={"opportunity_id": opportunity_id, "transition": verb, "error": exc.message},
                )
                raise exc.for_step(PersistenceFailure.STAGE_UPDATE) from exc

            observe_transition(PIPELINE_MACHINE.name, verb, "applied")
            logger.info(
                "opportunity.transitioned",
                extra={
                    "opportunity_id": opportunity_id,
                    "transition": verb,
                    "from_stage": change.from_stage,
                    "to_stage": change.to_stage,
                },
            )

            draft: ClientDraft | None = None
            if change.to_stage == Stage.CLOSED_WON.value:
                draft = self.workflow().start(opportunity)
                observe_conversion("drafted")
                logger.info("conversion.draft_created", extra={"opportunity_id": opportunity_id})
            elif verb == Transition.REOPEN.value:
                self.registry.forget(opportunity_id)

            updated = self._to_read(opportunity)
            audit.record(
                entity_type=self.entity_type,
                entity_id=opportunity_id,
                action=f"transition.{verb}",
                before=before,
                after=updated.model_dump(mode="json"),
                actor_user_id=actor_user.user_id,
                correlation_id=actor_user.correlation_id,
            )
            self._publish_transition_events(actor_user, change.from_stage, updated, verb, draft)

            result = OpportunityTransitionRead(
                opportunity=updated,
                draft=self._to_draft_read(draft) if draft is not None else None,
            )
            try:
                idempotency.store(endpoint, idempotency_key, request_hash, result.model_dump(mode="json"))
            except PersistenceFailure as exc:
                # the stage write already landed; only the replay record is lost
                logger.warning(
                    "opportunity.idempotency_store_failed",
                    extra={"opportunity_id": opportunity_id, "transition": verb, "error": exc.message},
                )
            return result

    def board(self, session: Session, actor_user: ActorUser, period: Period = Period.ALL) -> PipelineBoardRead:
        opportunities = self.list_opportunities(session, actor_user, period)
        buckets = group_by_stage(opportunities)
        return PipelineBoardRead(
            period=Period(period),
            total_count=len(opportunities),
            total_value=board_total(buckets),
            buckets=[
                StageBucketRead(
                    stage=bucket.stage,
                    count=bucket.count,
                    total_value=bucket.total_value,
                    opportunities=bucket.items,
                )
                for bucket in buckets.values()
            ],
        )

    def get_pending_draft(self, session: Session, actor_user: ActorUser, opportunity_id: int) -> ClientDraftRead:
        SqlAlchemyOpportunityStore(session).get(opportunity_id)
        return self._to_draft_read(self.workflow().pending(opportunity_id))

    def confirm_conversion(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: int,
        dto: ConversionConfirmRequest,
    ) -> ClientRead:
        SqlAlchemyOpportunityStore(session).get(opportunity_id)
        with domain_span(tracer, "pipeline.conversion.confirm", opportunity_id=opportunity_id):
            try:
                client = self.workflow().confirm(
                    opportunity_id,
                    dto.model_dump(exclude_unset=True),
                    SqlAlchemyClientStore(session),
                )
            except PersistenceFailure as exc:
                observe_conversion("failed")
                logger.warning(
                    "conversion.persist_failed",
                    extra={"opportunity_id": opportunity_id, "error": exc.message},
                )
                raise

        created = ClientRead.model_validate(client)
        observe_conversion("confirmed")
        logger.info("conversion.confirmed", extra={"opportunity_id": opportunity_id, "client_id": client.id})
        audit.record(
            entity_type=ClientService.entity_type,
            entity_id=client.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit(
            "pipeline.conversion.confirmed",
            {"opportunity_id": opportunity_id, "client_id": client.id},
            actor_user_id=actor_user.user_id,
        )
        events.emit("clients.client.created", {"client_id": client.id}, actor_user_id=actor_user.user_id)
        return created

    def cancel_conversion(self, session: Session, actor_user: ActorUser, opportunity_id: int) -> OpportunityRead:
        opportunity = SqlAlchemyOpportunityStore(session).get(opportunity_id)
        self.workflow().cancel(opportunity_id)
        observe_conversion("cancelled")
        logger.info("conversion.cancelled", extra={"opportunity_id": opportunity_id})
        events.emit("pipeline.conversion.cancelled", {"opportunity_id": opportunity_id}, actor_user_id=actor_user.user_id)
        return self._to_read(opportunity)

    def _publish_transition_events(
        self,
        actor_user: ActorUser,
        from_stage: str,
        updated: OpportunityRead,
        verb: str,
        draft: ClientDraft | None,
    ) -> None:
        payload = {"opportunity_id": updated.id, "from_stage": from_stage, "to_stage": updated.stage, "transition": verb}
        events.emit("pipeline.opportunity.stage_changed", payload, actor_user_id=actor_user.user_id)
        if verb == Transition.WON.value:
            events.emit(
                "pipeline.opportunity.closed_won",
                {
                    "opportunity_id": updated.id,
                    "title": updated.title,
                    "client_name": updated.client_name,
                    "value": str(updated.value) if updated.value is not None else None,
                },
                actor_user_id=actor_user.user_id,
            )
        elif verb == Transition.LOST.value:
            events.emit("pipeline.opportunity.closed_lost", {"opportunity_id": updated.id}, actor_user_id=actor_user.user_id)
        elif verb == Transition.REOPEN.value:
            events.emit(
                "pipeline.opportunity.reopened",
                {"opportunity_id": updated.id, "from_stage": from_stage},
                actor_user_id=actor_user.user_id,
            )
        if draft is not None:
            events.emit("pipeline.conversion.drafted", {"opportunity_id": updated.id}, actor_user_id=actor_user.user_id)

    def _to_read(self, opportunity: Opportunity) -> OpportunityRead:
        read = OpportunityRead.model_validate(opportunity)
        read.available_transitions = PIPELINE_MACHINE.allowed(read.stage)
        return read

    def _to_draft_read(self, draft: ClientDraft) -> ClientDraftRead:
        return ClientDraftRead.model_validate(draft, from_attributes=True)


class ClientService:
    entity_type = "clients.client"

    def list_clients(self, session: Session, actor_user: ActorUser) -> list[ClientRead]:
        return [ClientRead.model_validate(row) for row in SqlAlchemyClientStore(session).list()]

    def get_client(self, session: Session, actor_user: ActorUser, client_id: int) -> ClientRead:
        return ClientRead.model_validate(SqlAlchemyClientStore(session).get(client_id))

    def create_client(self, session: Session, actor_user: ActorUser, dto: ClientCreate) -> ClientRead:
        payload = dto.model_dump(mode="python")
        _require_text(payload, ("name",))
        client = SqlAlchemyClientStore(session).create(payload)
        created = ClientRead.model_validate(client)
        audit.record(
            entity_type=self.entity_type,
            entity_id=client.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit("clients.client.created", {"client_id": client.id}, actor_user_id=actor_user.user_id)
        return created

    def update_client(self, session: Session, actor_user: ActorUser, client_id: int, dto: ClientUpdate) -> ClientRead:
        store = SqlAlchemyClientStore(session)
        payload = dto.model_dump(exclude_unset=True)
        row_version = payload.pop("row_version", None)
        _require_text(payload, ("name",), partial=True)
        if payload.get("status", "") is None:
            raise ValidationError({"status": "must not be empty"})

        client = store.get(client_id)
        if not payload:
            return ClientRead.model_validate(client)

        before = ClientRead.model_validate(client).model_dump(mode="json")
        updated = ClientRead.model_validate(store.update(client_id, payload, expected_version=row_version))
        audit.record(
            entity_type=self.entity_type,
            entity_id=client_id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit(
            "clients.client.updated",
            {"client_id": client_id, "fields": sorted(payload)},
            actor_user_id=actor_user.user_id,
        )
        return updated

    def delete_client(self, session: Session, actor_user: ActorUser, client_id: int) -> None:
        store = SqlAlchemyClientStore(session)
        before = ClientRead.model_validate(store.get(client_id)).model_dump(mode="json")
        store.delete(client_id)
        audit.record(
            entity_type=self.entity_type,
            entity_id=client_id,
            action="delete",
            before=before,
            after=None,
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit("clients.client.deleted", {"client_id": client_id}, actor_user_id=actor_user.user_id)


class StrategyService:
    entity_type = "strategies.strategy"

    def list_strategies(
        self,
        session: Session,
        actor_user: ActorUser,
        status: StrategyStatus | None = None,
    ) -> list[StrategyRead]:
        rows = SqlAlchemyStrategyStore(session).list_by_status(StrategyStatus(status).value if status else None)
        return [self._to_read(row) for row in rows]

    def get_strategy(self, session: Session, actor_user: ActorUser, strategy_id: int) -> StrategyRead:
        return self._to_read(SqlAlchemyStrategyStore(session).get(strategy_id))

    def create_strategy(self, session: Session, actor_user: ActorUser, dto: StrategyCreate) -> StrategyRead:
        payload = dto.model_dump(mode="python")
        _require_text(payload, ("title",))
        payload["status"] = STRATEGY_MACHINE.initial
        strategy = SqlAlchemyStrategyStore(session).create(payload)
        created = self._to_read(strategy)
        audit.record(
            entity_type=self.entity_type,
            entity_id=strategy.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit("strategies.strategy.created", {"strategy_id": strategy.id}, actor_user_id=actor_user.user_id)
        return created

    def transition(
        self,
        session: Session,
        actor_user: ActorUser,
        strategy_id: int,
        dto: StrategyTransitionRequest,
    ) -> StrategyRead:
        store = SqlAlchemyStrategyStore(session)
        verb = dto.transition.value
        strategy = store.get(strategy_id)
        current = strategy.status or STRATEGY_MACHINE.initial
        try:
            change = STRATEGY_MACHINE.resolve(current, verb)
        except InvalidTransition:
            observe_transition(STRATEGY_MACHINE.name, verb, "rejected")
            logger.info(
                "strategy.transition_rejected",
                extra={"strategy_id": strategy_id, "transition": verb, "from_stage": current},
            )
            raise

        fields: dict[str, Any] = {"status": change.to_stage}
        if change.to_stage == StrategyStatus.REJECTED.value:
            fields["rejection_reason"] = (dto.reason or "").strip() or None
        elif change.from_stage == StrategyStatus.REJECTED.value:
            fields["rejection_reason"] = None

        before = self._to_read(strategy).model_dump(mode="json")
        try:
            strategy = store.update(strategy_id, fields)
        except PersistenceFailure as exc:
            raise exc.for_step(PersistenceFailure.STAGE_UPDATE) from exc

        observe_transition(STRATEGY_MACHINE.name, verb, "applied")
        logger.info(
            "strategy.transitioned",
            extra={
                "strategy_id": strategy_id,
                "transition": verb,
                "from_stage": change.from_stage,
                "to_stage": change.to_stage,
            },
        )
        updated = self._to_read(strategy)
        audit.record(
            entity_type=self.entity_type,
            entity_id=strategy_id,
            action=f"transition.{verb}",
            before=before,
            after=updated.model_dump(mode="json"),
            actor_user_id=actor_user.user_id,
            correlation_id=actor_user.correlation_id,
        )
        events.emit(
            "strategies.strategy.status_changed",
            {"strategy_id": strategy_id, "from_status": change.from_stage, "to_status": change.to_stage},
            actor_user_id=actor_user.user_id,
        )
        return updated

    def board(self, session: Session, actor_user: ActorUser) -> StrategyBoardRead:
        strategies = self.list_strategies(session, actor_user)
        buckets = group_by_stage(
            strategies,
            STRATEGY_MACHINE.stages,
            stage_of=lambda item: item.status,
            value_of=lambda item: None,
        )
        return StrategyBoardRead(
            total_count=len(strategies),
            buckets=[
                StrategyBucketRead(status=bucket.stage, count=bucket.count, strategies=bucket.items)
                for bucket in buckets.values()
            ],
        )

    def _to_read(self, strategy: AIStrategy) -> StrategyRead:
        read = StrategyRead.model_validate(strategy)
        read.available_transitions = STRATEGY_MACHINE.allowed(read.status)
        return read


opportunity_service = OpportunityService()
client_service = ClientService()
strategy_service = StrategyService()
