from __future__ import annotations

import json
from typing import Any, Generic, TypeVar

from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.pipeline.errors import IdempotencyKeyMismatch, NotFound, PersistenceFailure, VersionConflict
from agencydesk.pipeline.models import AIStrategy, Client, IdempotencyKey, Opportunity, utcnow


ModelT = TypeVar("ModelT", Opportunity, Client, AIStrategy)


class SqlAlchemyStore(Generic[ModelT]):
    model: type[ModelT]
    entity: str

    def __init__(self, session: Session) -> None:
        self.session = session

    def list(self) -> list[ModelT]:
        stmt = select(self.model).order_by(self.model.id.desc())
        return list(self._run(lambda: self.session.scalars(stmt).all()))

    def get(self, entity_id: int) -> ModelT:
        row = self._run(lambda: self.session.get(self.model, entity_id))
        if row is None:
            raise NotFound(self.entity, entity_id)
        return row

    def create(self, fields: dict[str, Any]) -> ModelT:
        row = self.model(**fields)

        def _write() -> None:
            self.session.add(row)
            self.session.commit()
            self.session.refresh(row)

        self._run(_write)
        return row

    def update(self, entity_id: int, fields: dict[str, Any], *, expected_version: int | None = None) -> ModelT:
        """Write ``fields``; with ``expected_version`` the write only lands on that row_version."""
        row = self.get(entity_id)
        conditions = [self.model.id == entity_id]
        if expected_version is not None:
            conditions.append(self.model.row_version == expected_version)
        stmt = (
            update(self.model)
            .where(and_(*conditions))
            .values(**fields, updated_at=utcnow(), row_version=self.model.row_version + 1)
            .execution_options(synchronize_session=False)
        )

        def _write() -> int:
            result = self.session.execute(stmt)
            if result.rowcount == 0:
                self.session.rollback()
                return 0
            self.session.commit()
            self.session.refresh(row)
            return result.rowcount

        if self._run(_write) == 0:
            raise VersionConflict(self.entity, entity_id)
        return row

    def delete(self, entity_id: int) -> None:
        row = self.get(entity_id)

        def _write() -> None:
            self.session.delete(row)
            self.session.commit()

        self._run(_write)

    def _run(self, operation):  # type: ignore[no-untyped-def]
        try:
            return operation()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure(None, f"{self.entity} store failure: {exc.__class__.__name__}") from exc


class SqlAlchemyOpportunityStore(SqlAlchemyStore[Opportunity]):
    model = Opportunity
    entity = "opportunity"


class SqlAlchemyClientStore(SqlAlchemyStore[Client]):
    model = Client
    entity = "client"


class SqlAlchemyStrategyStore(SqlAlchemyStore[AIStrategy]):
    model = AIStrategy
    entity = "strategy"

    def list_by_status(self, status: str | None) -> list[AIStrategy]:
        stmt = select(AIStrategy).order_by(AIStrategy.generated_at.desc(), AIStrategy.id.desc())
        if status is not None:
            stmt = stmt.where(AIStrategy.status == status)
        return list(self._run(lambda: self.session.scalars(stmt).all()))


class IdempotencyRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def load(self, endpoint: str, key: str | None, request_hash: str) -> dict[str, Any] | None:
        if not key:
            return None
        try:
            record = self.session.scalar(
                select(IdempotencyKey).where(and_(IdempotencyKey.endpoint == endpoint, IdempotencyKey.key == key))
            )
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure(None, f"idempotency lookup failure: {exc.__class__.__name__}") from exc
        if record is None:
            return None
        if record.request_hash != request_hash:
            raise IdempotencyKeyMismatch(key)
        return json.loads(record.response_json)

    def store(self, endpoint: str, key: str | None, request_hash: str, response: dict[str, Any]) -> None:
        if not key:
            return
        self.session.add(
            IdempotencyKey(
                endpoint=endpoint,
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(response),
            )
        )
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure(None, f"idempotency store failure: {exc.__class__.__name__}") from exc
