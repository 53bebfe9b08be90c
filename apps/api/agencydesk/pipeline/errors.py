from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for errors surfaced by the pipeline domain.

    Each error knows the HTTP status and machine-readable code it maps to, so
    routers can render the standard error envelope without per-call mapping.
    """

    status_code = 400
    code = "pipeline_error"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidTransition(PipelineError):
    """Raised when a transition verb is not legal from the current stage."""

    status_code = 422
    code = "invalid_transition"

    def __init__(self, current_stage: str, transition: str, allowed: list[str] | None = None) -> None:
        self.current_stage = current_stage
        self.transition = transition
        self.allowed = list(allowed or [])
        super().__init__(
            f"transition '{transition}' is not allowed from stage '{current_stage}'",
            {"current_stage": current_stage, "transition": transition, "allowed": self.allowed},
        )


class NotFound(PipelineError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.code = f"{entity}_not_found"
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class ValidationError(PipelineError):
    """Raised with a field -> problem map; no write has happened when it is raised."""

    status_code = 422
    code = "validation_error"

    def __init__(self, fields: dict[str, str]) -> None:
        self.fields = dict(fields)
        names = ", ".join(sorted(self.fields))
        super().__init__(f"invalid fields: {names}", self.fields)


class PersistenceFailure(PipelineError):
    """Raised when the store fails; ``step`` tells which write did not happen."""

    status_code = 503
    STAGE_UPDATE = "stage_update"
    CLIENT_CREATE = "client_create"

    def __init__(self, step: str | None, message: str = "persistence failure") -> None:
        self.step = step
        if step == self.STAGE_UPDATE:
            self.code = "stage_update_failed"
        elif step == self.CLIENT_CREATE:
            self.code = "client_create_failed"
        else:
            self.code = "persistence_failed"
        super().__init__(message, {"step": step, "retryable": True})

    def for_step(self, step: str) -> PersistenceFailure:
        return PersistenceFailure(step, self.message)


class ConversionNotPending(PipelineError):
    status_code = 409
    code = "conversion_not_pending"

    def __init__(self, opportunity_id: int) -> None:
        self.opportunity_id = opportunity_id
        super().__init__(
            f"no client draft is pending for opportunity {opportunity_id}",
            {"opportunity_id": opportunity_id},
        )


class VersionConflict(PipelineError):
    status_code = 409
    code = "row_version_conflict"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__("row_version conflict", {"entity": entity, "id": entity_id})


class IdempotencyKeyMismatch(PipelineError):
    status_code = 409
    code = "idempotency_key_mismatch"

    def __init__(self, key: str) -> None:
        super().__init__("idempotency key payload mismatch", {"key": key})
