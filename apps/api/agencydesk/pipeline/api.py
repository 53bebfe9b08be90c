from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from agencydesk.context import get_correlation_id
from agencydesk.core.auth import AuthUser, get_current_user as get_auth_user
from agencydesk.core.database import get_db
from agencydesk.pipeline.errors import PipelineError
from agencydesk.pipeline.periods import Period
from agencydesk.pipeline.schemas import (
    ClientCreate,
    ClientDraftRead,
    ClientRead,
    ClientUpdate,
    ConversionConfirmRequest,
    OpportunityCreate,
    OpportunityRead,
    OpportunityTransitionRead,
    OpportunityTransitionRequest,
    OpportunityUpdate,
    PipelineBoardRead,
    StrategyBoardRead,
    StrategyCreate,
    StrategyRead,
    StrategyTransitionRequest,
)
from agencydesk.pipeline.service import (
    ActorUser,
    client_service,
    opportunity_service,
    strategy_service,
)
from agencydesk.pipeline.stages import StrategyStatus

opportunities_router = APIRouter(prefix="/api/pipeline", tags=["pipeline.opportunities"])
clients_router = APIRouter(prefix="/api/clients", tags=["clients"])
strategies_router = APIRouter(prefix="/api/strategies", tags=["strategies"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def pipeline_error_response(request: Request, exc: PipelineError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(user_id=auth_user.sub, correlation_id=correlation_id)


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    period: Period = Query(default=Period.ALL),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        return opportunity_service.list_opportunities(db, user, period)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.create_opportunity(db, user, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.get_opportunity(db, user, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def update_opportunity(
    request: Request,
    opportunity_id: int,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.delete(
    "/opportunities/{opportunity_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def delete_opportunity(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        opportunity_service.delete_opportunity(db, user, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@opportunities_router.post("/opportunities/{opportunity_id}/transitions", response_model=OpportunityTransitionRead)
def transition_opportunity(
    request: Request,
    opportunity_id: int,
    dto: OpportunityTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> OpportunityTransitionRead | JSONResponse:
    try:
        return opportunity_service.transition(db, user, opportunity_id, dto.transition, idempotency_key)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.get("/opportunities/{opportunity_id}/conversion", response_model=ClientDraftRead)
def get_pending_conversion(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientDraftRead | JSONResponse:
    try:
        return opportunity_service.get_pending_draft(db, user, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.post(
    "/opportunities/{opportunity_id}/conversion/confirm",
    response_model=ClientRead,
    status_code=status.HTTP_201_CREATED,
)
def confirm_conversion(
    request: Request,
    opportunity_id: int,
    dto: ConversionConfirmRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return opportunity_service.confirm_conversion(db, user, opportunity_id, dto or ConversionConfirmRequest())
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.post("/opportunities/{opportunity_id}/conversion/cancel", response_model=OpportunityRead)
def cancel_conversion(
    request: Request,
    opportunity_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        return opportunity_service.cancel_conversion(db, user, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@opportunities_router.get("/board", response_model=PipelineBoardRead)
def pipeline_board(
    request: Request,
    period: Period = Query(default=Period.ALL),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineBoardRead | JSONResponse:
    try:
        return opportunity_service.board(db, user, period)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@clients_router.get("", response_model=list[ClientRead])
def list_clients(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ClientRead] | JSONResponse:
    try:
        return client_service.list_clients(db, user)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@clients_router.post("", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, user, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@clients_router.get("/{client_id}", response_model=ClientRead)
def get_client(
    request: Request,
    client_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.get_client(db, user, client_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@clients_router.patch("/{client_id}", response_model=ClientRead)
def update_client(
    request: Request,
    client_id: int,
    dto: ClientUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ClientRead | JSONResponse:
    try:
        return client_service.update_client(db, user, client_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@clients_router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_client(
    request: Request,
    client_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        client_service.delete_client(db, user, client_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@strategies_router.get("", response_model=list[StrategyRead])
def list_strategies(
    request: Request,
    status_filter: StrategyStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StrategyRead] | JSONResponse:
    try:
        return strategy_service.list_strategies(db, user, status_filter)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@strategies_router.post("", response_model=StrategyRead, status_code=status.HTTP_201_CREATED)
def create_strategy(
    request: Request,
    dto: StrategyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StrategyRead | JSONResponse:
    try:
        return strategy_service.create_strategy(db, user, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@strategies_router.get("/board", response_model=StrategyBoardRead)
def strategy_board(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StrategyBoardRead | JSONResponse:
    try:
        return strategy_service.board(db, user)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@strategies_router.get("/{strategy_id}", response_model=StrategyRead)
def get_strategy(
    request: Request,
    strategy_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StrategyRead | JSONResponse:
    try:
        return strategy_service.get_strategy(db, user, strategy_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)


@strategies_router.post("/{strategy_id}/transitions", response_model=StrategyRead)
def transition_strategy(
    request: Request,
    strategy_id: int,
    dto: StrategyTransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StrategyRead | JSONResponse:
    try:
        return strategy_service.transition(db, user, strategy_id, dto)
    except PipelineError as exc:
        return pipeline_error_response(request, exc)
