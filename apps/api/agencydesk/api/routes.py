import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.core.auth import AuthUser, get_current_user
from agencydesk.core.config import get_settings
from agencydesk.core.database import get_db
from agencydesk.metrics import generate_metrics_payload, metrics_content_type
from agencydesk.pipeline.api import clients_router, opportunities_router, strategies_router

logger = logging.getLogger("agencydesk.lifecycle")

router = APIRouter()
router.include_router(opportunities_router)
router.include_router(clients_router)
router.include_router(strategies_router)


@router.get("/health", tags=["system"], response_model=None)
def health(db: Session = Depends(get_db)) -> dict[str, str] | JSONResponse:
    settings = get_settings()
    payload = {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "database": "ok",
    }
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health.database_unavailable", extra={"error": str(exc)})
        payload.update(status="degraded", database="unavailable")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)
    return payload


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
