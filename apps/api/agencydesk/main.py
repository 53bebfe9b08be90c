import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from agencydesk.api.routes import router as api_router
from agencydesk.core.config import get_settings
from agencydesk.core.events import InternalEvent, event_bus
from agencydesk.logging import configure_logging
from agencydesk.middleware.correlation_id import CorrelationIdMiddleware
from agencydesk.middleware.rate_limit import MutationRateLimitMiddleware
from agencydesk.middleware.request_logging import RequestLoggingMiddleware
from agencydesk.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("agencydesk.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_opportunity_won(event: InternalEvent) -> None:
    envelope = event.payload if isinstance(event.payload, dict) else {}
    payload = envelope.get("payload") or {}
    logger.info(
        "opportunity.closed_won",
        extra={"event_name": event.name, "opportunity_id": payload.get("opportunity_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # subscribe() ignores a handler that is already registered
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe("pipeline.opportunity.closed_won", _on_opportunity_won)
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())


def run() -> None:
    current = get_settings()
    uvicorn.run(
        "agencydesk.main:app",
        host=current.api_host,
        port=current.api_port,
        reload=current.app_debug,
        log_config=None,
    )


if __name__ == "__main__":
    run()
