from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from agencydesk.context import get_correlation_id
from agencydesk.core.auth import ANONYMOUS, bearer_token, decode_user
from agencydesk.core.config import get_settings


RATE_LIMITED_PREFIXES = ("/api/pipeline", "/api/clients", "/api/strategies")
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
WINDOW_SECONDS = 60


class MutationLimiter:
    """Token bucket per (user, route group), refilled continuously over the window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (tokens, last refill timestamp)
        self._buckets: dict[tuple[str, str], tuple[float, float]] = {}

    def acquire(self, key: tuple[str, str], capacity: int, window_seconds: int = WINDOW_SECONDS) -> int:
        """Spend one token; return 0 when allowed, else the seconds to wait."""
        if capacity <= 0:
            return window_seconds

        per_second = capacity / window_seconds
        now = self._clock()
        with self._lock:
            tokens, refilled_at = self._buckets.get(key, (float(capacity), now))
            tokens = min(float(capacity), tokens + max(0.0, now - refilled_at) * per_second)
            if tokens >= 1.0:
                self._buckets[key] = (tokens - 1.0, now)
                return 0
            self._buckets[key] = (tokens, now)
        return max(1, math.ceil((1.0 - tokens) / per_second))

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


limiter = MutationLimiter()


def route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    if len(parts) < 2:
        return "api"
    area, action = parts[1], parts[-1]
    if area == "pipeline" and action in {"confirm", "cancel"}:
        return f"pipeline.conversion.{action}"
    if area in {"pipeline", "strategies"} and action == "transitions":
        return f"{area}.transitions"
    return area


def _caller(request: Request) -> str:
    user = decode_user(bearer_token(request))
    return ANONYMOUS if user is None else user.sub


def _too_many_requests(request: Request, retry_after: int) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    response = JSONResponse(
        status_code=429,
        content={
            "code": "rate_limited",
            "message": "Too many requests",
            "details": {"retry_after": retry_after},
            "correlation_id": correlation_id,
        },
    )
    response.headers["Retry-After"] = str(retry_after)
    if correlation_id:
        response.headers["X-Correlation-Id"] = correlation_id
    return response


class MutationRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or request.method.upper() not in MUTATING_METHODS
            or not path.startswith(RATE_LIMITED_PREFIXES)
        ):
            return await call_next(request)

        retry_after = limiter.acquire(
            (_caller(request), route_group(path)),
            capacity=settings.rate_limit_mutations_per_minute,
        )
        if retry_after:
            return _too_many_requests(request, retry_after)
        return await call_next(request)


def reset_rate_limiter() -> None:
    limiter.clear()
