from __future__ import annotations

import logging
import math
import threading
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.core.auth import decode_token
from app.core.config import get_settings
from app.metrics import observe_rate_limited
from app.records.errors import error_response
from app.records.metadata import entity_type_from_path

logger = logging.getLogger("app.request")

RATE_WINDOW_SECONDS = 60
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class MutationBudget:
    """Token buckets keyed by ``(user, entity type)``.

    A bucket starts full and refills continuously at ``capacity`` tokens per
    window; ``spend`` returns the seconds to wait when the bucket is empty.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[tuple[str, str], tuple[float, float]] = {}

    def spend(self, key: tuple[str, str], capacity: int, window_seconds: int = RATE_WINDOW_SECONDS) -> int | None:
        if capacity <= 0:
            return window_seconds

        per_second = capacity / window_seconds
        now = time.monotonic()
        with self._lock:
            tokens, updated_at = self._tokens.get(key, (float(capacity), now))
            tokens = min(float(capacity), tokens + (now - updated_at) * per_second)
            if tokens < 1.0:
                self._tokens[key] = (tokens, now)
                return max(1, math.ceil((1.0 - tokens) / per_second))
            self._tokens[key] = (tokens - 1.0, now)
            return None

    def reset(self) -> None:
        with self._lock:
            self._tokens.clear()


_budget = MutationBudget()


class RecordMutationRateLimitMiddleware(BaseHTTPMiddleware):
    """Limits create, update, delete and relation calls per user and entity type.

    Reads are never limited. Anonymous callers share one bucket per entity type;
    they are rejected with 401 further down anyway.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        if settings.rate_limit_disabled or request.method.upper() not in MUTATING_METHODS:
            return await call_next(request)

        entity_type = entity_type_from_path(request.url.path)
        if entity_type is None:
            return await call_next(request)

        auth_user = decode_token(request)
        user_id = auth_user.sub if auth_user is not None else "anonymous"
        retry_after = _budget.spend((user_id, entity_type), settings.rate_limit_record_mutations_per_minute)
        if retry_after is None:
            return await call_next(request)

        observe_rate_limited(entity_type)
        logger.warning(
            "rate_limited",
            extra={"user_id": user_id, "entity_type": entity_type, "method": request.method, "retry_after": retry_after},
        )
        response = error_response(
            request,
            status_code=429,
            code="rate_limited",
            message="Too many requests",
            details={"retry_after": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response


def reset_rate_limiter() -> None:
    _budget.reset()
