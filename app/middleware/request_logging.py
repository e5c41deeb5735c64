from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import http_path_label, observe_http_request


logger = logging.getLogger("app.request")


def _request_fields(request: Request, path: str) -> dict[str, object]:
    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": path,
        "user_id": getattr(context, "user_id", None),
        "client_ip": getattr(context, "ip_address", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Access log line and HTTP metrics per request; 4xx at warning, 5xx at error."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        path = http_path_label(request.url.path)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - started
            observe_http_request(method=request.method, path=path, status=500, duration=duration)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**_request_fields(request, path), "status_code": 500, "duration_ms": round(duration * 1000, 2)},
            )
            raise

        duration = time.perf_counter() - started
        observe_http_request(method=request.method, path=path, status=response.status_code, duration=duration)

        level = logging.INFO
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        logger.log(
            level,
            "http.request",
            extra={
                **_request_fields(request, path),
                "status_code": response.status_code,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return response
