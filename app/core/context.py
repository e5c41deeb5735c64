from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_client_ip, set_client_ip


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    ip_address: str | None


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        ip_address = _client_ip(request)
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            ip_address=ip_address,
        )
        token = set_client_ip(ip_address)
        try:
            response = await call_next(request)
        finally:
            reset_client_ip(token)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
