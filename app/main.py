from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import RecordMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.security.errors import AuthorizationError, InvalidAccessLevelError
from app.platform.security.policies import DbPolicyBackend, InMemoryPolicyBackend, set_policy_backend
from app.records.errors import RecordError, error_response


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_record_event(event: InternalEvent) -> None:
    payload = event.payload
    logger.debug(
        "record_event",
        extra={
            "event_name": event.name,
            "entity_type": payload.get("entity_type"),
            "entity_id": payload.get("entity_id"),
            "user_id": payload.get("actor_user_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe("record.*", _on_record_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


def _configure_policy_backend() -> None:
    settings = get_settings()
    backend_choice = settings.authz_policy_backend.lower()
    if backend_choice == "auto":
        backend_choice = "db" if settings.app_env.lower() in {"prod", "production"} else "inmemory"

    if backend_choice == "db":
        set_policy_backend(DbPolicyBackend(default_allow=settings.authz_default_allow))
    else:
        set_policy_backend(InMemoryPolicyBackend(default_allow=settings.authz_default_allow))


settings = get_settings()
app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RecordMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RecordError)
async def record_error_handler(request: Request, exc: RecordError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=str(exc.detail),
        details=exc.body,
    )


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    details = None
    status_code = 403
    code = "forbidden"
    if isinstance(exc, InvalidAccessLevelError):
        status_code = 422
        code = "invalid_access_level"
        details = {"value": exc.value, "allowed": exc.allowed}
    logger.warning("authorization_error", extra={"error": str(exc), "status_code": status_code})
    return error_response(request, status_code=status_code, code=code, message=str(exc), details=details)


_configure_policy_backend()

if settings.otel_enabled:
    setup_otel(settings.app_name, True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
