from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.authz.api import admin_router
from app.core.auth import get_auth_context
from app.core.config import get_settings
from app.integrations.api import router as external_account_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import AuthContext
from app.records.api import router as records_router

router = APIRouter()
router.include_router(admin_router)
# Registered before the generic record routes, which match any /api/v1/{Type}/{id}.
router.include_router(external_account_router)
router.include_router(records_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(ctx: AuthContext = Depends(get_auth_context)) -> dict[str, str | bool | list[str] | None]:
    return {
        "id": ctx.user_id,
        "user_name": ctx.user_name,
        "type": ctx.user_type,
        "is_admin": ctx.is_admin,
        "team_ids": ctx.team_ids,
        "default_team_id": ctx.default_team_id,
        "roles": ctx.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(ctx: AuthContext = Depends(get_auth_context)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not ctx.is_admin and "system.metrics.read" not in ctx.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
