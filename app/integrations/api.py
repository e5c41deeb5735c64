from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.auth import get_auth_context, get_current_user
from app.core.database import get_db
from app.integrations.client_manager import ClientManager
from app.integrations.service import ExternalAccountService
from app.platform.security.context import AuthContext
from app.records.entity_manager import EntityManager
from app.records.errors import error_response
from app.records.metadata import get_metadata
from app.records.models import User

router = APIRouter(prefix="/api/v1/ExternalAccount", tags=["integrations"])


class AuthorizationCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1)
    user_id: str | None = Field(default=None, alias="userId")


def get_external_account_service(
    user: User = Depends(get_current_user),
    ctx: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
) -> ExternalAccountService:
    metadata = get_metadata()
    entity_manager = EntityManager(db, metadata)
    entity_manager.set_user(user)
    return ExternalAccountService(ClientManager(entity_manager, metadata), ctx)


def _failed(request: Request, exc: HTTPException, operation: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=f"external_account_{operation}_failed",
        message=str(exc.detail),
        details=exc.detail,
    )


@router.get("/{integration}", response_model=None)
def read_external_account(
    request: Request,
    integration: str,
    user_id: str | None = Query(default=None, alias="userId"),
    service: ExternalAccountService = Depends(get_external_account_service),
) -> dict[str, Any] | JSONResponse:
    try:
        return service.read(integration, user_id)
    except HTTPException as exc:
        return _failed(request, exc, "read")


@router.get("/{integration}/authorizationUrl", response_model=None)
def get_authorization_url(
    request: Request,
    integration: str,
    user_id: str | None = Query(default=None, alias="userId"),
    service: ExternalAccountService = Depends(get_external_account_service),
) -> dict[str, Any] | JSONResponse:
    try:
        return {"url": service.get_authorization_url(integration, user_id)}
    except HTTPException as exc:
        return _failed(request, exc, "authorization_url")


@router.post("/{integration}/authorizationCode", response_model=None)
def authorization_code(
    request: Request,
    integration: str,
    dto: AuthorizationCodeRequest,
    service: ExternalAccountService = Depends(get_external_account_service),
) -> dict[str, Any] | JSONResponse:
    try:
        return {"result": service.authorization_code(integration, dto.code, dto.user_id)}
    except HTTPException as exc:
        return _failed(request, exc, "authorization_code")


@router.get("/{integration}/ping", response_model=None)
def ping(
    request: Request,
    integration: str,
    user_id: str | None = Query(default=None, alias="userId"),
    service: ExternalAccountService = Depends(get_external_account_service),
) -> dict[str, Any] | JSONResponse:
    try:
        return {"result": service.ping(integration, user_id)}
    except HTTPException as exc:
        return _failed(request, exc, "ping")
