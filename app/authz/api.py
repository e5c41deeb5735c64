from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.authz.schemas import (
    AssignTeamRoleRequest,
    AssignUserRoleRequest,
    AttachRolePermissionRequest,
    PermissionCreate,
    PermissionRead,
    PermissionUpdate,
    RoleCreate,
    RoleDetail,
    RolePermissionRead,
    RoleRead,
    RoleUpdate,
    TeamRoleRead,
    UserRoleRead,
)
from app.authz.service import AuthorizationAdminService
from app.core.auth import get_auth_context
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.records.errors import Forbidden
from app.records.metadata import get_metadata


admin_router = APIRouter(prefix="/api/v1/admin", tags=["admin.authz"])


def require_admin(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.is_admin:
        raise Forbidden("Only administrators can manage roles.")
    return ctx


def get_authorization_admin_service(_ctx: AuthContext = Depends(require_admin)) -> AuthorizationAdminService:
    return AuthorizationAdminService(get_metadata())


@admin_router.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
def create_role(
    dto: RoleCreate,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> RoleRead:
    return service.create_role(db, dto)


@admin_router.get("/roles", response_model=list[RoleRead])
def list_roles(
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> list[RoleRead]:
    return service.list_roles(db)


@admin_router.get("/roles/{role_id}", response_model=RoleDetail)
def read_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> RoleDetail:
    return service.get_role(db, role_id)


@admin_router.patch("/roles/{role_id}", response_model=RoleRead)
def update_role(
    role_id: uuid.UUID,
    dto: RoleUpdate,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> RoleRead:
    return service.update_role(db, role_id, dto)


@admin_router.delete("/roles/{role_id}")
def delete_role(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> bool:
    service.delete_role(db, role_id)
    return True


@admin_router.post("/permissions", response_model=PermissionRead, status_code=status.HTTP_201_CREATED)
def create_permission(
    dto: PermissionCreate,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> PermissionRead:
    return service.create_permission(db, dto)


@admin_router.get("/permissions", response_model=list[PermissionRead])
def list_permissions(
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> list[PermissionRead]:
    return service.list_permissions(db)


@admin_router.patch("/permissions/{permission_id}", response_model=PermissionRead)
def update_permission(
    permission_id: uuid.UUID,
    dto: PermissionUpdate,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> PermissionRead:
    return service.update_permission(db, permission_id, dto)


@admin_router.delete("/permissions/{permission_id}")
def delete_permission(
    permission_id: uuid.UUID,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> bool:
    service.delete_permission(db, permission_id)
    return True


@admin_router.post("/roles/{role_id}/permissions", response_model=RolePermissionRead, status_code=status.HTTP_201_CREATED)
def attach_role_permission(
    role_id: uuid.UUID,
    dto: AttachRolePermissionRequest,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> RolePermissionRead:
    return service.attach_permission_to_role(db, role_id, dto.permission_id)


@admin_router.get("/roles/{role_id}/permissions", response_model=list[RolePermissionRead])
def list_role_permissions(
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> list[RolePermissionRead]:
    return service.list_role_permissions(db, role_id)


@admin_router.delete("/roles/{role_id}/permissions/{permission_id}")
def detach_role_permission(
    role_id: uuid.UUID,
    permission_id: uuid.UUID,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> bool:
    service.detach_permission_from_role(db, role_id, permission_id)
    return True


@admin_router.post("/users/{user_id}/roles", response_model=UserRoleRead, status_code=status.HTTP_201_CREATED)
def assign_user_role(
    user_id: str,
    dto: AssignUserRoleRequest,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> UserRoleRead:
    return service.assign_role_to_user(db, user_id, dto.role_id)


@admin_router.get("/users/{user_id}/roles", response_model=list[UserRoleRead])
def list_user_roles(
    user_id: str,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> list[UserRoleRead]:
    return service.list_user_roles(db, user_id=user_id)


@admin_router.delete("/users/{user_id}/roles/{role_id}")
def unassign_user_role(
    user_id: str,
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> bool:
    service.unassign_role_from_user(db, user_id, role_id)
    return True


@admin_router.get("/user-role-assignments", response_model=list[UserRoleRead])
def list_all_user_roles(
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> list[UserRoleRead]:
    return service.list_user_roles(db)


@admin_router.post("/teams/{team_id}/roles", response_model=TeamRoleRead, status_code=status.HTTP_201_CREATED)
def assign_team_role(
    team_id: str,
    dto: AssignTeamRoleRequest,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> TeamRoleRead:
    return service.assign_role_to_team(db, team_id, dto.role_id)


@admin_router.get("/teams/{team_id}/roles", response_model=list[TeamRoleRead])
def list_team_roles(
    team_id: str,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> list[TeamRoleRead]:
    return service.list_team_roles(db, team_id)


@admin_router.delete("/teams/{team_id}/roles/{role_id}")
def unassign_team_role(
    team_id: str,
    role_id: uuid.UUID,
    db: Session = Depends(get_db),
    service: AuthorizationAdminService = Depends(get_authorization_admin_service),
) -> bool:
    service.unassign_role_from_team(db, team_id, role_id)
    return True
