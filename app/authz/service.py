from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.authz.models import Permission, Role, RolePermission, TeamRole, UserRole
from app.authz.schemas import (
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
from app.platform.security.policies import (
    DEFAULT_PERMISSION_LEVELS,
    PERMISSION_RESOURCE,
    FieldAction,
    RecordAction,
    parse_level,
)
from app.records.errors import BadRequest, Conflict, NotFound
from app.records.metadata import FieldUtil, Metadata
from app.records.models import Team, User

logger = logging.getLogger("app.authz")

_FIELD_ACTIONS = {action.value for action in FieldAction}
_RECORD_ACTIONS = {action.value for action in RecordAction} | {"*"}


class AuthorizationAdminService:
    """Maintains roles, their ACL rules and who holds them.

    Rules are checked against entity definitions before they are stored, so a
    typo in a resource or field name is rejected instead of silently matching
    nothing.
    """

    def __init__(self, metadata: Metadata) -> None:
        self.metadata = metadata
        self.field_util = FieldUtil(metadata)

    def _get_role(self, session: Session, role_id: uuid.UUID) -> Role:
        role = session.get(Role, role_id)
        if role is None:
            raise NotFound("Role not found.")
        return role

    def _get_permission(self, session: Session, permission_id: uuid.UUID) -> Permission:
        permission = session.get(Permission, permission_id)
        if permission is None:
            raise NotFound("Permission not found.")
        return permission

    def _commit(self, session: Session, conflict_message: str) -> None:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise Conflict(conflict_message) from None

    def _validated_rule(
        self,
        *,
        resource: str,
        action: str,
        field: str | None,
        level: str | None,
    ) -> tuple[str, str, str | None, str | None]:
        if resource == PERMISSION_RESOURCE:
            if action not in DEFAULT_PERMISSION_LEVELS:
                raise BadRequest(f"Unknown permission '{action}'.", body={"allowed": sorted(DEFAULT_PERMISSION_LEVELS)})
            if field is not None:
                raise BadRequest("Permissions do not take a field.")
            return resource, action, None, parse_level(level).value if level else None

        if resource != "*":
            entity_type = self.metadata.get_entity_path(resource)
            if entity_type is None:
                raise BadRequest(f"Unknown resource '{resource}'.")
            resource = entity_type

        if action in _FIELD_ACTIONS:
            if level is not None:
                raise BadRequest("Field rules do not take a level.")
            field = field or "*"
            if field != "*" and resource != "*" and field not in self.field_util.get_entity_type_field_list(resource):
                raise BadRequest(f"Unknown field '{field}' for {resource}.")
            return resource, action, field, None

        if action not in _RECORD_ACTIONS:
            raise BadRequest(f"Unknown action '{action}'.", body={"allowed": sorted(_RECORD_ACTIONS | _FIELD_ACTIONS)})
        if field is not None:
            raise BadRequest("Record rules do not take a field.")
        return resource, action, None, parse_level(level).value if level else None

    def create_role(self, session: Session, dto: RoleCreate) -> RoleRead:
        role = Role(name=dto.name, description=dto.description, is_system=dto.is_system)
        session.add(role)
        self._commit(session, f"Role '{dto.name}' already exists.")
        session.refresh(role)
        logger.info("authz_role_created", extra={"role_id": str(role.id)})
        return RoleRead.model_validate(role)

    def list_roles(self, session: Session) -> list[RoleRead]:
        rows = session.scalars(select(Role).order_by(Role.name.asc())).all()
        return [RoleRead.model_validate(row) for row in rows]

    def get_role(self, session: Session, role_id: uuid.UUID) -> RoleDetail:
        role = self._get_role(session, role_id)
        rules = sorted(
            (mapping.permission for mapping in role.rules),
            key=lambda item: (item.resource, item.action, item.field or ""),
        )
        return RoleDetail(
            **RoleRead.model_validate(role).model_dump(),
            rules=[PermissionRead.model_validate(rule) for rule in rules],
            user_ids=sorted(mapping.user_id for mapping in role.users),
            team_ids=sorted(mapping.team_id for mapping in role.teams),
        )

    def update_role(self, session: Session, role_id: uuid.UUID, dto: RoleUpdate) -> RoleRead:
        role = self._get_role(session, role_id)
        if role.is_system:
            raise BadRequest("System role cannot be modified.")

        changes = dto.model_dump(exclude_unset=True)
        if changes.get("name"):
            role.name = changes["name"]
        if "description" in changes:
            role.description = changes["description"]

        self._commit(session, f"Role '{role.name}' already exists.")
        session.refresh(role)
        return RoleRead.model_validate(role)

    def delete_role(self, session: Session, role_id: uuid.UUID) -> None:
        role = self._get_role(session, role_id)
        if role.is_system:
            raise BadRequest("System role cannot be deleted.")

        session.delete(role)
        session.commit()
        logger.info("authz_role_deleted", extra={"role_id": str(role_id)})

    def create_permission(self, session: Session, dto: PermissionCreate) -> PermissionRead:
        resource, action, field, level = self._validated_rule(
            resource=dto.resource,
            action=dto.action,
            field=dto.field,
            level=dto.level,
        )
        permission = Permission(
            resource=resource,
            action=action,
            field=field,
            level=level,
            effect=dto.effect,
            description=dto.description,
        )
        session.add(permission)
        self._commit(session, "Same rule already exists.")
        session.refresh(permission)
        return PermissionRead.model_validate(permission)

    def list_permissions(self, session: Session) -> list[PermissionRead]:
        rows = session.scalars(
            select(Permission).order_by(Permission.resource.asc(), Permission.action.asc(), Permission.field.asc())
        ).all()
        return [PermissionRead.model_validate(row) for row in rows]

    def update_permission(self, session: Session, permission_id: uuid.UUID, dto: PermissionUpdate) -> PermissionRead:
        permission = self._get_permission(session, permission_id)
        changes = dto.model_dump(exclude_unset=True)

        resource, action, field, level = self._validated_rule(
            resource=changes.get("resource") or permission.resource,
            action=changes.get("action") or permission.action,
            field=changes["field"] if "field" in changes else permission.field,
            level=changes["level"] if "level" in changes else permission.level,
        )
        permission.resource = resource
        permission.action = action
        permission.field = field
        permission.level = level
        if changes.get("effect"):
            permission.effect = changes["effect"]
        if "description" in changes:
            permission.description = changes["description"]

        self._commit(session, "Same rule already exists.")
        session.refresh(permission)
        return PermissionRead.model_validate(permission)

    def delete_permission(self, session: Session, permission_id: uuid.UUID) -> None:
        session.delete(self._get_permission(session, permission_id))
        session.commit()

    def attach_permission_to_role(self, session: Session, role_id: uuid.UUID, permission_id: uuid.UUID) -> RolePermissionRead:
        role = self._get_role(session, role_id)
        permission = self._get_permission(session, permission_id)

        mapping = session.get(RolePermission, (role_id, permission_id))
        if mapping is None:
            mapping = RolePermission(role_id=role_id, permission_id=permission_id)
            session.add(mapping)
            session.commit()
            session.refresh(mapping)
            logger.info("authz_rule_attached", extra={"role_id": str(role_id), "permission_id": str(permission_id)})

        return self._role_permission_read(mapping, role, permission)

    def list_role_permissions(self, session: Session, role_id: uuid.UUID) -> list[RolePermissionRead]:
        role = self._get_role(session, role_id)
        rows = session.execute(
            select(RolePermission, Permission)
            .join(Permission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
            .order_by(Permission.resource.asc(), Permission.action.asc(), Permission.field.asc())
        ).all()
        return [self._role_permission_read(mapping, role, permission) for mapping, permission in rows]

    def detach_permission_from_role(self, session: Session, role_id: uuid.UUID, permission_id: uuid.UUID) -> None:
        mapping = session.get(RolePermission, (role_id, permission_id))
        if mapping is None:
            raise NotFound("Rule is not attached to the role.")

        session.delete(mapping)
        session.commit()

    def assign_role_to_user(self, session: Session, user_id: str, role_id: uuid.UUID) -> UserRoleRead:
        role = self._get_role(session, role_id)
        if session.scalar(select(User.id).where(User.id == user_id, User.deleted_at.is_(None))) is None:
            raise NotFound("User not found.")

        mapping = session.get(UserRole, (user_id, role_id))
        if mapping is None:
            mapping = UserRole(user_id=user_id, role_id=role_id)
            session.add(mapping)
            session.commit()
            session.refresh(mapping)
            logger.info("authz_role_assigned", extra={"role_id": str(role_id), "target_user_id": user_id})

        return UserRoleRead(user_id=mapping.user_id, role_id=role.id, role_name=role.name, created_at=mapping.created_at)

    def list_user_roles(self, session: Session, user_id: str | None = None) -> list[UserRoleRead]:
        stmt = select(UserRole, Role).join(Role, UserRole.role_id == Role.id).order_by(UserRole.user_id.asc(), Role.name.asc())
        if user_id is not None:
            stmt = stmt.where(UserRole.user_id == user_id)
        return [
            UserRoleRead(user_id=mapping.user_id, role_id=role.id, role_name=role.name, created_at=mapping.created_at)
            for mapping, role in session.execute(stmt).all()
        ]

    def unassign_role_from_user(self, session: Session, user_id: str, role_id: uuid.UUID) -> None:
        mapping = session.get(UserRole, (user_id, role_id))
        if mapping is None:
            raise NotFound("Role is not assigned to the user.")

        session.delete(mapping)
        session.commit()
        logger.info("authz_role_unassigned", extra={"role_id": str(role_id), "target_user_id": user_id})

    def assign_role_to_team(self, session: Session, team_id: str, role_id: uuid.UUID) -> TeamRoleRead:
        role = self._get_role(session, role_id)
        team = session.scalar(select(Team).where(Team.id == team_id, Team.deleted_at.is_(None)))
        if team is None:
            raise NotFound("Team not found.")

        mapping = session.get(TeamRole, (team_id, role_id))
        if mapping is None:
            mapping = TeamRole(team_id=team_id, role_id=role_id)
            session.add(mapping)
            session.commit()
            session.refresh(mapping)
            logger.info("authz_role_assigned", extra={"role_id": str(role_id), "team_id": team_id})

        return TeamRoleRead(
            team_id=team.id,
            team_name=team.name,
            role_id=role.id,
            role_name=role.name,
            created_at=mapping.created_at,
        )

    def list_team_roles(self, session: Session, team_id: str) -> list[TeamRoleRead]:
        rows = session.execute(
            select(TeamRole, Role, Team)
            .join(Role, TeamRole.role_id == Role.id)
            .join(Team, TeamRole.team_id == Team.id)
            .where(TeamRole.team_id == team_id)
            .order_by(Role.name.asc())
        ).all()
        return [
            TeamRoleRead(
                team_id=team.id,
                team_name=team.name,
                role_id=role.id,
                role_name=role.name,
                created_at=mapping.created_at,
            )
            for mapping, role, team in rows
        ]

    def unassign_role_from_team(self, session: Session, team_id: str, role_id: uuid.UUID) -> None:
        mapping = session.get(TeamRole, (team_id, role_id))
        if mapping is None:
            raise NotFound("Role is not assigned to the team.")

        session.delete(mapping)
        session.commit()
        logger.info("authz_role_unassigned", extra={"role_id": str(role_id), "team_id": team_id})

    @staticmethod
    def _role_permission_read(mapping: RolePermission, role: Role, permission: Permission) -> RolePermissionRead:
        return RolePermissionRead(
            role_id=role.id,
            role_name=role.name,
            permission_id=permission.id,
            resource=permission.resource,
            action=permission.action,
            field=permission.field,
            level=permission.level,
            effect=permission.effect,
            created_at=mapping.created_at,
        )
