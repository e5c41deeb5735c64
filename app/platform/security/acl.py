from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.sql import Select

from app import audit
from app.metrics import observe_acl_denied
from app.platform.security.context import AuthContext
from app.platform.security.policies import (
    AccessLevel,
    FieldDecision,
    PolicyBackend,
    RecordAction,
    get_policy_backend,
)
from app.platform.security.repository import BaseRepository
from app.records.metadata import FieldUtil
from app.records.models import EntityTeam

if TYPE_CHECKING:
    from app.records.entity import RecordEntity
    from app.records.entity_manager import EntityManager


logger = logging.getLogger("app.security.acl")

# Permissions that only know yes/no.
BINARY_PERMISSIONS = {"portal", "export"}


class Acl:
    """Access checks of one user, bound to a request."""

    def __init__(self, ctx: AuthContext, entity_manager: EntityManager, *, policy: PolicyBackend | None = None) -> None:
        self.ctx = ctx
        self.entity_manager = entity_manager
        self.metadata = entity_manager.metadata
        self._policy = policy

    @property
    def policy(self) -> PolicyBackend:
        return self._policy or get_policy_backend()

    @property
    def user_id(self) -> str:
        return self.ctx.user_id

    def is_admin(self) -> bool:
        return self.ctx.is_admin

    # Levels

    def get_level(self, scope: str, action: RecordAction | str = RecordAction.READ) -> AccessLevel:
        action = RecordAction(action)
        if self.ctx.is_admin:
            return AccessLevel.ALL
        if not self.metadata.get(["scopes", scope, "acl"], False):
            return AccessLevel.ALL if action == RecordAction.READ else AccessLevel.NO

        cache_key = f"acl.level.{scope}.{action.value}"
        cached = self.ctx._cache.get(cache_key)
        if isinstance(cached, AccessLevel):
            return cached

        level = self.policy.resource_level(scope, action, self.ctx)
        if level == AccessLevel.YES:
            level = AccessLevel.ALL
        self.ctx._cache[cache_key] = level
        return level

    def get_permission_level(self, permission: str) -> AccessLevel:
        if self.ctx.is_admin:
            return AccessLevel.YES if permission in BINARY_PERMISSIONS else AccessLevel.ALL
        level = self.policy.permission_level(permission, self.ctx)
        if permission in BINARY_PERMISSIONS:
            return AccessLevel.NO if level == AccessLevel.NO else AccessLevel.YES
        if level == AccessLevel.YES:
            return AccessLevel.ALL
        return level

    def get(self, permission: str) -> AccessLevel:
        return self.get_permission_level(permission)

    # Checks

    def check(self, subject: str | RecordEntity, action: RecordAction | str = RecordAction.READ) -> bool:
        action = RecordAction(action)
        if isinstance(subject, str):
            allowed = self.check_scope(subject, action)
            scope, entity_id = subject, None
        else:
            allowed = self.check_entity(subject, action)
            scope, entity_id = subject.entity_type, subject.id

        if not allowed:
            self._emit_denied(scope=scope, action=action, entity_id=entity_id)
        return allowed

    def check_scope(self, scope: str, action: RecordAction | str = RecordAction.READ) -> bool:
        return self.get_level(scope, action) != AccessLevel.NO

    def check_entity(self, entity: RecordEntity, action: RecordAction | str = RecordAction.READ) -> bool:
        level = self.get_level(entity.entity_type, action)
        if level == AccessLevel.ALL:
            return True
        if level == AccessLevel.NO:
            return False
        if entity.is_new():
            return True
        if self.check_is_owner(entity):
            return True
        if level == AccessLevel.TEAM:
            return self.check_in_team(entity)
        return False

    def check_is_owner(self, entity: RecordEntity) -> bool:
        if entity.entity_type == "User":
            return entity.id == self.ctx.user_id
        if entity.entity_type == "Team":
            return entity.id in self.ctx.team_ids
        if entity.is_column("assigned_user_id") and entity.get("assigned_user_id") is not None:
            return entity.get("assigned_user_id") == self.ctx.user_id
        if entity.is_column("created_by_id"):
            return entity.get("created_by_id") == self.ctx.user_id
        return False

    def check_in_team(self, entity: RecordEntity) -> bool:
        team_ids = set(self.ctx.team_ids)
        if not team_ids:
            return False
        if entity.entity_type == "Team":
            return entity.id in team_ids
        if entity.entity_type == "User":
            return self.entity_manager.users.check_belongs_to_any_of_teams(str(entity.id), list(team_ids))
        if entity.has("teams_ids"):
            return bool(team_ids.intersection(entity.get_link_multiple_id_list("teams")))
        rows = self.entity_manager.session.scalars(
            select(EntityTeam.team_id).where(
                EntityTeam.entity_type == entity.entity_type,
                EntityTeam.entity_id == entity.id,
            )
        ).all()
        return bool(team_ids.intersection(str(row) for row in rows))

    def check_user_permission(self, target_user_id: str, permission: str = "user") -> bool:
        """Whether the acting user may involve ``target_user_id`` under ``permission``."""

        if self.ctx.is_admin or target_user_id == self.ctx.user_id:
            return True
        level = self.get_permission_level(permission)
        if level in {AccessLevel.ALL, AccessLevel.YES}:
            return True
        if level == AccessLevel.TEAM:
            return self.entity_manager.users.check_belongs_to_any_of_teams(target_user_id, list(self.ctx.team_ids))
        return False

    def check_assignment_permission(self, target_user_id: str) -> bool:
        return self.check_user_permission(target_user_id, "assignment")

    # Record-level filter

    def apply_scope_query(self, query: Select[Any], scope: str, action: RecordAction | str = RecordAction.READ) -> Select[Any]:
        repository = BaseRepository(resource=scope, model=self.metadata.get_model(scope))
        return repository.apply_scope_query(query, self.ctx, self.get_level(scope, action))

    # Field level

    def get_scope_forbidden_field_list(self, scope: str, action: str = "read") -> list[str]:
        if self.ctx.is_admin:
            return []
        cache_key = f"acl.forbidden_fields.{scope}.{action}"
        cached = self.ctx._cache.get(cache_key)
        if isinstance(cached, list):
            return list(cached)

        fields = self.metadata.get(["entity_defs", scope, "fields"], {}) or {}
        policy = self.policy
        forbidden = [
            field for field in fields if policy.evaluate_field_read(scope, field, self.ctx) == FieldDecision.DENY
        ]
        if action == "edit":
            forbidden.extend(
                field
                for field in fields
                if field not in forbidden and not policy.can_edit_field(scope, field, self.ctx)
            )
        self.ctx._cache[cache_key] = forbidden
        return list(forbidden)

    def get_scope_forbidden_attribute_list(self, scope: str, action: str = "read") -> list[str]:
        attributes: list[str] = []
        for field in self.get_scope_forbidden_field_list(scope, action):
            attributes.extend(self._field_attribute_list(scope, field))
        return attributes

    def get_scope_forbidden_link_list(self, scope: str, action: str = "read") -> list[str]:
        if self.ctx.is_admin:
            return []
        forbidden_fields = set(self.get_scope_forbidden_field_list(scope, action))
        policy = self.policy
        result: list[str] = []
        for link in self.metadata.get_link_defs(scope):
            if link in forbidden_fields:
                result.append(link)
                continue
            if policy.evaluate_field_read(scope, link, self.ctx) == FieldDecision.DENY:
                result.append(link)
                continue
            if action == "edit" and not policy.can_edit_field(scope, link, self.ctx):
                result.append(link)
        return result

    def get_scope_masked_attribute_list(self, scope: str) -> list[str]:
        if self.ctx.is_admin:
            return []
        fields = self.metadata.get(["entity_defs", scope, "fields"], {}) or {}
        policy = self.policy
        attributes: list[str] = []
        for field in fields:
            if policy.evaluate_field_read(scope, field, self.ctx) == FieldDecision.MASK:
                attributes.extend(self._field_attribute_list(scope, field))
        return attributes

    def _field_attribute_list(self, scope: str, field: str) -> list[str]:
        return FieldUtil(self.metadata).get_attribute_list(scope, field)

    def _emit_denied(self, *, scope: str, action: RecordAction, entity_id: str | None) -> None:
        observe_acl_denied(scope=scope, action=action.value)
        logger.info(
            "acl_denied",
            extra={"scope": scope, "action": action.value, "entity_id": entity_id, "user_id": self.ctx.user_id},
        )
        audit.record(
            actor_user_id=self.ctx.user_id,
            entity_type="security.acl",
            entity_id=entity_id or scope,
            action="acl.denied",
            before=None,
            after={
                "scope": scope,
                "action": action.value,
                "level": self.get_level(scope, action).value,
                "role_names": self.ctx._cache.get("authz.role_names", self.ctx.roles),
            },
            correlation_id=self.ctx.correlation_id,
        )
