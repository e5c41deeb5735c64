from __future__ import annotations

from typing import Any

from sqlalchemy import and_, false, or_, select
from sqlalchemy.sql import ColumnElement, Select

from app.platform.security.context import AuthContext
from app.platform.security.policies import AccessLevel
from app.records.models import EntityTeam, UserTeam


class BaseRepository:
    """Record-level access filter for one scope.

    ``own`` matches the assigned user (or the creator for scopes without an
    assignee), ``team`` additionally matches records sharing a team with the
    acting user.
    """

    resource = ""
    model: Any = None

    def __init__(self, resource: str | None = None, model: Any = None) -> None:
        if resource is not None:
            self.resource = resource
        if model is not None:
            self.model = model

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext, level: AccessLevel) -> Select[Any]:
        if level in {AccessLevel.ALL, AccessLevel.YES}:
            return query
        if level == AccessLevel.NO:
            return query.where(false())
        if level == AccessLevel.OWN:
            return query.where(self.owner_clause(ctx))
        return query.where(or_(self.owner_clause(ctx), self.team_clause(ctx)))

    def owner_clause(self, ctx: AuthContext) -> ColumnElement[bool]:
        model = self.model
        if self.resource == "User":
            return model.id == ctx.user_id
        if self.resource == "Team":
            return model.id.in_(ctx.team_ids) if ctx.team_ids else false()
        if hasattr(model, "assigned_user_id") and hasattr(model, "created_by_id"):
            return or_(
                model.assigned_user_id == ctx.user_id,
                and_(model.assigned_user_id.is_(None), model.created_by_id == ctx.user_id),
            )
        if hasattr(model, "assigned_user_id"):
            return model.assigned_user_id == ctx.user_id
        if hasattr(model, "created_by_id"):
            return model.created_by_id == ctx.user_id
        return false()

    def team_clause(self, ctx: AuthContext) -> ColumnElement[bool]:
        if not ctx.team_ids:
            return false()
        model = self.model
        if self.resource == "Team":
            return model.id.in_(ctx.team_ids)
        if self.resource == "User":
            return model.id.in_(select(UserTeam.user_id).where(UserTeam.team_id.in_(ctx.team_ids)))
        return model.id.in_(
            select(EntityTeam.entity_id).where(
                EntityTeam.entity_type == self.resource,
                EntityTeam.team_id.in_(ctx.team_ids),
            )
        )
