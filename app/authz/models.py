from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.records.models import utcnow


class Role(Base):
    """Named set of ACL rules; users get it directly or through one of their teams."""

    __tablename__ = "authz_role"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    rules: Mapped[list[RolePermission]] = relationship(
        "RolePermission",
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    users: Mapped[list[UserRole]] = relationship("UserRole", cascade="all, delete-orphan", passive_deletes=True)
    teams: Mapped[list[TeamRole]] = relationship("TeamRole", cascade="all, delete-orphan", passive_deletes=True)


class Permission(Base):
    """A single ACL rule.

    ``resource`` is an entity type (``Account``), ``*`` or ``permission`` for
    user-level permissions such as ``assignment`` and ``export``. ``action`` is a
    record action (``read``, ``edit`` ...), a field action (``field.read``,
    ``field.mask``, ``field.edit``) or the permission name. ``level`` is only
    meaningful for record actions and permissions.
    """

    __tablename__ = "authz_permission"
    __table_args__ = (UniqueConstraint("resource", "action", "field", "level", "effect", name="uq_authz_permission_rule"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    resource: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    field: Mapped[str | None] = mapped_column(String(128), nullable=True)
    level: Mapped[str | None] = mapped_column(String(16), nullable=True)
    effect: Mapped[str] = mapped_column(String(16), nullable=False, default="allow", server_default="allow")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    roles: Mapped[list[RolePermission]] = relationship(
        "RolePermission",
        back_populates="permission",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class RolePermission(Base):
    __tablename__ = "authz_role_permission"

    role_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("authz_role.id", ondelete="CASCADE"), primary_key=True)
    permission_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("authz_permission.id", ondelete="CASCADE"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    role: Mapped[Role] = relationship("Role", back_populates="rules")
    permission: Mapped[Permission] = relationship("Permission", back_populates="roles")


class UserRole(Base):
    __tablename__ = "authz_user_role"

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("user.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("authz_role.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class TeamRole(Base):
    """Role granted to every member of a team."""

    __tablename__ = "authz_team_role"

    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("team.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("authz_role.id", ondelete="CASCADE"), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
