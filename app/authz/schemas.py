from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    is_system: bool = False

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        return value.strip()


class RoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    is_system: bool
    created_at: datetime


class PermissionCreate(BaseModel):
    """One ACL rule.

    Record rule: ``{"resource": "Account", "action": "read", "level": "team"}``.
    Field rule: ``{"resource": "Account", "action": "field.mask", "field": "phone_number"}``.
    Permission: ``{"resource": "permission", "action": "export", "level": "no"}``.
    """

    resource: str = Field(min_length=1, max_length=128)
    action: str = Field(min_length=1, max_length=64)
    field: str | None = None
    level: str | None = None
    effect: Literal["allow", "deny"] = "allow"
    description: str | None = None

    @field_validator("resource")
    @classmethod
    def _strip_resource(cls, value: str) -> str:
        return value.strip()

    @field_validator("action")
    @classmethod
    def _normalize_action(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("field", "level")
    @classmethod
    def _optional(cls, value: str | None) -> str | None:
        return _blank_to_none(value)


class PermissionUpdate(BaseModel):
    """Fields left out keep their value; ``field`` and ``level`` are replaced as given."""

    resource: str | None = Field(default=None, min_length=1, max_length=128)
    action: str | None = Field(default=None, min_length=1, max_length=64)
    field: str | None = None
    level: str | None = None
    effect: Literal["allow", "deny"] | None = None
    description: str | None = None

    @field_validator("resource", "field", "level")
    @classmethod
    def _optional(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @field_validator("action")
    @classmethod
    def _normalize_action(cls, value: str | None) -> str | None:
        value = _blank_to_none(value)
        return value.lower() if value else None


class PermissionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    resource: str
    action: str
    field: str | None
    level: str | None
    effect: str
    description: str | None
    created_at: datetime


class RoleDetail(RoleRead):
    rules: list[PermissionRead] = Field(default_factory=list)
    user_ids: list[str] = Field(default_factory=list)
    team_ids: list[str] = Field(default_factory=list)


class AttachRolePermissionRequest(BaseModel):
    permission_id: UUID


class AssignUserRoleRequest(BaseModel):
    role_id: UUID


class AssignTeamRoleRequest(BaseModel):
    role_id: UUID


class UserRoleRead(BaseModel):
    user_id: str
    role_id: UUID
    role_name: str
    created_at: datetime


class TeamRoleRead(BaseModel):
    team_id: str
    team_name: str
    role_id: UUID
    role_name: str
    created_at: datetime


class RolePermissionRead(BaseModel):
    role_id: UUID
    role_name: str
    permission_id: UUID
    resource: str
    action: str
    field: str | None
    level: str | None
    effect: str
    created_at: datetime
