"""create record, crm, authz and integration tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 10:00:00
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by_id", sa.String(length=36), nullable=True),
        sa.Column("modified_by_id", sa.String(length=36), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "team",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "user",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("user_name", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=16), nullable=False, server_default="regular"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("email_address", sa.Text(), nullable=True),
        sa.Column("default_team_id", sa.String(length=36), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["default_team_id"], ["team.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_name"),
    )

    op.create_table(
        "user_team",
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "team_id"),
    )

    op.create_table(
        "entity_team",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["team.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "entity_id", "team_id", name="uq_entity_team_triple"),
    )
    op.create_index("ix_entity_team_entity", "entity_team", ["entity_type", "entity_id"])

    op.create_table(
        "follow",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "entity_id", "user_id", name="uq_follow_entity_user"),
    )

    op.create_table(
        "attachment",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=128), nullable=True),
        sa.Column("size", sa.Integer(), nullable=True),
        sa.Column("contents", sa.LargeBinary(), nullable=True),
        sa.Column("field", sa.String(length=64), nullable=True),
        sa.Column("role", sa.String(length=36), nullable=True),
        sa.Column("parent_type", sa.String(length=64), nullable=True),
        sa.Column("parent_id", sa.String(length=36), nullable=True),
        sa.Column("related_type", sa.String(length=64), nullable=True),
        sa.Column("source_id", sa.String(length=36), nullable=True),
        *_audit_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "action_history_record",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=True),
        sa.Column("auth_token_id", sa.String(length=64), nullable=True),
        sa.Column("auth_log_record_id", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("target_type", sa.String(length=64), nullable=True),
        sa.Column("target_id", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_action_history_record_target", "action_history_record", ["target_type", "target_id"])

    op.create_table(
        "account",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("email_address", sa.Text(), nullable=True),
        sa.Column("phone_number", sa.String(length=64), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=True),
        sa.Column("industry", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("billing_address_city", sa.Text(), nullable=True),
        sa.Column("billing_address_country", sa.Text(), nullable=True),
        sa.Column("assigned_user_id", sa.String(length=36), nullable=True),
        sa.Column("logo_id", sa.String(length=36), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["assigned_user_id"], ["user.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["logo_id"], ["attachment.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_account_name", "account", ["name"])
    op.create_index("ix_account_assigned_user_id", "account", ["assigned_user_id"])

    op.create_table(
        "contact",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("salutation_name", sa.String(length=16), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("email_address", sa.Text(), nullable=True),
        sa.Column("phone_number", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("do_not_call", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("account_id", sa.String(length=36), nullable=True),
        sa.Column("assigned_user_id", sa.String(length=36), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_user_id"], ["user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_contact_account_id", "contact", ["account_id"])
    op.create_index("ix_contact_email_address", "contact", ["email_address"])

    op.create_table(
        "opportunity",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="Prospecting"),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("amount_currency", sa.String(length=3), nullable=True),
        sa.Column("close_date", sa.Date(), nullable=True),
        sa.Column("lead_source", sa.String(length=32), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("account_id", sa.String(length=36), nullable=True),
        sa.Column("assigned_user_id", sa.String(length=36), nullable=True),
        *_audit_columns(),
        sa.ForeignKeyConstraint(["account_id"], ["account.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_user_id"], ["user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_opportunity_account_id", "opportunity", ["account_id"])
    op.create_index("ix_opportunity_stage", "opportunity", ["stage"])

    op.create_table(
        "contact_opportunity",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contact_id", sa.String(length=36), nullable=False),
        sa.Column("opportunity_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(["contact_id"], ["contact.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["opportunity_id"], ["opportunity.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contact_id", "opportunity_id", name="uq_contact_opportunity_pair"),
    )

    op.create_table(
        "authz_role",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "authz_permission",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("resource", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("field", sa.String(length=128), nullable=True),
        sa.Column("level", sa.String(length=16), nullable=True),
        sa.Column("effect", sa.String(length=16), nullable=False, server_default="allow"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("resource", "action", "field", "level", "effect", name="uq_authz_permission_rule"),
    )

    op.create_table(
        "authz_role_permission",
        sa.Column("role_id", sa.Uuid(), nullable=False),
        sa.Column("permission_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["permission_id"], ["authz_permission.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["authz_role.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("role_id", "permission_id"),
    )

    op.create_table(
        "authz_user_role",
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["authz_role.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "role_id"),
    )

    op.create_table(
        "authz_team_role",
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("role_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["authz_role.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["team_id"], ["team.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("team_id", "role_id"),
    )

    op.create_table(
        "integration",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("client_id", sa.Text(), nullable=True),
        sa.Column("client_secret", sa.Text(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "external_account",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_type", sa.String(length=32), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_locked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    _seed_roles()


def downgrade() -> None:
    op.drop_table("external_account")
    op.drop_table("integration")
    op.drop_table("authz_team_role")
    op.drop_table("authz_user_role")
    op.drop_table("authz_role_permission")
    op.drop_table("authz_permission")
    op.drop_table("authz_role")
    op.drop_table("contact_opportunity")
    op.drop_index("ix_opportunity_stage", table_name="opportunity")
    op.drop_index("ix_opportunity_account_id", table_name="opportunity")
    op.drop_table("opportunity")
    op.drop_index("ix_contact_email_address", table_name="contact")
    op.drop_index("ix_contact_account_id", table_name="contact")
    op.drop_table("contact")
    op.drop_index("ix_account_assigned_user_id", table_name="account")
    op.drop_index("ix_account_name", table_name="account")
    op.drop_table("account")
    op.drop_index("ix_action_history_record_target", table_name="action_history_record")
    op.drop_table("action_history_record")
    op.drop_table("attachment")
    op.drop_table("follow")
    op.drop_index("ix_entity_team_entity", table_name="entity_team")
    op.drop_table("entity_team")
    op.drop_table("user_team")
    op.drop_table("user")
    op.drop_table("team")


def _seed_roles() -> None:
    now = datetime.now(timezone.utc)

    role_ids = {
        "Sales": uuid.UUID("4f2c0099-adb3-453f-8ec7-2dc76396f2f6"),
        "ReadOnly": uuid.UUID("62f1006e-3605-4dc6-84cd-44f6f89ec3f6"),
    }

    # (resource, action, field, level, effect)
    rules: dict[str, tuple[str, str, str | None, str | None, str]] = {
        "crm.create.team": ("*", "create", None, "team", "allow"),
        "crm.read.team": ("*", "read", None, "team", "allow"),
        "crm.edit.team": ("*", "edit", None, "team", "allow"),
        "crm.delete.own": ("*", "delete", None, "own", "allow"),
        "crm.stream.team": ("*", "stream", None, "team", "allow"),
        "crm.read.all": ("*", "read", None, "all", "allow"),
        "permission.assignment.team": ("permission", "assignment", None, "team", "allow"),
        "permission.export.yes": ("permission", "export", None, "yes", "allow"),
        "permission.export.no": ("permission", "export", None, "no", "allow"),
        "contact.field.mask.phone": ("Contact", "field.mask", "phone_number", None, "allow"),
    }
    permission_ids = {key: uuid.uuid5(uuid.NAMESPACE_URL, f"crm-record-api/permission/{key}") for key in rules}

    role_table = sa.table(
        "authz_role",
        sa.column("id", sa.Uuid()),
        sa.column("name", sa.String()),
        sa.column("description", sa.Text()),
        sa.column("is_system", sa.Boolean()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    op.bulk_insert(
        role_table,
        [
            {"id": role_ids["Sales"], "name": "Sales", "description": "Team scoped CRM users", "is_system": True, "created_at": now},
            {"id": role_ids["ReadOnly"], "name": "ReadOnly", "description": "Read-only CRM users", "is_system": True, "created_at": now},
        ],
    )

    permission_table = sa.table(
        "authz_permission",
        sa.column("id", sa.Uuid()),
        sa.column("resource", sa.String()),
        sa.column("action", sa.String()),
        sa.column("field", sa.String()),
        sa.column("level", sa.String()),
        sa.column("effect", sa.String()),
        sa.column("description", sa.Text()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    op.bulk_insert(
        permission_table,
        [
            {
                "id": permission_ids[key],
                "resource": resource,
                "action": action,
                "field": field,
                "level": level,
                "effect": effect,
                "description": key,
                "created_at": now,
            }
            for key, (resource, action, field, level, effect) in rules.items()
        ],
    )

    role_rules = {
        "Sales": [
            "crm.create.team",
            "crm.read.team",
            "crm.edit.team",
            "crm.delete.own",
            "crm.stream.team",
            "permission.assignment.team",
            "permission.export.yes",
        ],
        "ReadOnly": ["crm.read.all", "permission.export.no", "contact.field.mask.phone"],
    }
    role_permission_table = sa.table(
        "authz_role_permission",
        sa.column("role_id", sa.Uuid()),
        sa.column("permission_id", sa.Uuid()),
        sa.column("created_at", sa.DateTime(timezone=True)),
    )
    op.bulk_insert(
        role_permission_table,
        [
            {"role_id": role_ids[role], "permission_id": permission_ids[key], "created_at": now}
            for role, keys in role_rules.items()
            for key in keys
        ],
    )
