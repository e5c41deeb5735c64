from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.authz.models import Permission, Role, RolePermission, UserRole
from app.core.database import Base
from app.platform.security.context import AuthContext
from app.platform.security.errors import InvalidAccessLevelError
from app.platform.security.policies import (
    AccessLevel,
    DbPolicyBackend,
    FieldDecision,
    InMemoryPolicyBackend,
    RecordAction,
    parse_grant,
)


def test_parse_grant_forms() -> None:
    rule = parse_grant("Account.read:team")
    assert (rule.resource, rule.action, rule.field, rule.level, rule.effect) == (
        "Account",
        "read",
        None,
        AccessLevel.TEAM,
        "allow",
    )

    wildcard = parse_grant("*")
    assert (wildcard.resource, wildcard.action, wildcard.level) == ("*", "*", AccessLevel.ALL)

    field_rule = parse_grant("!Contact.field.read:phone_number")
    assert (field_rule.action, field_rule.field, field_rule.effect) == ("field.read", "phone_number", "deny")

    assert parse_grant("Account.delete").level == AccessLevel.ALL
    assert parse_grant("Contact.field.mask").field == "*"


def test_parse_grant_rejects_unknown_level() -> None:
    with pytest.raises(InvalidAccessLevelError) as exc_info:
        parse_grant("Account.read:everyone")
    assert exc_info.value.value == "everyone"
    assert "team" in exc_info.value.allowed


def test_highest_level_wins_across_grants_and_roles() -> None:
    backend = InMemoryPolicyBackend({"Sales": {"Account.read:team"}}, default_allow=False)
    ctx = AuthContext(user_id="u1", roles=["Sales"], permissions=["Account.read:own"])

    assert backend.resource_level("Account", RecordAction.READ, ctx) == AccessLevel.TEAM
    assert backend.resource_level("Contact", RecordAction.READ, ctx) == AccessLevel.NO


def test_deny_wins_over_wildcard_allow() -> None:
    backend = InMemoryPolicyBackend(default_allow=True)
    ctx = AuthContext(user_id="u1", permissions=["Account.*:all", "!Account.delete"])

    assert backend.resource_level("Account", RecordAction.READ, ctx) == AccessLevel.ALL
    assert backend.resource_level("Account", RecordAction.DELETE, ctx) == AccessLevel.NO


def test_default_applies_when_no_rule_matches() -> None:
    ctx = AuthContext(user_id="u1")

    assert InMemoryPolicyBackend(default_allow=True).resource_level("Account", RecordAction.EDIT, ctx) == AccessLevel.ALL
    assert InMemoryPolicyBackend(default_allow=False).resource_level("Account", RecordAction.EDIT, ctx) == AccessLevel.NO


def test_permission_defaults() -> None:
    backend = InMemoryPolicyBackend(default_allow=True)
    ctx = AuthContext(user_id="u1")

    assert backend.permission_level("assignment", ctx) == AccessLevel.ALL
    assert backend.permission_level("follower_management", ctx) == AccessLevel.ALL
    assert backend.permission_level("portal", ctx) == AccessLevel.NO
    assert backend.permission_level("export", ctx) == AccessLevel.YES

    assert InMemoryPolicyBackend(default_allow=False).permission_level("export", ctx) == AccessLevel.NO


def test_permission_grant_overrides_default() -> None:
    backend = InMemoryPolicyBackend(default_allow=True)
    ctx = AuthContext(user_id="u1", permissions=["permission.export:no", "permission.assignment:team"])

    assert backend.permission_level("export", ctx) == AccessLevel.NO
    assert backend.permission_level("assignment", ctx) == AccessLevel.TEAM


def test_field_decisions() -> None:
    backend = InMemoryPolicyBackend(default_allow=True)
    ctx = AuthContext(
        user_id="u1",
        permissions=[
            "Contact.field.mask:email_address",
            "!Contact.field.read:phone_number",
            "!Contact.field.edit:title",
        ],
    )

    assert backend.evaluate_field_read("Contact", "email_address", ctx) == FieldDecision.MASK
    assert backend.evaluate_field_read("Contact", "phone_number", ctx) == FieldDecision.DENY
    assert backend.evaluate_field_read("Contact", "title", ctx) == FieldDecision.ALLOW
    assert backend.can_edit_field("Contact", "title", ctx) is False
    assert backend.can_edit_field("Contact", "last_name", ctx) is True


def test_explicit_field_rule_beats_wildcard() -> None:
    backend = InMemoryPolicyBackend(default_allow=True)
    ctx = AuthContext(user_id="u1", permissions=["!Account.field.read:*", "Account.field.read:name"])

    assert backend.evaluate_field_read("Account", "name", ctx) == FieldDecision.ALLOW
    assert backend.evaluate_field_read("Account", "website", ctx) == FieldDecision.DENY


def _seed_role(
    session: Session,
    *,
    user_id: str,
    role_name: str,
    rules: list[tuple[str, str, str | None, str | None, str]],
) -> None:
    role = Role(name=role_name, is_system=False)
    session.add(role)
    session.flush()

    for resource, action, field, level, effect in rules:
        permission = Permission(resource=resource, action=action, field=field, level=level, effect=effect)
        session.add(permission)
        session.flush()
        session.add(RolePermission(role_id=role.id, permission_id=permission.id))

    session.add(UserRole(user_id=user_id, role_id=role.id))
    session.commit()


def test_db_policy_levels_and_field_rules() -> None:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as session:
        _seed_role(
            session,
            user_id="user-a",
            role_name="Sales",
            rules=[
                ("Account", "read", None, "team", "allow"),
                ("Account", "delete", None, None, "deny"),
                ("permission", "export", None, "no", "allow"),
                ("Contact", "field.mask", "email_address", None, "allow"),
            ],
        )

    backend = DbPolicyBackend(session_factory=SessionLocal, default_allow=True)
    ctx = AuthContext(user_id="user-a")

    assert backend.resource_level("Account", RecordAction.READ, ctx) == AccessLevel.TEAM
    assert backend.resource_level("Account", RecordAction.DELETE, ctx) == AccessLevel.NO
    assert backend.resource_level("Opportunity", RecordAction.READ, ctx) == AccessLevel.ALL
    assert backend.permission_level("export", ctx) == AccessLevel.NO
    assert backend.evaluate_field_read("Contact", "email_address", ctx) == FieldDecision.MASK
    assert ctx.roles == ["Sales"]

    Base.metadata.drop_all(bind=engine)


def test_db_policy_caches_rules_on_context() -> None:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as session:
        _seed_role(session, user_id="user-b", role_name="ReadOnly", rules=[("*", "read", None, "all", "allow")])

    backend = DbPolicyBackend(session_factory=SessionLocal, default_allow=False)
    ctx = AuthContext(user_id="user-b")

    assert backend.resource_level("Account", RecordAction.READ, ctx) == AccessLevel.ALL
    assert DbPolicyBackend.CACHE_KEY in ctx._cache

    with SessionLocal() as session:
        session.query(UserRole).delete()
        session.commit()

    assert backend.resource_level("Contact", RecordAction.READ, ctx) == AccessLevel.ALL
    assert backend.resource_level("Contact", RecordAction.EDIT, ctx) == AccessLevel.NO
    assert backend.resource_level("Contact", RecordAction.READ, AuthContext(user_id="user-b")) == AccessLevel.NO

    Base.metadata.drop_all(bind=engine)
