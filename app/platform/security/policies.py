from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from app.authz.models import Permission, Role, RolePermission, TeamRole, UserRole
from app.core.database import SessionLocal
from app.metrics import observe_authz_db_queries_count, observe_authz_policy_cache_hit, observe_authz_policy_cache_miss
from app.platform.security.context import AuthContext
from app.platform.security.errors import InvalidAccessLevelError


class AccessLevel(StrEnum):
    ALL = "all"
    TEAM = "team"
    OWN = "own"
    NO = "no"
    YES = "yes"


class RecordAction(StrEnum):
    CREATE = "create"
    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    STREAM = "stream"


class FieldAction(StrEnum):
    READ = "field.read"
    MASK = "field.mask"
    EDIT = "field.edit"


class FieldDecision(StrEnum):
    ALLOW = "ALLOW"
    MASK = "MASK"
    DENY = "DENY"


PERMISSION_RESOURCE = "permission"

# Levels granted for a permission nobody has configured.
DEFAULT_PERMISSION_LEVELS: dict[str, AccessLevel] = {
    "assignment": AccessLevel.ALL,
    "user": AccessLevel.ALL,
    "follower_management": AccessLevel.ALL,
    "portal": AccessLevel.NO,
    "export": AccessLevel.YES,
}

_LEVEL_RANK = {
    AccessLevel.NO: 0,
    AccessLevel.OWN: 1,
    AccessLevel.TEAM: 2,
    AccessLevel.ALL: 3,
    AccessLevel.YES: 3,
}


def parse_level(value: str | AccessLevel) -> AccessLevel:
    try:
        return AccessLevel(str(value).lower())
    except ValueError:
        raise InvalidAccessLevelError(str(value), [level.value for level in AccessLevel]) from None


def level_rank(level: AccessLevel) -> int:
    return _LEVEL_RANK[level]


def highest_level(levels: Iterable[AccessLevel]) -> AccessLevel | None:
    result: AccessLevel | None = None
    for level in levels:
        if result is None or level_rank(level) > level_rank(result):
            result = level
    return result


@dataclass(slots=True, frozen=True)
class PolicyRule:
    resource: str
    action: str
    field: str | None
    level: AccessLevel | None
    effect: str


class PolicyBackend(Protocol):
    """Pluggable policy backend interface for ACL checks."""

    def resource_level(self, resource: str, action: RecordAction, ctx: AuthContext) -> AccessLevel:
        ...

    def permission_level(self, permission: str, ctx: AuthContext) -> AccessLevel:
        ...

    def evaluate_field_read(self, resource: str, field: str, ctx: AuthContext) -> FieldDecision:
        ...

    def can_edit_field(self, resource: str, field: str, ctx: AuthContext) -> bool:
        ...


class _RuleEvaluator:
    """Shared rule evaluation: a deny wins, otherwise the highest allowed level.

    A user without any rule gets the default; a rule set that does not mention
    a resource also falls back to the default, so ``default_allow=False`` is the
    strict mode.
    """

    def __init__(self, *, default_allow: bool) -> None:
        self._default_allow = default_allow

    def _rules(self, ctx: AuthContext) -> list[PolicyRule]:
        raise NotImplementedError

    def resource_level(self, resource: str, action: RecordAction, ctx: AuthContext) -> AccessLevel:
        decided = self._evaluate_level(self._rules(ctx), resource=resource, action=action.value)
        if decided is not None:
            return decided
        return AccessLevel.ALL if self._default_allow else AccessLevel.NO

    def permission_level(self, permission: str, ctx: AuthContext) -> AccessLevel:
        decided = self._evaluate_level(self._rules(ctx), resource=PERMISSION_RESOURCE, action=permission)
        if decided is not None:
            return decided
        if not self._default_allow:
            return AccessLevel.NO
        return DEFAULT_PERMISSION_LEVELS.get(permission, AccessLevel.NO)

    def evaluate_field_read(self, resource: str, field: str, ctx: AuthContext) -> FieldDecision:
        rules = self._rules(ctx)
        read_decision = self._evaluate_field_rules(rules, resource=resource, action=FieldAction.READ.value, field=field)
        if read_decision == "deny":
            return FieldDecision.DENY

        mask_decision = self._evaluate_field_rules(rules, resource=resource, action=FieldAction.MASK.value, field=field)
        if mask_decision == "allow":
            return FieldDecision.MASK
        return FieldDecision.ALLOW

    def can_edit_field(self, resource: str, field: str, ctx: AuthContext) -> bool:
        decision = self._evaluate_field_rules(self._rules(ctx), resource=resource, action=FieldAction.EDIT.value, field=field)
        return decision != "deny"

    @staticmethod
    def _resource_matches(rule_resource: str, resource: str) -> bool:
        return rule_resource in {"*", resource}

    def _evaluate_level(self, rules: list[PolicyRule], *, resource: str, action: str) -> AccessLevel | None:
        matched = [
            rule
            for rule in rules
            if self._resource_matches(rule.resource, resource)
            and (rule.action == action or (rule.action == "*" and not action.startswith("field.")))
        ]
        if not matched:
            return None
        if any(rule.effect == "deny" for rule in matched):
            return AccessLevel.NO
        return highest_level(rule.level or AccessLevel.ALL for rule in matched)

    def _evaluate_field_rules(self, rules: list[PolicyRule], *, resource: str, action: str, field: str) -> str | None:
        relevant = [rule for rule in rules if self._resource_matches(rule.resource, resource) and rule.action == action]
        if not relevant:
            return None

        explicit = [rule for rule in relevant if rule.field == field]
        wildcard = [rule for rule in relevant if rule.field == "*"]

        for candidates in (explicit, wildcard):
            if not candidates:
                continue
            if any(rule.effect == "deny" for rule in candidates):
                return "deny"
            if any(rule.effect == "allow" for rule in candidates):
                return "allow"
        return None


def parse_grant(grant: str) -> PolicyRule:
    """Parse a grant string.

    ``Account.read:team``, ``Account.*:all``, ``*``, ``permission.export:yes``,
    ``Account.field.mask:email``. A leading ``!`` turns the grant into a deny.
    """

    effect = "allow"
    body = grant.strip()
    if body.startswith("!"):
        effect = "deny"
        body = body[1:]

    if body == "*":
        return PolicyRule(resource="*", action="*", field=None, level=AccessLevel.ALL, effect=effect)

    resource, _, rest = body.partition(".")
    action, _, tail = rest.partition(":")
    if action.startswith("field."):
        return PolicyRule(resource=resource, action=action, field=tail or "*", level=None, effect=effect)

    level = parse_level(tail) if tail else AccessLevel.ALL
    return PolicyRule(resource=resource, action=action or "*", field=None, level=level, effect=effect)


class InMemoryPolicyBackend(_RuleEvaluator):
    """Role + direct-grant policy backend with wildcard support."""

    def __init__(self, role_permissions: dict[str, set[str]] | None = None, *, default_allow: bool = True) -> None:
        super().__init__(default_allow=default_allow)
        self._role_rules = {
            role: [parse_grant(grant) for grant in grants] for role, grants in (role_permissions or {}).items()
        }

    def _rules(self, ctx: AuthContext) -> list[PolicyRule]:
        rules = [parse_grant(grant) for grant in ctx.permissions]
        for role in ctx.roles:
            rules.extend(self._role_rules.get(role, []))
        return rules


class DbPolicyBackend(_RuleEvaluator):
    """Policy backend that resolves role rules from the database."""

    CACHE_KEY = "authz.db_policy"

    def __init__(self, session_factory: sessionmaker[Session] | None = None, *, default_allow: bool = True) -> None:
        super().__init__(default_allow=default_allow)
        self._session_factory = session_factory or SessionLocal

    def _rules(self, ctx: AuthContext) -> list[PolicyRule]:
        return self._load_grants(ctx)["rules"]

    def _load_grants(self, ctx: AuthContext) -> dict[str, Any]:
        cache = ctx._cache.get(self.CACHE_KEY)
        if isinstance(cache, dict):
            observe_authz_policy_cache_hit()
            return cache

        observe_authz_policy_cache_miss()
        with self._session_factory() as session:
            rows = session.execute(
                select(
                    Role.id,
                    Role.name,
                    Permission.resource,
                    Permission.action,
                    Permission.field,
                    Permission.level,
                    Permission.effect,
                )
                .select_from(Role)
                .join(RolePermission, RolePermission.role_id == Role.id)
                .join(Permission, Permission.id == RolePermission.permission_id)
                .where(
                    or_(
                        Role.id.in_(select(UserRole.role_id).where(UserRole.user_id == ctx.user_id)),
                        Role.id.in_(select(TeamRole.role_id).where(TeamRole.team_id.in_(ctx.team_ids))),
                    )
                )
            ).all()
            observe_authz_db_queries_count(1)

        rules = [
            PolicyRule(
                resource=str(row.resource),
                action=str(row.action),
                field=str(row.field) if row.field is not None else None,
                level=parse_level(row.level) if row.level else None,
                effect=str(row.effect).lower(),
            )
            for row in rows
        ]
        rules.extend(parse_grant(grant) for grant in ctx.permissions)

        role_names = sorted({str(row.name) for row in rows})
        if role_names and not ctx.roles:
            ctx.roles = role_names
        ctx._cache["authz.role_names"] = role_names
        ctx._cache["authz.role_ids"] = sorted({str(row.id) for row in rows})

        payload: dict[str, Any] = {"rules": rules, "role_names": role_names}
        ctx._cache[self.CACHE_KEY] = payload
        return payload


_POLICY_BACKEND: PolicyBackend = InMemoryPolicyBackend(default_allow=True)
_POLICY_LOCK = Lock()


def get_policy_backend() -> PolicyBackend:
    """Get the active policy backend instance."""

    return _POLICY_BACKEND


def set_policy_backend(backend: PolicyBackend) -> None:
    """Set the active policy backend instance."""

    global _POLICY_BACKEND
    with _POLICY_LOCK:
        _POLICY_BACKEND = backend
