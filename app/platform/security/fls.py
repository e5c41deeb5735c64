from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app import audit
from app.metrics import observe_fls_field_counts
from app.platform.security.context import AuthContext
from app.platform.security.policies import FieldDecision, get_policy_backend

if TYPE_CHECKING:
    from app.records.entity import RecordEntity
    from app.records.metadata import FieldUtil


MASKED_FIELD_VALUE = "***"


@dataclass
class FieldVisibility:
    """Attributes hidden or masked on one record for one user."""

    masked: list[str] = field(default_factory=list)
    denied: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.masked or self.denied)


def apply_fls_to_entity(entity: RecordEntity, ctx: AuthContext, field_util: FieldUtil) -> FieldVisibility:
    """Hide denied fields and mask masked ones on an entity about to be returned.

    Rules name fields, so all attributes of a field (``account_id`` and
    ``account_name`` of ``account``) share its decision. Attributes that belong
    to no field are checked by their own name. Stored values are not touched.
    """

    visibility = FieldVisibility()
    if ctx.is_admin:
        return visibility

    policy = get_policy_backend()
    decisions: dict[str, FieldDecision] = {}
    for attribute, value in entity.get_value_map().items():
        field_name = field_util.get_attribute_field(entity.entity_type, attribute) or attribute
        if field_name not in decisions:
            decisions[field_name] = policy.evaluate_field_read(entity.entity_type, field_name, ctx)

        decision = decisions[field_name]
        if decision == FieldDecision.DENY:
            entity.clear(attribute)
            visibility.denied.append(attribute)
        elif decision == FieldDecision.MASK and value != MASKED_FIELD_VALUE:
            entity.set_output_value(attribute, MASKED_FIELD_VALUE)
            visibility.masked.append(attribute)

    if visibility:
        _report(entity, ctx, visibility)
    return visibility


def _report(entity: RecordEntity, ctx: AuthContext, visibility: FieldVisibility) -> None:
    observe_fls_field_counts(
        resource=entity.entity_type,
        operation="read",
        masked_count=len(visibility.masked),
        denied_count=len(visibility.denied),
    )
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.fls",
        entity_id=entity.id or "new",
        action="fls.read",
        before=None,
        after={
            "resource": entity.entity_type,
            "role_names": ctx._cache.get("authz.role_names", ctx.roles),
            "masked_fields": visibility.masked,
            "denied_fields": visibility.denied,
        },
        correlation_id=ctx.correlation_id,
    )
