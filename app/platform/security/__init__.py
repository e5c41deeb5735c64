from app.platform.security.acl import Acl
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, InvalidAccessLevelError
from app.platform.security.fls import MASKED_FIELD_VALUE, FieldVisibility, apply_fls_to_entity
from app.platform.security.repository import BaseRepository
from app.platform.security.policies import (
    AccessLevel,
    DbPolicyBackend,
    FieldDecision,
    InMemoryPolicyBackend,
    PolicyBackend,
    RecordAction,
    set_policy_backend,
    get_policy_backend,
)

__all__ = [
    "Acl",
    "AccessLevel",
    "AuthContext",
    "AuthorizationError",
    "InvalidAccessLevelError",
    "MASKED_FIELD_VALUE",
    "BaseRepository",
    "FieldVisibility",
    "apply_fls_to_entity",
    "FieldDecision",
    "PolicyBackend",
    "DbPolicyBackend",
    "InMemoryPolicyBackend",
    "RecordAction",
    "set_policy_backend",
    "get_policy_backend",
]
