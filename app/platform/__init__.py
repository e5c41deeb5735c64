from app.platform.security import (
    AccessLevel,
    Acl,
    AuthContext,
    AuthorizationError,
    RecordAction,
    get_policy_backend,
    set_policy_backend,
)

__all__ = [
    "AccessLevel",
    "Acl",
    "AuthContext",
    "AuthorizationError",
    "RecordAction",
    "get_policy_backend",
    "set_policy_backend",
]
