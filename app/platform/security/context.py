from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


USER_TYPE_ADMIN = "admin"
USER_TYPE_REGULAR = "regular"
USER_TYPE_PORTAL = "portal"
USER_TYPE_API = "api"
USER_TYPE_SYSTEM = "system"


@dataclass(slots=True)
class AuthContext:
    """Authorization context of the acting user, built once per request."""

    user_id: str
    user_name: str | None = None
    user_type: str = USER_TYPE_REGULAR
    team_ids: list[str] = field(default_factory=list)
    default_team_id: str | None = None
    default_team_name: str | None = None
    ip_address: str | None = None
    auth_token_id: str | None = None
    correlation_id: str | None = None
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)
    _cache: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_admin(self) -> bool:
        return self.user_type in {USER_TYPE_ADMIN, USER_TYPE_SYSTEM}

    @property
    def is_portal(self) -> bool:
        return self.user_type == USER_TYPE_PORTAL

    @property
    def is_api(self) -> bool:
        return self.user_type == USER_TYPE_API
