from __future__ import annotations


class AuthorizationError(Exception):
    """Base error of the ACL layer."""


class InvalidAccessLevelError(AuthorizationError):
    """Raised when a grant or rule names a level that does not exist."""

    def __init__(self, value: str, allowed: list[str]) -> None:
        self.value = value
        self.allowed = allowed
        super().__init__(f"Unknown access level '{value}', expected one of: {', '.join(allowed)}")

