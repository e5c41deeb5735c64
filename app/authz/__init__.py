from app.authz.models import Permission, Role, RolePermission, TeamRole, UserRole

__all__ = [
    "Role",
    "Permission",
    "RolePermission",
    "UserRole",
    "TeamRole",
]
