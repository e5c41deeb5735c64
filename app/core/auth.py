from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.records.models import Team, User, UserTeam


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    permissions: list[str]
    token_id: str | None = None


def decode_token(request: Request) -> AuthUser | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return None

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    roles = payload.get("roles", [])
    permissions = payload.get("permissions", [])
    return AuthUser(
        sub=str(subject),
        roles=[str(role) for role in roles] if isinstance(roles, list) else [],
        permissions=[str(item) for item in permissions] if isinstance(permissions, list) else [],
        token_id=str(payload["jti"]) if payload.get("jti") else None,
    )


def build_auth_context(
    session: Session,
    user: User,
    *,
    roles: list[str] | None = None,
    permissions: list[str] | None = None,
    ip_address: str | None = None,
    auth_token_id: str | None = None,
) -> AuthContext:
    team_ids = [str(team_id) for team_id in session.scalars(select(UserTeam.team_id).where(UserTeam.user_id == user.id))]
    default_team_name = None
    if user.default_team_id:
        default_team_name = session.scalar(select(Team.name).where(Team.id == user.default_team_id))
    return AuthContext(
        user_id=user.id,
        user_name=user.user_name,
        user_type=user.type,
        team_ids=team_ids,
        default_team_id=user.default_team_id,
        default_team_name=default_team_name,
        ip_address=ip_address,
        auth_token_id=auth_token_id,
        correlation_id=get_correlation_id(),
        roles=list(roles or []),
        permissions=list(permissions or []),
    )


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    auth_user = decode_token(request)
    if auth_user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = db.scalar(select(User).where(User.id == auth_user.sub, User.deleted_at.is_(None)))
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    request.state.auth_user = auth_user
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.id
    return user


def get_auth_context(request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> AuthContext:
    auth_user: AuthUser = request.state.auth_user
    context = getattr(request.state, "context", None)
    return build_auth_context(
        db,
        user,
        roles=auth_user.roles,
        permissions=auth_user.permissions,
        ip_address=getattr(context, "ip_address", None),
        auth_token_id=auth_user.token_id,
    )
