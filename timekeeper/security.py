from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from timekeeper.db import get_db
from timekeeper.errors import ApiError, NotAuthorized
from timekeeper.models import User, UserRole
from timekeeper.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

PRIVILEGED_ROLES: frozenset[UserRole] = frozenset({UserRole.ADMIN, UserRole.HR, UserRole.MANAGER})


@dataclass(frozen=True)
class CallerContext:
    user_id: int
    role: UserRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(*, user_id: int, role: UserRole | str = UserRole.EMPLOYEE) -> str:
    """Issue a caller token the way the identity provider does. Used by tooling and tests."""
    settings = get_settings()
    now = _utcnow()
    claims = {
        "sub": str(user_id),
        "role": UserRole(role).value,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_minutes)).timestamp()),
        "jti": str(uuid4()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str) -> CallerContext:
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    try:
        role = UserRole(str(payload.get("role") or ""))
    except ValueError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token role is invalid.") from exc

    return CallerContext(user_id=int(subject), role=role)


def require_caller(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    caller = decode_token(credentials.credentials)
    request.state.actor = caller.role.value
    request.state.actor_id = str(caller.user_id)
    return caller


def get_caller_user(
    caller: CallerContext = Depends(require_caller),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the caller to its identity snapshot; inactive users cannot act."""
    user = db.get(User, caller.user_id)
    if user is None:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Unknown user.")
    if not user.is_active:
        raise NotAuthorized("User is inactive.")
    return user


def require_roles(*roles: UserRole) -> Callable[..., User]:
    """Dependency that resolves the caller and checks the role stored on the user record."""
    allowed = frozenset(roles)

    def _dependency(user: User = Depends(get_caller_user)) -> User:
        if user.role not in allowed:
            raise NotAuthorized()
        return user

    return _dependency
