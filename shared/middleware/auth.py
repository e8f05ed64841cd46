"""
shared/middleware/auth.py
Authentication and role dependencies.

Access tokens are checked against the Redis deny-list on every request, and the
user row is reloaded so a suspension takes effect before the token expires.
"""

from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)

ROLE_LABELS = {
    UserRole.TEACHER: "teacher",
    UserRole.STUDENT: "student",
    UserRole.GUARDIAN: "guardian",
    UserRole.SUPER_ADMIN: "administrator",
}


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


class TokenData:
    """Claims of a verified access token."""

    def __init__(self, payload: dict):
        self.user_id = UUID(payload["sub"])
        self.role = UserRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: Optional[str] = payload.get("jti")


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    if not credentials:
        raise _unauthorized("Authentication required")

    try:
        token = TokenData(verify_access_token(credentials.credentials))
    except (JWTError, KeyError, ValueError):
        raise _unauthorized("Invalid or expired token")

    if token.jti and await RedisCache(redis).is_token_revoked(token.jti):
        raise _unauthorized("Token has been revoked")
    return token


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """The live, non-deleted account behind the token. Suspended accounts get 403."""
    user = (await db.execute(
        select(User).where(User.id == token_data.user_id, User.deleted_at.is_(None))
    )).scalar_one_or_none()

    if not user:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


class RoleRequired:
    """Dependency that admits only the given roles."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(self, current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in self.roles:
            allowed = " or ".join(ROLE_LABELS[r] for r in self.roles)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action requires a {allowed} account",
            )
        return current_user


require_teacher = RoleRequired(UserRole.TEACHER)
require_student = RoleRequired(UserRole.STUDENT)
require_guardian = RoleRequired(UserRole.GUARDIAN)
# Students book for themselves, guardians for a linked child
require_booker = RoleRequired(UserRole.STUDENT, UserRole.GUARDIAN)
require_admin = RoleRequired(UserRole.SUPER_ADMIN)
