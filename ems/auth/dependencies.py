import uuid
from typing import Annotated, Iterable
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from ems.config import settings
from ems.database import get_db
from ems.models.user import User
from ems.auth.schemas import TokenPayload
from ems.auth.security import decode_token
from ems.core.exceptions import AccessDenied, Unauthorized
from ems.core.permissions import Action, Resource, access_denied_message, allowed_roles
from ems.models.enums import Role

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/login", auto_error=False)


def _coerce_role(value: Role | str) -> Role:
    return value if isinstance(value, Role) else Role(value)

async def get_current_user(
    token: Annotated[str | None, Depends(oauth2_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> User:
    credentials_exception = Unauthorized("Could not validate credentials")
    if not token:
        raise Unauthorized("Not authenticated")
    try:
        payload = decode_token(token)
        token_data = TokenPayload(sub=payload.get("sub"), type=payload.get("type"))
        if token_data.sub is None or token_data.type != "access":
            raise credentials_exception
        user_id = uuid.UUID(token_data.sub)
    except (JWTError, ValueError):
        raise credentials_exception

    user = await db.get(User, user_id)
    if user is None:
        raise credentials_exception
    user.role = _coerce_role(user.role)
    return user

async def get_current_active_user(
    current_user: Annotated[User, Depends(get_current_user)]
) -> User:
    if current_user.is_banned():
        raise AccessDenied("Account banned")
    return current_user

class RoleChecker:
    def __init__(self, allowed_roles: Iterable[Role]):
        self.allowed_roles = frozenset(allowed_roles)

    def __call__(self, user: Annotated[User, Depends(get_current_active_user)]) -> User:
        user.role = _coerce_role(user.role)
        if user.role not in self.allowed_roles:
            raise AccessDenied(access_denied_message(self.allowed_roles))
        return user


def require_role(allowed: Iterable[Role]) -> RoleChecker:
    return RoleChecker(allowed)


def require_permission(resource: Resource, action: Action) -> RoleChecker:
    """Dependency gating a route on the policy table entry for ``(resource, action)``."""
    return require_role(allowed_roles(resource, action))
