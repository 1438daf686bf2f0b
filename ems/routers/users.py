from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete, select
from pydantic import BaseModel, EmailStr, Field, field_validator
import uuid

from ems.auth import dependencies, security
from ems.auth.router import revoke_refresh_tokens
from ems.auth.schemas import PasswordStr, UserResponse
from ems.core.exceptions import Conflict, NotFound, ValidationFailed
from ems.core.permissions import Action, Resource
from ems.core.rate_limit import edge_protection
from ems.database import get_db
from ems.models.auth import RefreshToken
from ems.models.enums import AuditAction, AuditResource, Role
from ems.models.user import User
from ems.services.audit_service import AuditService, AuditTrail, get_audit_trail
from ems.core.responses import StandardResponse

router = APIRouter(dependencies=[edge_protection("default")])

# Ten years.
MAX_BAN_SECONDS = 10 * 365 * 24 * 60 * 60


class UserCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=200)
    password: PasswordStr
    role: Role = Role.USER

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    email: EmailStr | None = None
    email_verified: bool | None = None

class RoleUpdate(BaseModel):
    role: Role

class BanRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    expires_in_seconds: Optional[int] = Field(default=None, gt=0, le=MAX_BAN_SECONDS)

class PasswordReset(BaseModel):
    new_password: PasswordStr


async def _get_user_or_404(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


async def _email_taken(db: AsyncSession, email: str, *, exclude_id: uuid.UUID | None = None) -> bool:
    stmt = select(User.id).where(User.email == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


@router.get("", response_model=StandardResponse[list[UserResponse]])
async def list_users(
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.VIEW))],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """All users, oldest first."""
    result = await db.execute(select(User).order_by(User.created_at.asc(), User.id.asc()))
    return StandardResponse(data=[UserResponse.model_validate(user) for user in result.scalars().all()])


@router.post("", response_model=StandardResponse[UserResponse], status_code=status.HTTP_201_CREATED)
async def create_user(
    data: UserCreate,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.CREATE))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    """Admin-created accounts are marked as verified."""
    if await _email_taken(db, data.email):
        raise Conflict("User already exists")

    user = User(
        email=data.email,
        name=data.name,
        hashed_password=security.get_password_hash(data.password),
        role=data.role,
        email_verified=True,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    AuditService.log_action(
        trail,
        user_id=current_user.id,
        action=AuditAction.USER_CREATE,
        resource=AuditResource.USER,
        resource_id=user.id,
        details={"email": user.email, "name": user.name, "role": user.role.value},
        request=request,
    )
    return StandardResponse(data=user, message="User created successfully")


@router.get("/{user_id}", response_model=StandardResponse[UserResponse])
async def get_user(
    user_id: uuid.UUID,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.VIEW))],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    return StandardResponse(data=await _get_user_or_404(db, user_id))


@router.patch("/{user_id}", response_model=StandardResponse[UserResponse])
async def update_user(
    user_id: uuid.UUID,
    data: UserUpdate,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.EDIT))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    """Admin updates user details."""
    user = await _get_user_or_404(db, user_id)

    update_data = data.model_dump(exclude_unset=True, exclude_none=True)
    if "email" in update_data and await _email_taken(db, update_data["email"], exclude_id=user.id):
        raise Conflict("Email already exists")

    changes = {}
    for key, value in update_data.items():
        if getattr(user, key) != value:
            changes[key] = {"from": getattr(user, key), "to": value}
            setattr(user, key, value)

    if changes:
        await db.commit()
        await db.refresh(user)
        AuditService.log_action(
            trail,
            user_id=current_user.id,
            action=AuditAction.USER_UPDATE,
            resource=AuditResource.USER,
            resource_id=user.id,
            details={"changes": changes},
            request=request,
        )
    return StandardResponse(data=user, message="User updated successfully")


@router.put("/{user_id}/role", response_model=StandardResponse[UserResponse])
async def change_user_role(
    user_id: uuid.UUID,
    data: RoleUpdate,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.CHANGE_ROLE))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    if user_id == current_user.id:
        raise ValidationFailed("Cannot change your own role")

    user = await _get_user_or_404(db, user_id)
    old_role = Role(user.role)
    if old_role == data.role:
        return StandardResponse(data=user, message="Role unchanged")

    user.role = data.role
    await db.commit()
    await db.refresh(user)

    AuditService.log_user_role_change(trail, current_user.id, user.id, old_role.value, data.role.value, request)
    return StandardResponse(data=user, message="Role updated successfully")


@router.post("/{user_id}/ban", response_model=StandardResponse[UserResponse])
async def ban_user(
    user_id: uuid.UUID,
    data: BanRequest,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.BAN))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    if user_id == current_user.id:
        raise ValidationFailed("Cannot ban your own account")

    user = await _get_user_or_404(db, user_id)
    user.banned = True
    user.ban_reason = data.reason
    user.ban_expires = (
        datetime.now(timezone.utc) + timedelta(seconds=data.expires_in_seconds)
        if data.expires_in_seconds
        else None
    )
    await revoke_refresh_tokens(db, user.id)
    await db.commit()
    await db.refresh(user)

    AuditService.log_user_ban(trail, current_user.id, user.id, True, data.reason, request)
    return StandardResponse(data=user, message="User banned")


@router.post("/{user_id}/unban", response_model=StandardResponse[UserResponse])
async def unban_user(
    user_id: uuid.UUID,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.BAN))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    user = await _get_user_or_404(db, user_id)
    user.banned = False
    user.ban_reason = None
    user.ban_expires = None
    await db.commit()
    await db.refresh(user)

    AuditService.log_user_ban(trail, current_user.id, user.id, False, None, request)
    return StandardResponse(data=user, message="User unbanned")


@router.post("/{user_id}/reset-password", response_model=StandardResponse)
async def reset_user_password(
    user_id: uuid.UUID,
    data: PasswordReset,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.RESET_PASSWORD))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    user = await _get_user_or_404(db, user_id)
    user.hashed_password = security.get_password_hash(data.new_password)
    await revoke_refresh_tokens(db, user.id)
    await db.commit()

    AuditService.log_action(
        trail,
        user_id=current_user.id,
        action=AuditAction.USER_UPDATE,
        resource=AuditResource.USER,
        resource_id=user.id,
        details={"passwordReset": True},
        request=request,
    )
    return StandardResponse(message="Password reset successfully")


@router.delete("/{user_id}", response_model=StandardResponse)
async def delete_user(
    user_id: uuid.UUID,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.require_permission(Resource.USER, Action.DELETE))],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    """Hard delete. Refresh tokens go with the user; employee authorship is nulled."""
    if user_id == current_user.id:
        raise ValidationFailed("Cannot delete your own account")

    user = await _get_user_or_404(db, user_id)
    snapshot = {"email": user.email, "name": user.name, "role": Role(user.role).value}

    await db.execute(delete(RefreshToken).where(RefreshToken.user_id == user.id))
    await db.delete(user)
    await db.commit()

    AuditService.log_action(
        trail,
        user_id=current_user.id,
        action=AuditAction.USER_DELETE,
        resource=AuditResource.USER,
        resource_id=user_id,
        details=snapshot,
        request=request,
    )
    return StandardResponse(message="User deleted successfully")
