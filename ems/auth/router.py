import hmac
import logging
from typing import Annotated
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text, update
from jose import JWTError

from ems.config import settings
from ems.database import get_db
from ems.auth import schemas, security, dependencies
from ems.auth.email_checks import screen_signup_email
from ems.core.exceptions import AccessDenied, Conflict, Unauthorized, ValidationFailed
from ems.core.rate_limit import edge_protection
from ems.models.user import User
from ems.models.auth import RefreshToken
from ems.models.enums import AuditAction, AuditResource, Role
from ems.services.audit_service import AuditService, AuditTrail, get_audit_trail
from ems.core.responses import StandardResponse

router = APIRouter()
logger = logging.getLogger(__name__)

# Advisory lock id shared by concurrent first-admin requests.
BOOTSTRAP_LOCK_KEY = 741_852_963


def _to_utc_datetime(value: int | float | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)


async def _persist_refresh_token(db: AsyncSession, user_id, refresh_token: str):
    payload = security.decode_token(refresh_token)
    jti = payload.get("jti")
    exp = payload.get("exp")
    if not jti or exp is None:
        raise Unauthorized("Invalid refresh token payload")

    token_record = RefreshToken(
        user_id=user_id,
        jti=str(jti),
        token_hash=security.hash_token(refresh_token),
        expires_at=_to_utc_datetime(exp),
    )
    db.add(token_record)


async def _issue_tokens(db: AsyncSession, user: User) -> schemas.Token:
    access_token = security.create_access_token(subject=user.id)
    refresh_token = security.create_refresh_token(subject=user.id)
    await _persist_refresh_token(db, user.id, refresh_token)
    return schemas.Token(access_token=access_token, refresh_token=refresh_token, token_type="bearer")


async def revoke_refresh_tokens(db: AsyncSession, user_id) -> None:
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=datetime.now(timezone.utc))
    )


async def _get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def _user_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count()).select_from(User))).scalar_one()


def _bootstrap_token_matches(provided: str, required: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), required.encode("utf-8"))


async def _lock_bootstrap(db: AsyncSession) -> None:
    """Serialize first-admin creation until the current transaction ends.

    SQLite already allows a single writer at a time.
    """
    if db.get_bind().dialect.name == "postgresql":
        await db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": BOOTSTRAP_LOCK_KEY})


@router.get("/setup-status", response_model=StandardResponse[schemas.SetupStatus])
async def setup_status(db: Annotated[AsyncSession, Depends(get_db)]):
    """Whether the system still needs its first administrator."""
    is_empty = await _user_count(db) == 0
    return StandardResponse(
        data=schemas.SetupStatus(
            is_empty=is_empty,
            requires_token=is_empty and bool(settings.FIRST_ADMIN_BOOTSTRAP_TOKEN),
        )
    )


@router.post(
    "/signup-first-admin",
    response_model=StandardResponse[schemas.UserResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[edge_protection("auth")],
)
async def signup_first_admin(
    data: schemas.FirstAdminRequest,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    """Create the first account as an admin. Only valid while no user exists."""
    await _lock_bootstrap(db)
    if await _user_count(db) > 0:
        raise Conflict("First admin already exists")

    required_token = settings.FIRST_ADMIN_BOOTSTRAP_TOKEN
    if required_token:
        if not data.bootstrap_token:
            raise ValidationFailed("Bootstrap token is required to create first admin")
        if not _bootstrap_token_matches(data.bootstrap_token, required_token):
            raise AccessDenied("Invalid bootstrap token")

    await screen_signup_email(data.email)

    user = User(
        email=data.email,
        name=data.name,
        hashed_password=security.get_password_hash(data.password),
        role=Role.ADMIN,
        email_verified=True,
    )
    db.add(user)
    await db.flush()
    # A concurrent bootstrap may have inserted first.
    if await _user_count(db) != 1:
        await db.rollback()
        raise Conflict("First admin already exists")
    await db.commit()
    await db.refresh(user)

    logger.info("First admin account created for %s", user.email)
    AuditService.log_action(
        trail,
        user_id=user.id,
        action=AuditAction.FIRST_ADMIN_CREATED,
        resource=AuditResource.USER,
        resource_id=user.id,
        details={"email": user.email, "name": user.name, "tokenUsed": bool(data.bootstrap_token)},
        request=request,
    )
    return StandardResponse(data=user, message="Admin account created successfully")


@router.post(
    "/signup",
    response_model=StandardResponse[schemas.UserResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[edge_protection("auth")],
)
async def signup(
    data: schemas.SignupRequest,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    """Self-registration. New accounts always get the ``user`` role."""
    if await _user_count(db) == 0:
        raise Conflict("No administrator exists yet. Use the first admin setup.")

    await screen_signup_email(data.email)

    if await _get_user_by_email(db, data.email):
        raise Conflict("The user with this email already exists in the system.")

    user = User(
        email=data.email,
        name=data.name,
        hashed_password=security.get_password_hash(data.password),
        role=Role.USER,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    AuditService.log_action(
        trail,
        user_id=user.id,
        action=AuditAction.USER_CREATE,
        resource=AuditResource.USER,
        resource_id=user.id,
        details={"email": user.email, "name": user.name, "role": user.role.value, "selfRegistered": True},
        request=request,
    )
    return StandardResponse(data=user, message="User registered successfully")


@router.post("/login", response_model=StandardResponse[schemas.Token], dependencies=[edge_protection("auth")])
async def login(
    login_data: schemas.LoginRequest,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    user = await _get_user_by_email(db, login_data.email)

    if not user or not security.verify_password(login_data.password, user.hashed_password):
        AuditService.log_action(
            trail,
            user_id=user.id if user else None,
            action=AuditAction.LOGIN_FAILED,
            resource=AuditResource.AUTH,
            details={"email": login_data.email},
            request=request,
        )
        raise Unauthorized("Incorrect email or password")

    if user.is_banned():
        raise AccessDenied("Account banned")

    token = await _issue_tokens(db, user)
    await db.commit()

    AuditService.log_action(
        trail,
        user_id=user.id,
        action=AuditAction.LOGIN,
        resource=AuditResource.AUTH,
        resource_id=user.id,
        request=request,
    )
    return StandardResponse(data=token, message="Login Successful")

@router.post("/refresh", response_model=StandardResponse[schemas.Token], dependencies=[edge_protection("auth")])
async def refresh_token(
    token: Annotated[str | None, Depends(dependencies.oauth2_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    credentials_exception = Unauthorized("Could not validate credentials")
    if not token:
        raise credentials_exception

    try:
        payload = security.decode_token(token)
        subject = payload.get("sub")
        token_type = payload.get("type")
        jti = payload.get("jti")
        if subject is None or token_type != "refresh" or jti is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    refresh_stmt = select(RefreshToken).where(
        RefreshToken.jti == str(jti),
        RefreshToken.revoked_at.is_(None)
    )
    token_record = (await db.execute(refresh_stmt)).scalar_one_or_none()

    if token_record is None or str(token_record.user_id) != str(subject):
        raise credentials_exception

    if token_record.token_hash != security.hash_token(token):
        raise credentials_exception

    now = datetime.now(timezone.utc)
    if _to_utc_datetime(token_record.expires_at) <= now:
        raise credentials_exception

    user = await db.get(User, token_record.user_id)
    if user is None:
        raise credentials_exception
    if user.is_banned():
        raise AccessDenied("Account banned")

    token_record.revoked_at = now
    new_token = await _issue_tokens(db, user)
    await db.commit()

    return StandardResponse(data=new_token, message="Token Refreshed")


@router.post("/logout", response_model=StandardResponse)
async def logout(
    request: Request,
    current_user: Annotated[User, Depends(dependencies.get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    """Revoke every refresh token of the caller."""
    await revoke_refresh_tokens(db, current_user.id)
    await db.commit()

    AuditService.log_action(
        trail,
        user_id=current_user.id,
        action=AuditAction.LOGOUT,
        resource=AuditResource.AUTH,
        resource_id=current_user.id,
        request=request,
    )
    return StandardResponse(message="Logged out")


@router.get("/me", response_model=StandardResponse[schemas.UserResponse])
async def read_users_me(
    current_user: Annotated[User, Depends(dependencies.get_current_active_user)],
):
    return StandardResponse(data=current_user)


@router.put("/me/password", response_model=StandardResponse)
async def change_password(
    password_data: schemas.PasswordChange,
    request: Request,
    current_user: Annotated[User, Depends(dependencies.get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    trail: Annotated[AuditTrail, Depends(get_audit_trail)],
):
    """Change current user password."""
    if not security.verify_password(password_data.current_password, current_user.hashed_password):
        raise ValidationFailed("Incorrect current password")

    current_user.hashed_password = security.get_password_hash(password_data.new_password)
    await revoke_refresh_tokens(db, current_user.id)
    await db.commit()

    AuditService.log_action(
        trail,
        user_id=current_user.id,
        action=AuditAction.USER_UPDATE,
        resource=AuditResource.USER,
        resource_id=current_user.id,
        details={"passwordChanged": True},
        request=request,
    )
    return StandardResponse(message="Password changed successfully")
