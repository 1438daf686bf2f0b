from typing import Annotated, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from ems.config import MAX_PASSWORD_LENGTH, MIN_PASSWORD_LENGTH
from ems.models.enums import Role
import uuid

PasswordStr = Annotated[str, Field(min_length=MIN_PASSWORD_LENGTH, max_length=MAX_PASSWORD_LENGTH)]


def _strip_required(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

class TokenPayload(BaseModel):
    sub: Optional[str] = None
    exp: Optional[int] = None
    type: Optional[str] = None

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class SignupRequest(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=200)
    password: PasswordStr

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _strip_required(value)

class FirstAdminRequest(SignupRequest):
    bootstrap_token: Optional[str] = Field(default=None, alias="bootstrapToken")

    model_config = ConfigDict(populate_by_name=True)

class SetupStatus(BaseModel):
    is_empty: bool
    requires_token: bool

class UserResponse(BaseModel):
    id: uuid.UUID
    email: EmailStr
    name: str
    role: Role
    email_verified: bool
    banned: bool
    ban_reason: Optional[str] = None
    ban_expires: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

class PasswordChange(BaseModel):
    current_password: str
    new_password: PasswordStr
