"""
Authentication models and utilities.
Psychology: Separation of concerns - request shapes and password hashing isolated from routing.
Intention: Validate credentials at the edge so handlers only see well-formed input.
"""

import hashlib
import os
import re
from datetime import datetime
from enum import Enum
from typing import Optional

from passlib.context import CryptContext
from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

# Password hashing context
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__ident="2b",
    bcrypt__rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
)

MIN_PASSWORD_LENGTH = int(os.getenv("MIN_PASSWORD_LENGTH", "8"))
SPECIAL_CHARS_RE = re.compile(r"[^A-Za-z0-9]")


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class PlanId(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


PLAN_HIERARCHY = {
    PlanId.BASIC.value: 1,
    PlanId.PRO.value: 2,
    PlanId.ENTERPRISE.value: 3,
}


def canonical_plan(plan_id: Optional[str]) -> str:
    """Map legacy and unknown plan names onto basic/pro/enterprise"""
    if not plan_id:
        return PlanId.BASIC.value
    normalized = plan_id.strip().lower()
    if normalized == "free":
        return PlanId.BASIC.value
    if normalized in PLAN_HIERARCHY:
        return normalized
    return PlanId.BASIC.value


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r'^[a-zA-Z0-9_.-]+$')
    email: EmailStr
    password: str = Field(..., max_length=128)

    @field_validator('email', mode='before')
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if not isinstance(v, str) or '@' not in v:
            raise ValueError('Invalid email format')
        return v.lower().strip()

    @field_validator('password', mode='after')
    @classmethod
    def validate_password_strength(cls, v: str) -> str:
        errors = []
        if len(v) < MIN_PASSWORD_LENGTH:
            errors.append(f'Password must be at least {MIN_PASSWORD_LENGTH} characters long')
        if not any(c.isupper() for c in v):
            errors.append('Password must contain at least one uppercase letter')
        if not any(c.islower() for c in v):
            errors.append('Password must contain at least one lowercase letter')
        if not any(c.isdigit() for c in v):
            errors.append('Password must contain at least one digit')
        if not SPECIAL_CHARS_RE.search(v):
            errors.append('Password must contain at least one special character')

        if errors:
            raise ValueError('; '.join(errors))
        return v


class LoginRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.username or self.email):
            raise ValueError('Username or email is required')
        return self

    @property
    def identifier(self) -> str:
        return (self.username or self.email or "").strip()


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class LogoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(None, alias="refreshToken")


class GoogleLoginRequest(BaseModel):
    google_token: str = Field(..., min_length=1)
    email: EmailStr
    google_id: str = Field(..., min_length=1)
    name: Optional[str] = None
    picture: Optional[str] = None


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    plan_id: str
    email_verified: bool = False
    login_method: str = "email"
    created_at: Optional[datetime] = None


class TokenPair(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    username: str
    email: str
    x_auth_user_id: str = Field(..., serialization_alias="XAuthUserId")
    access_token: str = Field(..., serialization_alias="accessToken")
    refresh_token: str = Field(..., serialization_alias="refreshToken")
    token_type: str = Field("bearer", serialization_alias="tokenType")


class AccessTokenResponse(BaseModel):
    success: bool = True
    username: str
    access_token: str = Field(..., serialization_alias="accessToken")


# Utility functions
def _password_bytes(password: str) -> bytes:
    password_bytes = password.encode('utf-8')
    if len(password_bytes) > 72:
        # Hex keeps NUL bytes out of bcrypt input
        password_bytes = hashlib.sha256(password_bytes).hexdigest().encode("ascii")
    return password_bytes


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        pwd_context.dummy_verify()
        return False
    try:
        return pwd_context.verify(_password_bytes(plain_password), hashed_password)
    except (ValueError, TypeError):
        pwd_context.dummy_verify()
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(_password_bytes(password))
