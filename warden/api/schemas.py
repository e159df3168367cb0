from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from warden.service.clock import ensure_utc
from warden.storage.models import ApiToken, Right, Role, SessionToken, User

MAX_TOKEN_LENGTH = 8192

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# auth
class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"


class RenewRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LogoutRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class ResetCredentialsRequest(BaseModel):
    email: str = Field(..., max_length=254)


class SetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailChangeRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_new_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., max_length=256)


class PasswordChangeRequest(BaseModel):
    password: str
    verification: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# users
class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    mobile: Optional[str] = None
    locale: str
    source: str
    roles: List[str]
    enabled: bool
    login_disabled: bool
    pending_email: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            phone=user.phone,
            mobile=user.mobile,
            locale=user.locale,
            source=user.source,
            roles=sorted(user.roles),
            enabled=user.enabled,
            login_disabled=user.login_disabled,
            pending_email=user.pending_email,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserCreateRequest(BaseModel):
    email: str
    first_name: str = Field(default="", max_length=128)
    last_name: str = Field(default="", max_length=128)
    phone: Optional[str] = Field(default=None, max_length=64)
    mobile: Optional[str] = Field(default=None, max_length=64)
    locale: Optional[str] = Field(default=None, max_length=16)
    roles: Optional[List[str]] = None
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class UserUpdateRequest(BaseModel):
    """Full replacement of the administrable user fields."""

    email: str
    first_name: str = Field(..., max_length=128)
    last_name: str = Field(..., max_length=128)
    phone: Optional[str] = Field(default=None, max_length=64)
    mobile: Optional[str] = Field(default=None, max_length=64)
    locale: str = Field(..., max_length=16)
    roles: List[str]
    enabled: bool = True
    login_disabled: bool = False
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: str) -> str:
        return _validate_email(value)


class SelfUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=128)
    last_name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=64)
    mobile: Optional[str] = Field(default=None, max_length=64)
    locale: Optional[str] = Field(default=None, max_length=16)


# sessions
class SessionTokenResponse(BaseModel):
    id: str
    type: str
    issued_at: datetime
    expiration: datetime
    user_agent: Optional[str] = None

    @classmethod
    def from_token(cls, token: SessionToken) -> "SessionTokenResponse":
        return cls(
            id=token.id,
            type=token.type.value,
            issued_at=token.issued_at,
            expiration=token.expiration,
            user_agent=token.user_agent,
        )


# roles and rights
class RoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: str = Field(default="", max_length=512)
    rights: List[str] = Field(default_factory=list)
    is_default_role: bool = False

    def to_role(self) -> Role:
        return Role(
            name=self.name,
            description=self.description,
            rights=set(self.rights),
            is_default_role=self.is_default_role,
        )


class RoleResponse(BaseModel):
    name: str
    description: str
    rights: List[str]
    is_protected: bool
    is_default_role: bool
    is_system_role: bool

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            name=role.name,
            description=role.description,
            rights=sorted(role.rights),
            is_protected=role.is_protected,
            is_default_role=role.is_default_role,
            is_system_role=role.is_system_role,
        )


class RightRequest(BaseModel):
    authority: str = Field(..., min_length=1, max_length=64)
    description: str = Field(default="", max_length=512)


class RightResponse(BaseModel):
    authority: str
    description: str

    @classmethod
    def from_right(cls, right: Right) -> "RightResponse":
        return cls(authority=right.authority, description=right.description)


# api tokens
class ApiTokenCreateRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=256)
    rights: List[str]
    valid_until: Optional[datetime] = None

    @field_validator("valid_until")
    @classmethod
    def _validate_valid_until(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class ApiTokenResponse(BaseModel):
    id: str
    description: str
    rights: List[str]
    valid_until: datetime
    status: str
    created_at: datetime
    token: Optional[str] = None

    @classmethod
    def from_api_token(cls, api_token: ApiToken, raw: Optional[str] = None) -> "ApiTokenResponse":
        return cls(
            id=api_token.id,
            description=api_token.description,
            rights=sorted(api_token.rights),
            valid_until=api_token.valid_until,
            status=api_token.status.value,
            created_at=api_token.created_at,
            token=raw,
        )
