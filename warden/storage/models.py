from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set


SOURCE_LOCAL = "local"
SOURCE_LDAP = "ldap"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_nonce() -> str:
    return uuid.uuid4().hex[:8]


class SessionTokenType(str, Enum):
    REFRESH = "REFRESH"
    ACCESS = "ACCESS"
    API = "API"


class ApiTokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


@dataclass
class Right:
    authority: str
    description: str = ""


@dataclass
class Role:
    name: str
    description: str = ""
    rights: Set[str] = field(default_factory=set)
    is_protected: bool = False
    is_default_role: bool = False
    is_system_role: bool = False

    def copy(self) -> "Role":
        return replace(self, rights=set(self.rights))


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    mobile: Optional[str] = None
    locale: str = "de"
    source: str = SOURCE_LOCAL
    roles: Set[str] = field(default_factory=set)
    nonce: Optional[str] = field(default_factory=new_nonce)
    enabled: bool = True
    login_disabled: bool = False
    failed_login_attempts: int = 0
    password_hash: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    pending_email: Optional[str] = None
    email_verify_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_local(self) -> bool:
        return self.source == SOURCE_LOCAL

    def copy(self) -> "User":
        return replace(self, roles=set(self.roles))


@dataclass
class SessionToken:
    """One issued JWT; ``id`` doubles as the ``kid`` header and key lookup id."""

    id: str
    username: str
    type: SessionTokenType
    key: str
    issued_at: datetime
    expiration: datetime
    user_agent: Optional[str] = None
    parent_token_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        username: str,
        token_type: SessionTokenType,
        key: str,
        *,
        issued_at: datetime,
        expiration: datetime,
        user_agent: str | None = None,
        parent_token_id: str | None = None,
    ) -> "SessionToken":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            type=token_type,
            key=key,
            issued_at=issued_at,
            expiration=expiration,
            user_agent=user_agent,
            parent_token_id=parent_token_id,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expiration


@dataclass
class ApiToken:
    id: str
    linked_user: str
    description: str
    rights: Set[str] = field(default_factory=set)
    valid_until: datetime = field(default_factory=_utcnow)
    status: ApiTokenStatus = ApiTokenStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def username(self) -> str:
        return f"{self.linked_user}-api-token-{self.id}"
