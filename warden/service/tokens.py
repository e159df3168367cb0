from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Protocol, Set

import jwt

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock, ensure_utc
from warden.service.errors import IllegalArgumentError, UnauthorizedError
from warden.service.keys import SESSION_NOT_FOUND, SessionTokenKeyLocator
from warden.service.verifier import ALGORITHM, TokenVerifier
from warden.storage.models import ApiToken, SessionToken, SessionTokenType, User

logger = get_logger(__name__)


class LoginNotifier(Protocol):
    def send_login_notification_async(
        self, email: str, *, user_agent: Optional[str], when: datetime, locale: str
    ) -> None: ...


@dataclass
class TokenSubject:
    """The principal a token is minted for, flattened into claim values."""

    username: str
    uid: str
    first_name: str = ""
    last_name: str = ""
    locale: str = "de"
    roles: Set[str] = field(default_factory=set)
    rights: Set[str] = field(default_factory=set)
    nonce: Optional[str] = None
    email: Optional[str] = None
    extra_claims: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_user(cls, user: User, rights: Iterable[str]) -> "TokenSubject":
        return cls(
            username=user.email,
            uid=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            locale=user.locale,
            roles=set(user.roles),
            rights=set(rights),
            nonce=user.nonce,
            email=user.email,
        )

    @classmethod
    def from_api_token(cls, api_token: ApiToken, linked_user: User) -> "TokenSubject":
        return cls(
            username=api_token.username,
            uid=api_token.id,
            first_name=linked_user.first_name,
            last_name=linked_user.last_name,
            locale=linked_user.locale,
            rights=set(api_token.rights),
            extra_claims={"linked_user": linked_user.email},
        )


class TokenFactory:
    """Mint REFRESH, ACCESS and API tokens, each signed with its own key."""

    def __init__(
        self,
        store,
        keys: SessionTokenKeyLocator,
        verifier: TokenVerifier,
        clock: Clock,
        settings: Settings,
        notifier: Optional[LoginNotifier] = None,
    ) -> None:
        self.store = store
        self.keys = keys
        self.verifier = verifier
        self.clock = clock
        self.settings = settings
        self.notifier = notifier

    def mint(
        self,
        subject: TokenSubject,
        token_type: SessionTokenType,
        user_agent: Optional[str] = None,
        requesting_bearer: Optional[str] = None,
        expiration: Optional[datetime] = None,
    ) -> str:
        now = self.clock.now()
        if token_type == SessionTokenType.ACCESS:
            token = self._create_access(subject, user_agent, requesting_bearer, now)
        else:
            if token_type == SessionTokenType.REFRESH:
                expires = now + timedelta(seconds=self.settings.refresh_token_ttl_seconds)
            else:
                expires = ensure_utc(expiration) if expiration else now + timedelta(
                    days=self.settings.api_token_default_ttl_days
                )
                if expires <= now:
                    raise IllegalArgumentError("Expiration must be in the future")
            token = SessionToken.new(
                subject.username,
                token_type,
                self.keys.generate_key(),
                issued_at=now,
                expiration=expires,
                user_agent=user_agent,
            )
            self.keys.store_token(token)

        raw = self._sign(subject, token)
        logger.info(
            "session_token_minted",
            token_id=token.id,
            token_type=token.type.value,
            parent_token_id=token.parent_token_id,
        )
        if token_type == SessionTokenType.REFRESH:
            self._notify_login(subject, user_agent, now)
        return raw

    def _create_access(
        self,
        subject: TokenSubject,
        user_agent: Optional[str],
        requesting_bearer: Optional[str],
        now: datetime,
    ) -> SessionToken:
        if not requesting_bearer:
            raise IllegalArgumentError("An access token can only be issued for a refresh token")
        parent = self.verifier.resolve_session_token(requesting_bearer)
        if parent.type != SessionTokenType.REFRESH:
            raise IllegalArgumentError("Session token is not a refresh token")
        if parent.username.lower() != subject.username.lower():
            raise IllegalArgumentError("Refresh token belongs to a different user")

        with self.store.transaction():
            if self.store.lock_session_token(parent.id) is None:
                raise UnauthorizedError(SESSION_NOT_FOUND)
            # at most one live ACCESS token per REFRESH token
            for child in self.store.list_access_tokens(parent.id):
                if not child.is_expired(now):
                    child.expiration = now
                    self.store.save_session_token(child)
            token = SessionToken.new(
                parent.username,
                SessionTokenType.ACCESS,
                self.keys.generate_key(),
                issued_at=now,
                expiration=now + timedelta(seconds=self.settings.access_token_ttl_seconds),
                user_agent=user_agent,
                parent_token_id=parent.id,
            )
            self.keys.store_token(token)
        return token

    def _sign(self, subject: TokenSubject, token: SessionToken) -> str:
        claims: Dict[str, Any] = dict(subject.extra_claims)
        claims.update(
            {
                "sub": token.username,
                "iat": int(token.issued_at.timestamp()),
                "exp": int(token.expiration.timestamp()),
                "iss": self.settings.jwt_issuer,
                "nonce": subject.nonce,
                "given_name": subject.first_name,
                "family_name": subject.last_name,
                "uid": subject.uid,
                "roles": sorted(subject.roles),
                "rights": sorted(subject.rights),
                "locale": subject.locale,
                "parent_token_id": token.parent_token_id,
            }
        )
        return jwt.encode(
            claims,
            token.key,
            algorithm=ALGORITHM,
            headers={"kid": token.id, "typ": token.type.value},
        )

    def _notify_login(self, subject: TokenSubject, user_agent: Optional[str], when: datetime) -> None:
        if not self.notifier or not subject.email:
            return
        try:
            self.notifier.send_login_notification_async(
                subject.email, user_agent=user_agent, when=when, locale=subject.locale
            )
        except Exception as exc:
            logger.warning("login_notification_schedule_failed", error=str(exc))
