from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock
from warden.service.errors import (
    BadCredentialsError,
    NonceExpiredError,
    NotAllowedError,
    UnauthorizedError,
)
from warden.service.passwords import PasswordEncoder
from warden.service.rights import rights_of
from warden.service.tokens import TokenFactory, TokenSubject
from warden.service.users import FederatedIdentity, UserService
from warden.service.verifier import TokenVerifier
from warden.storage.models import ApiTokenStatus, SessionTokenType, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user: User
    token_type: SessionTokenType
    session_token_id: str
    rights: FrozenSet[str] = frozenset()
    api_token_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.user.id


@dataclass
class TokenPair:
    refresh_token: str
    access_token: str


class AuthService:
    """Password and federated login plus bearer authentication for requests."""

    def __init__(
        self,
        store,
        users: UserService,
        factory: TokenFactory,
        verifier: TokenVerifier,
        passwords: PasswordEncoder,
        clock: Clock,
        settings: Settings,
    ) -> None:
        self.store = store
        self.users = users
        self.factory = factory
        self.verifier = verifier
        self.passwords = passwords
        self.clock = clock
        self.settings = settings
        self.logger = logger

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def _ensure_active(self, user: User) -> None:
        if not user.enabled:
            raise UnauthorizedError("User is disabled")
        if user.login_disabled:
            raise UnauthorizedError("Login is disabled for this user")

    def _register_failure(self, user: User) -> None:
        user.failed_login_attempts += 1
        if user.failed_login_attempts >= self.settings.max_failed_logins:
            user.login_disabled = True
            self.logger.warning(
                "login_disabled_after_failures",
                user_id=user.id,
                attempts=user.failed_login_attempts,
            )
        self.store.save_user(user)

    def issue_tokens(self, user: User, user_agent: Optional[str] = None) -> TokenPair:
        subject = TokenSubject.from_user(user, rights_of(self.store, user))
        refresh = self.factory.mint(subject, SessionTokenType.REFRESH, user_agent)
        access = self.factory.mint(
            subject, SessionTokenType.ACCESS, user_agent, requesting_bearer=refresh
        )
        return TokenPair(refresh_token=refresh, access_token=access)

    def login(self, email: str, password: str, user_agent: Optional[str] = None) -> TokenPair:
        user = self.store.get_user_by_email(email or "")
        if user is None or not user.is_local:
            self.passwords.burn(password or "")
            raise BadCredentialsError("Bad credentials")
        self._ensure_active(user)
        if not self.passwords.matches(password or "", user.password_hash):
            self._register_failure(user)
            raise BadCredentialsError("Bad credentials")

        dirty = False
        if user.failed_login_attempts:
            user.failed_login_attempts = 0
            dirty = True
        if self.passwords.needs_rehash(user.password_hash):
            user.password_hash = self.passwords.encode(password)
            dirty = True
        if dirty:
            user = self.store.save_user(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return self.issue_tokens(user, user_agent)

    def login_federated(
        self, identity: FederatedIdentity, user_agent: Optional[str] = None
    ) -> TokenPair:
        user = self.users.find_or_create_federated(identity)
        self._ensure_active(user)
        self.logger.info("federated_login_succeeded", user_id=user.id, source=user.source)
        return self.issue_tokens(user, user_agent)

    def authenticate(self, bearer: Optional[str]) -> AuthContext:
        if not bearer:
            raise UnauthorizedError("Missing bearer token")
        token, claims = self.verifier.verify_with_token(bearer)
        if token.type == SessionTokenType.REFRESH:
            raise BadCredentialsError("Refresh tokens cannot authenticate requests")
        if token.type == SessionTokenType.API:
            return self._authenticate_api(token.id, claims)

        user = self.store.get_user_by_email(claims["sub"])
        if user is None:
            raise UnauthorizedError("User not found")
        if not user.enabled:
            raise UnauthorizedError("User is disabled")
        if user.nonce is None:
            self.logger.warning("user_nonce_missing", user_id=user.id)
        elif claims.get("nonce") != user.nonce:
            raise NonceExpiredError("nonce expired")
        return AuthContext(
            user=user,
            token_type=token.type,
            session_token_id=token.id,
            rights=frozenset(rights_of(self.store, user)),
            claims=claims,
        )

    def _authenticate_api(self, session_token_id: str, claims: Dict[str, Any]) -> AuthContext:
        api_token = self.store.get_api_token(str(claims.get("uid")))
        if (
            api_token is None
            or api_token.status != ApiTokenStatus.ACTIVE
            or api_token.valid_until <= self.clock.now()
        ):
            raise UnauthorizedError("API token is not active")
        user = self.store.get_user_by_email(api_token.linked_user)
        if user is None or not user.enabled:
            raise UnauthorizedError("API token owner is not active")
        # never more than the owner currently holds
        rights = frozenset(api_token.rights & rights_of(self.store, user))
        return AuthContext(
            user=user,
            token_type=SessionTokenType.API,
            session_token_id=session_token_id,
            rights=rights,
            api_token_id=api_token.id,
            claims=claims,
        )

    @staticmethod
    def require_right(ctx: AuthContext, right: str) -> None:
        if right not in ctx.rights:
            raise NotAllowedError(f"Missing right {right}")
