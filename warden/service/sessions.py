from __future__ import annotations

from typing import List, Optional

from warden.logging import get_logger
from warden.service.clock import Clock
from warden.service.errors import (
    IllegalArgumentError,
    NonceExpiredError,
    ResourceNotFoundError,
    UnauthorizedError,
)
from warden.service.rights import rights_of
from warden.service.tokens import TokenFactory, TokenSubject
from warden.service.verifier import TokenVerifier
from warden.storage.models import SessionToken, SessionTokenType

logger = get_logger(__name__)


class SessionRegistry:
    """Per-user view over issued session tokens."""

    def __init__(
        self,
        store,
        factory: TokenFactory,
        verifier: TokenVerifier,
        clock: Clock,
    ) -> None:
        self.store = store
        self.factory = factory
        self.verifier = verifier
        self.clock = clock

    def get_tokens(self, username: str) -> List[SessionToken]:
        """Active sessions as shown to the user: REFRESH tokens only."""
        return self.store.list_session_tokens(username, SessionTokenType.REFRESH)

    def get_token(self, username: str, token_id: str) -> SessionToken:
        token = self.store.get_session_token(token_id)
        if token is None:
            raise ResourceNotFoundError("Session token not found", detail={"id": token_id})
        if token.username.lower() != username.lower():
            raise IllegalArgumentError("Session token does not belong to user")
        return token

    def delete_token(self, username: str, token_id: str) -> None:
        token = self.get_token(username, token_id)
        self.store.delete_session_token(token.id)
        logger.info("session_token_deleted", token_id=token.id, token_type=token.type.value)

    def delete_all_for_user(self, username: str) -> int:
        removed = 0
        with self.store.transaction():
            for token_type in (
                SessionTokenType.ACCESS,
                SessionTokenType.REFRESH,
                SessionTokenType.API,
            ):
                removed += self.store.delete_session_tokens_for_user(username, token_type)
        logger.info("session_tokens_deleted_for_user", count=removed)
        return removed

    def delete_all_for_user_and_type(self, username: str, token_type: SessionTokenType) -> int:
        removed = self.store.delete_session_tokens_for_user(username, token_type)
        logger.info(
            "session_tokens_deleted_for_user",
            count=removed,
            token_type=token_type.value,
        )
        return removed

    def renew(self, refresh_raw: str, user_agent: Optional[str] = None) -> str:
        """Exchange a REFRESH token for a fresh ACCESS token."""
        token, claims = self.verifier.verify_with_token(refresh_raw)
        if token.type != SessionTokenType.REFRESH:
            raise IllegalArgumentError("Session token is not a refresh token")
        user = self.store.get_user_by_email(token.username)
        if user is None:
            raise UnauthorizedError("User not found")
        if not user.enabled or user.login_disabled:
            raise UnauthorizedError("User is disabled")
        if claims.get("nonce") != user.nonce:
            raise NonceExpiredError("nonce expired")
        subject = TokenSubject.from_user(user, rights_of(self.store, user))
        return self.factory.mint(
            subject,
            SessionTokenType.ACCESS,
            user_agent=user_agent,
            requesting_bearer=refresh_raw,
        )

    def logout(self, raw: str) -> None:
        """Delete the REFRESH token behind ``raw`` together with its ACCESS children."""
        token = self.verifier.resolve_session_token(raw, allow_expired=True)
        if token.type == SessionTokenType.API:
            raise IllegalArgumentError("API tokens are revoked, not logged out")
        if token.type == SessionTokenType.ACCESS and token.parent_token_id:
            self.store.delete_session_token(token.parent_token_id)
        else:
            self.store.delete_session_token(token.id)
        logger.info("session_logout", token_id=token.id, token_type=token.type.value)

    def cleanup(self) -> int:
        removed = self.store.delete_session_tokens_expired_before(self.clock.now())
        if removed:
            logger.info("expired_session_tokens_removed", count=removed)
        return removed
