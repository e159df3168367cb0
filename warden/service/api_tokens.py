from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock, ensure_utc
from warden.service.errors import (
    ConflictError,
    IllegalArgumentError,
    NotAllowedError,
    ResourceNotFoundError,
)
from warden.service.rights import rights_of
from warden.service.tokens import TokenFactory, TokenSubject
from warden.storage.models import ApiToken, ApiTokenStatus, SessionTokenType, User

logger = get_logger(__name__)

# rights that would let a machine token mint further tokens
_RESERVED_PREFIX = "USER_TOKEN"


class ApiTokenService:
    """Long-lived tokens scoped to a subset of their creator's rights. No update."""

    def __init__(self, store, factory: TokenFactory, clock: Clock, settings: Settings) -> None:
        self.store = store
        self.factory = factory
        self.clock = clock
        self.settings = settings

    def create_token(
        self,
        user: User,
        description: str,
        rights: Iterable[str],
        valid_until: Optional[datetime] = None,
    ) -> Tuple[ApiToken, str]:
        description = (description or "").strip()
        if not description:
            raise IllegalArgumentError("Description must not be empty")
        if any(t.description == description for t in self.store.list_api_tokens(user.email)):
            raise ConflictError("API token description already in use")

        requested = set(rights or [])
        if not requested:
            raise IllegalArgumentError("An API token needs at least one right")
        reserved = sorted(r for r in requested if r.startswith(_RESERVED_PREFIX))
        if reserved:
            raise IllegalArgumentError(
                "Rights cannot be delegated to API tokens", detail={"rights": reserved}
            )
        missing = sorted(requested - rights_of(self.store, user))
        if missing:
            raise NotAllowedError("Cannot grant rights you do not hold", detail={"rights": missing})

        now = self.clock.now()
        if valid_until is not None:
            valid_until = ensure_utc(valid_until)
        expires = valid_until or now + timedelta(days=self.settings.api_token_default_ttl_days)
        if expires <= now:
            raise IllegalArgumentError("Expiration must be in the future")

        api_token = ApiToken(
            id=str(uuid.uuid4()),
            linked_user=user.email,
            description=description,
            rights=requested,
            valid_until=expires,
            created_at=now,
        )
        with self.store.transaction():
            api_token = self.store.create_api_token(api_token)
            raw = self.factory.mint(
                TokenSubject.from_api_token(api_token, user),
                SessionTokenType.API,
                expiration=expires,
            )
        logger.info("api_token_created", api_token_id=api_token.id, rights=sorted(requested))
        return api_token, raw

    def list_tokens(self, user: User) -> List[ApiToken]:
        now = self.clock.now()
        tokens = self.store.list_api_tokens(user.email)
        for token in tokens:
            if token.status == ApiTokenStatus.ACTIVE and token.valid_until <= now:
                token.status = ApiTokenStatus.EXPIRED
                self.store.save_api_token(token)
        return tokens

    def get_token(self, user: User, token_id: str) -> ApiToken:
        token = self.store.get_api_token(token_id)
        if token is None or token.linked_user.lower() != user.email.lower():
            raise ResourceNotFoundError("API token not found", detail={"id": token_id})
        return token

    def revoke_token(self, user: User, token_id: str) -> ApiToken:
        token = self.get_token(user, token_id)
        if token.status != ApiTokenStatus.ACTIVE:
            raise IllegalArgumentError("Only active API tokens can be revoked")
        token.status = ApiTokenStatus.REVOKED
        with self.store.transaction():
            self.store.save_api_token(token)
            self.store.delete_session_tokens_for_user(token.username)
        logger.info("api_token_revoked", api_token_id=token.id)
        return token
