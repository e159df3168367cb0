from __future__ import annotations

import secrets
import uuid
from typing import Optional, Protocol

import jwt

from warden.logging import get_logger
from warden.service.errors import BadCredentialsError, UnauthorizedError
from warden.storage.models import SessionToken

logger = get_logger(__name__)

SESSION_NOT_FOUND = "Session token not found. Session expired?"


class SessionTokenStore(Protocol):
    def create_session_token(self, token: SessionToken) -> SessionToken: ...

    def get_session_token(self, token_id: str) -> Optional[SessionToken]: ...


class SessionTokenKeyLocator:
    """Resolve the signing key of a JWT from the ``kid`` header.

    Every issued token owns its key; there is no service-wide secret, so
    deleting a session token row revokes the JWT on its next use.
    """

    def __init__(self, store: SessionTokenStore) -> None:
        self.store = store

    @staticmethod
    def generate_key() -> str:
        return secrets.token_urlsafe(64)

    def store_token(self, token: SessionToken) -> SessionToken:
        return self.store.create_session_token(token)

    def find(self, token_id: Optional[str]) -> SessionToken:
        if not token_id:
            raise UnauthorizedError(SESSION_NOT_FOUND)
        try:
            uuid.UUID(str(token_id))
        except ValueError:
            logger.info("session_token_kid_malformed")
            raise UnauthorizedError(SESSION_NOT_FOUND)
        token = self.store.get_session_token(str(token_id))
        if token is None:
            raise UnauthorizedError(SESSION_NOT_FOUND)
        return token

    def lookup(self, token_id: Optional[str]) -> str:
        return self.find(token_id).key

    def resolve(self, raw: str) -> SessionToken:
        """Return the session token named by an unverified JWT header."""
        try:
            header = jwt.get_unverified_header(raw)
        except jwt.PyJWTError as exc:
            raise BadCredentialsError("Malformed token", detail={"reason": str(exc)})
        return self.find(header.get("kid"))
