from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Tuple

import jwt

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock
from warden.service.errors import BadCredentialsError, ServiceError, SessionExpiredError
from warden.service.keys import SessionTokenKeyLocator
from warden.storage.models import SessionToken, SessionTokenType

logger = get_logger(__name__)

ALGORITHM = "HS512"

_DECODE_OPTIONS = {
    # expiry is checked against the injected clock below
    "verify_exp": False,
    "verify_iat": False,
    "verify_nbf": False,
    "require": ["exp", "iat", "sub", "iss"],
}


class TokenVerifier:
    """Check signature, issuer and expiry of tokens minted by :class:`TokenFactory`."""

    def __init__(self, keys: SessionTokenKeyLocator, clock: Clock, settings: Settings) -> None:
        self.keys = keys
        self.clock = clock
        self.settings = settings

    def _decode(self, raw: str, *, allow_expired: bool = False) -> Tuple[SessionToken, Dict[str, Any]]:
        token = self.keys.resolve(raw)
        try:
            header = jwt.get_unverified_header(raw)
            claims = jwt.decode(
                raw,
                token.key,
                algorithms=[ALGORITHM],
                issuer=self.settings.jwt_issuer,
                options=_DECODE_OPTIONS,
            )
        except jwt.InvalidIssuerError:
            raise BadCredentialsError("Invalid token issuer")
        except jwt.InvalidSignatureError:
            raise BadCredentialsError("Invalid token signature")
        except jwt.PyJWTError as exc:
            raise BadCredentialsError("Malformed token", detail={"reason": str(exc)})
        if header.get("typ") != token.type.value:
            raise BadCredentialsError("Token type does not match its session")

        if not allow_expired:
            claimed = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
            # a rotated ACCESS token keeps its exp claim; the stored row wins
            if self.clock.now() >= min(claimed, token.expiration):
                raise SessionExpiredError("Session token expired")
        return token, claims

    def verify(self, raw: str) -> Dict[str, Any]:
        return self._decode(raw)[1]

    def verify_with_token(self, raw: str) -> Tuple[SessionToken, Dict[str, Any]]:
        return self._decode(raw)

    def resolve_session_token(self, raw: str, *, allow_expired: bool = False) -> SessionToken:
        return self._decode(raw, allow_expired=allow_expired)[0]

    def is_access_token_valid(self, refresh_raw: str, access_raw: str) -> bool:
        """True iff ``access_raw`` was spawned by ``refresh_raw``; never raises."""
        try:
            refresh = self.resolve_session_token(refresh_raw)
            access = self.resolve_session_token(access_raw)
        except ServiceError as exc:
            logger.info("access_token_pairing_rejected", reason=exc.message)
            return False
        return (
            refresh.type == SessionTokenType.REFRESH
            and access.type == SessionTokenType.ACCESS
            and access.parent_token_id == refresh.id
        )
