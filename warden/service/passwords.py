from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger

logger = get_logger(__name__)


class PasswordEncoder:
    """argon2id password hashing behind ``encode``/``matches``."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified against for unknown users so timing does not reveal existence
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def encode(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def matches(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            self.burn(plaintext)
            return False
        try:
            return self._pwd_hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False

    def burn(self, plaintext: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, plaintext)
        except VerifyMismatchError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        return self._pwd_hasher.check_needs_rehash(password_hash)

    @staticmethod
    def generate_password() -> str:
        return secrets.token_urlsafe(24)
