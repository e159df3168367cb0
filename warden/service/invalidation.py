from __future__ import annotations

import contextlib
from typing import Iterator

from warden.logging import get_logger
from warden.service.errors import ServiceError, TokenInvalidationError
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Right, Role, SessionTokenType, User

logger = get_logger(__name__)


def _user_changed(stored: User, updated: User) -> bool:
    return (
        stored.email.lower() != updated.email.lower()
        or stored.locale != updated.locale
        or set(stored.roles) != set(updated.roles)
        or stored.enabled != updated.enabled
        or stored.login_disabled != updated.login_disabled
        or stored.source != updated.source
    )


class InvalidationCoordinator:
    """Purge sessions that an identity write is about to make stale.

    Each ``before_*`` hook runs inside the write's transaction, before the
    raw store call. An exception aborts the write.
    """

    def __init__(self, store) -> None:
        self.store = store

    @contextlib.contextmanager
    def _wrapping(self, action: str) -> Iterator[None]:
        try:
            yield
        except (ServiceError, ConstraintViolation):
            raise
        except Exception as exc:
            logger.error("token_invalidation_failed", action=action, error=str(exc))
            raise TokenInvalidationError(
                f"Failed to invalidate sessions on {action}", cause=exc
            ) from exc

    def invalidate_user(self, username: str, *, include_api_tokens: bool = True) -> int:
        """Delete the user's ACCESS and REFRESH tokens, then linked API tokens."""
        removed = self.store.delete_session_tokens_for_user(username, SessionTokenType.ACCESS)
        removed += self.store.delete_session_tokens_for_user(username, SessionTokenType.REFRESH)
        api_tokens = self.store.list_api_tokens(username) if include_api_tokens else []
        for api_token in api_tokens:
            removed += self.store.delete_session_tokens_for_user(api_token.username)
            self.store.delete_api_token(api_token.id)
        logger.info("user_sessions_invalidated", count=removed, api_tokens=len(api_tokens))
        return removed

    def before_user_save(self, user: User) -> None:
        with self._wrapping("user save"):
            stored = self.store.get_user(user.id)
            if stored is not None and not _user_changed(stored, user):
                return
            self.invalidate_user(user.email)
            if stored is not None and stored.email.lower() != user.email.lower():
                self.invalidate_user(stored.email)

    def before_user_delete(self, user: User) -> None:
        with self._wrapping("user delete"):
            self.invalidate_user(user.email)

    def before_role_save(self, role: Role) -> None:
        with self._wrapping("role save"):
            previous = self.store.get_role(role.name)
            # new role, or rights only added: nothing to revoke
            if previous is None or set(role.rights) >= previous.rights:
                return
            for user in self.store.list_users_by_role(role.name):
                self.invalidate_user(user.email, include_api_tokens=False)

    def before_role_delete(self, name: str) -> None:
        with self._wrapping("role delete"):
            holders = self.store.list_users_by_role(name)
            if holders:
                raise ConstraintViolation(
                    f"Role is still in use by {len(holders)} users",
                    {"role": name, "users": len(holders)},
                )

    def before_right_save(self, right: Right) -> None:
        # adding or describing a right never narrows anyone's access
        return None

    def before_right_delete(self, authority: str) -> None:
        with self._wrapping("right delete"):
            for user in self.store.list_users_by_right(authority):
                self.invalidate_user(user.email, include_api_tokens=False)
            for role in self.store.list_roles_by_right(authority):
                role.rights.discard(authority)
                self.store.save_role(role)
