from __future__ import annotations

import threading
from typing import FrozenSet, Optional

from warden.logging import get_logger
from warden.storage.models import User

logger = get_logger(__name__)

BASELINE_ADMIN_RIGHTS: FrozenSet[str] = frozenset(
    {
        "API_DEVELOPER",
        "USER_CREATE",
        "USER_READ",
        "USER_UPDATE",
        "USER_DELETE",
        "ROLE_CREATE",
        "ROLE_READ",
        "ROLE_UPDATE",
        "ROLE_DELETE",
        "RIGHT_READ",
        "RIGHT_UPDATE",
        "TRANSLATION_CREATE",
        "TRANSLATION_READ",
        "TRANSLATION_UPDATE",
        "TRANSLATION_DELETE",
    }
)


class AdminGuard:
    """Cached view of administrative rights and roles plus the "one admin left" check.

    The cache is filled lazily and dropped by :meth:`reset` on every role or
    right write. Readers always receive frozensets, so a concurrent reset
    never mutates a set a caller is iterating. The store is read outside the
    cache lock; a view computed across a reset is returned but not cached.
    """

    def __init__(self, store) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._admin_rights: Optional[FrozenSet[str]] = None
        self._admin_roles: Optional[FrozenSet[str]] = None
        self._generation = 0

    def reset(self) -> None:
        with self._lock:
            self._generation += 1
            self._admin_rights = None
            self._admin_roles = None

    def is_empty(self) -> bool:
        with self._lock:
            return self._admin_rights is None and self._admin_roles is None

    def _compute(self) -> tuple[FrozenSet[str], FrozenSet[str]]:
        with self.store.transaction():
            existing = {right.authority for right in self.store.list_rights()}
            rights = frozenset(BASELINE_ADMIN_RIGHTS & existing)
            roles: FrozenSet[str] = frozenset()
            if rights:
                roles = frozenset(
                    role.name for role in self.store.list_roles() if rights <= role.rights
                )
        return rights, roles

    def _load(self) -> tuple[FrozenSet[str], FrozenSet[str]]:
        with self._lock:
            if self._admin_rights is not None and self._admin_roles is not None:
                return self._admin_rights, self._admin_roles
            generation = self._generation
        # never hold the cache lock while waiting on the store
        rights, roles = self._compute()
        with self._lock:
            if self._generation == generation:
                self._admin_rights, self._admin_roles = rights, roles
                logger.debug("admin_cache_loaded", rights=len(rights), roles=sorted(roles))
        return rights, roles

    def get_admin_rights(self) -> FrozenSet[str]:
        return self._load()[0]

    def get_admin_roles(self) -> FrozenSet[str]:
        return self._load()[1]

    def is_admin_role(self, role_name: str) -> bool:
        return role_name in self.get_admin_roles()

    def is_admin(self, user: User) -> bool:
        return bool(user.roles & self.get_admin_roles())

    def grants_admin(self, rights) -> bool:
        admin_rights = self.get_admin_rights()
        return bool(admin_rights) and admin_rights <= set(rights)

    def would_violate_invariant(
        self, excluded_user_id: Optional[str], *, demoted_role: Optional[str] = None
    ) -> bool:
        """True iff no user besides ``excluded_user_id`` keeps an administrative role.

        ``demoted_role`` is treated as no longer administrative, for a role
        save that is about to strip admin rights.
        """
        admin_roles = set(self.get_admin_roles())
        if demoted_role:
            admin_roles.discard(demoted_role)
        for role_name in admin_roles:
            for user in self.store.list_users_by_role(role_name):
                if user.id != excluded_user_id:
                    return False
        return True
