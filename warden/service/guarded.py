from __future__ import annotations

from warden.logging import get_logger
from warden.service.admin_guard import AdminGuard
from warden.service.errors import NotAllowedError
from warden.service.invalidation import InvalidationCoordinator
from warden.storage.models import Right, Role, User

logger = get_logger(__name__)

NO_ADMIN_LEFT = "At least one administrator must remain"


class GuardedStore:
    """Store wrapper that runs the admin check and invalidation before identity writes.

    Reads and session/API-token calls fall through to the wrapped store.
    Each user, role and right write runs in one transaction:

    1. admin lock, then the admin-invariant check
    2. invalidation hook
    3. raw write
    4. admin cache reset (role and right writes), again after commit
    """

    def __init__(self, store, guard: AdminGuard, coordinator: InvalidationCoordinator) -> None:
        self._store = store
        self.guard = guard
        self.coordinator = coordinator

    def __getattr__(self, name: str):
        return getattr(self._store, name)

    @property
    def raw(self):
        return self._store

    def _lock_admin_state(self) -> None:
        # writes that can change who is an administrator run one at a time,
        # and each re-reads the admin view once it holds the lock
        self._store.lock_admin_roles()
        self.guard.reset()

    def _check_user_roles(self, user: User) -> None:
        stored = self._store.get_user(user.id)
        if stored is None or not self.guard.is_admin(stored):
            return
        still_admin = bool(set(user.roles) & self.guard.get_admin_roles())
        if not still_admin and self.guard.would_violate_invariant(user.id):
            logger.warning("admin_invariant_blocked", action="user_save", user_id=user.id)
            raise NotAllowedError(NO_ADMIN_LEFT)

    def _check_role(self, role: Role) -> None:
        if not self.guard.is_admin_role(role.name) or self.guard.grants_admin(role.rights):
            return
        if self.guard.would_violate_invariant(None, demoted_role=role.name):
            logger.warning("admin_invariant_blocked", action="role_save", role=role.name)
            raise NotAllowedError(NO_ADMIN_LEFT)

    def create_user(self, user: User) -> User:
        with self._store.transaction():
            self.coordinator.before_user_save(user)
            return self._store.create_user(user)

    def save_user(self, user: User) -> User:
        with self._store.transaction():
            self._lock_admin_state()
            self._check_user_roles(user)
            self.coordinator.before_user_save(user)
            return self._store.save_user(user)

    def delete_user(self, user_id: str) -> bool:
        with self._store.transaction():
            self._lock_admin_state()
            user = self._store.get_user(user_id)
            if user is None:
                return False
            if self.guard.is_admin(user) and self.guard.would_violate_invariant(user.id):
                logger.warning("admin_invariant_blocked", action="user_delete", user_id=user.id)
                raise NotAllowedError(NO_ADMIN_LEFT)
            self.coordinator.before_user_delete(user)
            return self._store.delete_user(user_id)

    def save_role(self, role: Role) -> Role:
        with self._store.transaction():
            self._lock_admin_state()
            self._check_role(role)
            self.coordinator.before_role_save(role)
            saved = self._store.save_role(role)
            self.guard.reset()
        self.guard.reset()
        return saved

    def delete_role(self, name: str) -> bool:
        with self._store.transaction():
            self._lock_admin_state()
            if self.guard.is_admin_role(name) and self.guard.would_violate_invariant(
                None, demoted_role=name
            ):
                raise NotAllowedError(NO_ADMIN_LEFT)
            self.coordinator.before_role_delete(name)
            deleted = self._store.delete_role(name)
            self.guard.reset()
        self.guard.reset()
        return deleted

    def save_right(self, right: Right) -> Right:
        with self._store.transaction():
            self._lock_admin_state()
            self.coordinator.before_right_save(right)
            saved = self._store.save_right(right)
            self.guard.reset()
        self.guard.reset()
        return saved

    def delete_right(self, authority: str) -> bool:
        with self._store.transaction():
            self._lock_admin_state()
            self.coordinator.before_right_delete(authority)
            deleted = self._store.delete_right(authority)
            self.guard.reset()
        self.guard.reset()
        return deleted
