from __future__ import annotations

import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.admin_guard import AdminGuard
from warden.service.api_tokens import ApiTokenService
from warden.service.auth import AuthService
from warden.service.clock import Clock, SystemClock
from warden.service.email import EmailService
from warden.service.guarded import GuardedStore
from warden.service.invalidation import InvalidationCoordinator
from warden.service.keys import SessionTokenKeyLocator
from warden.service.passwords import PasswordEncoder
from warden.service.rights import RightService
from warden.service.roles import RoleService
from warden.service.sessions import SessionRegistry
from warden.service.tokens import TokenFactory
from warden.service.users import UserService
from warden.service.verifier import TokenVerifier
from warden.storage.memory import MemoryStore
from warden.storage.models import Right, Role
from warden.storage.postgres import PostgresStore

logger = get_logger(__name__)

ADMIN_ROLE = "ADMIN"

SYSTEM_RIGHTS: Dict[str, str] = {
    "API_DEVELOPER": "Use the developer API",
    "USER_CREATE": "Create users",
    "USER_READ": "Read users",
    "USER_UPDATE": "Update users",
    "USER_DELETE": "Delete users",
    "ROLE_CREATE": "Create roles",
    "ROLE_READ": "Read roles",
    "ROLE_UPDATE": "Update roles",
    "ROLE_DELETE": "Delete roles",
    "RIGHT_READ": "Read rights",
    "RIGHT_UPDATE": "Create, update and delete rights",
    "TRANSLATION_CREATE": "Create translations",
    "TRANSLATION_READ": "Read translations",
    "TRANSLATION_UPDATE": "Update translations",
    "TRANSLATION_DELETE": "Delete translations",
    "USER_TOKEN_CREATE": "Create API tokens",
}


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a DSN for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store=None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is None:
            try:
                store = (
                    MemoryStore(fs_root=self.settings.shared_fs_root)
                    if self.settings.use_memory_store
                    else PostgresStore(
                        self.settings.database_url, fs_root=self.settings.shared_fs_root
                    )
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if self.settings.use_memory_store else "postgres",
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.raw_store = store

        self.admin_guard = AdminGuard(store)
        self.invalidation = InvalidationCoordinator(store)
        self.store = GuardedStore(store, self.admin_guard, self.invalidation)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_token_ttl_minutes=self.settings.reset_token_ttl_minutes,
        )
        self.passwords = PasswordEncoder()
        self.keys = SessionTokenKeyLocator(store)
        self.verifier = TokenVerifier(self.keys, self.clock, self.settings)
        self.tokens = TokenFactory(
            store, self.keys, self.verifier, self.clock, self.settings, notifier=self.email
        )
        self.sessions = SessionRegistry(store, self.tokens, self.verifier, self.clock)
        self.users = UserService(
            self.store, self.passwords, self.sessions, self.email, self.clock, self.settings
        )
        self.roles = RoleService(self.store)
        self.rights = RightService(self.store)
        self.api_tokens = ApiTokenService(self.store, self.tokens, self.clock, self.settings)
        self.auth = AuthService(
            self.store,
            self.users,
            self.tokens,
            self.verifier,
            self.passwords,
            self.clock,
            self.settings,
        )

        ensure_initial_data(self)
        logger.info(
            "runtime_init_completed",
            store_type=type(store).__name__,
            admin_roles=sorted(self.admin_guard.get_admin_roles()),
        )

    def close(self) -> None:
        self.email.shutdown()
        pool = getattr(self.raw_store, "pool", None)
        if pool is not None:
            pool.close()


def ensure_initial_data(runtime: Runtime) -> None:
    """Create the system rights, the ADMIN and default roles, and an optional first admin."""
    store = runtime.store
    for authority, description in SYSTEM_RIGHTS.items():
        if store.get_right(authority) is None:
            store.save_right(Right(authority=authority, description=description))

    all_rights = {right.authority for right in store.list_rights()}
    admin = store.get_role(ADMIN_ROLE)
    if admin is None:
        store.save_role(
            Role(
                name=ADMIN_ROLE,
                description="Administrators",
                rights=all_rights,
                is_protected=True,
                is_system_role=True,
            )
        )
        logger.info("admin_role_created", rights=len(all_rights))
    elif admin.rights != all_rights:
        admin.rights = all_rights
        store.save_role(admin)
        logger.info("admin_role_updated", rights=len(all_rights))

    default_name = runtime.settings.default_role
    if store.get_role(default_name) is None:
        has_default = any(role.is_default_role for role in store.list_roles())
        store.save_role(
            Role(
                name=default_name,
                description="Default role for new users",
                is_default_role=not has_default,
                is_system_role=True,
            )
        )
        logger.info("default_role_created", role=default_name)

    email = runtime.settings.initial_admin_email
    password = runtime.settings.initial_admin_password
    if email and password and store.get_user_by_email(email) is None:
        user = runtime.users.create_user(
            email, roles=[ADMIN_ROLE], password=password, send_welcome=False
        )
        logger.info("initial_admin_created", user_id=user.id)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
