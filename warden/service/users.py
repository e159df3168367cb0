from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from warden.config import Settings
from warden.logging import get_logger
from warden.service.clock import Clock
from warden.service.email import EmailService
from warden.service.errors import (
    BadCredentialsError,
    ConflictError,
    IllegalArgumentError,
    NotAllowedError,
    ResourceNotFoundError,
)
from warden.service.passwords import PasswordEncoder
from warden.service.rights import rights_of
from warden.service.sessions import SessionRegistry
from warden.storage.models import SOURCE_LOCAL, User, new_nonce

logger = get_logger(__name__)

SELF_SERVICE_FIELDS = frozenset({"first_name", "last_name", "phone", "mobile", "locale"})


@dataclass
class FederatedIdentity:
    """Verified identity handed over by an LDAP or OAuth2 login."""

    username: str
    first_name: str = ""
    last_name: str = ""
    source: str = "ldap"
    claimed_role: Optional[str] = None


def _require_str(field: str, value: Any, *, allow_empty: bool = True) -> str:
    if not isinstance(value, str):
        raise IllegalArgumentError(f"Field '{field}' must be a string")
    value = value.strip()
    if not allow_empty and not value:
        raise IllegalArgumentError(f"Field '{field}' must not be empty")
    return value


def _optional_str(field: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    return _require_str(field, value) or None


def _require_bool(field: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise IllegalArgumentError(f"Field '{field}' must be a boolean")
    return value


def normalize_email(value: Any) -> str:
    email = _require_str("email", value, allow_empty=False).lower()
    local, _, domain = email.partition("@")
    if not local or not domain:
        raise IllegalArgumentError("Invalid email address")
    return email


class UserService:
    def __init__(
        self,
        store,
        passwords: PasswordEncoder,
        sessions: SessionRegistry,
        email: EmailService,
        clock: Clock,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.sessions = sessions
        self.email = email
        self.clock = clock
        self.settings = settings
        self._patch_fields: Dict[str, Callable[[User, Any], None]] = {
            "first_name": self._set_first_name,
            "last_name": self._set_last_name,
            "phone": self._set_phone,
            "mobile": self._set_mobile,
            "locale": self._set_locale,
            "email": self._set_email,
            "enabled": self._set_enabled,
            "login_disabled": self._set_login_disabled,
            "roles": self._set_roles,
            "password": self._set_password,
        }

    # patch handlers
    def _set_first_name(self, user: User, value: Any) -> None:
        user.first_name = _require_str("first_name", value)

    def _set_last_name(self, user: User, value: Any) -> None:
        user.last_name = _require_str("last_name", value)

    def _set_phone(self, user: User, value: Any) -> None:
        user.phone = _optional_str("phone", value)

    def _set_mobile(self, user: User, value: Any) -> None:
        user.mobile = _optional_str("mobile", value)

    def _set_locale(self, user: User, value: Any) -> None:
        user.locale = _require_str("locale", value, allow_empty=False)

    def _set_email(self, user: User, value: Any) -> None:
        email = normalize_email(value)
        if email != user.email.lower() and not user.is_local:
            raise NotAllowedError(
                f"cannot change email for users authenticated via '{user.source}'"
            )
        other = self.store.get_user_by_email(email)
        if other is not None and other.id != user.id:
            raise ConflictError("User already exists", detail={"field": "email"})
        user.email = email

    def _set_enabled(self, user: User, value: Any) -> None:
        user.enabled = _require_bool("enabled", value)

    def _set_login_disabled(self, user: User, value: Any) -> None:
        user.login_disabled = _require_bool("login_disabled", value)
        if not user.login_disabled:
            user.failed_login_attempts = 0

    def _set_roles(self, user: User, value: Any) -> None:
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise IllegalArgumentError("Field 'roles' must be a list of role names")
        user.roles = self._resolve_roles(value)

    def _set_password(self, user: User, value: Any) -> None:
        if not user.is_local:
            raise NotAllowedError(
                f"cannot set password for users authenticated via '{user.source}'"
            )
        password = _require_str("password", value, allow_empty=False)
        user.password_hash = self.passwords.encode(password)
        user.nonce = new_nonce()

    def _resolve_roles(self, names: Iterable[Any]) -> Set[str]:
        roles: Set[str] = set()
        for name in names:
            if not isinstance(name, str) or self.store.get_role(name) is None:
                raise IllegalArgumentError(f"Unknown role '{name}'")
            roles.add(name)
        return roles

    def _default_roles(self) -> Set[str]:
        for role in self.store.list_roles():
            if role.is_default_role:
                return {role.name}
        if self.store.get_role(self.settings.default_role):
            return {self.settings.default_role}
        return set()

    # CRUD
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        mobile: Optional[str] = None,
        locale: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        password: Optional[str] = None,
        source: str = SOURCE_LOCAL,
        enabled: bool = True,
        send_welcome: bool = True,
    ) -> User:
        email = normalize_email(email)
        if self.store.get_user_by_email(email) is not None:
            raise ConflictError("User already exists", detail={"field": "email"})
        now = self.clock.now()
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name or "",
            last_name=last_name or "",
            phone=phone,
            mobile=mobile,
            locale=locale or self.settings.default_locale,
            source=source,
            roles=self._resolve_roles(roles) if roles else self._default_roles(),
            enabled=enabled,
            created_at=now,
            updated_at=now,
        )
        welcome_token = None
        if password:
            user.password_hash = self.passwords.encode(password)
        elif user.is_local:
            user.password_hash = self.passwords.encode(self.passwords.generate_password())
            welcome_token = secrets.token_urlsafe(32)
            user.password_reset_token = welcome_token
            user.password_reset_expires_at = now + timedelta(
                minutes=self.settings.reset_token_ttl_minutes
            )
        created = self.store.create_user(user)
        logger.info("user_created", user_id=created.id, source=created.source)
        if welcome_token and send_welcome:
            if not self.email.send_welcome(created.email, welcome_token):
                logger.warning("welcome_email_failed", user_id=created.id)
        return created

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise ResourceNotFoundError("User not found", detail={"id": user_id})
        return user

    def get_user_by_email(self, email: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None:
            raise ResourceNotFoundError("User not found")
        return user

    def list_users(self) -> List[User]:
        return self.store.list_users()

    def _apply(self, user_id: str, changes: Dict[str, Any], allowed: Iterable[str]) -> User:
        allowed = set(allowed)
        user = self.get_user(user_id)
        updated = user.copy()
        for field, value in changes.items():
            handler = self._patch_fields.get(field)
            if handler is None or field not in allowed:
                raise IllegalArgumentError(f"Field '{field}' cannot be updated")
            handler(updated, value)
        updated.updated_at = self.clock.now()
        saved = self.store.save_user(updated)
        logger.info("user_updated", user_id=saved.id, fields=sorted(changes))
        return saved

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> User:
        """Full admin update; ``source`` and the password hash are kept unless a password is given."""
        changes = {k: v for k, v in changes.items() if not (k == "password" and v is None)}
        return self._apply(user_id, changes, self._patch_fields)

    def patch_user(self, user_id: str, changes: Dict[str, Any]) -> User:
        return self._apply(user_id, changes, self._patch_fields)

    def update_self(self, user_id: str, changes: Dict[str, Any]) -> User:
        return self._apply(user_id, changes, SELF_SERVICE_FIELDS)

    def delete_user(self, user_id: str) -> None:
        user = self.get_user(user_id)
        self.store.delete_user(user.id)
        logger.info("user_deleted", user_id=user.id)

    # credentials
    def update_password(self, user_id: str, new_password: str, verification: str) -> User:
        user = self.get_user(user_id)
        if not user.is_local:
            raise NotAllowedError(
                f"cannot change password for users authenticated via '{user.source}'"
            )
        if not new_password or new_password != verification:
            raise BadCredentialsError("mismatching passwords")
        user.password_hash = self.passwords.encode(new_password)
        user.nonce = new_nonce()
        user.updated_at = self.clock.now()
        saved = self.store.save_user(user)
        logger.info("user_password_changed", user_id=saved.id)
        return saved

    def terminate_sessions(self, user_id: str) -> User:
        """Rotate the nonce and drop every session of the user."""
        user = self.get_user(user_id)
        user.nonce = new_nonce()
        user.updated_at = self.clock.now()
        saved = self.store.save_user(user)
        self.sessions.delete_all_for_user(saved.email)
        logger.info("user_sessions_terminated", user_id=saved.id)
        return saved

    def create_reset_token(self, email: str) -> Optional[str]:
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_user")
            return None
        if not user.is_local:
            raise NotAllowedError(
                f"cannot reset password for users authenticated via '{user.source}'"
            )
        token = secrets.token_urlsafe(32)
        user.password_reset_token = token
        user.password_reset_expires_at = self.clock.now() + timedelta(
            minutes=self.settings.reset_token_ttl_minutes
        )
        self.store.save_user(user)
        if not self.email.send_password_reset(user.email, token):
            logger.warning("password_reset_email_failed", user_id=user.id)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    def reset_password(self, token: str, new_password: str) -> User:
        user = self.store.get_user_by_reset_token(token) if token else None
        if (
            user is None
            or user.password_reset_expires_at is None
            or user.password_reset_expires_at <= self.clock.now()
        ):
            raise BadCredentialsError("Invalid reset token")
        if not new_password:
            raise IllegalArgumentError("Password must not be empty")
        user.password_hash = self.passwords.encode(new_password)
        user.password_reset_token = None
        user.password_reset_expires_at = None
        user.login_disabled = False
        user.failed_login_attempts = 0
        user.nonce = new_nonce()
        user.updated_at = self.clock.now()
        saved = self.store.save_user(user)
        logger.info("password_reset_completed", user_id=saved.id)
        return saved

    # email change
    def request_email_change(self, user_id: str, new_email: str) -> Optional[str]:
        """Park ``new_email`` on the user and mail a confirmation link to it.

        The sign-in address only changes in :meth:`verify_email`. Returns the
        verification token, or None when the address is unchanged.
        """
        user = self.get_user(user_id)
        email = normalize_email(new_email)
        if email == user.email.lower():
            return None
        if not user.is_local:
            raise NotAllowedError(
                f"cannot change email for users authenticated via '{user.source}'"
            )
        if self.store.get_user_by_email(email) is not None:
            raise ConflictError("User already exists", detail={"field": "email"})
        token = secrets.token_urlsafe(32)
        user.pending_email = email
        user.email_verify_token = token
        user.email_verification_expires_at = self.clock.now() + timedelta(
            days=self.settings.email_verification_ttl_days
        )
        user.updated_at = self.clock.now()
        self.store.save_user(user)
        if not self.email.send_email_verification(email, token):
            logger.warning("email_verification_send_failed", user_id=user.id)
        logger.info("email_change_requested", user_id=user.id)
        return token

    def verify_email(self, token: str) -> User:
        user = self.store.get_user_by_email_verify_token(token) if token else None
        if user is None or not user.pending_email:
            raise BadCredentialsError("Invalid verification token")
        if (
            user.email_verification_expires_at is None
            or user.email_verification_expires_at <= self.clock.now()
        ):
            raise BadCredentialsError("Verification token expired")
        other = self.store.get_user_by_email(user.pending_email)
        if other is not None and other.id != user.id:
            raise ConflictError("User already exists", detail={"field": "email"})
        user.email = user.pending_email
        user.pending_email = None
        user.email_verify_token = None
        user.email_verification_expires_at = None
        user.updated_at = self.clock.now()
        # the email is the session subject, so this save ends every session
        saved = self.store.save_user(user)
        logger.info("email_change_verified", user_id=saved.id)
        return saved

    # federation
    def find_or_create_federated(self, identity: FederatedIdentity) -> User:
        user = self.store.get_user_by_email(identity.username)
        if user is None:
            roles = None
            if identity.claimed_role and self.store.get_role(identity.claimed_role):
                roles = [identity.claimed_role]
            return self.create_user(
                identity.username,
                first_name=identity.first_name,
                last_name=identity.last_name,
                roles=roles,
                source=identity.source,
            )
        if (user.first_name, user.last_name, user.source) != (
            identity.first_name,
            identity.last_name,
            identity.source,
        ):
            user.first_name = identity.first_name
            user.last_name = identity.last_name
            user.source = identity.source
            user.updated_at = self.clock.now()
            user = self.store.save_user(user)
            logger.info("federated_user_synced", user_id=user.id, source=user.source)
        return user

    def get_rights(self, user: User) -> Set[str]:
        return rights_of(self.store, user)
