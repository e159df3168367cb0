from __future__ import annotations

import contextlib
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    ApiToken,
    ApiTokenStatus,
    Right,
    Role,
    SessionToken,
    SessionTokenType,
    User,
)


class MemoryStore:
    """In-process backing store with a JSON snapshot on the shared filesystem."""

    def __init__(self, fs_root: str = "/tmp/warden") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.rights: Dict[str, Right] = {}
        self.session_tokens: Dict[str, SessionToken] = {}
        self.api_tokens: Dict[str, ApiToken] = {}
        # RLock so a transaction() block can call the public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the data lock across a read-then-write sequence."""
        with self._data_lock:
            yield

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user already exists", {"user_id": user.id})
            if self._find_user_by_email(user.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user.copy()
            self._persist_state()
            return user.copy()

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            other = self._find_user_by_email(user.email)
            if other and other.id != user.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user.copy()
            self._persist_state()
            return user.copy()

    def _find_user_by_email(self, email: str) -> Optional[User]:
        lowered = email.lower()
        return next((u for u in self.users.values() if u.email.lower() == lowered), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.copy() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email)
            return user.copy() if user else None

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token == token),
                None,
            )
            return user.copy() if user else None

    def get_user_by_email_verify_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email_verify_token == token),
                None,
            )
            return user.copy() if user else None

    def list_users(self) -> List[User]:
        with self._data_lock:
            return [
                u.copy() for u in sorted(self.users.values(), key=lambda u: u.created_at)
            ]

    def list_users_by_role(self, role_name: str) -> List[User]:
        with self._data_lock:
            return [u.copy() for u in self.users.values() if role_name in u.roles]

    def list_users_by_right(self, authority: str) -> List[User]:
        with self._data_lock:
            granting = {
                name for name, role in self.roles.items() if authority in role.rights
            }
            return [u.copy() for u in self.users.values() if u.roles & granting]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    # roles
    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(name)
            return role.copy() if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [self.roles[name].copy() for name in sorted(self.roles)]

    def list_roles_by_right(self, authority: str) -> List[Role]:
        with self._data_lock:
            return [r.copy() for r in self.roles.values() if authority in r.rights]

    def save_role(self, role: Role) -> Role:
        with self._data_lock:
            missing = sorted(set(role.rights) - set(self.rights))
            if missing:
                raise ConstraintViolation("unknown rights", {"rights": missing})
            self.roles[role.name] = role.copy()
            self._persist_state()
            return role.copy()

    def delete_role(self, name: str) -> bool:
        with self._data_lock:
            if name not in self.roles:
                return False
            holders = [u.id for u in self.users.values() if name in u.roles]
            if holders:
                raise ConstraintViolation(
                    "role is referenced by users", {"role": name, "users": len(holders)}
                )
            self.roles.pop(name, None)
            self._persist_state()
            return True

    # rights
    def get_right(self, authority: str) -> Optional[Right]:
        with self._data_lock:
            right = self.rights.get(authority)
            return replace(right) if right else None

    def list_rights(self) -> List[Right]:
        with self._data_lock:
            return [replace(self.rights[key]) for key in sorted(self.rights)]

    def save_right(self, right: Right) -> Right:
        with self._data_lock:
            self.rights[right.authority] = replace(right)
            self._persist_state()
            return replace(right)

    def delete_right(self, authority: str) -> bool:
        with self._data_lock:
            if self.rights.pop(authority, None) is None:
                return False
            # mirrors ON DELETE CASCADE of the role/right join table
            for role in self.roles.values():
                role.rights.discard(authority)
            self._persist_state()
            return True

    # session tokens
    def create_session_token(self, token: SessionToken) -> SessionToken:
        with self._data_lock:
            if token.parent_token_id and token.parent_token_id not in self.session_tokens:
                raise ConstraintViolation(
                    "parent session token missing",
                    {"parent_token_id": token.parent_token_id},
                )
            self.session_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def get_session_token(self, token_id: str) -> Optional[SessionToken]:
        with self._data_lock:
            token = self.session_tokens.get(token_id)
            return replace(token) if token else None

    def lock_session_token(self, token_id: str) -> Optional[SessionToken]:
        # The caller's transaction() already holds the data lock.
        return self.get_session_token(token_id)

    def lock_admin_roles(self) -> None:
        # transaction() already serializes every writer on the data lock
        return None

    def save_session_token(self, token: SessionToken) -> SessionToken:
        with self._data_lock:
            if token.id not in self.session_tokens:
                raise ConstraintViolation("session token missing", {"token_id": token.id})
            self.session_tokens[token.id] = replace(token)
            self._persist_state()
            return replace(token)

    def list_session_tokens(
        self, username: str, token_type: SessionTokenType | None = None
    ) -> List[SessionToken]:
        lowered = username.lower()
        with self._data_lock:
            tokens = [
                replace(t)
                for t in self.session_tokens.values()
                if t.username.lower() == lowered
                and (token_type is None or t.type == token_type)
            ]
        return sorted(tokens, key=lambda t: t.issued_at)

    def list_access_tokens(self, parent_token_id: str) -> List[SessionToken]:
        with self._data_lock:
            return [
                replace(t)
                for t in self.session_tokens.values()
                if t.parent_token_id == parent_token_id
            ]

    def _drop_token_tree(self, token_id: str) -> int:
        removed = 0
        for child_id in [
            t.id for t in self.session_tokens.values() if t.parent_token_id == token_id
        ]:
            self.session_tokens.pop(child_id, None)
            removed += 1
        if self.session_tokens.pop(token_id, None) is not None:
            removed += 1
        return removed

    def delete_session_token(self, token_id: str) -> bool:
        with self._data_lock:
            if token_id not in self.session_tokens:
                return False
            self._drop_token_tree(token_id)
            self._persist_state()
            return True

    def delete_session_tokens_for_user(
        self, username: str, token_type: SessionTokenType | None = None
    ) -> int:
        lowered = username.lower()
        with self._data_lock:
            targets = [
                t
                for t in self.session_tokens.values()
                if t.username.lower() == lowered
                and (token_type is None or t.type == token_type)
            ]
            # children before parents
            targets.sort(key=lambda t: t.type != SessionTokenType.ACCESS)
            removed = 0
            for token in targets:
                removed += self._drop_token_tree(token.id)
            if removed:
                self._persist_state()
            return removed

    def delete_session_tokens_expired_before(self, instant: datetime) -> int:
        with self._data_lock:
            expired = [t.id for t in self.session_tokens.values() if t.expiration < instant]
            removed = 0
            for token_id in expired:
                removed += self._drop_token_tree(token_id)
            if removed:
                self._persist_state()
            return removed

    # api tokens
    def create_api_token(self, token: ApiToken) -> ApiToken:
        with self._data_lock:
            if token.id in self.api_tokens:
                raise ConstraintViolation("api token already exists", {"id": token.id})
            self.api_tokens[token.id] = replace(token, rights=set(token.rights))
            self._persist_state()
            return replace(token, rights=set(token.rights))

    def get_api_token(self, token_id: str) -> Optional[ApiToken]:
        with self._data_lock:
            token = self.api_tokens.get(token_id)
            return replace(token, rights=set(token.rights)) if token else None

    def save_api_token(self, token: ApiToken) -> ApiToken:
        with self._data_lock:
            if token.id not in self.api_tokens:
                raise ConstraintViolation("api token missing", {"id": token.id})
            self.api_tokens[token.id] = replace(token, rights=set(token.rights))
            self._persist_state()
            return replace(token, rights=set(token.rights))

    def list_api_tokens(self, linked_user: str) -> List[ApiToken]:
        lowered = linked_user.lower()
        with self._data_lock:
            tokens = [
                replace(t, rights=set(t.rights))
                for t in self.api_tokens.values()
                if t.linked_user.lower() == lowered
            ]
        return sorted(tokens, key=lambda t: t.created_at)

    def delete_api_token(self, token_id: str) -> bool:
        with self._data_lock:
            if self.api_tokens.pop(token_id, None) is None:
                return False
            self._persist_state()
            return True

    # snapshot
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "roles": [self._serialize_role(r) for r in self.roles.values()],
            "rights": [
                {"authority": r.authority, "description": r.description}
                for r in self.rights.values()
            ],
            "session_tokens": [
                self._serialize_session_token(t) for t in self.session_tokens.values()
            ],
            "api_tokens": [self._serialize_api_token(t) for t in self.api_tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.roles = {r["name"]: self._deserialize_role(r) for r in data.get("roles", [])}
        self.rights = {
            r["authority"]: Right(authority=r["authority"], description=r.get("description", ""))
            for r in data.get("rights", [])
        }
        self.session_tokens = {
            t["id"]: self._deserialize_session_token(t)
            for t in data.get("session_tokens", [])
        }
        self.api_tokens = {
            t["id"]: self._deserialize_api_token(t) for t in data.get("api_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            roles=len(self.roles),
            session_tokens=len(self.session_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "phone": user.phone,
            "mobile": user.mobile,
            "locale": user.locale,
            "source": user.source,
            "roles": sorted(user.roles),
            "nonce": user.nonce,
            "enabled": user.enabled,
            "login_disabled": user.login_disabled,
            "failed_login_attempts": user.failed_login_attempts,
            "password_hash": user.password_hash,
            "password_reset_token": user.password_reset_token,
            "password_reset_expires_at": self._serialize_datetime(
                user.password_reset_expires_at
            ),
            "pending_email": user.pending_email,
            "email_verify_token": user.email_verify_token,
            "email_verification_expires_at": self._serialize_datetime(
                user.email_verification_expires_at
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            phone=data.get("phone"),
            mobile=data.get("mobile"),
            locale=data.get("locale", "de"),
            source=data.get("source", "local"),
            roles=set(data.get("roles", [])),
            nonce=data.get("nonce"),
            enabled=data.get("enabled", True),
            login_disabled=data.get("login_disabled", False),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            password_hash=data.get("password_hash"),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires_at=self._deserialize_datetime(
                data.get("password_reset_expires_at")
            ),
            pending_email=data.get("pending_email"),
            email_verify_token=data.get("email_verify_token"),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_role(self, role: Role) -> dict:
        return {
            "name": role.name,
            "description": role.description,
            "rights": sorted(role.rights),
            "is_protected": role.is_protected,
            "is_default_role": role.is_default_role,
            "is_system_role": role.is_system_role,
        }

    def _deserialize_role(self, data: dict) -> Role:
        return Role(
            name=data["name"],
            description=data.get("description", ""),
            rights=set(data.get("rights", [])),
            is_protected=data.get("is_protected", False),
            is_default_role=data.get("is_default_role", False),
            is_system_role=data.get("is_system_role", False),
        )

    def _serialize_session_token(self, token: SessionToken) -> dict:
        return {
            "id": token.id,
            "username": token.username,
            "type": token.type.value,
            "key": token.key,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expiration": self._serialize_datetime(token.expiration),
            "user_agent": token.user_agent,
            "parent_token_id": token.parent_token_id,
        }

    def _deserialize_session_token(self, data: dict) -> SessionToken:
        return SessionToken(
            id=data["id"],
            username=data["username"],
            type=SessionTokenType(data["type"]),
            key=data["key"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expiration=self._deserialize_datetime(data["expiration"]),
            user_agent=data.get("user_agent"),
            parent_token_id=data.get("parent_token_id"),
        )

    def _serialize_api_token(self, token: ApiToken) -> dict:
        return {
            "id": token.id,
            "linked_user": token.linked_user,
            "description": token.description,
            "rights": sorted(token.rights),
            "valid_until": self._serialize_datetime(token.valid_until),
            "status": token.status.value,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_api_token(self, data: dict) -> ApiToken:
        return ApiToken(
            id=data["id"],
            linked_user=data["linked_user"],
            description=data.get("description", ""),
            rights=set(data.get("rights", [])),
            valid_until=self._deserialize_datetime(data["valid_until"]),
            status=ApiTokenStatus(data.get("status", ApiTokenStatus.ACTIVE.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
