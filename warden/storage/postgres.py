from __future__ import annotations

import contextlib
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

# advisory lock id shared by all admin-affecting writes
ADMIN_LOCK_KEY = 0x77617264

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_right (
        authority TEXT PRIMARY KEY,
        description TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_role (
        name TEXT PRIMARY KEY,
        description TEXT NOT NULL DEFAULT '',
        is_protected BOOLEAN NOT NULL DEFAULT FALSE,
        is_default_role BOOLEAN NOT NULL DEFAULT FALSE,
        is_system_role BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_right (
        role_name TEXT NOT NULL REFERENCES app_role(name) ON DELETE CASCADE,
        authority TEXT NOT NULL REFERENCES app_right(authority) ON DELETE CASCADE,
        PRIMARY KEY (role_name, authority)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        phone TEXT,
        mobile TEXT,
        locale TEXT NOT NULL DEFAULT 'de',
        source TEXT NOT NULL DEFAULT 'local',
        nonce TEXT,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        login_disabled BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        password_hash TEXT,
        password_reset_token TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        pending_email TEXT,
        email_verify_token TEXT,
        email_verification_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role_name TEXT NOT NULL REFERENCES app_role(name),
        PRIMARY KEY (user_id, role_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_token (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        type TEXT NOT NULL,
        key TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expiration TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        parent_token_id TEXT REFERENCES session_token(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_token_username_idx ON session_token (lower(username))",
    "CREATE INDEX IF NOT EXISTS session_token_parent_idx ON session_token (parent_token_id)",
    """
    CREATE TABLE IF NOT EXISTS api_token (
        id TEXT PRIMARY KEY,
        linked_user TEXT NOT NULL,
        description TEXT NOT NULL,
        rights TEXT[] NOT NULL DEFAULT '{}',
        valid_until TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_USER_SELECT = """
    SELECT u.*,
           COALESCE(array_agg(ur.role_name) FILTER (WHERE ur.role_name IS NOT NULL), '{}') AS roles
    FROM app_user u
    LEFT JOIN user_role ur ON ur.user_id = u.id
"""

_ROLE_SELECT = """
    SELECT r.*,
           COALESCE(array_agg(rr.authority) FILTER (WHERE rr.authority IS NOT NULL), '{}') AS rights
    FROM app_role r
    LEFT JOIN role_right rr ON rr.role_name = r.name
"""


class PostgresStore:
    """Postgres-backed store for identities, roles, rights and issued tokens."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx = threading.local()
        self._ensure_schema()

    def _connect(self):
        conn = getattr(self._tx, "conn", None)
        if conn is not None:
            return contextlib.nullcontext(conn)
        return self.pool.connection()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run nested store calls on one connection, committing once at the end.

        Nested ``transaction()`` blocks join the outer one.
        """
        if getattr(self._tx, "conn", None) is not None:
            yield
            return
        with self.pool.connection() as conn:
            self._tx.conn = conn
            try:
                yield
            finally:
                self._tx.conn = None

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=len(_SCHEMA_STATEMENTS))

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, phone, mobile, locale, source,
                                          nonce, enabled, login_disabled, failed_login_attempts, password_hash,
                                          password_reset_token, password_reset_expires_at, pending_email, email_verify_token,
                                          email_verification_expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.first_name,
                        user.last_name,
                        user.phone,
                        user.mobile,
                        user.locale,
                        user.source,
                        user.nonce,
                        user.enabled,
                        user.login_disabled,
                        user.failed_login_attempts,
                        user.password_hash,
                        user.password_reset_token,
                        user.password_reset_expires_at,
                        user.pending_email,
                        user.email_verify_token,
                        user.email_verification_expires_at,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                self._write_user_roles(conn, user)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown roles", {"roles": sorted(user.roles)})
        return user.copy()

    def save_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, first_name = %s, last_name = %s, phone = %s, mobile = %s, locale = %s,
                        source = %s, nonce = %s, enabled = %s, login_disabled = %s, failed_login_attempts = %s,
                        password_hash = %s, password_reset_token = %s, password_reset_expires_at = %s,
                        pending_email = %s, email_verify_token = %s, email_verification_expires_at = %s,
                        updated_at = %s
                    WHERE id = %s
                    """,
                    (
                        user.email,
                        user.first_name,
                        user.last_name,
                        user.phone,
                        user.mobile,
                        user.locale,
                        user.source,
                        user.nonce,
                        user.enabled,
                        user.login_disabled,
                        user.failed_login_attempts,
                        user.password_hash,
                        user.password_reset_token,
                        user.password_reset_expires_at,
                        user.pending_email,
                        user.email_verify_token,
                        user.email_verification_expires_at,
                        user.updated_at,
                        user.id,
                    ),
                )
                if result.rowcount == 0:
                    raise ConstraintViolation("user does not exist", {"user_id": user.id})
                conn.execute("DELETE FROM user_role WHERE user_id = %s", (user.id,))
                self._write_user_roles(conn, user)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown roles", {"roles": sorted(user.roles)})
        return user.copy()

    @staticmethod
    def _write_user_roles(conn, user: User) -> None:
        if not user.roles:
            return
        with conn.cursor() as cur:
            cur.executemany(
                "INSERT INTO user_role (user_id, role_name) VALUES (%s, %s)",
                [(user.id, name) for name in sorted(user.roles)],
            )

    def _select_users(self, where: str = "", params: tuple = ()) -> List[User]:
        query = f"{_USER_SELECT} {where} GROUP BY u.id ORDER BY u.created_at"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._user_from_row(row) for row in rows]

    def get_user(self, user_id: str) -> Optional[User]:
        users = self._select_users("WHERE u.id = %s", (user_id,))
        return users[0] if users else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        users = self._select_users("WHERE lower(u.email) = lower(%s)", (email,))
        return users[0] if users else None

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        users = self._select_users("WHERE u.password_reset_token = %s", (token,))
        return users[0] if users else None

    def get_user_by_email_verify_token(self, token: str) -> Optional[User]:
        users = self._select_users("WHERE u.email_verify_token = %s", (token,))
        return users[0] if users else None

    def list_users(self) -> List[User]:
        return self._select_users()

    def list_users_by_role(self, role_name: str) -> List[User]:
        return self._select_users(
            "WHERE u.id IN (SELECT user_id FROM user_role WHERE role_name = %s)",
            (role_name,),
        )

    def list_users_by_right(self, authority: str) -> List[User]:
        return self._select_users(
            """
            WHERE u.id IN (
                SELECT ur.user_id FROM user_role ur
                JOIN role_right rr ON rr.role_name = ur.role_name
                WHERE rr.authority = %s
            )
            """,
            (authority,),
        )

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # roles
    def _select_roles(self, where: str = "", params: tuple = ()) -> List[Role]:
        query = f"{_ROLE_SELECT} {where} GROUP BY r.name ORDER BY r.name"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._role_from_row(row) for row in rows]

    def get_role(self, name: str) -> Optional[Role]:
        roles = self._select_roles("WHERE r.name = %s", (name,))
        return roles[0] if roles else None

    def list_roles(self) -> List[Role]:
        return self._select_roles()

    def list_roles_by_right(self, authority: str) -> List[Role]:
        return self._select_roles(
            "WHERE r.name IN (SELECT role_name FROM role_right WHERE authority = %s)",
            (authority,),
        )

    def save_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_role (name, description, is_protected, is_default_role, is_system_role)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (name) DO UPDATE SET
                        description = EXCLUDED.description,
                        is_protected = EXCLUDED.is_protected,
                        is_default_role = EXCLUDED.is_default_role,
                        is_system_role = EXCLUDED.is_system_role
                    """,
                    (
                        role.name,
                        role.description,
                        role.is_protected,
                        role.is_default_role,
                        role.is_system_role,
                    ),
                )
                conn.execute("DELETE FROM role_right WHERE role_name = %s", (role.name,))
                if role.rights:
                    with conn.cursor() as cur:
                        cur.executemany(
                            "INSERT INTO role_right (role_name, authority) VALUES (%s, %s)",
                            [(role.name, authority) for authority in sorted(role.rights)],
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("unknown rights", {"rights": sorted(role.rights)})
        return role.copy()

    def delete_role(self, name: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute("DELETE FROM app_role WHERE name = %s", (name,))
                return result.rowcount > 0
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role is referenced by users", {"role": name})

    # rights
    def get_right(self, authority: str) -> Optional[Right]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_right WHERE authority = %s", (authority,)
            ).fetchone()
        if not row:
            return None
        return Right(authority=row["authority"], description=row.get("description") or "")

    def list_rights(self) -> List[Right]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM app_right ORDER BY authority").fetchall()
        return [
            Right(authority=row["authority"], description=row.get("description") or "")
            for row in rows
        ]

    def save_right(self, right: Right) -> Right:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO app_right (authority, description) VALUES (%s, %s)
                ON CONFLICT (authority) DO UPDATE SET description = EXCLUDED.description
                """,
                (right.authority, right.description),
            )
        return Right(authority=right.authority, description=right.description)

    def delete_right(self, authority: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_right WHERE authority = %s", (authority,))
            return result.rowcount > 0

    # session tokens
    def create_session_token(self, token: SessionToken) -> SessionToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO session_token (id, username, type, key, issued_at, expiration, user_agent, parent_token_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.username,
                        token.type.value,
                        token.key,
                        token.issued_at,
                        token.expiration,
                        token.user_agent,
                        token.parent_token_id,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "parent session token missing", {"parent_token_id": token.parent_token_id}
            )
        return token

    def get_session_token(self, token_id: str) -> Optional[SessionToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._session_token_from_row(row) if row else None

    def lock_session_token(self, token_id: str) -> Optional[SessionToken]:
        """Row-lock a token until the surrounding ``transaction()`` ends."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_token WHERE id = %s FOR UPDATE", (token_id,)
            ).fetchone()
        return self._session_token_from_row(row) if row else None

    def lock_admin_roles(self) -> None:
        """Serialize writes that can change who is an administrator.

        Takes a transaction-scoped advisory lock, so it must run inside
        ``transaction()``; it is released at commit or rollback.
        """
        with self._connect() as conn:
            conn.execute("SELECT pg_advisory_xact_lock(%s)", (ADMIN_LOCK_KEY,))

    def save_session_token(self, token: SessionToken) -> SessionToken:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE session_token SET expiration = %s, user_agent = %s WHERE id = %s",
                (token.expiration, token.user_agent, token.id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("session token missing", {"token_id": token.id})
        return token

    def list_session_tokens(
        self, username: str, token_type: SessionTokenType | None = None
    ) -> List[SessionToken]:
        query = "SELECT * FROM session_token WHERE lower(username) = lower(%s)"
        params: tuple[Any, ...] = (username,)
        if token_type is not None:
            query += " AND type = %s"
            params += (token_type.value,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY issued_at", params).fetchall()
        return [self._session_token_from_row(row) for row in rows]

    def list_access_tokens(self, parent_token_id: str) -> List[SessionToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM session_token WHERE parent_token_id = %s ORDER BY issued_at",
                (parent_token_id,),
            ).fetchall()
        return [self._session_token_from_row(row) for row in rows]

    def delete_session_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM session_token WHERE id = %s", (token_id,))
            return result.rowcount > 0

    def delete_session_tokens_for_user(
        self, username: str, token_type: SessionTokenType | None = None
    ) -> int:
        query = "DELETE FROM session_token WHERE lower(username) = lower(%s)"
        params: tuple[Any, ...] = (username,)
        if token_type is not None:
            query += " AND type = %s"
            params += (token_type.value,)
        with self._connect() as conn:
            return conn.execute(query, params).rowcount

    def delete_session_tokens_expired_before(self, instant: datetime) -> int:
        with self._connect() as conn:
            return conn.execute(
                "DELETE FROM session_token WHERE expiration < %s", (instant,)
            ).rowcount

    # api tokens
    def create_api_token(self, token: ApiToken) -> ApiToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_token (id, linked_user, description, rights, valid_until, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.linked_user,
                        token.description,
                        sorted(token.rights),
                        token.valid_until,
                        token.status.value,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("api token already exists", {"id": token.id})
        return token

    def get_api_token(self, token_id: str) -> Optional[ApiToken]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_token WHERE id = %s", (token_id,)).fetchone()
        return self._api_token_from_row(row) if row else None

    def save_api_token(self, token: ApiToken) -> ApiToken:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE api_token SET status = %s, valid_until = %s WHERE id = %s",
                (token.status.value, token.valid_until, token.id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("api token missing", {"id": token.id})
        return token

    def list_api_tokens(self, linked_user: str) -> List[ApiToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_token WHERE lower(linked_user) = lower(%s) ORDER BY created_at",
                (linked_user,),
            ).fetchall()
        return [self._api_token_from_row(row) for row in rows]

    def delete_api_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM api_token WHERE id = %s", (token_id,))
            return result.rowcount > 0

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone"),
            mobile=row.get("mobile"),
            locale=row.get("locale") or "de",
            source=row.get("source") or "local",
            roles=set(row.get("roles") or []),
            nonce=row.get("nonce"),
            enabled=row.get("enabled", True),
            login_disabled=row.get("login_disabled", False),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            password_hash=row.get("password_hash"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            pending_email=row.get("pending_email"),
            email_verify_token=row.get("email_verify_token"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(
            name=row["name"],
            description=row.get("description") or "",
            rights=set(row.get("rights") or []),
            is_protected=row.get("is_protected", False),
            is_default_role=row.get("is_default_role", False),
            is_system_role=row.get("is_system_role", False),
        )

    @staticmethod
    def _session_token_from_row(row: dict) -> SessionToken:
        parent = row.get("parent_token_id")
        return SessionToken(
            id=str(row["id"]),
            username=row["username"],
            type=SessionTokenType(row["type"]),
            key=row["key"],
            issued_at=row["issued_at"],
            expiration=row["expiration"],
            user_agent=row.get("user_agent"),
            parent_token_id=str(parent) if parent else None,
        )

    @staticmethod
    def _api_token_from_row(row: dict) -> ApiToken:
        return ApiToken(
            id=str(row["id"]),
            linked_user=row["linked_user"],
            description=row["description"],
            rights=set(row.get("rights") or []),
            valid_until=row["valid_until"],
            status=ApiTokenStatus(row.get("status") or ApiTokenStatus.ACTIVE.value),
            created_at=row["created_at"],
        )
