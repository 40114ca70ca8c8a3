from __future__ import annotations

import threading
from typing import Any, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from rentease.logging import get_logger, redact_email
from rentease.storage.errors import ConstraintViolation
from rentease.storage.models import PROFILE_FIELDS, UPDATABLE_FIELDS, User

_USER_COLUMNS = (
    "id",
    "email",
    "password_hash",
    "role",
    "is_verified",
    "is_disabled",
    "has_seen_onboarding",
    "last_login",
    "last_password_change",
    "created_at",
    *PROFILE_FIELDS,
)


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._pool_kwargs = {"min_size": min_size, "max_size": max_size}
        self._pool_lock = threading.Lock()
        self.pool = self._build_pool()
        self._ensure_user_table()

    def _build_pool(self) -> ConnectionPool:
        return ConnectionPool(
            self.dsn,
            kwargs={"row_factory": dict_row, "autocommit": False},
            **self._pool_kwargs,
        )

    def _connect(self):
        return self.pool.connection()

    def reset_connection(self) -> None:
        """Drop every pooled connection and start a fresh pool.

        Used after transient errors such as a pooler handing back a backend
        that still holds another client's prepared statement.
        """
        with self._pool_lock:
            old_pool = self.pool
            self.pool = self._build_pool()
        try:
            old_pool.close()
        except Exception as exc:
            self.logger.warning("postgres_pool_close_failed", error=str(exc))
        self.logger.info("postgres_pool_reset")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _ensure_user_table(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL CHECK (role IN ('LANDLORD', 'TENANT', 'ADMIN')),
                    is_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    is_disabled BOOLEAN NOT NULL DEFAULT FALSE,
                    has_seen_onboarding BOOLEAN NOT NULL DEFAULT FALSE,
                    last_login TIMESTAMPTZ,
                    last_password_change TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    first_name TEXT,
                    middle_name TEXT,
                    last_name TEXT,
                    avatar_url TEXT,
                    birthdate TIMESTAMPTZ,
                    gender TEXT,
                    bio TEXT,
                    phone_number TEXT,
                    messenger_url TEXT,
                    facebook_url TEXT,
                    whatsapp_url TEXT
                )
                """
            )

    @staticmethod
    def _row_to_user(row: dict) -> User:
        values = {name: row.get(name) for name in _USER_COLUMNS}
        values["id"] = str(row["id"])
        for flag in ("is_verified", "is_disabled", "has_seen_onboarding"):
            values[flag] = bool(values[flag])
        if values["created_at"] is None:
            values.pop("created_at")
        return User(**values)

    # users
    def create(self, email: str, password_hash: str, role: str) -> User:
        user = User.new(email, password_hash, role)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, role, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user.id, user.email, user.password_hash, user.role, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        self.logger.info("user_created", user_id=user.id, email=redact_email(email))
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_by_id(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.find_by_id(user_id)
        names = sorted(fields)
        query = sql.SQL("UPDATE app_user SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(name)) for name in names
            )
        )
        params = [fields[name] for name in names] + [user_id]
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def list_users(self, limit: int = 100, role: Optional[str] = None) -> List[User]:
        with self._connect() as conn:
            if role is None:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE role = %s ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
        return [self._row_to_user(row) for row in rows]
