from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import normalize_email
from tokenwarden.storage.errors import ConstraintViolation, RecordNotFound, StoreError
from tokenwarden.storage.models import User

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    reset_token TEXT,
    reset_token_expires TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class PostgresStore:
    """Postgres-backed credential store on a psycopg connection pool."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate driver failures into StoreError."""
        try:
            yield
        except errors.Error as exc:
            self.logger.error("credential_store_failed", operation=operation, error=str(exc))
            raise StoreError(f"{operation} failed") from exc

    def _ensure_schema(self) -> None:
        """Create the ``users`` table if it is missing."""

        with self._guard("ensure_schema"):
            with self._connect() as conn:
                conn.execute(_SCHEMA)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS users_reset_token_idx ON users (reset_token)"
                )

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> User:
        now = datetime.now(timezone.utc)
        return User(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row["email"],
            password_hash=row["password_hash"],
            reset_token=row.get("reset_token"),
            reset_token_expiry=row.get("reset_token_expires"),
            created_at=row.get("created_at") or now,
            updated_at=row.get("updated_at") or now,
        )

    # users
    def create_user(self, name: str, email: str, password_hash: str) -> User:
        user_id = str(uuid.uuid4())
        email = normalize_email(email)
        now = datetime.now(timezone.utc)
        with self._guard("create_user"):
            try:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO users (id, name, email, password_hash, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (user_id, name, email, password_hash, now, now),
                    )
            except errors.UniqueViolation as exc:
                raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return User(
            id=user_id,
            name=name,
            email=email,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._guard("get_user_by_email"):
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM users WHERE email = %s", (normalize_email(email),)
                ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._guard("get_user"):
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM users WHERE id = %s", (user_id,)
                ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    # password reset
    def save_reset_token(self, email: str, token: str, expiry: datetime) -> None:
        with self._guard("save_reset_token"):
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE users
                    SET reset_token = %s, reset_token_expires = %s, updated_at = now()
                    WHERE email = %s
                    """,
                    (token, expiry, normalize_email(email)),
                )
                updated = cur.rowcount
        if not updated:
            raise RecordNotFound("user not found", {"field": "email"})

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._guard("get_user_by_reset_token"):
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM users WHERE reset_token = %s AND reset_token_expires > now()",
                    (token,),
                ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._guard("update_password"):
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE users
                    SET password_hash = %s,
                        reset_token = NULL,
                        reset_token_expires = NULL,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (password_hash, user_id),
                )
                updated = cur.rowcount
        if not updated:
            raise RecordNotFound("user not found", {"user_id": user_id})
