from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from llmhub.logging import get_logger
from llmhub.storage.errors import ConstraintViolation
from llmhub.storage.models import AuthToken, TokenPurpose, User, utcnow


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        email TEXT NOT NULL,
        purpose TEXT NOT NULL,
        token TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (email, purpose)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_token_value_idx ON auth_token (token, purpose)",
)


class PostgresStore:
    """Postgres-backed credential and token store."""

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
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user and token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Mapping[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row["email"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            email_verified=bool(row.get("email_verified", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_token(row: Mapping[str, Any]) -> AuthToken:
        return AuthToken(
            email=row["email"],
            purpose=TokenPurpose(row["purpose"]),
            token=row["token"],
            updated_at=row["updated_at"],
        )

    # users
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, name, email, password_hash, password_algo)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, name, email, password_hash, password_algo),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE, updated_at = now()
                WHERE email = %s
                RETURNING *
                """,
                (email,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password(
        self, email: str, password_hash: str, password_algo: str = "argon2id"
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE email = %s
                RETURNING *
                """,
                (password_hash, password_algo, email),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, *, name: Optional[str] = None) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET name = COALESCE(%s, name), updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (name, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING *", (user_id,)
            ).fetchone()
            if not row:
                return None
            conn.execute("DELETE FROM auth_token WHERE email = %s", (row["email"],))
        return self._row_to_user(row)

    # tokens
    def get_token_for_email(self, email: str, purpose: TokenPurpose) -> Optional[AuthToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE email = %s AND purpose = %s",
                (email, TokenPurpose(purpose).value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def get_token_by_value(self, token: str, purpose: TokenPurpose) -> Optional[AuthToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE token = %s AND purpose = %s",
                (token, TokenPurpose(purpose).value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def upsert_token(
        self,
        email: str,
        purpose: TokenPurpose,
        token: str,
        now: Optional[datetime] = None,
    ) -> AuthToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_token (email, purpose, token, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (email, purpose) DO UPDATE
                SET token = EXCLUDED.token,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (email, TokenPurpose(purpose).value, token, now or utcnow()),
            ).fetchone()
        return self._row_to_token(row)

    def consume_token(self, token: str, purpose: TokenPurpose) -> Optional[AuthToken]:
        """Delete and return a token in a single statement."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_token WHERE token = %s AND purpose = %s RETURNING *",
                (token, TokenPurpose(purpose).value),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete_token(self, token: str, purpose: TokenPurpose) -> bool:
        return self.consume_token(token, purpose) is not None

    def delete_tokens_for_email(self, email: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_token WHERE email = %s", (email,))
            return cur.rowcount or 0
