from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailableError
from authcore.storage.models import (
    ProfileUpdate,
    TokenType,
    User,
    VerificationToken,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'Customer',
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        name TEXT,
        phone TEXT,
        address TEXT,
        lat DOUBLE PRECISION,
        lng DOUBLE PRECISION,
        photo_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_tokens (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        token_type TEXT NOT NULL,
        new_email TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS verification_tokens_user_idx ON verification_tokens (user_id)",
)


class PostgresStore:
    """User records and verification tokens persisted in Postgres."""

    def __init__(self, dsn: str, *, pool_timeout: float = 10.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=pool_timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "postgres") -> Iterator[Any]:
        """Yield a pooled connection; outages and pool timeouts become StoreUnavailableError."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.error("postgres_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailableError(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect("ping") as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or "Customer",
            is_verified=bool(row.get("is_verified")),
            name=row.get("name"),
            phone=row.get("phone"),
            address=row.get("address"),
            lat=row.get("lat"),
            lng=row.get("lng"),
            photo_url=row.get("photo_url"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> VerificationToken:
        return VerificationToken(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token=row["token"],
            token_type=TokenType(row["token_type"]),
            new_email=row.get("new_email"),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND is_verified = TRUE",
                (email,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email_including_unverified(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email_including_unverified") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._connect("get_user_by_id") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: str = "Customer",
        is_verified: bool = False,
        name: Optional[str] = None,
    ) -> User:
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, password_hash, role, is_verified, name)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, password_hash, role, is_verified, name),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def _update_user(self, user_id: int, assignments: str, params: tuple) -> bool:
        with self._connect("update_user") as conn:
            cur = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s",
                (*params, user_id),
            )
            return cur.rowcount > 0

    def update_verification_status(self, user_id: int, is_verified: bool) -> bool:
        return self._update_user(user_id, "is_verified = %s", (is_verified,))

    def update_password(self, user_id: int, password_hash: str) -> bool:
        return self._update_user(user_id, "password_hash = %s", (password_hash,))

    def update_user_role(self, user_id: int, role: str) -> bool:
        return self._update_user(user_id, "role = %s", (role,))

    def update_email(self, user_id: int, email: str) -> bool:
        try:
            return self._update_user(user_id, "email = %s", (email,))
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def update_profile(self, user_id: int, profile: ProfileUpdate) -> Optional[User]:
        try:
            with self._connect("update_profile") as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET name = %s, email = COALESCE(%s, email), phone = %s, address = %s,
                        lat = %s, lng = %s, photo_url = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        profile.name,
                        profile.email,
                        profile.phone,
                        profile.address,
                        profile.lat,
                        profile.lng,
                        profile.photo_url,
                        user_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    # verification tokens
    def create_verification_token(
        self,
        user_id: int,
        token: str,
        token_type: TokenType,
        expires_at: datetime,
        *,
        new_email: Optional[str] = None,
    ) -> VerificationToken:
        try:
            with self._connect("create_verification_token") as conn:
                row = conn.execute(
                    """
                    INSERT INTO verification_tokens (user_id, token, token_type, new_email, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token, TokenType(token_type).value, new_email, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return self._token_from_row(row)

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        """Return the unexpired token row, or None; expired rows are left untouched."""
        with self._connect("get_verification_token") as conn:
            row = conn.execute(
                "SELECT * FROM verification_tokens WHERE token = %s AND expires_at > now()",
                (token,),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_verification_token(self, token: str) -> bool:
        with self._connect("delete_verification_token") as conn:
            cur = conn.execute(
                "DELETE FROM verification_tokens WHERE token = %s", (token,)
            )
            return cur.rowcount > 0
