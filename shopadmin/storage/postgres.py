from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from shopadmin.logging import get_logger
from shopadmin.storage.errors import ConstraintViolation, StoreOperationError
from shopadmin.storage.models import RefreshTokenRecord, User, utcnow


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'customer',
        full_name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        jti TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)


class PostgresStore:
    """Postgres-backed durable store for users, credentials and refresh tokens."""

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "postgres") -> Iterator:
        # Connectivity failures surface as StoreOperationError; constraint
        # violations propagate so callers can translate them.
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_operation_failed", operation=operation, error=str(exc))
            raise StoreOperationError(operation, exc) from exc

    def _ensure_schema(self) -> None:
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "customer"),
            full_name=row.get("full_name"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            meta=row.get("meta") or {},
        )

    @staticmethod
    def _refresh_from_row(row: Dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            jti=row["jti"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "customer",
        full_name: Optional[str] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        normalized_meta = dict(meta) if meta else {}
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, full_name, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING created_at
                    """,
                    (user_id, normalized, role, full_name, is_active, Jsonb(normalized_meta)),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=normalized,
            role=role,
            full_name=full_name,
            is_active=is_active,
            created_at=row["created_at"] if row else utcnow(),
            meta=normalized_meta,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect("get_user") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect("update_user_role") as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect("save_password") as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # refresh tokens
    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        try:
            with self._connect("save_refresh_token") as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, user_id, jti, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.token_hash,
                        record.user_id,
                        record.jti,
                        record.expires_at,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already stored", {"jti": record.jti})

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect("get_refresh_token") as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        """Mark a token revoked. Returns True only for the call that revoked it."""
        with self._connect("revoke_refresh_token") as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = now()
                WHERE token_hash = %s AND revoked_at IS NULL
                RETURNING token_hash
                """,
                (token_hash,),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect("revoke_user_refresh_tokens") as conn:
            cur = conn.execute(
                "UPDATE refresh_token SET revoked_at = now() WHERE user_id = %s AND revoked_at IS NULL",
                (user_id,),
            )
            return cur.rowcount or 0

    def list_refresh_tokens(
        self, user_id: str, *, active_only: bool = True
    ) -> List[RefreshTokenRecord]:
        query = "SELECT * FROM refresh_token WHERE user_id = %s"
        if active_only:
            query += " AND revoked_at IS NULL AND expires_at > now()"
        query += " ORDER BY created_at DESC"
        with self._connect("list_refresh_tokens") as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect("purge_expired_refresh_tokens") as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s OR revoked_at IS NOT NULL",
                (now,),
            )
            purged = cur.rowcount or 0
        if purged:
            self.logger.debug("refresh_tokens_purged", purged=purged)
        return purged
