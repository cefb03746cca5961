from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import KeyPurpose, SigningKey, User, UserStatus

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'unverified',
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signing_key (
        id UUID PRIMARY KEY,
        purpose TEXT NOT NULL,
        encrypted_private_key BYTEA NOT NULL,
        public_key TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS signing_key_purpose_created_idx
        ON signing_key (purpose, created_at DESC)
    """,
)


class PostgresStore:
    """Postgres-backed user and signing-key persistence."""

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

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=["app_user", "user_credential", "signing_key"])

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _aware(value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _row_to_user(self, row: dict[str, Any]) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            role=row.get("role", "user"),
            status=UserStatus(row.get("status", UserStatus.UNVERIFIED.value)),
            created_at=self._aware(row["created_at"]),
            deleted_at=self._aware(row.get("deleted_at")),
            meta=meta,
        )

    def _row_to_key(self, row: dict[str, Any]) -> SigningKey:
        return SigningKey(
            id=str(row["id"]),
            purpose=KeyPurpose(row["purpose"]),
            encrypted_private_key=bytes(row["encrypted_private_key"]),
            public_key=row["public_key"],
            is_active=row["is_active"],
            created_at=self._aware(row["created_at"]),
            deleted_at=self._aware(row.get("deleted_at")),
        )

    # user / auth
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: str = "user",
        status: UserStatus = UserStatus.UNVERIFIED,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, role, status, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        name,
                        role,
                        UserStatus(status).value,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s AND deleted_at IS NULL",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s AND deleted_at IS NULL",
                (email,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_active_user(self, email: str, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE id = %s AND email = %s AND status = %s AND deleted_at IS NULL
                """,
                (user_id, email, UserStatus.ACTIVE.value),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET status = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (UserStatus(status).value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def soft_delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET deleted_at = now() WHERE id = %s AND deleted_at IS NULL",
                (user_id,),
            )
            return cur.rowcount > 0

    def restore_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET deleted_at = NULL WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # signing keys
    def create_signing_key(
        self,
        purpose: KeyPurpose,
        encrypted_private_key: bytes,
        public_key: str,
    ) -> SigningKey:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO signing_key (id, purpose, encrypted_private_key, public_key)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    KeyPurpose(purpose).value,
                    bytes(encrypted_private_key),
                    public_key,
                ),
            ).fetchone()
        return self._row_to_key(row)

    def get_signing_key(self, key_id: str) -> Optional[SigningKey]:
        try:
            uuid.UUID(str(key_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM signing_key WHERE id = %s", (key_id,)
            ).fetchone()
        return self._row_to_key(row) if row else None

    def get_latest_active_key(self, purpose: KeyPurpose) -> Optional[SigningKey]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM signing_key
                WHERE purpose = %s AND is_active AND deleted_at IS NULL
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (KeyPurpose(purpose).value,),
            ).fetchone()
        return self._row_to_key(row) if row else None

    def list_signing_keys(self, purpose: Optional[KeyPurpose] = None) -> List[SigningKey]:
        with self._connect() as conn:
            if purpose is None:
                rows = conn.execute(
                    "SELECT * FROM signing_key ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM signing_key WHERE purpose = %s ORDER BY created_at",
                    (KeyPurpose(purpose).value,),
                ).fetchall()
        return [self._row_to_key(row) for row in rows]

    def deactivate_signing_key(self, key_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE signing_key SET is_active = FALSE WHERE id = %s", (key_id,)
            )
            return cur.rowcount > 0

    def soft_delete_signing_key(self, key_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE signing_key SET deleted_at = now() WHERE id = %s AND deleted_at IS NULL",
                (key_id,),
            )
            return cur.rowcount > 0

    def delete_signing_keys_before(
        self, purpose: KeyPurpose, cutoff: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM signing_key WHERE purpose = %s AND created_at < %s",
                (KeyPurpose(purpose).value, cutoff),
            )
            return cur.rowcount
