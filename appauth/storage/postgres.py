from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from appauth.logging import get_logger
from appauth.storage.common import (
    deserialize_datetime,
    refresh_token_from_document,
    refresh_token_to_document,
    user_from_document,
    user_to_document,
)
from appauth.storage.errors import ConstraintViolation, StoreUnavailable
from appauth.storage.models import RefreshToken, User, normalize_email, utcnow

_TOKEN_FIELDS = {
    "email_verification": "email_verification_token_hash",
    "password_reset": "password_reset_token_hash",
}


class PostgresStore:
    """Postgres-backed document store.

    Each user is one JSONB document in ``app_users``; the email and provider
    identities are mirrored into indexed columns so uniqueness is enforced by
    the database rather than by a read-then-write check.
    """

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

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        try:
            with self._connect() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            if "provider" in constraint:
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider_ids"}
                ) from exc
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    doc JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CONSTRAINT app_users_email_key UNIQUE (email)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_provider_ids (
                    provider TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    user_id TEXT NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
                    CONSTRAINT user_provider_ids_provider_pkey PRIMARY KEY (provider, provider_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_tokens (
                    token_hash TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
                    expires_at TIMESTAMPTZ NOT NULL,
                    is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
                    doc JSONB NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS refresh_tokens_user_idx ON refresh_tokens (user_id)"
            )

    def verify_connection(self) -> bool:
        with self._transaction() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    # users -----------------------------------------------------------------
    def _write_provider_ids(self, conn: Any, user: User) -> None:
        conn.execute("DELETE FROM user_provider_ids WHERE user_id = %s", (user.id,))
        for provider, provider_id in user.provider_ids.items():
            conn.execute(
                """
                INSERT INTO user_provider_ids (provider, provider_id, user_id)
                VALUES (%s, %s, %s)
                """,
                (provider, provider_id, user.id),
            )

    def create_user(self, user: User) -> User:
        user.email = normalize_email(user.email)
        doc = user_to_document(user)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO app_users (id, email, doc, created_at, updated_at)
                VALUES (%s, %s, %s::jsonb, %s, %s)
                """,
                (user.id, user.email, json.dumps(doc), user.created_at, user.updated_at),
            )
            self._write_provider_ids(conn, user)
        return user_from_document(doc)

    def save_user(self, user: User) -> User:
        user.email = normalize_email(user.email)
        user.updated_at = utcnow()
        doc = user_to_document(user)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO app_users (id, email, doc, created_at, updated_at)
                VALUES (%s, %s, %s::jsonb, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET email = EXCLUDED.email, doc = EXCLUDED.doc, updated_at = EXCLUDED.updated_at
                """,
                (user.id, user.email, json.dumps(doc), user.created_at, user.updated_at),
            )
            self._write_provider_ids(conn, user)
        return user_from_document(doc)

    def _fetch_user(self, query: str, params: tuple) -> Optional[User]:
        with self._transaction() as conn:
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return user_from_document(self._as_dict(row["doc"]))

    @staticmethod
    def _as_dict(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, (str, bytes)):
            return json.loads(raw)
        return dict(raw)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("SELECT doc FROM app_users WHERE id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT doc FROM app_users WHERE email = %s", (normalize_email(email),)
        )

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return self._fetch_user(
            """
            SELECT u.doc FROM app_users u
            JOIN user_provider_ids p ON p.user_id = u.id
            WHERE p.provider = %s AND p.provider_id = %s
            """,
            (provider, provider_id),
        )

    def get_user_by_token_hash(self, kind: str, token_hash: str) -> Optional[User]:
        field_name = _TOKEN_FIELDS[kind]
        return self._fetch_user(
            f"SELECT doc FROM app_users WHERE doc->>'{field_name}' = %s",
            (token_hash,),
        )

    def list_users(
        self, app_identifier: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[User]:
        with self._transaction() as conn:
            if app_identifier:
                rows = conn.execute(
                    """
                    SELECT doc FROM app_users
                    WHERE doc->'app_registrations' @> %s::jsonb
                    ORDER BY created_at LIMIT %s OFFSET %s
                    """,
                    (json.dumps([{"app_identifier": app_identifier}]), limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT doc FROM app_users ORDER BY created_at LIMIT %s OFFSET %s",
                    (limit, offset),
                ).fetchall()
        return [user_from_document(self._as_dict(row["doc"])) for row in rows]

    def delete_user(self, user_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM app_users WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # refresh tokens --------------------------------------------------------
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        doc = refresh_token_to_document(token)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO refresh_tokens (token_hash, user_id, expires_at, is_revoked, doc)
                VALUES (%s, %s, %s, %s, %s::jsonb)
                ON CONFLICT (token_hash) DO UPDATE
                SET is_revoked = EXCLUDED.is_revoked, doc = EXCLUDED.doc
                """,
                (token.token_hash, token.user_id, token.expires_at, token.is_revoked, json.dumps(doc)),
            )
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT doc, is_revoked FROM refresh_tokens WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        token = refresh_token_from_document(self._as_dict(row["doc"]))
        token.is_revoked = bool(row["is_revoked"])
        return token

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE
                WHERE token_hash = %s AND is_revoked = FALSE
                """,
                (token_hash,),
            )
            return cur.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (user_id,),
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = deserialize_datetime(now) if now else utcnow()
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= %s", (cutoff,)
            )
            return cur.rowcount
