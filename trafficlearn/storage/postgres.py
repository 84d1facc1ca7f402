from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from trafficlearn.logging import get_logger
from trafficlearn.storage.common import as_date, normalize_email, user_from_row
from trafficlearn.storage.errors import ConstraintViolation
from trafficlearn.storage.models import RememberMeToken, Role, UserRecord, UserStatus


class PostgresStore:
    """Postgres-backed user, subscription and remember-me credential store.

    The ``users`` and ``subscriptions`` tables belong to the wider platform;
    only ``remember_me_token`` is owned (and created) here.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_remember_me_table()
        self._verify_required_schema()
        self.logger.info("postgres_store_initialized", max_pool_size=10)

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_remember_me_table(self) -> None:
        """Create the ``remember_me_token`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS remember_me_token (
                    id UUID PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    token_hash CHAR(64) NOT NULL,
                    issued_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    expires_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS remember_me_token_user_idx
                ON remember_me_token (user_id, token_hash)
                """
            )

    def _verify_required_schema(self) -> None:
        """Ensure the platform tables this core reads from exist."""

        required_tables = ["users", "subscriptions", "remember_me_token"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        role: Role | str = Role.LEARNER,
        *,
        first_name: str = "",
        last_name: str = "",
        status: UserStatus | str = UserStatus.ACTIVE,
        language_preference: Optional[str] = None,
    ) -> UserRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (email, password, user_type, status, first_name, last_name, language_preference)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        normalize_email(email),
                        password_hash,
                        Role(role).value,
                        UserStatus(status).value,
                        first_name,
                        last_name,
                        language_preference,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return user_from_row(row)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        if not row:
            return None
        return user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = %s LIMIT 1",
                (normalize_email(email),),
            ).fetchone()
        if not row:
            return None
        return user_from_row(row)

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )

    def update_user_role(self, user_id: int, role: Role | str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET user_type = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        if not row:
            return None
        return user_from_row(row)

    def set_user_status(self, user_id: int, status: UserStatus | str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserStatus(status).value, user_id),
            ).fetchone()
        if not row:
            return None
        return user_from_row(row)

    # subscriptions
    def has_active_subscription(self, user_id: int, as_of: datetime | date) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM subscriptions
                WHERE user_id = %s AND status = 'active' AND end_date >= %s
                """,
                (user_id, as_date(as_of)),
            ).fetchone()
        return bool(row and row["count"] > 0)

    # remember-me credentials
    def save_remember_token(self, token: RememberMeToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO remember_me_token (id, user_id, token_hash, issued_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.user_id, token.token_hash, token.issued_at, token.expires_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user does not exist", {"user_id": token.user_id}
            ) from exc

    def get_remember_token(self, user_id: int, token_hash: str) -> Optional[RememberMeToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, token_hash, issued_at, expires_at FROM remember_me_token
                WHERE user_id = %s AND token_hash = %s
                LIMIT 1
                """,
                (user_id, token_hash),
            ).fetchone()
        if not row:
            return None
        return RememberMeToken(
            id=str(row["id"]),
            user_id=int(row["user_id"]),
            token_hash=str(row["token_hash"]).strip(),
            issued_at=_aware(row["issued_at"]),
            expires_at=_aware(row["expires_at"]),
        )

    def delete_remember_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM remember_me_token WHERE id = %s", (token_id,))
            return cur.rowcount > 0

    def delete_remember_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM remember_me_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def purge_expired_remember_tokens(self, user_id: int, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM remember_me_token WHERE user_id = %s AND expires_at <= %s",
                (user_id, now),
            )
            return cur.rowcount


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
