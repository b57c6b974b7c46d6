from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from chatauth.logging import get_logger
from chatauth.storage.errors import ConstraintViolation, StoreUnavailable
from chatauth.storage.models import UserCredential, UserStatus

_LAST_SEEN_FORMAT = "%Y-%m-%d %H:%M:%S"

_REQUIRED_COLUMNS = {
    "id",
    "email",
    "password",
    "full_name",
    "access_token",
    "refresh_token",
    "one_time_password_token",
    "status",
    "last_seen",
    "is_active",
    "is_logged_out",
    "created_at",
    "updated_at",
}


class PostgresStore:
    """Credential store backed by the ``users`` table.

    Token mutations are single ``UPDATE`` statements; rotation and one-time
    token consumption carry the previously stored value in their ``WHERE``
    clause so concurrent writers cannot both succeed.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 5.0,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        if verify_schema:
            self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("credential store unavailable") from exc

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure the ``users`` table carries every column the core writes."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT column_name
                FROM information_schema.columns
                WHERE table_schema = 'public' AND table_name = 'users'
                """
            ).fetchall()
        present = {row["column_name"] for row in rows}
        missing = sorted(_REQUIRED_COLUMNS - present)
        if missing:
            raise RuntimeError(
                "users table is missing columns: {}".format(", ".join(missing))
            )

    @staticmethod
    def _parse_last_seen(raw: Any) -> Optional[datetime]:
        if raw is None or isinstance(raw, datetime):
            return raw
        try:
            return datetime.strptime(str(raw), _LAST_SEEN_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return None

    def _row_to_user(self, row: Dict[str, Any]) -> UserCredential:
        status_raw = row.get("status") or UserStatus.OFFLINE.value
        try:
            status = UserStatus(status_raw)
        except ValueError:
            status = UserStatus.OFFLINE
        return UserCredential(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password"],
            full_name=row.get("full_name") or "",
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            one_time_password_token=row.get("one_time_password_token"),
            is_logged_out=bool(row.get("is_logged_out", False)),
            is_active=bool(row.get("is_active", True)),
            status=status,
            last_seen=self._parse_last_seen(row.get("last_seen")),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    def create_user(
        self, email: str, password_hash: str, full_name: str = ""
    ) -> UserCredential:
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (email, password, full_name)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (normalized, password_hash, full_name),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET password = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s",
                (is_active, user_id),
            )
            return result.rowcount > 0

    # token state
    def store_token_pair(self, user_id: str, access_token: str, refresh_token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET access_token = %s,
                    refresh_token = %s,
                    is_logged_out = FALSE,
                    status = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (access_token, refresh_token, UserStatus.ONLINE.value, user_id),
            )
            return result.rowcount > 0

    def rotate_token_pair(
        self,
        user_id: str,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET access_token = %s,
                    refresh_token = %s,
                    updated_at = now()
                WHERE id = %s
                  AND refresh_token = %s
                  AND is_logged_out = FALSE
                  AND is_active = TRUE
                """,
                (access_token, refresh_token, user_id, expected_refresh_token),
            )
            return result.rowcount == 1

    def mark_logged_out(self, user_id: str) -> bool:
        last_seen = datetime.now(timezone.utc).strftime(_LAST_SEEN_FORMAT)
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET access_token = NULL,
                    refresh_token = NULL,
                    one_time_password_token = NULL,
                    is_logged_out = TRUE,
                    status = %s,
                    last_seen = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (UserStatus.OFFLINE.value, last_seen, user_id),
            )
            return result.rowcount > 0

    def set_one_time_password(self, user_id: str, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET one_time_password_token = %s, updated_at = now()
                WHERE id = %s
                """,
                (token, user_id),
            )
            return result.rowcount > 0

    def consume_one_time_password(self, user_id: str, expected_token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET one_time_password_token = NULL, updated_at = now()
                WHERE id = %s
                  AND one_time_password_token = %s
                  AND is_active = TRUE
                """,
                (user_id, expected_token),
            )
            return result.rowcount == 1
