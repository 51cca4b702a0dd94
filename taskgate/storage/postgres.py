from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from taskgate.logging import get_logger, sanitize_error_message
from taskgate.storage.errors import ConstraintViolation, StoreUnavailable
from taskgate.storage.models import Account, User, UserStatus


class PostgresStore:
    """Postgres-backed user and account records."""

    REQUIRED_TABLES = ("app_user", "auth_account")

    def __init__(self, dsn: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Pooled connection; the block is one transaction, committed on exit."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreUnavailable(backend="postgres") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in self.REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            display_name=row.get("display_name"),
            avatar_url=row.get("avatar_url"),
            status=row.get("status", UserStatus.ACTIVE.value),
            created_at=row.get("created_at", datetime.utcnow()),
        )

    # user / auth
    def find_login_candidate(
        self, email: str, username: str, provider: str
    ) -> Optional[Tuple[User, Optional[Account]]]:
        """Find a user by email or username, with that user's account for ``provider``.

        The left join keeps "no account for this provider" distinguishable
        from "no user". An email match sorts ahead of a username-only match.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.id, u.email, u.username, u.display_name, u.avatar_url,
                       u.status, u.created_at,
                       a.provider AS account_provider,
                       a.provider_account_id AS account_provider_account_id,
                       a.created_at AS account_created_at
                FROM app_user u
                LEFT JOIN auth_account a ON a.user_id = u.id AND a.provider = %s
                WHERE u.email = %s OR u.username = %s
                ORDER BY (u.email = %s) DESC
                LIMIT 1
                """,
                (provider, email, username, email),
            ).fetchone()
        if not row:
            return None
        user = self._user_from_row(row)
        account = None
        if row.get("account_provider"):
            account = Account(
                user_id=user.id,
                provider=row["account_provider"],
                provider_account_id=row["account_provider_account_id"],
                created_at=row.get("account_created_at", datetime.utcnow()),
            )
        return user, account

    def create_user_with_account(
        self,
        *,
        email: str,
        username: str,
        display_name: Optional[str],
        avatar_url: Optional[str],
        provider: str,
        provider_account_id: Optional[str],
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            # Single transaction: neither row survives without the other
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username, display_name, avatar_url, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING id, email, username, display_name, avatar_url, status, created_at
                    """,
                    (user_id, email, username, display_name, avatar_url, UserStatus.ACTIVE.value),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO auth_account (user_id, provider, provider_account_id)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, provider, provider_account_id or user_id),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def create_account(self, user_id: str, provider: str, provider_account_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_account (user_id, provider, provider_account_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id, provider) DO NOTHING
                    """,
                    (user_id, provider, provider_account_id),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc

    def update_user_profile(
        self, user_id: str, *, display_name: Optional[str], avatar_url: Optional[str]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET display_name = %s, avatar_url = %s WHERE id = %s",
                (display_name, avatar_url, user_id),
            )

    def get_user(self, user_id: str) -> Optional[User]:
        # Sessions are checked against only the columns the guard needs
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, email, username, display_name, avatar_url, status, created_at
                FROM app_user WHERE id = %s
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, email, username, display_name, avatar_url, status, created_at
                FROM app_user WHERE email = %s
                """,
                (email,),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def list_accounts(self, user_id: str) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, provider, provider_account_id, created_at
                FROM auth_account WHERE user_id = %s ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            Account(
                user_id=str(row["user_id"]),
                provider=row["provider"],
                provider_account_id=row["provider_account_id"],
                created_at=row.get("created_at", datetime.utcnow()),
            )
            for row in rows
        ]

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        status = UserStatus(status).value
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET status = %s WHERE id = %s
                RETURNING id, email, username, display_name, avatar_url, status, created_at
                """,
                (status, user_id),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def delete_user(self, user_id: str) -> bool:
        # auth_account rows go with the user (ON DELETE CASCADE)
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            deleted = result.rowcount > 0
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted

    def close(self) -> None:
        self.pool.close()
