from __future__ import annotations

import uuid
from typing import Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from identcore.logging import get_logger
from identcore.storage.common import account_from_row, normalize_email
from identcore.storage.errors import ConstraintViolation, StoreUnavailable
from identcore.storage.models import Account, AccountStatus, Role


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'pending_verification',
        token_version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    # Email is unique only among accounts that are not soft-deleted
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_live_email_idx
        ON account (lower(email)) WHERE status <> 'deleted'
    """,
)


class PostgresStore:
    """Postgres-backed durable account store.

    Every mutation is a single conditional ``UPDATE ... RETURNING`` so status
    transitions and token-version bumps are atomic per row without explicit
    transactions spanning several statements.
    """

    def __init__(
        self, dsn: str, *, timeout_seconds: float = 5.0, ensure_schema: bool = True
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        if ensure_schema:
            self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _execute_one(self, operation: str, sql: str, params: tuple) -> Optional[dict]:
        try:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except (errors.OperationalError, errors.QueryCanceled, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable("postgres", operation, exc) from exc

    def _ensure_schema(self) -> None:
        try:
            with self._connect() as conn:
                for statement in _SCHEMA:
                    conn.execute(statement)
        except (errors.OperationalError, PoolTimeout) as exc:
            raise StoreUnavailable("postgres", "ensure_schema", exc) from exc

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> Account:
        row = self._execute_one(
            "create_account",
            """
            INSERT INTO account (id, email, password_hash, role, status)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), normalize_email(email), password_hash, role.value, status.value),
        )
        return account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(account_id)
        except (TypeError, ValueError):
            return None
        row = self._execute_one(
            "get_account", "SELECT * FROM account WHERE id = %s", (account_id,)
        )
        return account_from_row(row) if row else None

    def get_account_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[Account]:
        normalized = normalize_email(email)
        if include_deleted:
            # Live account first, then the most recently deleted one
            row = self._execute_one(
                "get_account_by_email",
                """
                SELECT * FROM account WHERE lower(email) = %s
                ORDER BY (status = 'deleted'), deleted_at DESC NULLS LAST
                LIMIT 1
                """,
                (normalized,),
            )
        else:
            row = self._execute_one(
                "get_account_by_email",
                "SELECT * FROM account WHERE lower(email) = %s AND status <> 'deleted'",
                (normalized,),
            )
        return account_from_row(row) if row else None

    def update_status(
        self,
        account_id: str,
        new_status: AccountStatus,
        *,
        expected: Iterable[AccountStatus],
        bump_token_version: bool = False,
    ) -> Optional[Account]:
        expected_values = [s.value for s in expected]
        row = self._execute_one(
            "update_status",
            """
            UPDATE account
            SET status = %s,
                token_version = token_version + %s,
                deleted_at = CASE WHEN %s = 'deleted' THEN now() ELSE deleted_at END,
                updated_at = now()
            WHERE id = %s AND status = ANY(%s)
            RETURNING *
            """,
            (
                new_status.value,
                1 if bump_token_version else 0,
                new_status.value,
                account_id,
                expected_values,
            ),
        )
        return account_from_row(row) if row else None

    def update_role(
        self, account_id: str, role: Role, *, bump_token_version: bool = True
    ) -> Optional[Account]:
        row = self._execute_one(
            "update_role",
            """
            UPDATE account
            SET role = %s, token_version = token_version + %s, updated_at = now()
            WHERE id = %s AND status <> 'deleted'
            RETURNING *
            """,
            (role.value, 1 if bump_token_version else 0, account_id),
        )
        return account_from_row(row) if row else None

    def update_password(
        self, account_id: str, password_hash: str, *, bump_token_version: bool = True
    ) -> Optional[Account]:
        row = self._execute_one(
            "update_password",
            """
            UPDATE account
            SET password_hash = %s, token_version = token_version + %s, updated_at = now()
            WHERE id = %s AND status <> 'deleted'
            RETURNING *
            """,
            (password_hash, 1 if bump_token_version else 0, account_id),
        )
        return account_from_row(row) if row else None

    def list_accounts(
        self, *, role: Optional[Role] = None, limit: int = 100
    ) -> List[Account]:
        try:
            with self._connect() as conn:
                if role:
                    rows = conn.execute(
                        "SELECT * FROM account WHERE status <> 'deleted' AND role = %s ORDER BY created_at DESC LIMIT %s",
                        (role.value, limit),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM account WHERE status <> 'deleted' ORDER BY created_at DESC LIMIT %s",
                        (limit,),
                    ).fetchall()
        except (errors.OperationalError, errors.QueryCanceled, PoolTimeout) as exc:
            raise StoreUnavailable("postgres", "list_accounts", exc) from exc
        return [account_from_row(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
