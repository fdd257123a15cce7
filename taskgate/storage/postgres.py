from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from taskgate.logging import get_logger
from taskgate.storage.errors import ConstraintViolation, StorageUnavailable
from taskgate.storage.models import Account, RefreshTokenRecord

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        handle TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        token_version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_handle_key ON account (lower(handle))",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        encrypted_token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        device TEXT,
        origin_address TEXT,
        last_used_at TIMESTAMPTZ,
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_hash_idx ON refresh_token (token_hash)",
    """
    CREATE INDEX IF NOT EXISTS refresh_token_account_idx
        ON refresh_token (account_id, created_at DESC)
    """,
)


class PostgresStore:
    """Postgres-backed store for accounts and refresh token records.

    Per-account atomicity comes from row locks: every read-modify-write of an
    account, and every insert into its refresh token list, first takes
    ``SELECT ... FOR UPDATE`` on the account row.
    """

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

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("postgres", str(exc)) from exc

    def _ensure_schema(self) -> None:
        """Create the ``account`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=row["id"],
            handle=row["handle"],
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
            failed_login_count=row["failed_login_count"],
            lock_until=row.get("lock_until"),
            last_login_at=row.get("last_login_at"),
            token_version=row["token_version"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _record_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=row["id"],
            account_id=row["account_id"],
            token_hash=row["token_hash"],
            encrypted_token=row["encrypted_token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            device=row.get("device"),
            origin_address=row.get("origin_address"),
            last_used_at=row.get("last_used_at"),
            active=row["active"],
        )

    # -- accounts ----------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, handle, password_hash, password_algo, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.handle,
                        account.password_hash,
                        account.password_algo,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("handle already exists", {"field": "handle"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_handle(self, handle: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(handle) = lower(%s)", (handle,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account_atomic(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM account WHERE id = %s FOR UPDATE", (account_id,)
                ).fetchone()
                if not row:
                    return None
                account = self._account_from_row(row)
                mutate(account)
                conn.execute(
                    """
                    UPDATE account
                       SET password_hash = %s, password_algo = %s,
                           failed_login_count = %s, lock_until = %s,
                           last_login_at = %s, token_version = %s
                     WHERE id = %s
                    """,
                    (
                        account.password_hash,
                        account.password_algo,
                        account.failed_login_count,
                        account.lock_until,
                        account.last_login_at,
                        account.token_version,
                        account_id,
                    ),
                )
        return account

    def delete_account(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM account WHERE id = %s RETURNING id", (account_id,)
            ).fetchone()
        return row is not None

    # -- refresh tokens ----------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord, *, keep: int) -> int:
        with self._connect() as conn:
            with conn.transaction():
                locked = conn.execute(
                    "SELECT id FROM account WHERE id = %s FOR UPDATE",
                    (record.account_id,),
                ).fetchone()
                if not locked:
                    raise ConstraintViolation(
                        "account not found", {"field": "account_id"}
                    )
                conn.execute(
                    """
                    INSERT INTO refresh_token (
                        id, account_id, token_hash, encrypted_token, expires_at,
                        created_at, device, origin_address, last_used_at, active
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.account_id,
                        record.token_hash,
                        record.encrypted_token,
                        record.expires_at,
                        record.created_at,
                        record.device,
                        record.origin_address,
                        record.last_used_at,
                        record.active,
                    ),
                )
                evicted = conn.execute(
                    """
                    DELETE FROM refresh_token
                     WHERE account_id = %s
                       AND id NOT IN (
                           SELECT id FROM refresh_token
                            WHERE account_id = %s
                            ORDER BY created_at DESC
                            LIMIT %s
                       )
                    RETURNING id
                    """,
                    (record.account_id, record.account_id, keep),
                ).fetchall()
        return len(evicted)

    def find_refresh_token(
        self, token_hash: str, *, active_only: bool = False
    ) -> Optional[RefreshTokenRecord]:
        query = "SELECT * FROM refresh_token WHERE token_hash = %s"
        if active_only:
            query += " AND active"
        query += " ORDER BY created_at DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, (token_hash,)).fetchone()
        return self._record_from_row(row) if row else None

    def deactivate_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        # A racing UPDATE re-checks ``active`` after the winner commits.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET active = FALSE
                 WHERE token_hash = %s AND active
                RETURNING *
                """,
                (token_hash,),
            ).fetchone()
        return self._record_from_row(row) if row else None

    def touch_refresh_token(self, token_hash: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_token SET last_used_at = %s WHERE token_hash = %s",
                (when, token_hash),
            )

    def deactivate_account_refresh_tokens(self, account_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_token SET active = FALSE
                 WHERE account_id = %s AND active
                RETURNING id
                """,
                (account_id,),
            ).fetchall()
        return len(rows)

    def list_refresh_tokens(self, account_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                 WHERE account_id = %s
                 ORDER BY created_at DESC
                """,
                (account_id,),
            ).fetchall()
        return [self._record_from_row(row) for row in rows]

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresStore"]
