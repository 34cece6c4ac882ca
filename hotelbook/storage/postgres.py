from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hotelbook.logging import get_logger
from hotelbook.storage.errors import ConstraintViolation
from hotelbook.storage.models import (
    Account,
    AuditAction,
    AuditEntry,
    AuditOutcome,
    utcnow,
)

_ACCOUNT_COLUMNS = (
    "id",
    "email",
    "full_name",
    "password_hash",
    "role",
    "phone_encrypted",
    "password_history",
    "last_password_change",
    "password_expired",
    "login_attempts",
    "lock_until",
    "otp_hash",
    "otp_expiry",
    "mfa_enabled",
    "refresh_token",
    "created_at",
    "updated_at",
)

# Columns an update may rewrite; id, email, role and created_at are fixed
_MUTABLE_COLUMNS = tuple(
    column
    for column in _ACCOUNT_COLUMNS
    if column not in {"id", "email", "role", "created_at"}
)


def _account_params(account: Account, columns: tuple) -> List[Any]:
    params: List[Any] = []
    for column in columns:
        value = getattr(account, column)
        if column == "password_history":
            value = json.dumps(value)
        params.append(value)
    return params


def _row_to_account(row: Dict[str, Any]) -> Account:
    history = row.get("password_history") or []
    if isinstance(history, str):
        history = json.loads(history)
    return Account(
        id=str(row["id"]),
        email=row["email"],
        full_name=row["full_name"],
        password_hash=row["password_hash"],
        role=row.get("role") or "user",
        phone_encrypted=row.get("phone_encrypted"),
        password_history=list(history),
        last_password_change=row.get("last_password_change"),
        password_expired=bool(row.get("password_expired")),
        login_attempts=int(row.get("login_attempts") or 0),
        lock_until=row.get("lock_until"),
        otp_hash=row.get("otp_hash"),
        otp_expiry=row.get("otp_expiry"),
        mfa_enabled=bool(row.get("mfa_enabled")),
        refresh_token=row.get("refresh_token"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _row_to_audit(row: Dict[str, Any]) -> AuditEntry:
    metadata = row.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return AuditEntry(
        id=str(row["id"]),
        action=AuditAction(row["action"]),
        outcome=AuditOutcome(row["outcome"]),
        account_id=str(row["account_id"]) if row.get("account_id") else None,
        ip=row.get("ip") or "unknown",
        user_agent=row.get("user_agent") or "unknown",
        metadata=metadata,
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential and audit store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the account and audit tables if they are missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_account (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    full_name TEXT NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
                    phone_encrypted TEXT,
                    password_history JSONB NOT NULL DEFAULT '[]'::jsonb,
                    last_password_change TIMESTAMPTZ,
                    password_expired BOOLEAN NOT NULL DEFAULT FALSE,
                    login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (login_attempts >= 0),
                    lock_until TIMESTAMPTZ,
                    otp_hash TEXT,
                    otp_expiry TIMESTAMPTZ,
                    mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    refresh_token TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    CHECK ((otp_hash IS NULL) = (otp_expiry IS NULL))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_entry (
                    id UUID PRIMARY KEY,
                    action TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    account_id UUID,
                    ip TEXT,
                    user_agent TEXT,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS audit_entry_account_idx ON audit_entry (account_id, created_at DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS audit_entry_created_idx ON audit_entry (created_at DESC)"
            )

    def create_account(self, account: Account) -> Account:
        placeholders = ", ".join(["%s"] * len(_ACCOUNT_COLUMNS))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO app_account ({', '.join(_ACCOUNT_COLUMNS)}) "
                    f"VALUES ({placeholders}) RETURNING *",
                    _account_params(account, _ACCOUNT_COLUMNS),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE id = %s", (account_id,)
            ).fetchone()
        return _row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE email = %s", (email,)
            ).fetchone()
        return _row_to_account(row) if row else None

    def update_account(
        self, account_id: str, mutate: Callable[[Account], None]
    ) -> Optional[Account]:
        """Row-locked read-modify-write in one transaction.

        An exception from ``mutate`` rolls the transaction back and propagates.
        """
        assignments = ", ".join(f"{column} = %s" for column in _MUTABLE_COLUMNS)
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM app_account WHERE id = %s FOR UPDATE",
                    (account_id,),
                ).fetchone()
                if not row:
                    return None
                account = _row_to_account(row)
                mutate(account)
                account.updated_at = utcnow()
                updated = conn.execute(
                    f"UPDATE app_account SET {assignments} WHERE id = %s RETURNING *",
                    [*_account_params(account, _MUTABLE_COLUMNS), account_id],
                ).fetchone()
        return _row_to_account(updated)

    def append_audit(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_entry (id, action, outcome, account_id, ip, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb, %s)
                """,
                (
                    entry.id,
                    entry.action.value,
                    entry.outcome.value,
                    entry.account_id,
                    entry.ip,
                    entry.user_agent,
                    json.dumps(entry.metadata, default=str),
                    entry.created_at,
                ),
            )

    def list_audit(
        self,
        *,
        account_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if account_id is not None:
            clauses.append("account_id = %s")
            params.append(account_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action.value)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= %s")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_entry {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [_row_to_audit(row) for row in rows]

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
