"""PostgreSQL persistence for accounts, idempotency entries and attempts."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import TransientError
from .idempotency import new_attempt_id
from .models import (
    AccountRecord,
    AccountStatus,
    IdempotencyEntry,
    IntentStatus,
    PlanKey,
    ProvisioningAttempt,
    ProvisioningOutcome,
)
from .state import OPEN_STATES, ProvisioningState

SCHEMA_STATEMENTS: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS provisioning_accounts (
        account_id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        username_key TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        plan TEXT NOT NULL,
        status TEXT NOT NULL,
        intent_id TEXT NOT NULL UNIQUE,
        version INTEGER NOT NULL DEFAULT 1,
        credential_ref TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provisioning_idempotency_keys (
        key TEXT PRIMARY KEY,
        fingerprint TEXT NOT NULL,
        attempt_id TEXT NOT NULL,
        outcome JSONB,
        lease_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provisioning_attempts (
        attempt_id TEXT PRIMARY KEY,
        idempotency_key TEXT NOT NULL,
        state TEXT NOT NULL,
        plan TEXT NOT NULL,
        amount INTEGER NOT NULL,
        currency TEXT NOT NULL,
        intent_id TEXT,
        client_secret TEXT,
        intent_status TEXT,
        account_id TEXT,
        confirmation_requested BOOLEAN NOT NULL DEFAULT FALSE,
        compensation_pending BOOLEAN NOT NULL DEFAULT FALSE,
        error_kind TEXT,
        error_message TEXT,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS provisioning_attempts_state_updated_idx
        ON provisioning_attempts (state, updated_at)
    """,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def ensure_provisioning_schema(conn: Optional[PgConnection] = None) -> None:
    """Create the provisioning tables when they do not exist yet."""

    with managed_connection(conn) as (connection, _managed):
        with connection.cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)


def _row_to_account(row: dict) -> AccountRecord:
    return AccountRecord(
        account_id=row["account_id"],
        username=row["username"],
        email=row["email"],
        plan=PlanKey(row["plan"]),
        status=AccountStatus(row["status"]),
        intent_id=row["intent_id"],
        version=int(row["version"]),
        credential_ref=row.get("credential_ref"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entry(row: dict) -> IdempotencyEntry:
    outcome = row.get("outcome")
    return IdempotencyEntry(
        key=row["key"],
        fingerprint=row["fingerprint"],
        attempt_id=row["attempt_id"],
        outcome=ProvisioningOutcome.model_validate(outcome) if outcome else None,
        lease_expires_at=row.get("lease_expires_at"),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
    )


def _row_to_attempt(row: dict) -> ProvisioningAttempt:
    intent_status = row.get("intent_status")
    return ProvisioningAttempt(
        attempt_id=row["attempt_id"],
        idempotency_key=row["idempotency_key"],
        state=ProvisioningState(row["state"]),
        plan=PlanKey(row["plan"]),
        amount=int(row["amount"]),
        currency=row["currency"],
        intent_id=row.get("intent_id"),
        client_secret=row.get("client_secret"),
        intent_status=IntentStatus(intent_status) if intent_status else None,
        account_id=row.get("account_id"),
        confirmation_requested=bool(row.get("confirmation_requested")),
        compensation_pending=bool(row.get("compensation_pending")),
        error_kind=row.get("error_kind"),
        error_message=row.get("error_message"),
        version=int(row.get("version") or 1),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class _PostgresRepository:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.OperationalError as exc:
            raise TransientError(message="Account database unavailable") from exc


class PostgresAccountStore(_PostgresRepository):
    """Account store persisting records in PostgreSQL with version checks."""

    def insert_pending(self, record: AccountRecord) -> Optional[AccountRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO provisioning_accounts (
                    account_id,
                    username,
                    username_key,
                    email,
                    plan,
                    status,
                    intent_id,
                    version,
                    credential_ref
                )
                VALUES (%(account_id)s, %(username)s, %(username_key)s, %(email)s, %(plan)s,
                        %(status)s, %(intent_id)s, 1, %(credential_ref)s)
                ON CONFLICT DO NOTHING
                RETURNING *
                """,
                {
                    "account_id": record.account_id,
                    "username": record.username,
                    "username_key": record.username.lower(),
                    "email": record.email,
                    "plan": record.plan.value,
                    "status": AccountStatus.PENDING.value,
                    "intent_id": record.intent_id,
                    "credential_ref": record.credential_ref,
                },
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def promote(self, account_id: str, expected_version: int) -> Optional[AccountRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE provisioning_accounts
                SET status = %s, version = version + 1, updated_at = NOW()
                WHERE account_id = %s AND version = %s AND status = %s
                RETURNING *
                """,
                (AccountStatus.ACTIVE.value, account_id, expected_version, AccountStatus.PENDING.value),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None

    def reject(self, account_id: str) -> Optional[AccountRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE provisioning_accounts
                SET status = %s, version = version + 1, updated_at = NOW()
                WHERE account_id = %s AND status = %s
                RETURNING *
                """,
                (AccountStatus.REJECTED.value, account_id, AccountStatus.PENDING.value),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_account(row)
        return self.get(account_id)

    def get(self, account_id: str) -> Optional[AccountRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM provisioning_accounts
                WHERE account_id = %s
                LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_account(row) if row else None


class PostgresIdempotencyRegistry(_PostgresRepository):
    """Idempotency registry whose reservation is a single conditional upsert."""

    def __init__(
        self,
        *,
        retention_seconds: int = 24 * 60 * 60,
        lease_seconds: int = 120,
        conn: Optional[PgConnection] = None,
    ) -> None:
        super().__init__(conn=conn)
        self._retention_seconds = retention_seconds
        self._lease_seconds = lease_seconds

    def lookup(self, key: str) -> Optional[IdempotencyEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM provisioning_idempotency_keys
                WHERE key = %s AND expires_at > NOW()
                LIMIT 1
                """,
                (key,),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def reserve(self, key: str, fingerprint: str) -> Optional[IdempotencyEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO provisioning_idempotency_keys AS existing (
                    key,
                    fingerprint,
                    attempt_id,
                    outcome,
                    lease_expires_at,
                    created_at,
                    expires_at
                )
                VALUES (%(key)s, %(fingerprint)s, %(attempt_id)s, NULL,
                        NOW() + make_interval(secs => %(lease)s), NOW(),
                        NOW() + make_interval(secs => %(retention)s))
                ON CONFLICT (key) DO UPDATE SET
                    fingerprint = EXCLUDED.fingerprint,
                    attempt_id = CASE WHEN existing.expires_at <= NOW()
                        THEN EXCLUDED.attempt_id ELSE existing.attempt_id END,
                    outcome = CASE WHEN existing.expires_at <= NOW()
                        THEN NULL ELSE existing.outcome END,
                    created_at = CASE WHEN existing.expires_at <= NOW()
                        THEN EXCLUDED.created_at ELSE existing.created_at END,
                    expires_at = CASE WHEN existing.expires_at <= NOW()
                        THEN EXCLUDED.expires_at ELSE existing.expires_at END,
                    lease_expires_at = EXCLUDED.lease_expires_at
                WHERE existing.expires_at <= NOW()
                   OR (existing.fingerprint = EXCLUDED.fingerprint
                       AND existing.outcome IS NULL
                       AND (existing.lease_expires_at IS NULL OR existing.lease_expires_at <= NOW()))
                RETURNING *
                """,
                {
                    "key": key,
                    "fingerprint": fingerprint,
                    "attempt_id": new_attempt_id(),
                    "lease": self._lease_seconds,
                    "retention": self._retention_seconds,
                },
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def complete(self, key: str, outcome: ProvisioningOutcome) -> Optional[IdempotencyEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE provisioning_idempotency_keys
                SET outcome = %s,
                    lease_expires_at = NULL,
                    expires_at = NOW() + make_interval(secs => %s)
                WHERE key = %s AND expires_at > NOW()
                RETURNING *
                """,
                (psycopg2.extras.Json(outcome.model_dump(mode="json")), self._retention_seconds, key),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def release(self, key: str) -> Optional[IdempotencyEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE provisioning_idempotency_keys
                SET lease_expires_at = NULL
                WHERE key = %s AND expires_at > NOW()
                RETURNING *
                """,
                (key,),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None

    def claim(self, key: str, attempt_id: str) -> Optional[IdempotencyEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE provisioning_idempotency_keys
                SET lease_expires_at = NOW() + make_interval(secs => %s)
                WHERE key = %s
                  AND attempt_id = %s
                  AND expires_at > NOW()
                  AND outcome IS NULL
                  AND (lease_expires_at IS NULL OR lease_expires_at <= NOW())
                RETURNING *
                """,
                (self._lease_seconds, key, attempt_id),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None


class PostgresAttemptRepository(_PostgresRepository):
    """Concrete repository persisting provisioning attempts in PostgreSQL."""

    def save(self, attempt: ProvisioningAttempt) -> Optional[ProvisioningAttempt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO provisioning_attempts AS existing (
                    attempt_id,
                    idempotency_key,
                    state,
                    plan,
                    amount,
                    currency,
                    intent_id,
                    client_secret,
                    intent_status,
                    account_id,
                    confirmation_requested,
                    compensation_pending,
                    error_kind,
                    error_message,
                    version,
                    created_at,
                    updated_at
                )
                VALUES (%(attempt_id)s, %(idempotency_key)s, %(state)s, %(plan)s, %(amount)s,
                        %(currency)s, %(intent_id)s, %(client_secret)s, %(intent_status)s,
                        %(account_id)s, %(confirmation_requested)s, %(compensation_pending)s,
                        %(error_kind)s, %(error_message)s, %(version)s + 1, %(created_at)s, %(updated_at)s)
                ON CONFLICT (attempt_id) DO UPDATE SET
                    state = EXCLUDED.state,
                    intent_id = EXCLUDED.intent_id,
                    client_secret = EXCLUDED.client_secret,
                    intent_status = EXCLUDED.intent_status,
                    account_id = EXCLUDED.account_id,
                    confirmation_requested = EXCLUDED.confirmation_requested,
                    compensation_pending = EXCLUDED.compensation_pending,
                    error_kind = EXCLUDED.error_kind,
                    error_message = EXCLUDED.error_message,
                    version = existing.version + 1,
                    updated_at = EXCLUDED.updated_at
                WHERE existing.version = %(version)s
                RETURNING *
                """,
                {
                    "attempt_id": attempt.attempt_id,
                    "idempotency_key": attempt.idempotency_key,
                    "state": attempt.state.value,
                    "plan": attempt.plan.value,
                    "amount": attempt.amount,
                    "currency": attempt.currency,
                    "intent_id": attempt.intent_id,
                    "client_secret": attempt.client_secret,
                    "intent_status": attempt.intent_status.value if attempt.intent_status else None,
                    "account_id": attempt.account_id,
                    "confirmation_requested": attempt.confirmation_requested,
                    "compensation_pending": attempt.compensation_pending,
                    "error_kind": attempt.error_kind,
                    "error_message": attempt.error_message,
                    "version": attempt.version,
                    "created_at": attempt.created_at,
                    "updated_at": attempt.updated_at,
                },
            )
            row = cursor.fetchone()
            return _row_to_attempt(row) if row else None

    def get(self, attempt_id: str) -> Optional[ProvisioningAttempt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM provisioning_attempts
                WHERE attempt_id = %s
                LIMIT 1
                """,
                (attempt_id,),
            )
            row = cursor.fetchone()
            return _row_to_attempt(row) if row else None

    def list_stale(self, *, updated_before: datetime, limit: int = 100) -> Sequence[ProvisioningAttempt]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM provisioning_attempts
                WHERE (state = ANY(%s) AND updated_at < %s)
                   OR (state = %s AND compensation_pending)
                ORDER BY updated_at ASC
                LIMIT %s
                """,
                (
                    [state.value for state in OPEN_STATES],
                    updated_before,
                    ProvisioningState.REJECTED.value,
                    limit,
                ),
            )
            rows = cursor.fetchall() or []
            return [_row_to_attempt(row) for row in rows]


__all__ = [
    "PostgresAccountStore",
    "PostgresAttemptRepository",
    "PostgresIdempotencyRegistry",
    "ensure_provisioning_schema",
    "managed_connection",
]
