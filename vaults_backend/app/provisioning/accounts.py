"""Account store client abstraction and an in-memory implementation."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional, Protocol

from .models import AccountRecord, AccountStatus


class AccountStore(Protocol):
    """Durable keyed storage for account records with conditional writes."""

    def insert_pending(self, record: AccountRecord) -> Optional[AccountRecord]:
        """Insert a pending record; ``None`` when the id, username or intent is taken."""

    def promote(self, account_id: str, expected_version: int) -> Optional[AccountRecord]:
        """Mark a pending record active; ``None`` on a version conflict."""

    def reject(self, account_id: str) -> Optional[AccountRecord]:
        """Mark a pending record rejected and return the stored record."""

    def get(self, account_id: str) -> Optional[AccountRecord]:
        """Return the record or ``None``."""


class InMemoryAccountStore:
    """Simple in-memory store suitable for tests and local development."""

    def __init__(self) -> None:
        self._records: Dict[str, AccountRecord] = {}
        self._usernames: Dict[str, str] = {}
        self._intents: Dict[str, str] = {}
        self._lock = Lock()

    def insert_pending(self, record: AccountRecord) -> Optional[AccountRecord]:
        username_key = record.username.lower()
        with self._lock:
            if (
                record.account_id in self._records
                or username_key in self._usernames
                or record.intent_id in self._intents
            ):
                return None
            now = datetime.now(timezone.utc)
            stored = record.model_copy(
                update={"status": AccountStatus.PENDING, "version": 1, "created_at": now, "updated_at": now}
            )
            self._records[stored.account_id] = stored
            self._usernames[username_key] = stored.account_id
            self._intents[stored.intent_id] = stored.account_id
            return stored

    def promote(self, account_id: str, expected_version: int) -> Optional[AccountRecord]:
        with self._lock:
            record = self._records.get(account_id)
            if record is None or record.version != expected_version or record.status != AccountStatus.PENDING:
                return None
            return self._write(record, AccountStatus.ACTIVE)

    def reject(self, account_id: str) -> Optional[AccountRecord]:
        with self._lock:
            record = self._records.get(account_id)
            if record is None or record.status != AccountStatus.PENDING:
                return record
            return self._write(record, AccountStatus.REJECTED)

    def get(self, account_id: str) -> Optional[AccountRecord]:
        with self._lock:
            return self._records.get(account_id)

    def _write(self, record: AccountRecord, status: AccountStatus) -> AccountRecord:
        updated = record.model_copy(
            update={
                "status": status,
                "version": record.version + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self._records[record.account_id] = updated
        return updated


__all__ = ["AccountStore", "InMemoryAccountStore"]
