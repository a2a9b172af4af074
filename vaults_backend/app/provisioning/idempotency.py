"""Idempotency registry keeping one provisioning attempt per caller key."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Protocol
from uuid import uuid4

from .models import IdempotencyEntry, ProvisioningOutcome


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_attempt_id() -> str:
    return f"att_{uuid4().hex}"


class IdempotencyRegistry(Protocol):
    """Operations required by the coordinator to deduplicate retried requests."""

    def lookup(self, key: str) -> Optional[IdempotencyEntry]:
        """Return the live entry for ``key``; expired entries read as absent."""

    def reserve(self, key: str, fingerprint: str) -> Optional[IdempotencyEntry]:
        """Atomically claim ``key``; ``None`` when another holder or request owns it."""

    def complete(self, key: str, outcome: ProvisioningOutcome) -> Optional[IdempotencyEntry]:
        """Record the final outcome and drop the lease."""

    def release(self, key: str) -> Optional[IdempotencyEntry]:
        """Drop the lease without an outcome so a retry can resume the attempt."""

    def claim(self, key: str, attempt_id: str) -> Optional[IdempotencyEntry]:
        """Lease ``key`` to a background worker settling ``attempt_id``.

        Returns ``None`` when the key is leased, already has an outcome, or now
        belongs to another attempt.
        """


class InMemoryIdempotencyRegistry:
    """Registry backed by a process-local dictionary."""

    def __init__(
        self,
        *,
        retention_seconds: int = 24 * 60 * 60,
        lease_seconds: int = 120,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._entries: Dict[str, IdempotencyEntry] = {}
        self._retention = timedelta(seconds=retention_seconds)
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock
        self._lock = Lock()

    def lookup(self, key: str) -> Optional[IdempotencyEntry]:
        with self._lock:
            return self._live(key, self._clock())

    def reserve(self, key: str, fingerprint: str) -> Optional[IdempotencyEntry]:
        now = self._clock()
        with self._lock:
            existing = self._live(key, now)
            if existing is None:
                entry = IdempotencyEntry(
                    key=key,
                    fingerprint=fingerprint,
                    attempt_id=new_attempt_id(),
                    lease_expires_at=now + self._lease,
                    created_at=now,
                    expires_at=now + self._retention,
                )
                self._entries[key] = entry
                return entry
            if (
                existing.fingerprint != fingerprint
                or existing.outcome is not None
                or existing.is_leased(now)
            ):
                return None
            reclaimed = existing.model_copy(update={"lease_expires_at": now + self._lease})
            self._entries[key] = reclaimed
            return reclaimed

    def complete(self, key: str, outcome: ProvisioningOutcome) -> Optional[IdempotencyEntry]:
        now = self._clock()
        with self._lock:
            existing = self._live(key, now)
            if existing is None:
                return None
            completed = existing.model_copy(
                update={"outcome": outcome, "lease_expires_at": None, "expires_at": now + self._retention}
            )
            self._entries[key] = completed
            return completed

    def release(self, key: str) -> Optional[IdempotencyEntry]:
        with self._lock:
            existing = self._live(key, self._clock())
            if existing is None:
                return None
            released = existing.model_copy(update={"lease_expires_at": None})
            self._entries[key] = released
            return released

    def claim(self, key: str, attempt_id: str) -> Optional[IdempotencyEntry]:
        now = self._clock()
        with self._lock:
            existing = self._live(key, now)
            if (
                existing is None
                or existing.attempt_id != attempt_id
                or existing.outcome is not None
                or existing.is_leased(now)
            ):
                return None
            claimed = existing.model_copy(update={"lease_expires_at": now + self._lease})
            self._entries[key] = claimed
            return claimed

    def _live(self, key: str, now: datetime) -> Optional[IdempotencyEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            self._entries.pop(key, None)
            return None
        return entry


__all__ = ["IdempotencyRegistry", "InMemoryIdempotencyRegistry", "new_attempt_id"]
