"""Persistence of provisioning attempts, the server-side state machine record."""
from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, Optional, Protocol, Sequence

from .models import ProvisioningAttempt
from .state import OPEN_STATES, ProvisioningState


class AttemptRepository(Protocol):
    """Storage for attempts so runs can resume and be swept."""

    def save(self, attempt: ProvisioningAttempt) -> Optional[ProvisioningAttempt]:
        """Store ``attempt`` if its version matches the stored one.

        Returns the stored copy with the version bumped, or ``None`` when another
        writer saved the attempt since it was read.
        """

    def get(self, attempt_id: str) -> Optional[ProvisioningAttempt]:
        ...

    def list_stale(self, *, updated_before: datetime, limit: int = 100) -> Sequence[ProvisioningAttempt]:
        """Open attempts untouched since ``updated_before`` and rejected ones owing compensation."""


class InMemoryAttemptRepository:
    """Process-local attempt storage for tests and local development."""

    def __init__(self) -> None:
        self._attempts: Dict[str, ProvisioningAttempt] = {}
        self._lock = Lock()

    def save(self, attempt: ProvisioningAttempt) -> Optional[ProvisioningAttempt]:
        with self._lock:
            stored = self._attempts.get(attempt.attempt_id)
            current_version = stored.version if stored is not None else 0
            if attempt.version != current_version:
                return None
            saved = attempt.model_copy(update={"version": current_version + 1})
            self._attempts[attempt.attempt_id] = saved
        return saved

    def get(self, attempt_id: str) -> Optional[ProvisioningAttempt]:
        with self._lock:
            return self._attempts.get(attempt_id)

    def list_stale(self, *, updated_before: datetime, limit: int = 100) -> Sequence[ProvisioningAttempt]:
        with self._lock:
            matching = [
                attempt
                for attempt in sorted(self._attempts.values(), key=lambda item: item.updated_at)
                if (attempt.state in OPEN_STATES and attempt.updated_at < updated_before)
                or (attempt.state == ProvisioningState.REJECTED and attempt.compensation_pending)
            ]
        return matching[:limit]


__all__ = ["AttemptRepository", "InMemoryAttemptRepository"]
