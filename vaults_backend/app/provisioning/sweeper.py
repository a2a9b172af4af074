"""Background reconciliation of abandoned provisioning attempts."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from .coordinator import ProvisioningCoordinator
from .exceptions import PaymentError
from .models import (
    AccountStatus,
    CompensationResult,
    IntentStatus,
    PaymentIntent,
    ProvisioningAttempt,
    ProvisioningAuditEvent,
    ProvisioningAuditEventType,
    SweepAction,
    SweepResult,
    SweepSummary,
)
from .state import OPEN_STATES, ProvisioningState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CleanupSweeper:
    """Cancels intents whose attempt stalled past the TTL and settles their accounts.

    An attempt whose intent turns out to be confirmed is promoted instead, so a
    payment that went through is never left without an active account. The
    sweeper leases the attempt's idempotency key while it works so a resumed
    caller request cannot race it.
    """

    coordinator: ProvisioningCoordinator
    intent_ttl_seconds: int = 30 * 60
    batch_size: int = 100

    def sweep(self, *, now: Optional[datetime] = None) -> SweepSummary:
        current = now or _utcnow()
        cutoff = current - timedelta(seconds=self.intent_ttl_seconds)
        stale = self.coordinator.attempts.list_stale(updated_before=cutoff, limit=self.batch_size)

        counts = {action: 0 for action in SweepAction}
        for attempt in stale:
            try:
                result = self.reconcile(attempt, now=current)
            except Exception:
                # One broken attempt must not block the rest of the batch.
                logger.exception(
                    "Failed to reconcile provisioning attempt",
                    extra={"attempt_id": attempt.attempt_id, "state": attempt.state.value},
                )
                counts[SweepAction.FAILED] += 1
                continue
            counts[result.action] += 1

        summary = SweepSummary(
            scanned=len(stale),
            canceled=counts[SweepAction.CANCELED],
            promoted=counts[SweepAction.PROMOTED],
            skipped=counts[SweepAction.SKIPPED],
            failures=counts[SweepAction.FAILED],
        )
        if summary.scanned:
            logger.info("Provisioning sweep finished", extra=summary.model_dump())
        return summary

    def reconcile(self, attempt: ProvisioningAttempt, *, now: Optional[datetime] = None) -> SweepResult:
        """Settle one stale attempt; safe to run repeatedly."""

        current = now or _utcnow()
        if attempt.state.is_terminal and not attempt.compensation_pending:
            return self._result(attempt, SweepAction.SKIPPED)

        with self._claimed(attempt) as claimed:
            if not claimed:
                return self._result(attempt, SweepAction.SKIPPED)
            fresh = self.coordinator.attempts.get(attempt.attempt_id)
            if fresh is None or not self._still_stale(fresh, current):
                return self._result(fresh or attempt, SweepAction.SKIPPED)
            return self._settle(fresh)

    def _settle(self, attempt: ProvisioningAttempt) -> SweepResult:
        coordinator = self.coordinator
        if attempt.state == ProvisioningState.REJECTED:
            return self._finish_compensation(attempt)

        intent = self._current_intent(attempt)
        if intent is not None and attempt.intent_id is None:
            attempt = coordinator.save_attempt(attempt.model_copy(update={"intent_id": intent.intent_id}))

        if intent is not None and intent.status == IntentStatus.CONFIRMED:
            return self._promote_confirmed(attempt)

        settled = coordinator.reject_attempt(
            attempt,
            PaymentError(
                code="intent_expired",
                message="Payment was not confirmed before the intent expired",
            ),
        )
        if settled.state == ProvisioningState.REJECTED:
            return self._result(settled, SweepAction.CANCELED)
        # The intent was confirmed while the sweeper tried to cancel it.
        if settled.state == ProvisioningState.ACTIVE:
            self._log_reconciled(settled)
            return self._result(settled, SweepAction.PROMOTED)
        return self._promote_confirmed(settled)

    def _finish_compensation(self, attempt: ProvisioningAttempt) -> SweepResult:
        coordinator = self.coordinator
        compensation = coordinator.compensate_attempt(attempt)
        if compensation == CompensationResult.INTENT_CONFIRMED:
            logger.error(
                "Rejected attempt has a confirmed payment; manual refund required",
                extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id},
            )
            coordinator.event_logger.log(
                ProvisioningAuditEvent(
                    event_type=ProvisioningAuditEventType.COMPENSATION_FAILED,
                    attempt_id=attempt.attempt_id,
                    account_id=attempt.account_id,
                    metadata={"step": "cancel_intent", "intent_status": IntentStatus.CONFIRMED.value},
                )
            )
        still_pending = compensation == CompensationResult.PENDING
        settled = coordinator.save_attempt(attempt.model_copy(update={"compensation_pending": still_pending}))
        action = SweepAction.CANCELED if compensation == CompensationResult.SETTLED else SweepAction.FAILED
        return self._result(settled, action)

    def _promote_confirmed(self, attempt: ProvisioningAttempt) -> SweepResult:
        coordinator = self.coordinator
        account_id = attempt.account_id
        account = coordinator.accounts.get(account_id) if account_id else None
        if account is None or account.status == AccountStatus.REJECTED:
            logger.error(
                "Confirmed payment has no account to activate; manual refund required",
                extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id},
            )
            return self._result(attempt, SweepAction.FAILED)

        activated = coordinator.activate_attempt(attempt, account)
        self._log_reconciled(activated)
        return self._result(activated, SweepAction.PROMOTED)

    def _log_reconciled(self, attempt: ProvisioningAttempt) -> None:
        self.coordinator.event_logger.log(
            ProvisioningAuditEvent(
                event_type=ProvisioningAuditEventType.ATTEMPT_RECONCILED,
                attempt_id=attempt.attempt_id,
                account_id=attempt.account_id,
                metadata={"intent_id": attempt.intent_id or ""},
            )
        )

    def _current_intent(self, attempt: ProvisioningAttempt) -> Optional[PaymentIntent]:
        coordinator = self.coordinator
        if attempt.intent_id:
            return coordinator.retrieve_intent_for(attempt)
        if attempt.state == ProvisioningState.INTENT_CREATED:
            # Replaying the create with the attempt's key returns an intent created by a timed-out call.
            return coordinator.create_intent_for(attempt)
        return None

    def _still_stale(self, attempt: ProvisioningAttempt, now: datetime) -> bool:
        if attempt.state == ProvisioningState.REJECTED:
            return attempt.compensation_pending
        cutoff = now - timedelta(seconds=self.intent_ttl_seconds)
        return attempt.state in OPEN_STATES and attempt.updated_at < cutoff

    @contextmanager
    def _claimed(self, attempt: ProvisioningAttempt) -> Iterator[bool]:
        """Hold the attempt's idempotency lease while settling it."""

        registry = self.coordinator.registry
        key = attempt.idempotency_key
        entry = registry.lookup(key)
        if entry is None or entry.attempt_id != attempt.attempt_id or entry.outcome is not None:
            # No caller can resume this attempt through its key.
            yield True
            return
        if registry.claim(key, attempt.attempt_id) is None:
            yield False
            return
        try:
            yield True
        finally:
            registry.release(key)

    @staticmethod
    def _result(attempt: ProvisioningAttempt, action: SweepAction) -> SweepResult:
        return SweepResult(
            attempt_id=attempt.attempt_id,
            action=action,
            intent_id=attempt.intent_id,
            account_id=attempt.account_id,
        )


__all__ = ["CleanupSweeper"]
