"""Coordinator driving a paid signup through the payment gateway and account store.

The coordinator owns the provisioning state machine. Every attempt is persisted
through :class:`AttemptRepository` after each transition so that a retried
request (same idempotency key) resumes where the previous one stopped and the
cleanup sweeper can find abandoned attempts.

Ordering rule: the pending account record is written and bound to the intent
*before* confirmation is requested. A confirmed payment therefore always has an
account record to reconcile against.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, TypeVar
from uuid import uuid4

from email_validator import EmailNotValidError, validate_email

from .accounts import AccountStore
from .attempts import AttemptRepository
from .catalog import get_plan_definition
from .exceptions import ConflictError, InternalError, PaymentError, ProvisioningError, ValidationError
from .gateway import PaymentGateway
from .idempotency import IdempotencyRegistry
from .models import (
    AccountRecord,
    AccountStatus,
    CompensationResult,
    IdempotencyEntry,
    IntentStatus,
    PaymentIntent,
    PlanKey,
    ProvisioningAttempt,
    ProvisioningAuditEvent,
    ProvisioningAuditEventType,
    ProvisioningOutcome,
    ProvisioningRequest,
)
from .retry import RetryPolicy, call_with_retry
from .state import ProvisioningState, transition

logger = logging.getLogger(__name__)

T = TypeVar("T")

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")


class ProvisioningEventLogger(Protocol):
    """Captures structured provisioning audit events."""

    def log(self, event: ProvisioningAuditEvent) -> None:
        ...


@dataclass
class ProvisioningCoordinator:
    """Runs provisioning attempts and memoizes their outcome per idempotency key."""

    gateway: PaymentGateway
    accounts: AccountStore
    registry: IdempotencyRegistry
    attempts: AttemptRepository
    event_logger: ProvisioningEventLogger
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    currency: str = "usd"
    promote_max_attempts: int = 3
    reservation_wait_seconds: float = 5.0
    reservation_poll_seconds: float = 0.2
    sleep: Callable[[float], None] = time.sleep

    def provision(self, request: ProvisioningRequest) -> ProvisioningOutcome:
        key = request.idempotency_key.strip()
        if not key:
            raise ValidationError(code="missing_idempotency_key", message="An idempotency key is required")
        fingerprint = request.fingerprint()

        plan: Optional[PlanKey] = None
        deadline: Optional[float] = None
        while True:
            memoized = self._memoized_outcome(key, fingerprint)
            if memoized is not None:
                return memoized
            if plan is None:
                plan = self._validate(request)
            entry = self._call("idempotency reserve", lambda: self.registry.reserve(key, fingerprint))
            if entry is not None:
                break
            # Another caller holds the key: wait for its outcome instead of duplicating work.
            now = time.monotonic()
            if deadline is None:
                deadline = now + self.reservation_wait_seconds
            elif now >= deadline:
                raise ConflictError(
                    code="request_in_progress",
                    message="A request with this idempotency key is still being processed",
                    detail={"idempotency_key": key, "retryable": True},
                )
            self.sleep(self.reservation_poll_seconds)

        return self._run(entry, request, plan)

    def describe(self, idempotency_key: str) -> Optional[ProvisioningOutcome]:
        """Return the recorded or in-flight outcome for ``idempotency_key``."""

        entry = self._call("idempotency lookup", lambda: self.registry.lookup(idempotency_key))
        if entry is None:
            return None
        if entry.outcome is not None:
            return entry.outcome
        attempt = self._call("attempt lookup", lambda: self.attempts.get(entry.attempt_id))
        return attempt.to_outcome() if attempt else None

    def _run(self, entry: IdempotencyEntry, request: ProvisioningRequest, plan: PlanKey) -> ProvisioningOutcome:
        key = entry.key
        try:
            attempt = self._call("attempt lookup", lambda: self.attempts.get(entry.attempt_id))
            if attempt is None:
                attempt = self.save_attempt(self._new_attempt(entry, plan))
            else:
                logger.info(
                    "Resuming provisioning attempt",
                    extra={"attempt_id": attempt.attempt_id, "state": attempt.state.value},
                )
            attempt = self._drive(attempt, request)
        except Exception:
            self._release(key)
            raise

        outcome = attempt.to_outcome()
        if not outcome.is_final:
            self._release(key)
            return outcome
        try:
            self._call("idempotency complete", lambda: self.registry.complete(key, outcome))
        except ProvisioningError:
            self._release(key)
            raise
        return outcome

    def _memoized_outcome(self, key: str, fingerprint: str) -> Optional[ProvisioningOutcome]:
        entry = self._call("idempotency lookup", lambda: self.registry.lookup(key))
        if entry is None:
            return None
        if entry.fingerprint != fingerprint:
            raise ConflictError(
                code="idempotency_key_reused",
                message="This idempotency key was already used for a different request",
                detail={"idempotency_key": key},
            )
        if entry.outcome is not None:
            logger.info(
                "Returning memoized provisioning outcome",
                extra={"idempotency_key": key, "attempt_id": entry.attempt_id},
            )
        return entry.outcome

    def _validate(self, request: ProvisioningRequest) -> PlanKey:
        if not _USERNAME_PATTERN.match(request.username.strip()):
            raise ValidationError(
                code="invalid_username",
                message="Username must be 3-32 characters of letters, digits, '.', '_' or '-'",
            )
        try:
            validate_email(request.email.strip(), check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError(code="invalid_email", message=str(exc)) from exc
        try:
            plan = PlanKey(request.plan.strip().lower())
        except ValueError as exc:
            raise ValidationError(code="unknown_plan", message=f"Unknown plan {request.plan!r}") from exc
        if request.payment_method_ref is not None and not request.payment_method_ref.strip():
            raise ValidationError(code="invalid_payment_method", message="Payment method reference is empty")
        return plan

    def _new_attempt(self, entry: IdempotencyEntry, plan: PlanKey) -> ProvisioningAttempt:
        definition = get_plan_definition(plan)
        return ProvisioningAttempt(
            attempt_id=entry.attempt_id,
            idempotency_key=entry.key,
            plan=plan,
            amount=definition.amount,
            currency=self.currency,
        )

    def _drive(self, attempt: ProvisioningAttempt, request: ProvisioningRequest) -> ProvisioningAttempt:
        while not attempt.state.is_terminal:
            if attempt.state == ProvisioningState.DRAFT:
                attempt = self.save_attempt(transition(attempt, ProvisioningState.INTENT_CREATED))
            elif attempt.state == ProvisioningState.INTENT_CREATED:
                attempt = self._create_intent(attempt)
            elif attempt.state == ProvisioningState.METHOD_PENDING:
                attempt = self._attach_method(attempt, request)
                if attempt.state == ProvisioningState.METHOD_PENDING:
                    return attempt
            else:
                attempt = self._confirm(attempt, request)
                if attempt.state == ProvisioningState.PENDING_CONFIRMATION:
                    return attempt
        return attempt

    def create_intent_for(self, attempt: ProvisioningAttempt) -> PaymentIntent:
        """Create (or recover) the gateway intent belonging to ``attempt``."""

        return self._call(
            "create_intent",
            lambda: self.gateway.create_intent(
                amount=attempt.amount,
                currency=attempt.currency,
                idempotency_key=attempt.attempt_id,
                metadata={"attempt_id": attempt.attempt_id, "plan": attempt.plan.value},
            ),
        )

    def retrieve_intent_for(self, attempt: ProvisioningAttempt) -> PaymentIntent:
        intent_id = attempt.intent_id
        return self._call("retrieve_intent", lambda: self.gateway.retrieve_intent(intent_id))

    def _create_intent(self, attempt: ProvisioningAttempt) -> ProvisioningAttempt:
        try:
            intent = self.create_intent_for(attempt)
        except PaymentError as exc:
            return self.reject_attempt(attempt, exc)
        return self.save_attempt(
            transition(
                attempt,
                ProvisioningState.METHOD_PENDING,
                intent_id=intent.intent_id,
                client_secret=intent.client_secret,
                intent_status=intent.status,
            )
        )

    def _attach_method(self, attempt: ProvisioningAttempt, request: ProvisioningRequest) -> ProvisioningAttempt:
        intent_id = attempt.intent_id
        try:
            if request.payment_method_ref:
                method_ref = request.payment_method_ref.strip()
                intent = self._call("attach_method", lambda: self.gateway.attach_method(intent_id, method_ref))
            else:
                intent = self.retrieve_intent_for(attempt)
        except PaymentError as exc:
            return self.reject_attempt(attempt, exc)

        if intent.status == IntentStatus.METHOD_ATTACHED:
            return self.save_attempt(
                transition(attempt, ProvisioningState.PENDING_CONFIRMATION, intent_status=intent.status)
            )
        if intent.status == IntentStatus.CONFIRMED:
            logger.warning(
                "Intent confirmed before an account was bound; binding now",
                extra={"attempt_id": attempt.attempt_id, "intent_id": intent_id},
            )
            return self.save_attempt(
                transition(
                    attempt,
                    ProvisioningState.PENDING_CONFIRMATION,
                    intent_status=intent.status,
                    confirmation_requested=True,
                )
            )
        if intent.status in {IntentStatus.CANCELED, IntentStatus.FAILED}:
            return self.reject_attempt(
                attempt,
                PaymentError(code="intent_closed", message=f"Payment intent is {intent.status.value}"),
            )
        # No method yet: the caller attaches one with the client secret and retries.
        return attempt

    def _confirm(self, attempt: ProvisioningAttempt, request: ProvisioningRequest) -> ProvisioningAttempt:
        if attempt.account_id is None:
            attempt = self.save_attempt(attempt.model_copy(update={"account_id": f"acct_{uuid4().hex}"}))
        try:
            account = self._bind_account(attempt, request)
        except ValidationError as exc:
            return self.reject_attempt(attempt.model_copy(update={"account_id": None}), exc)

        if account.status == AccountStatus.ACTIVE:
            return self.activate_attempt(attempt, account)
        if account.status == AccountStatus.REJECTED:
            return self.reject_attempt(
                attempt,
                PaymentError(code="account_rejected", message="The pending account was already rejected"),
            )

        intent_id = attempt.intent_id
        intent: Optional[PaymentIntent] = None
        if attempt.confirmation_requested:
            intent = self.retrieve_intent_for(attempt)
        if intent is None or intent.status == IntentStatus.METHOD_ATTACHED:
            attempt = self.save_attempt(attempt.model_copy(update={"confirmation_requested": True}))
            try:
                intent = self._call("confirm_intent", lambda: self.gateway.confirm_intent(intent_id))
            except PaymentError as exc:
                # A retried confirm whose first call landed is refused by the gateway.
                intent = self.retrieve_intent_for(attempt)
                if intent.status != IntentStatus.CONFIRMED:
                    return self.reject_attempt(attempt, exc)
                logger.info(
                    "Confirm refused for an intent that is already confirmed",
                    extra={"attempt_id": attempt.attempt_id, "intent_id": intent_id, "error_code": exc.code},
                )

        if intent.status == IntentStatus.CONFIRMED:
            return self.activate_attempt(attempt, account)
        if intent.status == IntentStatus.METHOD_ATTACHED:
            # The caller still has to complete an authentication step.
            return self.save_attempt(
                attempt.model_copy(update={"intent_status": intent.status, "client_secret": intent.client_secret})
            )
        return self.reject_attempt(
            attempt,
            PaymentError(code="payment_not_confirmed", message=f"Payment intent is {intent.status.value}"),
        )

    def _bind_account(
        self,
        attempt: ProvisioningAttempt,
        request: ProvisioningRequest,
    ) -> AccountRecord:
        account_id = attempt.account_id
        existing = self._call("account get", lambda: self.accounts.get(account_id))
        if existing is not None:
            self._check_binding(attempt, existing)
            return existing

        record = AccountRecord(
            account_id=account_id,
            username=request.username.strip(),
            email=request.email.strip(),
            plan=attempt.plan,
            intent_id=attempt.intent_id,
            credential_ref=request.credential_ref,
        )
        stored = self._call("account insert", lambda: self.accounts.insert_pending(record))
        if stored is None:
            # A timed-out insert may have landed; anything else is a taken username.
            existing = self._call("account get", lambda: self.accounts.get(account_id))
            if existing is None:
                raise ValidationError(
                    code="username_unavailable",
                    message=f"Username {record.username!r} is already taken",
                )
            self._check_binding(attempt, existing)
            stored = existing
        logger.info(
            "Pending account bound to payment intent",
            extra={"attempt_id": attempt.attempt_id, "account_id": account_id, "intent_id": attempt.intent_id},
        )
        return stored

    def _check_binding(self, attempt: ProvisioningAttempt, account: AccountRecord) -> None:
        if account.intent_id != attempt.intent_id:
            logger.error(
                "Account bound to a different payment intent",
                extra={"attempt_id": attempt.attempt_id, "account_id": account.account_id},
            )
            raise InternalError(
                code="binding_mismatch",
                message="Account record is bound to another payment intent",
                detail={"account_id": account.account_id},
            )

    def activate_attempt(self, attempt: ProvisioningAttempt, account: AccountRecord) -> ProvisioningAttempt:
        """Promote ``account`` and move ``attempt`` to active; the intent must be confirmed."""

        promoted = self._promote(account)
        activated = self.save_attempt(
            transition(
                attempt,
                ProvisioningState.ACTIVE,
                intent_status=IntentStatus.CONFIRMED,
                client_secret=None,
            )
        )
        self.event_logger.log(
            ProvisioningAuditEvent(
                event_type=ProvisioningAuditEventType.ACCOUNT_ACTIVATED,
                attempt_id=activated.attempt_id,
                account_id=promoted.account_id,
                metadata={"plan": activated.plan.value, "intent_id": activated.intent_id or ""},
            )
        )
        return activated

    def _promote(self, account: AccountRecord) -> AccountRecord:
        current = account
        for _ in range(max(1, self.promote_max_attempts)):
            if current.status == AccountStatus.ACTIVE:
                return current
            if current.status == AccountStatus.REJECTED:
                logger.error(
                    "Confirmed payment bound to a rejected account",
                    extra={"account_id": current.account_id, "intent_id": current.intent_id},
                )
                raise InternalError(
                    code="confirmed_payment_rejected_account",
                    message="Payment was confirmed for an account that is already rejected",
                    detail={"account_id": current.account_id},
                )
            expected_version = current.version
            promoted = self._call(
                "account promote",
                lambda: self.accounts.promote(current.account_id, expected_version),
            )
            if promoted is not None:
                return promoted
            logger.info(
                "Account version conflict during promotion; re-reading",
                extra={"account_id": current.account_id, "expected_version": expected_version},
            )
            refreshed = self._call("account get", lambda: self.accounts.get(current.account_id))
            if refreshed is None:
                raise InternalError(
                    code="account_missing",
                    message="Pending account disappeared before promotion",
                    detail={"account_id": current.account_id},
                )
            current = refreshed
        if current.status == AccountStatus.ACTIVE:
            return current
        raise InternalError(
            code="promotion_conflict",
            message="Account promotion kept conflicting; retry with the same idempotency key",
            detail={"account_id": current.account_id, "retryable": True},
        )

    def reject_attempt(self, attempt: ProvisioningAttempt, error: ProvisioningError) -> ProvisioningAttempt:
        """Compensate and move ``attempt`` to rejected, recording ``error``.

        When compensation finds the intent already confirmed the account is kept
        and the attempt is settled as a confirmed payment instead.
        """

        compensation = self.compensate_attempt(attempt)
        if compensation == CompensationResult.INTENT_CONFIRMED:
            return self._settle_confirmed(attempt)
        rejected = self.save_attempt(
            transition(
                attempt,
                ProvisioningState.REJECTED,
                error_kind=error.code,
                error_message=error.message,
                compensation_pending=compensation == CompensationResult.PENDING,
                client_secret=None,
            )
        )
        logger.info(
            "Provisioning attempt rejected",
            extra={"attempt_id": rejected.attempt_id, "error_code": error.code},
        )
        self.event_logger.log(
            ProvisioningAuditEvent(
                event_type=ProvisioningAuditEventType.ACCOUNT_REJECTED,
                attempt_id=rejected.attempt_id,
                account_id=rejected.account_id,
                metadata={"error": error.code},
            )
        )
        return rejected

    def _settle_confirmed(self, attempt: ProvisioningAttempt) -> ProvisioningAttempt:
        account_id = attempt.account_id
        account = self._call("account get", lambda: self.accounts.get(account_id)) if account_id else None
        if account is not None and attempt.state == ProvisioningState.PENDING_CONFIRMATION:
            return self.activate_attempt(attempt, account)
        if account is None and attempt.state == ProvisioningState.METHOD_PENDING:
            # Paid before an account was bound: binding and promotion follow.
            return self.save_attempt(
                transition(
                    attempt,
                    ProvisioningState.PENDING_CONFIRMATION,
                    intent_status=IntentStatus.CONFIRMED,
                    confirmation_requested=True,
                )
            )
        logger.error(
            "Confirmed payment has no account to activate; manual refund required",
            extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id},
        )
        raise InternalError(
            code="confirmed_payment_unbound",
            message="Payment was confirmed but no account can be activated for it",
            detail={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id},
        )

    def compensate_attempt(self, attempt: ProvisioningAttempt) -> CompensationResult:
        """Cancel the intent, then reject the account.

        The account is only rejected once the intent is known to be closed. A
        cancel refused because the intent is confirmed leaves the account alone
        and returns ``INTENT_CONFIRMED``.
        """

        intent_id = attempt.intent_id
        if intent_id:
            try:
                self._call("cancel_intent", lambda: self.gateway.cancel_intent(intent_id))
            except InternalError:
                self._log_compensation_failure(attempt, "cancel_intent")
                return CompensationResult.PENDING
            except PaymentError as exc:
                if self.retrieve_intent_for(attempt).status == IntentStatus.CONFIRMED:
                    logger.warning(
                        "Cancel refused for a confirmed intent; keeping the account",
                        extra={"attempt_id": attempt.attempt_id, "intent_id": intent_id, "error_code": exc.code},
                    )
                    return CompensationResult.INTENT_CONFIRMED
                self._log_compensation_failure(attempt, "cancel_intent")
            else:
                self.event_logger.log(
                    ProvisioningAuditEvent(
                        event_type=ProvisioningAuditEventType.INTENT_CANCELED,
                        attempt_id=attempt.attempt_id,
                        metadata={"intent_id": intent_id},
                    )
                )
        account_id = attempt.account_id
        if account_id:
            try:
                self._call("account reject", lambda: self.accounts.reject(account_id))
            except ProvisioningError:
                self._log_compensation_failure(attempt, "account_reject")
                return CompensationResult.PENDING
        return CompensationResult.SETTLED

    def _log_compensation_failure(self, attempt: ProvisioningAttempt, step: str) -> None:
        logger.warning(
            "Compensating action failed; left to the cleanup sweeper",
            exc_info=True,
            extra={"attempt_id": attempt.attempt_id, "compensation_step": step},
        )
        self.event_logger.log(
            ProvisioningAuditEvent(
                event_type=ProvisioningAuditEventType.COMPENSATION_FAILED,
                attempt_id=attempt.attempt_id,
                account_id=attempt.account_id,
                metadata={"step": step},
            )
        )

    def save_attempt(self, attempt: ProvisioningAttempt) -> ProvisioningAttempt:
        """Persist ``attempt``; raises :class:`ConflictError` when another writer saved it first."""

        saved = self._call("attempt save", lambda: self.attempts.save(attempt))
        if saved is not None:
            return saved
        # A timed-out save may have landed before the retry.
        stored = self._call("attempt lookup", lambda: self.attempts.get(attempt.attempt_id))
        if (
            stored is not None
            and stored.version == attempt.version + 1
            and stored.model_dump(exclude={"version"}) == attempt.model_dump(exclude={"version"})
        ):
            return stored
        logger.warning(
            "Provisioning attempt was saved by another worker",
            extra={"attempt_id": attempt.attempt_id, "expected_version": attempt.version},
        )
        raise ConflictError(
            code="attempt_modified",
            message="The provisioning attempt was updated concurrently; retry with the same idempotency key",
            detail={"attempt_id": attempt.attempt_id, "retryable": True},
        )

    def _release(self, key: str) -> None:
        try:
            self._call("idempotency release", lambda: self.registry.release(key))
        except ProvisioningError:
            logger.warning("Failed to release idempotency reservation", exc_info=True, extra={"idempotency_key": key})

    def _call(self, description: str, operation: Callable[[], T]) -> T:
        return call_with_retry(operation, description=description, policy=self.retry_policy, sleep=self.sleep)


__all__ = ["ProvisioningCoordinator", "ProvisioningEventLogger"]
