"""Domain models for paid account provisioning."""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .state import ProvisioningState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanKey(str, Enum):
    """Paid plans a new account can be provisioned on."""

    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class IntentStatus(str, Enum):
    """Last-observed status of a gateway payment intent."""

    CREATED = "created"
    METHOD_ATTACHED = "method_attached"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_open(self) -> bool:
        return self in {IntentStatus.CREATED, IntentStatus.METHOD_ATTACHED}


class AccountStatus(str, Enum):
    """Status of an account record in the account store."""

    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"


class ProvisioningAuditEventType(str, Enum):
    """Audit event categories emitted by the provisioning subsystem."""

    ACCOUNT_ACTIVATED = "account_activated"
    ACCOUNT_REJECTED = "account_rejected"
    INTENT_CANCELED = "intent_canceled"
    COMPENSATION_FAILED = "compensation_failed"
    ATTEMPT_RECONCILED = "attempt_reconciled"


class SweepAction(str, Enum):
    """What the cleanup sweeper did with one stale attempt."""

    CANCELED = "canceled"
    PROMOTED = "promoted"
    SKIPPED = "skipped"
    FAILED = "failed"


class CompensationResult(str, Enum):
    """What compensating a failed attempt achieved."""

    SETTLED = "settled"
    PENDING = "pending"
    INTENT_CONFIRMED = "intent_confirmed"


class ProvisioningRequest(BaseModel):
    """Input to a single provisioning attempt."""

    username: str
    email: str
    plan: str
    idempotency_key: str
    credential_ref: Optional[str] = None
    payment_method_ref: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def fingerprint(self) -> str:
        """Return a stable hash of the normalized request fields.

        The payment method reference is left out so a caller can attach a
        method client-side and resume with the same idempotency key.
        """

        normalized = "\x1f".join(
            [
                self.username.strip(),
                self.email.strip().lower(),
                self.plan.strip().lower(),
                (self.credential_ref or "").strip(),
            ]
        )
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


class PaymentIntent(BaseModel):
    """Gateway-owned payment intent as last observed by the coordinator."""

    intent_id: str
    amount: int = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    status: IntentStatus
    client_secret: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()


class AccountRecord(BaseModel):
    """Account row owned by the account store."""

    account_id: str
    username: str
    email: str
    plan: PlanKey
    status: AccountStatus = AccountStatus.PENDING
    intent_id: str
    version: int = Field(default=1, ge=1)
    credential_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ProvisioningOutcome(BaseModel):
    """Result of a provisioning attempt, memoized per idempotency key."""

    account_id: Optional[str] = None
    status: AccountStatus
    client_secret: Optional[str] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_final(self) -> bool:
        return self.status != AccountStatus.PENDING


class IdempotencyEntry(BaseModel):
    """Registry row binding an idempotency key to one attempt and its outcome."""

    key: str
    fingerprint: str
    attempt_id: str
    outcome: Optional[ProvisioningOutcome] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_leased(self, now: datetime) -> bool:
        return self.lease_expires_at is not None and now < self.lease_expires_at


class ProvisioningAttempt(BaseModel):
    """Server-side state of one run of the provisioning state machine."""

    attempt_id: str
    idempotency_key: str
    state: ProvisioningState = ProvisioningState.DRAFT
    plan: PlanKey
    amount: int = Field(ge=0)
    currency: str
    intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    intent_status: Optional[IntentStatus] = None
    account_id: Optional[str] = None
    confirmation_requested: bool = False
    compensation_pending: bool = False
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_outcome(self) -> ProvisioningOutcome:
        """Project the attempt onto the caller-facing outcome."""

        if self.state == ProvisioningState.ACTIVE:
            return ProvisioningOutcome(account_id=self.account_id, status=AccountStatus.ACTIVE)
        if self.state == ProvisioningState.REJECTED:
            return ProvisioningOutcome(
                account_id=self.account_id,
                status=AccountStatus.REJECTED,
                error_kind=self.error_kind,
                error_message=self.error_message,
            )
        return ProvisioningOutcome(
            account_id=self.account_id,
            status=AccountStatus.PENDING,
            client_secret=self.client_secret,
        )


class ProvisioningAuditEvent(BaseModel):
    """Structured audit event for provisioning transitions."""

    event_type: ProvisioningAuditEventType
    attempt_id: Optional[str] = None
    account_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SweepResult(BaseModel):
    """Outcome of reconciling one stale attempt."""

    attempt_id: str
    action: SweepAction
    intent_id: Optional[str] = None
    account_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SweepSummary(BaseModel):
    """Aggregate result of one sweeper pass."""

    scanned: int = 0
    canceled: int = 0
    promoted: int = 0
    skipped: int = 0
    failures: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "AccountRecord",
    "AccountStatus",
    "CompensationResult",
    "IdempotencyEntry",
    "IntentStatus",
    "PaymentIntent",
    "PlanKey",
    "ProvisioningAttempt",
    "ProvisioningAuditEvent",
    "ProvisioningAuditEventType",
    "ProvisioningOutcome",
    "ProvisioningRequest",
    "SweepAction",
    "SweepResult",
    "SweepSummary",
]
