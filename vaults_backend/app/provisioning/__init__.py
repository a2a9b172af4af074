"""Provisioning domain package coordinating paid signups with the payment gateway."""

from .accounts import AccountStore, InMemoryAccountStore
from .attempts import AttemptRepository, InMemoryAttemptRepository
from .coordinator import ProvisioningCoordinator, ProvisioningEventLogger
from .exceptions import (
    ConflictError,
    InternalError,
    PaymentError,
    ProvisioningError,
    TransientError,
    ValidationError,
)
from .gateway import PaymentGateway, SandboxPaymentGateway
from .idempotency import IdempotencyRegistry, InMemoryIdempotencyRegistry
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
    SweepAction,
    SweepResult,
    SweepSummary,
)
from .retry import RetryPolicy
from .state import ProvisioningState
from .sweeper import CleanupSweeper

__all__ = [
    "AccountRecord",
    "AccountStatus",
    "AccountStore",
    "AttemptRepository",
    "CleanupSweeper",
    "CompensationResult",
    "ConflictError",
    "IdempotencyEntry",
    "IdempotencyRegistry",
    "InMemoryAccountStore",
    "InMemoryAttemptRepository",
    "InMemoryIdempotencyRegistry",
    "IntentStatus",
    "InternalError",
    "PaymentError",
    "PaymentGateway",
    "PaymentIntent",
    "PlanKey",
    "ProvisioningAttempt",
    "ProvisioningAuditEvent",
    "ProvisioningAuditEventType",
    "ProvisioningCoordinator",
    "ProvisioningError",
    "ProvisioningEventLogger",
    "ProvisioningOutcome",
    "ProvisioningRequest",
    "ProvisioningState",
    "RetryPolicy",
    "SandboxPaymentGateway",
    "SweepAction",
    "SweepResult",
    "SweepSummary",
    "TransientError",
    "ValidationError",
]
