from __future__ import annotations

from collections import defaultdict
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest
import stripe

from vaults_backend.app.provisioning import (
    AccountRecord,
    InMemoryAccountStore,
    InMemoryAttemptRepository,
    InMemoryIdempotencyRegistry,
    IntentStatus,
    PaymentIntent,
    ProvisioningAuditEvent,
    ProvisioningCoordinator,
    ProvisioningEventLogger,
    ProvisioningRequest,
    RetryPolicy,
    SandboxPaymentGateway,
)


class RecordingPaymentGateway(SandboxPaymentGateway):
    """Sandbox gateway that records calls and can inject failures per operation."""

    def __init__(self, timeline: Optional[List[str]] = None) -> None:
        super().__init__()
        self.calls: list[tuple] = []
        self.timeline = timeline if timeline is not None else []
        self.created_intent_ids: set[str] = set()
        self._fail_before: Dict[str, List[Exception]] = defaultdict(list)
        self._fail_after: Dict[str, List[Exception]] = defaultdict(list)

    def fail_next(self, operation: str, *errors: Exception) -> None:
        """Raise ``errors`` before the call reaches the sandbox."""

        self._fail_before[operation].extend(errors)

    def lose_response(self, operation: str, *errors: Exception) -> None:
        """Apply the call, then raise ``errors`` as if the response was lost."""

        self._fail_after[operation].extend(errors)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def _invoke(self, operation: str, action: Callable[[], PaymentIntent], *args) -> PaymentIntent:
        self.calls.append((operation, *args))
        self.timeline.append(operation)
        if self._fail_before[operation]:
            raise self._fail_before[operation].pop(0)
        result = action()
        if self._fail_after[operation]:
            raise self._fail_after[operation].pop(0)
        return result

    def create_intent(self, *, amount, currency, idempotency_key, metadata=None) -> PaymentIntent:
        def action() -> PaymentIntent:
            intent = SandboxPaymentGateway.create_intent(
                self,
                amount=amount,
                currency=currency,
                idempotency_key=idempotency_key,
                metadata=metadata,
            )
            self.created_intent_ids.add(intent.intent_id)
            return intent

        return self._invoke("create_intent", action, idempotency_key)

    def attach_method(self, intent_id: str, method_ref: str) -> PaymentIntent:
        return self._invoke(
            "attach_method",
            lambda: SandboxPaymentGateway.attach_method(self, intent_id, method_ref),
            intent_id,
        )

    def confirm_intent(self, intent_id: str) -> PaymentIntent:
        return self._invoke("confirm_intent", lambda: SandboxPaymentGateway.confirm_intent(self, intent_id), intent_id)

    def cancel_intent(self, intent_id: str) -> PaymentIntent:
        return self._invoke("cancel_intent", lambda: SandboxPaymentGateway.cancel_intent(self, intent_id), intent_id)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        return self._invoke(
            "retrieve_intent",
            lambda: SandboxPaymentGateway.retrieve_intent(self, intent_id),
            intent_id,
        )

    def peek(self, intent_id: str) -> PaymentIntent:
        """Read an intent without recording a call."""

        return SandboxPaymentGateway.retrieve_intent(self, intent_id)

    def force_status(self, intent_id: str, status: IntentStatus) -> PaymentIntent:
        """Move an intent as the customer or the gateway would, without recording a call."""

        with self._lock:
            return self._store(self._require(intent_id), status)


class RecordingAccountStore(InMemoryAccountStore):
    def __init__(self, timeline: List[str]) -> None:
        super().__init__()
        self.timeline = timeline
        self.promote_conflicts = 0

    def insert_pending(self, record: AccountRecord) -> Optional[AccountRecord]:
        self.timeline.append("insert_pending")
        return super().insert_pending(record)

    def promote(self, account_id: str, expected_version: int) -> Optional[AccountRecord]:
        self.timeline.append("promote")
        if self.promote_conflicts > 0:
            self.promote_conflicts -= 1
            return None
        return super().promote(account_id, expected_version)

    def all_records(self) -> list[AccountRecord]:
        return list(self._records.values())


class FakeEventLogger(ProvisioningEventLogger):
    def __init__(self) -> None:
        self.events: list[ProvisioningAuditEvent] = []

    def log(self, event: ProvisioningAuditEvent) -> None:
        self.events.append(event)


class FakeStripeIntents:
    """Stand-in for ``stripe.PaymentIntent`` following Stripe's state rules for one intent."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.status = "requires_payment_method"
        # Raised before the call applies.
        self.errors: Dict[str, Exception] = {}
        # Raised after the call applied, as if the response was lost.
        self.lost: Dict[str, Exception] = {}

    def _payload(self, intent_id: str = "pi_123") -> Dict[str, Any]:
        return {
            "id": intent_id,
            "amount": 1000,
            "currency": "usd",
            "status": self.status,
            "client_secret": f"{intent_id}_secret_abc",
            "created": 1722502800,
        }

    def _unexpected_state(self, action: str) -> stripe.InvalidRequestError:
        return stripe.InvalidRequestError(
            f"You cannot {action} this PaymentIntent because it has a status of {self.status}.",
            None,
            code="payment_intent_unexpected_state",
            http_status=400,
        )

    def _handle(self, operation: str, apply: Callable[[], None], *args, **kwargs) -> Dict[str, Any]:
        self.calls.append((operation, args, kwargs))
        if operation in self.errors:
            raise self.errors.pop(operation)
        apply()
        if operation in self.lost:
            raise self.lost.pop(operation)
        return self._payload()

    def create(self, **kwargs):
        return self._handle("create", lambda: None, **kwargs)

    def modify(self, intent_id, **kwargs):
        def apply() -> None:
            self.status = "requires_confirmation"

        return self._handle("modify", apply, intent_id, **kwargs)

    def confirm(self, intent_id, **kwargs):
        def apply() -> None:
            if self.status in {"succeeded", "canceled"}:
                raise self._unexpected_state("confirm")
            self.status = "succeeded"

        return self._handle("confirm", apply, intent_id, **kwargs)

    def cancel(self, intent_id, **kwargs):
        def apply() -> None:
            if self.status == "succeeded":
                raise self._unexpected_state("cancel")
            self.status = "canceled"

        return self._handle("cancel", apply, intent_id, **kwargs)

    def retrieve(self, intent_id, **kwargs):
        return self._handle("retrieve", lambda: None, intent_id, **kwargs)


def build_components(**coordinator_overrides) -> SimpleNamespace:
    timeline: List[str] = []
    gateway = coordinator_overrides.pop("gateway", None) or RecordingPaymentGateway(timeline)
    gateway.timeline = timeline
    accounts = RecordingAccountStore(timeline)
    registry = InMemoryIdempotencyRegistry(lease_seconds=60)
    attempts = coordinator_overrides.pop("attempts", None) or InMemoryAttemptRepository()
    event_logger = FakeEventLogger()
    options = {
        "retry_policy": RetryPolicy(max_attempts=3, backoff_seconds=0.0),
        "reservation_wait_seconds": 0.0,
        "reservation_poll_seconds": 0.0,
        "sleep": lambda _seconds: None,
    }
    options.update(coordinator_overrides)
    coordinator = ProvisioningCoordinator(
        gateway=gateway,
        accounts=accounts,
        registry=registry,
        attempts=attempts,
        event_logger=event_logger,
        **options,
    )
    return SimpleNamespace(
        timeline=timeline,
        gateway=gateway,
        accounts=accounts,
        registry=registry,
        attempts=attempts,
        event_logger=event_logger,
        coordinator=coordinator,
    )


@pytest.fixture
def provisioning_components() -> SimpleNamespace:
    return build_components()


@pytest.fixture
def make_request() -> Callable[..., ProvisioningRequest]:
    def factory(**overrides) -> ProvisioningRequest:
        fields = {
            "username": "alice",
            "email": "alice@example.com",
            "plan": "standard",
            "idempotency_key": "k1",
            "payment_method_ref": "pm_card_visa",
        }
        fields.update(overrides)
        return ProvisioningRequest(**fields)

    return factory


@pytest.fixture
def component_factory() -> Callable[..., SimpleNamespace]:
    return build_components


@pytest.fixture
def recording_gateway_class() -> type:
    return RecordingPaymentGateway


@pytest.fixture
def fake_stripe_intents() -> FakeStripeIntents:
    return FakeStripeIntents()
