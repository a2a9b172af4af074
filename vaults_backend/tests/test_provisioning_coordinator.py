"""Unit tests for the provisioning coordinator."""
from __future__ import annotations

import threading
import time

import pytest
import stripe

from vaults_backend.app.provisioning import (
    AccountStatus,
    ConflictError,
    IntentStatus,
    InternalError,
    PaymentError,
    PlanKey,
    ProvisioningAuditEventType,
    ProvisioningState,
    TransientError,
    ValidationError,
)
from vaults_backend.app.provisioning.gateway import ACTION_REQUIRED_METHOD, DECLINED_METHOD
from vaults_backend.app.provisioning.stripe_gateway import StripePaymentGateway


def _attempt_for(components, key: str):
    entry = components.registry.lookup(key)
    assert entry is not None
    attempt = components.attempts.get(entry.attempt_id)
    assert attempt is not None
    return attempt


def test_provision_activates_account_and_memoizes_outcome(provisioning_components, make_request):
    components = provisioning_components
    request = make_request()

    outcome = components.coordinator.provision(request)

    assert outcome.status == AccountStatus.ACTIVE
    assert outcome.account_id is not None
    account = components.accounts.get(outcome.account_id)
    assert account is not None
    assert account.status == AccountStatus.ACTIVE
    assert account.plan == PlanKey.STANDARD
    intent = components.gateway.peek(account.intent_id)
    assert intent.status == IntentStatus.CONFIRMED
    assert intent.amount == 1000
    assert components.event_logger.events[-1].event_type == ProvisioningAuditEventType.ACCOUNT_ACTIVATED

    calls_before = len(components.gateway.calls)
    repeated = components.coordinator.provision(request)

    assert repeated == outcome
    assert len(components.gateway.calls) == calls_before
    assert components.gateway.count("create_intent") == 1
    assert components.gateway.count("confirm_intent") == 1


def test_pending_account_is_written_before_confirmation(provisioning_components, make_request):
    components = provisioning_components

    components.coordinator.provision(make_request())

    timeline = components.timeline
    assert timeline.index("create_intent") < timeline.index("insert_pending")
    assert timeline.index("insert_pending") < timeline.index("confirm_intent")
    assert timeline.index("confirm_intent") < timeline.index("promote")


def test_declined_card_rejects_account_and_cancels_intent(provisioning_components, make_request):
    components = provisioning_components
    request = make_request(payment_method_ref=DECLINED_METHOD)

    outcome = components.coordinator.provision(request)

    assert outcome.status == AccountStatus.REJECTED
    assert outcome.error_kind == "card_declined"
    account = components.accounts.get(outcome.account_id)
    assert account is not None
    assert account.status == AccountStatus.REJECTED
    assert components.gateway.peek(account.intent_id).status == IntentStatus.CANCELED
    event_types = [event.event_type for event in components.event_logger.events]
    assert ProvisioningAuditEventType.INTENT_CANCELED in event_types
    assert event_types[-1] == ProvisioningAuditEventType.ACCOUNT_REJECTED

    calls_before = len(components.gateway.calls)
    assert components.coordinator.provision(request) == outcome
    assert len(components.gateway.calls) == calls_before


def test_reused_key_with_different_request_conflicts(provisioning_components, make_request):
    components = provisioning_components
    components.coordinator.provision(make_request())

    with pytest.raises(ConflictError) as excinfo:
        components.coordinator.provision(make_request(username="bob", email="bob@example.com"))

    assert excinfo.value.code == "idempotency_key_reused"
    assert components.timeline.count("insert_pending") == 1
    assert [record.username for record in components.accounts.all_records()] == ["alice"]


def test_fingerprint_ignores_email_case_and_payment_method(provisioning_components, make_request):
    components = provisioning_components
    first = components.coordinator.provision(make_request())

    repeated = components.coordinator.provision(
        make_request(email="Alice@Example.com", payment_method_ref="pm_card_mastercard")
    )

    assert repeated == first


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"email": "not-an-email"}, "invalid_email"),
        ({"plan": "gold"}, "unknown_plan"),
        ({"username": "a"}, "invalid_username"),
        ({"idempotency_key": "   "}, "missing_idempotency_key"),
    ],
)
def test_invalid_requests_fail_before_side_effects(provisioning_components, make_request, overrides, code):
    components = provisioning_components
    request = make_request(**overrides)

    with pytest.raises(ValidationError) as excinfo:
        components.coordinator.provision(request)

    assert excinfo.value.code == code
    assert excinfo.value.status_code == 400
    assert components.gateway.calls == []
    assert components.accounts.all_records() == []
    assert components.registry.lookup(request.idempotency_key) is None


def test_transient_gateway_failures_are_retried(provisioning_components, make_request):
    components = provisioning_components
    components.gateway.fail_next(
        "confirm_intent",
        TransientError(message="gateway timeout"),
        TransientError(message="gateway timeout"),
    )

    outcome = components.coordinator.provision(make_request())

    assert outcome.status == AccountStatus.ACTIVE
    assert components.gateway.count("confirm_intent") == 3


def test_exhausted_retries_raise_and_retry_resumes_same_attempt(provisioning_components, make_request):
    components = provisioning_components
    request = make_request()
    components.gateway.lose_response(
        "create_intent",
        TransientError(message="read timeout"),
        TransientError(message="read timeout"),
        TransientError(message="read timeout"),
    )

    with pytest.raises(InternalError) as excinfo:
        components.coordinator.provision(request)

    assert excinfo.value.code == "retries_exhausted"
    assert excinfo.value.detail["retryable"] is True
    entry = components.registry.lookup("k1")
    assert entry is not None
    assert entry.outcome is None
    assert entry.lease_expires_at is None
    assert _attempt_for(components, "k1").state == ProvisioningState.INTENT_CREATED

    outcome = components.coordinator.provision(request)

    assert outcome.status == AccountStatus.ACTIVE
    assert len(components.gateway.created_intent_ids) == 1
    assert components.timeline.count("insert_pending") == 1


def test_lost_confirmation_response_is_reconciled_on_retry(provisioning_components, make_request):
    components = provisioning_components
    request = make_request()
    components.gateway.lose_response(
        "confirm_intent",
        TransientError(message="read timeout"),
        TransientError(message="read timeout"),
        TransientError(message="read timeout"),
    )

    with pytest.raises(InternalError):
        components.coordinator.provision(request)

    attempt = _attempt_for(components, "k1")
    assert attempt.state == ProvisioningState.PENDING_CONFIRMATION
    assert attempt.confirmation_requested is True
    assert components.accounts.get(attempt.account_id).status == AccountStatus.PENDING

    outcome = components.coordinator.provision(request)

    assert outcome.status == AccountStatus.ACTIVE
    assert outcome.account_id == attempt.account_id
    assert components.timeline.count("insert_pending") == 1


def test_missing_payment_method_returns_client_secret_then_resumes(provisioning_components, make_request):
    components = provisioning_components

    pending = components.coordinator.provision(make_request(payment_method_ref=None))

    assert pending.status == AccountStatus.PENDING
    assert pending.client_secret
    assert pending.account_id is None
    entry = components.registry.lookup("k1")
    assert entry.outcome is None
    assert entry.lease_expires_at is None

    outcome = components.coordinator.provision(make_request(payment_method_ref="pm_card_visa"))

    assert outcome.status == AccountStatus.ACTIVE
    assert components.gateway.count("create_intent") == 1


def test_action_required_keeps_account_pending(provisioning_components, make_request):
    components = provisioning_components

    outcome = components.coordinator.provision(make_request(payment_method_ref=ACTION_REQUIRED_METHOD))

    assert outcome.status == AccountStatus.PENDING
    assert outcome.client_secret
    account = components.accounts.get(outcome.account_id)
    assert account.status == AccountStatus.PENDING
    assert components.gateway.peek(account.intent_id).status == IntentStatus.METHOD_ATTACHED


def test_taken_username_rejects_and_cancels_second_intent(provisioning_components, make_request):
    components = provisioning_components
    components.coordinator.provision(make_request())

    outcome = components.coordinator.provision(make_request(idempotency_key="k2", email="other@example.com"))

    assert outcome.status == AccountStatus.REJECTED
    assert outcome.error_kind == "username_unavailable"
    attempt = _attempt_for(components, "k2")
    assert components.gateway.peek(attempt.intent_id).status == IntentStatus.CANCELED
    assert len(components.accounts.all_records()) == 1


def test_in_flight_key_conflicts_after_wait(provisioning_components, make_request):
    components = provisioning_components
    request = make_request()
    components.registry.reserve("k1", request.fingerprint())

    with pytest.raises(ConflictError) as excinfo:
        components.coordinator.provision(request)

    assert excinfo.value.code == "request_in_progress"
    assert components.gateway.calls == []


def test_concurrent_requests_with_same_key_create_one_account(component_factory, make_request, recording_gateway_class):
    entered = threading.Event()
    proceed = threading.Event()

    class SlowGateway(recording_gateway_class):
        def create_intent(self, **kwargs):
            entered.set()
            proceed.wait(timeout=5)
            return super().create_intent(**kwargs)

    components = component_factory(
        gateway=SlowGateway(),
        reservation_wait_seconds=5.0,
        reservation_poll_seconds=0.01,
        sleep=time.sleep,
    )
    request = make_request()
    results = []

    def run() -> None:
        results.append(components.coordinator.provision(request))

    first = threading.Thread(target=run)
    first.start()
    assert entered.wait(timeout=5)
    second = threading.Thread(target=run)
    second.start()
    time.sleep(0.05)
    proceed.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert len(results) == 2
    assert results[0] == results[1]
    assert results[0].status == AccountStatus.ACTIVE
    assert components.timeline.count("insert_pending") == 1
    assert len(components.gateway.created_intent_ids) == 1


def test_promotion_retries_version_conflicts(provisioning_components, make_request):
    components = provisioning_components
    components.accounts.promote_conflicts = 1

    outcome = components.coordinator.provision(make_request())

    assert outcome.status == AccountStatus.ACTIVE
    assert components.timeline.count("promote") == 2


def test_promotion_conflicts_exhaust_then_resume(provisioning_components, make_request):
    components = provisioning_components
    components.accounts.promote_conflicts = 5
    request = make_request()

    with pytest.raises(InternalError) as excinfo:
        components.coordinator.provision(request)

    assert excinfo.value.code == "promotion_conflict"
    attempt = _attempt_for(components, "k1")
    assert components.accounts.get(attempt.account_id).status == AccountStatus.PENDING

    outcome = components.coordinator.provision(request)

    assert outcome.status == AccountStatus.ACTIVE
    assert components.gateway.count("confirm_intent") == 1


def test_compensation_failure_is_left_for_sweeper(provisioning_components, make_request):
    components = provisioning_components
    components.gateway.fail_next(
        "cancel_intent",
        TransientError(message="gateway timeout"),
        TransientError(message="gateway timeout"),
        TransientError(message="gateway timeout"),
    )

    outcome = components.coordinator.provision(make_request(payment_method_ref=DECLINED_METHOD))

    assert outcome.status == AccountStatus.REJECTED
    attempt = _attempt_for(components, "k1")
    assert attempt.compensation_pending is True
    assert components.accounts.get(attempt.account_id).status == AccountStatus.PENDING
    event_types = [event.event_type for event in components.event_logger.events]
    assert ProvisioningAuditEventType.COMPENSATION_FAILED in event_types


def test_active_accounts_always_have_confirmed_intents(provisioning_components, make_request):
    components = provisioning_components
    methods = ["pm_card_visa", DECLINED_METHOD, "pm_card_mastercard", DECLINED_METHOD]

    for index, method in enumerate(methods):
        components.coordinator.provision(
            make_request(
                username=f"user{index}",
                email=f"user{index}@example.com",
                idempotency_key=f"key-{index}",
                payment_method_ref=method,
            )
        )

    records = components.accounts.all_records()
    assert len(records) == len(methods)
    for record in records:
        intent = components.gateway.peek(record.intent_id)
        if record.status == AccountStatus.ACTIVE:
            assert intent.status == IntentStatus.CONFIRMED
        else:
            assert intent.status != IntentStatus.CONFIRMED
    assert sum(record.status == AccountStatus.ACTIVE for record in records) == 2


def test_describe_reports_recorded_and_pending_outcomes(provisioning_components, make_request):
    components = provisioning_components
    coordinator = components.coordinator

    assert coordinator.describe("unknown") is None

    coordinator.provision(make_request(payment_method_ref=None))
    pending = coordinator.describe("k1")
    assert pending.status == AccountStatus.PENDING

    coordinator.provision(make_request())
    assert coordinator.describe("k1").status == AccountStatus.ACTIVE


def test_refused_retry_of_landed_confirm_activates_account(component_factory, fake_stripe_intents, make_request):
    fake_stripe_intents.lost["confirm"] = stripe.APIConnectionError("connection reset")
    components = component_factory(gateway=StripePaymentGateway(api_key="sk_test_123", intents=fake_stripe_intents))

    outcome = components.coordinator.provision(make_request())

    assert outcome.status == AccountStatus.ACTIVE
    assert components.accounts.get(outcome.account_id).status == AccountStatus.ACTIVE
    assert fake_stripe_intents.status == "succeeded"
    confirms = [call for call in fake_stripe_intents.calls if call[0] == "confirm"]
    assert len(confirms) == 2
    assert {call[2]["idempotency_key"] for call in confirms} == {"pi_123-confirm"}
    assert not any(call[0] == "cancel" for call in fake_stripe_intents.calls)


def test_confirm_refused_after_it_landed_is_not_rejected(provisioning_components, make_request):
    components = provisioning_components
    components.gateway.lose_response(
        "confirm_intent",
        PaymentError(code="payment_intent_unexpected_state", message="Intent already succeeded"),
    )

    outcome = components.coordinator.provision(make_request())

    assert outcome.status == AccountStatus.ACTIVE
    account = components.accounts.get(outcome.account_id)
    assert account.status == AccountStatus.ACTIVE
    assert components.gateway.peek(account.intent_id).status == IntentStatus.CONFIRMED
    assert components.gateway.count("cancel_intent") == 0


def test_compensation_keeps_account_when_intent_is_confirmed(provisioning_components, make_request):
    components = provisioning_components
    coordinator = components.coordinator
    pending = coordinator.provision(make_request(payment_method_ref=ACTION_REQUIRED_METHOD))
    attempt = _attempt_for(components, "k1")
    # The customer completes authentication out of band.
    components.gateway.force_status(attempt.intent_id, IntentStatus.CONFIRMED)

    settled = coordinator.reject_attempt(attempt, PaymentError(code="intent_expired", message="expired"))

    assert settled.state == ProvisioningState.ACTIVE
    assert components.accounts.get(pending.account_id).status == AccountStatus.ACTIVE
    assert components.gateway.count("cancel_intent") == 1
    event_types = [event.event_type for event in components.event_logger.events]
    assert ProvisioningAuditEventType.ACCOUNT_REJECTED not in event_types
    assert event_types[-1] == ProvisioningAuditEventType.ACCOUNT_ACTIVATED
