from __future__ import annotations

from vaults_backend.app.provisioning import (
    InMemoryAccountStore,
    InMemoryAttemptRepository,
    InMemoryIdempotencyRegistry,
    ProvisioningAuditEvent,
    ProvisioningAuditEventType,
    SandboxPaymentGateway,
)
from vaults_backend.app.provisioning.config import load_provisioning_config
from vaults_backend.app.provisioning.repository import PostgresAccountStore
from vaults_backend.app.provisioning.stripe_gateway import StripePaymentGateway
from vaults_backend.app.services.provisioning import (
    LoggingProvisioningEventLogger,
    build_payment_gateway,
    build_storage,
)


def test_memory_storage_uses_in_process_stores():
    config = load_provisioning_config(env={"PROVISIONING_STORAGE": "memory"})

    accounts, registry, attempts = build_storage(config)

    assert isinstance(accounts, InMemoryAccountStore)
    assert isinstance(registry, InMemoryIdempotencyRegistry)
    assert isinstance(attempts, InMemoryAttemptRepository)


def test_postgres_storage_is_the_default():
    accounts, _, _ = build_storage(load_provisioning_config(env={}))

    assert isinstance(accounts, PostgresAccountStore)


def test_gateway_selection_follows_config():
    sandbox = build_payment_gateway(load_provisioning_config(env={}))
    stripe_gateway = build_payment_gateway(
        load_provisioning_config(env={"PAYMENT_GATEWAY": "stripe", "STRIPE_SECRET_KEY": "sk_test_123"})
    )

    assert isinstance(sandbox, SandboxPaymentGateway)
    assert isinstance(stripe_gateway, StripePaymentGateway)


def test_logging_event_logger_emits_record(caplog):
    caplog.set_level("INFO", logger="provisioning")

    LoggingProvisioningEventLogger().log(
        ProvisioningAuditEvent(
            event_type=ProvisioningAuditEventType.ACCOUNT_ACTIVATED,
            attempt_id="att_1",
            account_id="acct_1",
        )
    )

    assert "account_activated" in caplog.text
    assert "acct_1" in caplog.text
