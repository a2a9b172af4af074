"""Application wiring for the provisioning coordinator and cleanup sweeper."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Tuple

from ..provisioning import (
    AccountStore,
    AttemptRepository,
    CleanupSweeper,
    IdempotencyRegistry,
    InMemoryAccountStore,
    InMemoryAttemptRepository,
    InMemoryIdempotencyRegistry,
    PaymentGateway,
    ProvisioningAuditEvent,
    ProvisioningCoordinator,
    ProvisioningEventLogger,
    RetryPolicy,
    SandboxPaymentGateway,
)
from ..provisioning.config import ProvisioningConfig, load_provisioning_config
from ..provisioning.repository import (
    PostgresAccountStore,
    PostgresAttemptRepository,
    PostgresIdempotencyRegistry,
)


logger = logging.getLogger("provisioning")


class LoggingProvisioningEventLogger(ProvisioningEventLogger):
    """Event logger forwarding provisioning audit events to logging."""

    def log(self, event: ProvisioningAuditEvent) -> None:
        logger.info(
            "Provisioning event %s attempt=%s account=%s metadata=%s",
            event.event_type.value,
            event.attempt_id,
            event.account_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_provisioning_config() -> ProvisioningConfig:
    return load_provisioning_config()


def build_payment_gateway(config: ProvisioningConfig) -> PaymentGateway:
    if config.gateway_name == "sandbox":
        return SandboxPaymentGateway()
    if config.gateway_name == "stripe":
        from ..provisioning.stripe_gateway import StripePaymentGateway

        return StripePaymentGateway(
            api_key=config.stripe_secret_key or "",
            timeout_seconds=config.gateway_timeout_seconds,
            return_url=config.payment_return_url,
        )
    raise ValueError(f"Unsupported payment gateway {config.gateway_name!r}")


def build_storage(config: ProvisioningConfig) -> Tuple[AccountStore, IdempotencyRegistry, AttemptRepository]:
    if config.storage_backend == "memory":
        return (
            InMemoryAccountStore(),
            InMemoryIdempotencyRegistry(
                retention_seconds=config.idempotency_retention_seconds,
                lease_seconds=config.reservation_lease_seconds,
            ),
            InMemoryAttemptRepository(),
        )
    return (
        PostgresAccountStore(),
        PostgresIdempotencyRegistry(
            retention_seconds=config.idempotency_retention_seconds,
            lease_seconds=config.reservation_lease_seconds,
        ),
        PostgresAttemptRepository(),
    )


@lru_cache(maxsize=1)
def get_provisioning_coordinator() -> ProvisioningCoordinator:
    config = get_provisioning_config()
    accounts, registry, attempts = build_storage(config)
    coordinator = ProvisioningCoordinator(
        gateway=build_payment_gateway(config),
        accounts=accounts,
        registry=registry,
        attempts=attempts,
        event_logger=LoggingProvisioningEventLogger(),
        retry_policy=RetryPolicy(
            max_attempts=config.max_attempts,
            backoff_seconds=config.backoff_seconds,
            max_backoff_seconds=config.max_backoff_seconds,
        ),
        currency=config.currency,
        promote_max_attempts=config.promote_max_attempts,
        reservation_wait_seconds=config.reservation_wait_seconds,
        reservation_poll_seconds=config.reservation_poll_seconds,
    )
    logger.info(
        "Provisioning coordinator configured gateway=%s storage=%s",
        config.gateway_name,
        config.storage_backend,
    )
    return coordinator


@lru_cache(maxsize=1)
def get_cleanup_sweeper() -> CleanupSweeper:
    config = get_provisioning_config()
    return CleanupSweeper(
        coordinator=get_provisioning_coordinator(),
        intent_ttl_seconds=config.intent_ttl_seconds,
        batch_size=config.sweep_batch_size,
    )


__all__ = [
    "LoggingProvisioningEventLogger",
    "build_payment_gateway",
    "build_storage",
    "get_cleanup_sweeper",
    "get_provisioning_config",
    "get_provisioning_coordinator",
]
