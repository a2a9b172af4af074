"""Provisioning configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class ProvisioningConfig:
    """Configuration for the provisioning coordinator and cleanup sweeper."""

    gateway_name: str
    stripe_secret_key: Optional[str]
    payment_return_url: Optional[str]
    storage_backend: str
    currency: str
    gateway_timeout_seconds: float
    max_attempts: int
    backoff_seconds: float
    max_backoff_seconds: float
    promote_max_attempts: int
    idempotency_retention_seconds: int
    reservation_lease_seconds: int
    reservation_wait_seconds: float
    reservation_poll_seconds: float
    intent_ttl_seconds: int
    sweep_interval_seconds: float
    sweep_batch_size: int
    sweeper_enabled: bool


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_provisioning_config(env: Optional[Mapping[str, str]] = None) -> ProvisioningConfig:
    """Load :class:`ProvisioningConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    gateway_name = (env_mapping.get("PAYMENT_GATEWAY") or "sandbox").strip().lower() or "sandbox"
    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    if gateway_name == "stripe" and not stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is required when PAYMENT_GATEWAY=stripe")
    payment_return_url = (env_mapping.get("PAYMENT_RETURN_URL") or "").strip() or None
    if payment_return_url and not payment_return_url.startswith(("https://", "http://")):
        raise ValueError("PAYMENT_RETURN_URL must be an absolute http(s) URL")

    storage_backend = (env_mapping.get("PROVISIONING_STORAGE") or "postgres").strip().lower()
    if storage_backend not in {"postgres", "memory"}:
        raise ValueError(f"Unsupported PROVISIONING_STORAGE {storage_backend!r}")

    currency = (env_mapping.get("PROVISIONING_CURRENCY") or "usd").strip().lower()
    if len(currency) != 3:
        raise ValueError("PROVISIONING_CURRENCY must be a three letter ISO code")

    gateway_timeout_seconds = max(0.1, _to_float(env_mapping.get("PAYMENT_GATEWAY_TIMEOUT"), default=10.0))
    max_attempts = max(1, _to_int(env_mapping.get("PROVISIONING_MAX_ATTEMPTS"), default=4))
    backoff_seconds = max(0.0, _to_float(env_mapping.get("PROVISIONING_RETRY_BACKOFF"), default=0.5))
    max_backoff_seconds = max(
        backoff_seconds,
        _to_float(env_mapping.get("PROVISIONING_RETRY_MAX_BACKOFF"), default=8.0),
    )
    promote_max_attempts = max(1, _to_int(env_mapping.get("ACCOUNT_PROMOTE_MAX_ATTEMPTS"), default=3))

    retention_hours = max(1, _to_int(env_mapping.get("IDEMPOTENCY_RETENTION_HOURS"), default=24))
    reservation_lease_seconds = max(1, _to_int(env_mapping.get("IDEMPOTENCY_LEASE_SECONDS"), default=120))
    reservation_wait_seconds = max(0.0, _to_float(env_mapping.get("IDEMPOTENCY_WAIT_SECONDS"), default=5.0))
    reservation_poll_seconds = max(0.01, _to_float(env_mapping.get("IDEMPOTENCY_POLL_SECONDS"), default=0.2))

    intent_ttl_minutes = max(1, _to_int(env_mapping.get("PAYMENT_INTENT_TTL_MINUTES"), default=30))
    intent_ttl_seconds = intent_ttl_minutes * 60
    if intent_ttl_seconds <= reservation_lease_seconds:
        raise ValueError("PAYMENT_INTENT_TTL_MINUTES must exceed IDEMPOTENCY_LEASE_SECONDS")

    sweep_interval_seconds = max(1.0, _to_float(env_mapping.get("SWEEPER_INTERVAL_SECONDS"), default=60.0))
    sweep_batch_size = max(1, _to_int(env_mapping.get("SWEEPER_BATCH_SIZE"), default=100))
    sweeper_enabled = _to_bool(env_mapping.get("SWEEPER_ENABLED"), default=True)

    return ProvisioningConfig(
        gateway_name=gateway_name,
        stripe_secret_key=stripe_secret_key,
        payment_return_url=payment_return_url,
        storage_backend=storage_backend,
        currency=currency,
        gateway_timeout_seconds=gateway_timeout_seconds,
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        max_backoff_seconds=max_backoff_seconds,
        promote_max_attempts=promote_max_attempts,
        idempotency_retention_seconds=retention_hours * 60 * 60,
        reservation_lease_seconds=reservation_lease_seconds,
        reservation_wait_seconds=reservation_wait_seconds,
        reservation_poll_seconds=reservation_poll_seconds,
        intent_ttl_seconds=intent_ttl_seconds,
        sweep_interval_seconds=sweep_interval_seconds,
        sweep_batch_size=sweep_batch_size,
        sweeper_enabled=sweeper_enabled,
    )


__all__ = ["ProvisioningConfig", "load_provisioning_config"]
