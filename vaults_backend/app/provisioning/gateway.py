"""Payment gateway client abstraction and the local sandbox implementation."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional, Protocol
from uuid import uuid4

from .exceptions import PaymentError
from .models import IntentStatus, PaymentIntent

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """Third-party payment-authorization service driven by the coordinator."""

    name: str

    def create_intent(
        self,
        *,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        """Create a payment intent for ``amount`` minor units."""

    def attach_method(self, intent_id: str, method_ref: str) -> PaymentIntent:
        """Attach an existing payment method to the intent."""

    def confirm_intent(self, intent_id: str) -> PaymentIntent:
        """Request confirmation of the intent."""

    def cancel_intent(self, intent_id: str) -> PaymentIntent:
        """Cancel the intent; canceling a canceled intent is a no-op."""

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        """Return the current gateway-side state of the intent."""


# Well-known sandbox payment methods, mirroring the test cards of hosted gateways.
DECLINED_METHOD = "pm_card_declined"
ACTION_REQUIRED_METHOD = "pm_card_authentication_required"


class SandboxPaymentGateway:
    """In-process gateway for local development; no money moves."""

    name = "sandbox"

    def __init__(self) -> None:
        self._intents: Dict[str, PaymentIntent] = {}
        self._methods: Dict[str, str] = {}
        self._idempotency_index: Dict[str, str] = {}
        self._lock = Lock()

    def create_intent(
        self,
        *,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        with self._lock:
            existing_id = self._idempotency_index.get(idempotency_key)
            if existing_id is not None:
                return self._intents[existing_id]
            intent_id = f"pi_sbx_{uuid4().hex}"
            intent = PaymentIntent(
                intent_id=intent_id,
                amount=amount,
                currency=currency,
                status=IntentStatus.CREATED,
                client_secret=f"{intent_id}_secret_{uuid4().hex[:16]}",
                created_at=datetime.now(timezone.utc),
            )
            self._intents[intent_id] = intent
            self._idempotency_index[idempotency_key] = intent_id
        logger.debug("Sandbox intent created %s amount=%s %s", intent_id, amount, currency)
        return intent

    def attach_method(self, intent_id: str, method_ref: str) -> PaymentIntent:
        with self._lock:
            intent = self._require(intent_id)
            if not intent.status.is_open:
                raise PaymentError(
                    code="intent_unexpected_state",
                    message=f"Cannot attach a payment method to a {intent.status.value} intent",
                )
            self._methods[intent_id] = method_ref
            return self._store(intent, IntentStatus.METHOD_ATTACHED)

    def confirm_intent(self, intent_id: str) -> PaymentIntent:
        with self._lock:
            intent = self._require(intent_id)
            if intent.status == IntentStatus.CONFIRMED:
                return intent
            if intent.status != IntentStatus.METHOD_ATTACHED:
                raise PaymentError(
                    code="payment_method_missing",
                    message=f"Cannot confirm a {intent.status.value} intent",
                )
            method_ref = self._methods.get(intent_id)
            if method_ref == DECLINED_METHOD:
                self._methods.pop(intent_id, None)
                self._store(intent, IntentStatus.CREATED)
                raise PaymentError(code="card_declined", message="Your card was declined.")
            if method_ref == ACTION_REQUIRED_METHOD:
                return intent
            return self._store(intent, IntentStatus.CONFIRMED)

    def cancel_intent(self, intent_id: str) -> PaymentIntent:
        with self._lock:
            intent = self._require(intent_id)
            if intent.status in {IntentStatus.CANCELED, IntentStatus.FAILED}:
                return intent
            if intent.status == IntentStatus.CONFIRMED:
                raise PaymentError(
                    code="intent_unexpected_state",
                    message="A confirmed intent cannot be canceled",
                )
            return self._store(intent, IntentStatus.CANCELED)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        with self._lock:
            return self._require(intent_id)

    def _require(self, intent_id: str) -> PaymentIntent:
        intent = self._intents.get(intent_id)
        if intent is None:
            raise PaymentError(code="resource_missing", message=f"No such payment intent: {intent_id}")
        return intent

    def _store(self, intent: PaymentIntent, status: IntentStatus) -> PaymentIntent:
        updated = intent.model_copy(update={"status": status})
        self._intents[intent.intent_id] = updated
        return updated


__all__ = [
    "ACTION_REQUIRED_METHOD",
    "DECLINED_METHOD",
    "PaymentGateway",
    "SandboxPaymentGateway",
]
