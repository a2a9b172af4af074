"""Stripe-backed implementation of the payment gateway client."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional

import stripe

from .exceptions import InternalError, PaymentError, TransientError
from .models import IntentStatus, PaymentIntent

logger = logging.getLogger(__name__)

_STATUS_MAP: Dict[str, IntentStatus] = {
    "requires_payment_method": IntentStatus.CREATED,
    "requires_confirmation": IntentStatus.METHOD_ATTACHED,
    # The caller still has to complete an authentication step.
    "requires_action": IntentStatus.METHOD_ATTACHED,
    "processing": IntentStatus.METHOD_ATTACHED,
    "requires_capture": IntentStatus.CONFIRMED,
    "succeeded": IntentStatus.CONFIRMED,
    "canceled": IntentStatus.CANCELED,
}


def _intent_from_stripe(payload: Mapping[str, Any]) -> PaymentIntent:
    status = _STATUS_MAP.get(str(payload.get("status")), IntentStatus.FAILED)
    created = payload.get("created")
    created_at = (
        datetime.fromtimestamp(int(created), tz=timezone.utc) if created else datetime.now(timezone.utc)
    )
    return PaymentIntent(
        intent_id=str(payload["id"]),
        amount=int(payload.get("amount") or 0),
        currency=str(payload.get("currency") or "usd"),
        status=status,
        client_secret=payload.get("client_secret"),
        created_at=created_at,
    )


@contextmanager
def _translate_errors(operation: str, intent_id: Optional[str] = None) -> Iterator[None]:
    context = {"operation": operation, "intent_id": intent_id}
    try:
        yield
    except stripe.CardError as exc:
        raise PaymentError(
            code=exc.code or "card_declined",
            message=exc.user_message or "The card was declined",
            detail=context,
        ) from exc
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        raise TransientError(message=f"Stripe unavailable during {operation}", detail=context) from exc
    except stripe.APIError as exc:
        raise TransientError(message=f"Stripe server error during {operation}", detail=context) from exc
    except (stripe.AuthenticationError, stripe.PermissionError) as exc:
        logger.error("Stripe rejected the configured credentials", extra=context)
        raise InternalError(code="gateway_misconfigured", message="Payment gateway credentials were rejected") from exc
    except stripe.StripeError as exc:
        if exc.http_status is not None and exc.http_status >= 500:
            raise TransientError(message=f"Stripe server error during {operation}", detail=context) from exc
        raise PaymentError(
            code=exc.code or "invalid_request",
            message=exc.user_message or str(exc) or "Payment request was rejected",
            detail=context,
        ) from exc


class StripePaymentGateway:
    """Drives Stripe PaymentIntents through the bounded provisioning protocol."""

    name = "stripe"

    def __init__(
        self,
        *,
        api_key: str,
        timeout_seconds: float = 10.0,
        return_url: Optional[str] = None,
        intents: Any = None,
    ) -> None:
        self._api_key = api_key
        self._return_url = return_url
        if intents is None:
            # Retries are owned by the coordinator, so the client only bounds latency.
            stripe.max_network_retries = 0
            stripe.default_http_client = stripe.new_default_http_client(timeout=timeout_seconds)
            intents = stripe.PaymentIntent
        self._intents = intents

    def create_intent(
        self,
        *,
        amount: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        with _translate_errors("create_intent"):
            payload = self._intents.create(
                amount=amount,
                currency=currency,
                metadata=metadata or {},
                automatic_payment_methods=self._automatic_payment_methods(),
                idempotency_key=idempotency_key,
                api_key=self._api_key,
            )
        return _intent_from_stripe(payload)

    def attach_method(self, intent_id: str, method_ref: str) -> PaymentIntent:
        with _translate_errors("attach_method", intent_id):
            payload = self._intents.modify(intent_id, payment_method=method_ref, api_key=self._api_key)
        return _intent_from_stripe(payload)

    def confirm_intent(self, intent_id: str) -> PaymentIntent:
        options: Dict[str, Any] = {}
        if self._return_url:
            options["return_url"] = self._return_url
        with _translate_errors("confirm_intent", intent_id):
            payload = self._intents.confirm(
                intent_id,
                idempotency_key=f"{intent_id}-confirm",
                api_key=self._api_key,
                **options,
            )
        return _intent_from_stripe(payload)

    def cancel_intent(self, intent_id: str) -> PaymentIntent:
        current = self.retrieve_intent(intent_id)
        if current.status in {IntentStatus.CANCELED, IntentStatus.FAILED}:
            return current
        with _translate_errors("cancel_intent", intent_id):
            payload = self._intents.cancel(intent_id, api_key=self._api_key)
        return _intent_from_stripe(payload)

    def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        with _translate_errors("retrieve_intent", intent_id):
            payload = self._intents.retrieve(intent_id, api_key=self._api_key)
        return _intent_from_stripe(payload)

    def _automatic_payment_methods(self) -> Dict[str, Any]:
        # Redirect-based methods can only be confirmed server-side with a return URL.
        if self._return_url:
            return {"enabled": True}
        return {"enabled": True, "allow_redirects": "never"}


__all__ = ["StripePaymentGateway"]
