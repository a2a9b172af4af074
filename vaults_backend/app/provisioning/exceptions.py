"""Error taxonomy for the provisioning flow."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class ProvisioningError(Exception):
    """Base error surfaced by the provisioning coordinator and its collaborators."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class ValidationError(ProvisioningError):
    """Malformed request; raised before any side effect."""

    code: str = "validation_error"
    message: str = "Invalid provisioning request"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class ConflictError(ProvisioningError):
    """Idempotency key reused with a different request, or still in flight."""

    code: str = "conflict"
    message: str = "Idempotency key conflict"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class PaymentError(ProvisioningError):
    """Terminal gateway failure such as a declined card."""

    code: str = "payment_error"
    message: str = "Payment was not authorized"
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED


@dataclass
class TransientError(ProvisioningError):
    """Timeout or temporary failure of the gateway or the store."""

    code: str = "transient_error"
    message: str = "Temporary failure, retry later"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass
class InternalError(ProvisioningError):
    """Retries exhausted or a store invariant violation was detected."""

    code: str = "internal_error"
    message: str = "Provisioning could not be completed"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE


__all__ = [
    "ConflictError",
    "InternalError",
    "PaymentError",
    "ProvisioningError",
    "TransientError",
    "ValidationError",
]
