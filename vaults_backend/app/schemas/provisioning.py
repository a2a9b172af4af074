"""API schemas for provisioning endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..provisioning import AccountStatus, ProvisioningOutcome, ProvisioningRequest


class ProvisionRequestPayload(BaseModel):
    username: str
    email: str
    plan: str
    idempotency_key: str = Field(alias="idempotencyKey")
    payment_method_ref: Optional[str] = Field(alias="paymentMethodRef", default=None)
    credential_ref: Optional[str] = Field(alias="credentialRef", default=None)

    model_config = ConfigDict(populate_by_name=True)

    def to_request(self) -> ProvisioningRequest:
        return ProvisioningRequest(
            username=self.username,
            email=self.email,
            plan=self.plan,
            idempotency_key=self.idempotency_key,
            credential_ref=self.credential_ref,
            payment_method_ref=self.payment_method_ref,
        )


class ProvisionError(BaseModel):
    kind: str
    message: Optional[str] = None


class ProvisionResponse(BaseModel):
    account_id: Optional[str] = Field(alias="accountId", default=None)
    status: AccountStatus
    payment_client_secret: Optional[str] = Field(alias="paymentClientSecret", default=None)
    error: Optional[ProvisionError] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: ProvisioningOutcome) -> "ProvisionResponse":
        error = None
        if outcome.error_kind:
            error = ProvisionError(kind=outcome.error_kind, message=outcome.error_message)
        return cls(
            account_id=outcome.account_id,
            status=outcome.status,
            payment_client_secret=outcome.client_secret,
            error=error,
        )


__all__ = ["ProvisionError", "ProvisionRequestPayload", "ProvisionResponse"]
