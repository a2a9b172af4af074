"""API routes exposing paid account provisioning."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Response, status

from ..provisioning import AccountStatus, ProvisioningError
from ..schemas.provisioning import ProvisionRequestPayload, ProvisionResponse
from ..services.provisioning import get_provisioning_coordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/provisioning", tags=["provisioning"])


def _apply_status(response: Response, body: ProvisionResponse) -> ProvisionResponse:
    if body.status == AccountStatus.PENDING:
        response.status_code = status.HTTP_202_ACCEPTED
    return body


@router.post("", response_model=ProvisionResponse)
def provision_account(payload: ProvisionRequestPayload, response: Response) -> ProvisionResponse:
    coordinator = get_provisioning_coordinator()
    try:
        outcome = coordinator.provision(payload.to_request())
    except ProvisioningError as exc:
        if exc.status_code >= 500:
            logger.error("Provisioning failed: %s", exc.code, extra={"idempotency_key": payload.idempotency_key})
        raise exc.to_http_exception() from exc
    return _apply_status(response, ProvisionResponse.from_outcome(outcome))


@router.get("/{idempotency_key}", response_model=ProvisionResponse)
def get_provisioning_outcome(idempotency_key: str, response: Response) -> ProvisionResponse:
    coordinator = get_provisioning_coordinator()
    try:
        outcome = coordinator.describe(idempotency_key)
    except ProvisioningError as exc:
        raise exc.to_http_exception() from exc
    if outcome is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown idempotency key")
    return _apply_status(response, ProvisionResponse.from_outcome(outcome))


__all__ = ["router"]
