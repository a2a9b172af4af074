"""Provisioning state machine: states and the allowed transitions between them."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet

from .exceptions import InternalError

if TYPE_CHECKING:  # pragma: no cover
    from .models import ProvisioningAttempt


class ProvisioningState(str, Enum):
    """States of a provisioning attempt."""

    DRAFT = "draft"
    INTENT_CREATED = "intent_created"
    METHOD_PENDING = "method_pending"
    PENDING_CONFIRMATION = "pending_confirmation"
    ACTIVE = "active"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[ProvisioningState] = frozenset(
    {ProvisioningState.ACTIVE, ProvisioningState.REJECTED}
)

# States the cleanup sweeper treats as abandoned once their TTL has elapsed.
OPEN_STATES: FrozenSet[ProvisioningState] = frozenset(
    {
        ProvisioningState.INTENT_CREATED,
        ProvisioningState.METHOD_PENDING,
        ProvisioningState.PENDING_CONFIRMATION,
    }
)

ALLOWED_TRANSITIONS: Dict[ProvisioningState, FrozenSet[ProvisioningState]] = {
    ProvisioningState.DRAFT: frozenset({ProvisioningState.INTENT_CREATED, ProvisioningState.REJECTED}),
    ProvisioningState.INTENT_CREATED: frozenset({ProvisioningState.METHOD_PENDING, ProvisioningState.REJECTED}),
    ProvisioningState.METHOD_PENDING: frozenset(
        {ProvisioningState.PENDING_CONFIRMATION, ProvisioningState.REJECTED}
    ),
    ProvisioningState.PENDING_CONFIRMATION: frozenset({ProvisioningState.ACTIVE, ProvisioningState.REJECTED}),
    ProvisioningState.ACTIVE: frozenset(),
    ProvisioningState.REJECTED: frozenset(),
}


def can_transition(source: ProvisioningState, target: ProvisioningState) -> bool:
    """Return ``True`` when ``source -> target`` is a legal transition."""

    return target in ALLOWED_TRANSITIONS[source]


def transition(
    attempt: "ProvisioningAttempt",
    target: ProvisioningState,
    **changes: Any,
) -> "ProvisioningAttempt":
    """Return a copy of ``attempt`` moved to ``target``.

    Raises :class:`InternalError` when the move is not in the transition table.
    """

    if not can_transition(attempt.state, target):
        raise InternalError(
            code="illegal_transition",
            message=f"Cannot move attempt from {attempt.state.value} to {target.value}",
            detail={"attempt_id": attempt.attempt_id},
        )
    update: Dict[str, Any] = dict(changes)
    update["state"] = target
    update["updated_at"] = datetime.now(timezone.utc)
    return attempt.model_copy(update=update)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "OPEN_STATES",
    "ProvisioningState",
    "TERMINAL_STATES",
    "can_transition",
    "transition",
]
