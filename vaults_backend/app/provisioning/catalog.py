"""Static plan catalog mapping paid plans to their signup charge."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .models import PlanKey


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a paid plan and the amount charged at signup."""

    key: PlanKey
    display_name: str
    amount: int
    storage_quota_gb: int


PLAN_CATALOG: Dict[PlanKey, PlanDefinition] = {
    PlanKey.BASIC: PlanDefinition(
        key=PlanKey.BASIC,
        display_name="Basic Plan",
        amount=500,
        storage_quota_gb=50,
    ),
    PlanKey.STANDARD: PlanDefinition(
        key=PlanKey.STANDARD,
        display_name="Standard Plan",
        amount=1000,
        storage_quota_gb=200,
    ),
    PlanKey.PREMIUM: PlanDefinition(
        key=PlanKey.PREMIUM,
        display_name="Premium Plan",
        amount=2500,
        storage_quota_gb=1000,
    ),
}


def get_plan_definition(plan_key: PlanKey) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    try:
        return PLAN_CATALOG[plan_key]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown plan key: {plan_key}") from exc


__all__ = ["PLAN_CATALOG", "PlanDefinition", "get_plan_definition"]
