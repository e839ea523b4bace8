"""
API plan catalogue.

Quotas are monthly request ceilings. An order grants the difference between
the plan quota and the free allotment, so a credited key's total quota
equals the plan quota.
"""
from dataclasses import dataclass
from typing import Dict, List

from persona.core.config import settings
from persona.core.errors import ValidationError


@dataclass(frozen=True)
class Plan:
    plan_id: str
    label: str
    quota: int
    price_inr: int

    @property
    def quota_granted(self) -> int:
        return max(0, self.quota - settings.DEFAULT_FREE_QUOTA)

    def to_dict(self) -> Dict:
        return {
            "id": self.plan_id,
            "label": self.label,
            "quota": self.quota,
            "priceINR": self.price_inr,
            "quotaGranted": self.quota_granted,
        }


PLANS: Dict[str, Plan] = {
    "free": Plan("free", "Free", 100, 0),
    "starter": Plan("starter", "Starter", 1_000, 199),
    "pro": Plan("pro", "Pro", 10_000, 499),
    "ultra": Plan("ultra", "Ultra", 50_000, 999),
}


def get_plan(plan_id: str) -> Plan:
    plan = PLANS.get(plan_id)
    if plan is None:
        raise ValidationError(f"Unknown plan: {plan_id}", field="planId")
    return plan


def list_plans() -> List[Plan]:
    return list(PLANS.values())
