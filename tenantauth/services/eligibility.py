"""
Plan-based model eligibility.

Pure functions only: a model is usable iff it is active, the caller's
effective plan ranks at or above the model's required plan, and the
workspace has the model enabled. Every failing condition contributes its
own reason.
"""

from typing import Iterable, List, Optional, Set, Union

from pydantic import BaseModel, Field

from tenantauth.db.models import ModelCatalog, Plan

PLAN_HIERARCHY = {Plan.FREE: 0, Plan.PRO: 1, Plan.PAYGO: 2}

REASON_INACTIVE = "This model is no longer available or has been deprecated"
REASON_NOT_ENABLED = (
    "This model is not enabled for your workspace. Contact your workspace admin"
)

_UPGRADE_REASONS = {
    (Plan.FREE, Plan.PRO): "This model requires a Pro plan or higher. Upgrade to Pro to use it",
    (Plan.FREE, Plan.PAYGO): "This model requires a higher tier subscription (Pro or PayGo)",
    (Plan.PRO, Plan.PAYGO): "This is a premium model. Upgrade to PayGo plan for unrestricted access",
}


class EligibilityResult(BaseModel):
    """Outcome of an eligibility check.

    Attributes:
        eligible: True when no condition failed.
        reasons: One human-readable reason per failing condition.
        suggested_plan: Minimal plan that fixes the plan condition, if it failed.
    """

    eligible: bool
    reasons: List[str] = Field(default_factory=list)
    suggested_plan: Optional[Plan] = None


def plan_rank(plan: Union[Plan, str]) -> int:
    return PLAN_HIERARCHY[Plan(plan)]


def is_plan_eligible(user_plan: Union[Plan, str], required_plan: Union[Plan, str]) -> bool:
    return plan_rank(user_plan) >= plan_rank(required_plan)


def effective_plan(*plans: Union[Plan, str]) -> Plan:
    """Highest-ranked of the given plans."""
    return max((Plan(p) for p in plans), key=plan_rank)


def suggest_plan_upgrade(
    current_plan: Union[Plan, str], required_plan: Union[Plan, str]
) -> Optional[Plan]:
    """Minimal plan satisfying ``required_plan``, or None if already sufficient."""
    if is_plan_eligible(current_plan, required_plan):
        return None
    return Plan(required_plan)


def check_model_eligibility(
    model: ModelCatalog,
    user_plan: Union[Plan, str],
    is_enabled_for_workspace: bool,
) -> EligibilityResult:
    reasons: List[str] = []
    if not model.is_active:
        reasons.append(REASON_INACTIVE)

    suggested = suggest_plan_upgrade(user_plan, model.required_plan)
    if suggested is not None:
        reasons.append(
            _UPGRADE_REASONS.get(
                (Plan(user_plan), suggested),
                f"This model requires the {suggested.value} plan",
            )
        )

    if not is_enabled_for_workspace:
        reasons.append(REASON_NOT_ENABLED)

    return EligibilityResult(eligible=not reasons, reasons=reasons, suggested_plan=suggested)


def filter_eligible_models(
    models: Iterable[ModelCatalog],
    user_plan: Union[Plan, str],
    enabled_ids: Set,
) -> List[ModelCatalog]:
    """Eligible models in their input order."""
    return [
        m
        for m in models
        if check_model_eligibility(m, user_plan, m.id in enabled_ids).eligible
    ]
