"""
Plan catalog API.

- GET /v1/plans: active plans ordered by tier
- GET /v1/plans/{plan_id}: one active plan
"""
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from tierflow.features.plans.service import get_plan, list_active_plans
from tierflow.models.plan import Plan

router = APIRouter(prefix="/v1/plans", tags=["plans"])


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    discount_percent: Decimal
    effective_price: Decimal
    duration_months: int
    trial_days: int
    tier: int
    plan_kind: str
    features: List[str]
    is_recommended: bool

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            plan_id=plan.plan_id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            discount_percent=plan.discount_percent,
            effective_price=plan.effective_price,
            duration_months=plan.duration_months,
            trial_days=plan.trial_days,
            tier=plan.tier,
            plan_kind=plan.plan_kind.value,
            features=plan.features,
            is_recommended=plan.is_recommended,
        )


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]


@router.get("", response_model=PlanListResponse)
def list_plans():
    return PlanListResponse(plans=[PlanResponse.from_plan(p) for p in list_active_plans()])


@router.get("/{plan_id}", response_model=PlanResponse)
def read_plan(plan_id: str):
    """404 (plan_not_found) for unknown or inactive plans."""
    return PlanResponse.from_plan(get_plan(plan_id))
