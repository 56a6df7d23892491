"""
tierflow/models/plan.py

Plan model for the subscription catalog.

Plans carry pricing, billing cycle and tier ordering. Whether a plan is paid,
a trial or free is decided once, when the plan is created, and stored in
plan_kind; nothing downstream re-derives it from price or name.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

CENT = Decimal("0.01")


class PlanKind(str, Enum):
    PAID = "PAID"
    TRIAL = "TRIAL"
    FREE = "FREE"


class ChangeKind(str, Enum):
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"
    LATERAL = "LATERAL"


def to_money(value) -> Decimal:
    """Quantize to cents, rounding half up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_effective_price(price: Decimal, discount_percent: Decimal) -> Decimal:
    return to_money(Decimal(price) * (Decimal(1) - Decimal(discount_percent) / Decimal(100)))


def infer_plan_kind(*, is_trial: bool, trial_days: int, price: Decimal, discount_percent: Decimal = Decimal(0)) -> PlanKind:
    """Classify a plan at creation time from the legacy signals."""
    if is_trial or trial_days > 0:
        return PlanKind.TRIAL
    if compute_effective_price(price, discount_percent) == 0:
        return PlanKind.FREE
    return PlanKind.PAID


class Plan(BaseModel):
    """
    Plan represents a purchasable tier.

    Examples:
    - trial (14 days, tier 0)
    - basic (monthly, tier 1)
    - premium (monthly, tier 2)
    - vip-annual (yearly, tier 3)
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    discount_percent: Decimal = Field(default=Decimal(0), ge=0, le=100)
    duration_months: int = 1
    is_trial: bool = False
    trial_days: int = Field(default=0, ge=0)
    tier: int
    plan_kind: PlanKind
    features: List[str] = Field(default_factory=list)
    processor_price_id: Optional[str] = None
    is_recommended: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None

    @field_validator("duration_months")
    @classmethod
    def _check_duration(cls, value: int) -> int:
        if value not in (1, 12):
            raise ValueError("duration_months must be 1 or 12")
        return value

    @property
    def effective_price(self) -> Decimal:
        return compute_effective_price(self.price, self.discount_percent)
