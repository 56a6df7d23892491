"""
tierflow/features/plans/service.py

Plan catalog.

Handles:
- Plan seeding (free trial, basic, premium, vip yearly)
- Plan creation (plan_kind decided here, once)
- Active plan lookups and tier comparison
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from tierflow.core.database import get_db_session, plans
from tierflow.core.errors import NotFoundError, ValidationError
from tierflow.models.plan import ChangeKind, Plan, PlanKind, infer_plan_kind


# Default catalog
DEFAULT_PLANS = {
    "free-trial": {
        "name": "Free Plan",
        "description": "Try every prediction feature free for a week.",
        "price": Decimal("0.00"),
        "duration_months": 1,
        "is_trial": True,
        "trial_days": 7,
        "tier": 0,
        "features": ["Daily predictions", "One state"],
    },
    "basic": {
        "name": "Basic Plan",
        "description": "Core predictions for a single state.",
        "price": Decimal("9.99"),
        "duration_months": 1,
        "tier": 1,
        "features": ["Daily predictions", "One state", "Draw history"],
    },
    "premium": {
        "name": "Premium Plan",
        "description": "All states and performance reports.",
        "price": Decimal("29.99"),
        "duration_months": 1,
        "tier": 2,
        "is_recommended": True,
        "features": ["Daily predictions", "All states", "Draw history", "Proof of performance"],
    },
    "vip-yearly": {
        "name": "VIP Plan",
        "description": "Everything, billed yearly.",
        "price": Decimal("299.99"),
        "discount_percent": Decimal("10"),
        "duration_months": 12,
        "tier": 3,
        "features": ["Daily predictions", "All states", "Draw history", "Proof of performance", "Priority support"],
    },
}


def _row_to_plan(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        description=row.description,
        price=Decimal(row.price),
        discount_percent=Decimal(row.discount_percent or 0),
        duration_months=row.duration_months,
        is_trial=row.is_trial,
        trial_days=row.trial_days,
        tier=row.tier,
        plan_kind=PlanKind(row.plan_kind),
        features=list(row.features or []),
        processor_price_id=row.processor_price_id,
        is_recommended=row.is_recommended,
        is_active=row.is_active,
        created_at=row.created_at,
    )


def create_plan(
    plan_id: str,
    name: str,
    *,
    price: Decimal,
    tier: int,
    duration_months: int = 1,
    discount_percent: Decimal = Decimal(0),
    is_trial: bool = False,
    trial_days: int = 0,
    features: Optional[List[str]] = None,
    description: Optional[str] = None,
    processor_price_id: Optional[str] = None,
    is_recommended: bool = False,
) -> Plan:
    """
    Create a catalog plan.

    plan_kind is derived from is_trial/trial_days/effective price here and
    stored; later reads never re-infer it.

    Raises:
        ValidationError: If the plan id already exists or fields are invalid
    """
    plan_kind = infer_plan_kind(
        is_trial=is_trial,
        trial_days=trial_days,
        price=Decimal(price),
        discount_percent=Decimal(discount_percent),
    )
    try:
        plan = Plan(
            plan_id=plan_id,
            name=name,
            description=description,
            price=Decimal(price),
            discount_percent=Decimal(discount_percent),
            duration_months=duration_months,
            is_trial=is_trial,
            trial_days=trial_days,
            tier=tier,
            plan_kind=plan_kind,
            features=list(features or []),
            processor_price_id=processor_price_id,
            is_recommended=is_recommended,
            created_at=datetime.now(timezone.utc),
        )
    except ValueError as e:
        raise ValidationError(f"Invalid plan {plan_id}: {e}", code="invalid_plan")

    try:
        with get_db_session() as session:
            session.execute(
                insert(plans).values(
                    plan_id=plan.plan_id,
                    name=plan.name,
                    description=plan.description,
                    price=plan.price,
                    discount_percent=plan.discount_percent,
                    duration_months=plan.duration_months,
                    is_trial=plan.is_trial,
                    trial_days=plan.trial_days,
                    tier=plan.tier,
                    plan_kind=plan.plan_kind.value,
                    features=plan.features,
                    processor_price_id=plan.processor_price_id,
                    is_recommended=plan.is_recommended,
                    is_active=True,
                    created_at=plan.created_at,
                )
            )
    except IntegrityError:
        raise ValidationError(f"Plan {plan_id} already exists", code="plan_exists")
    return plan


def seed_plans() -> None:
    """
    Seed default plans into database (idempotent).

    Safe to call multiple times.
    """
    for plan_id, config in DEFAULT_PLANS.items():
        if get_plan_any(plan_id) is not None:
            continue
        create_plan(plan_id, **config)


def list_active_plans() -> List[Plan]:
    """Active plans ordered by tier, then price."""
    with get_db_session() as session:
        rows = session.execute(
            select(plans)
            .where(plans.c.is_active == True)  # noqa: E712
            .order_by(plans.c.tier.asc(), plans.c.price.asc())
        ).all()
        return [_row_to_plan(row) for row in rows]


def get_plan(plan_id: str) -> Plan:
    """
    Get an active plan by ID.

    Raises:
        NotFoundError: If plan_id does not resolve to an active plan
    """
    plan = get_plan_any(plan_id)
    if plan is None or not plan.is_active:
        raise NotFoundError(f"Plan not found: {plan_id}", code="plan_not_found")
    return plan


def get_plan_any(plan_id: str) -> Optional[Plan]:
    """Get plan by ID regardless of active flag (history lookups)."""
    with get_db_session() as session:
        row = session.execute(
            select(plans).where(plans.c.plan_id == plan_id)
        ).first()
        if not row:
            return None
        return _row_to_plan(row)


def deactivate_plan(plan_id: str) -> None:
    """Hide a plan from the catalog. Existing subscriptions keep referencing it."""
    with get_db_session() as session:
        result = session.execute(
            update(plans).where(plans.c.plan_id == plan_id).values(is_active=False)
        )
        if not result.rowcount:
            raise NotFoundError(f"Plan not found: {plan_id}", code="plan_not_found")


def compare_tier(current: Plan, target: Plan) -> ChangeKind:
    """Classify moving from current to target by tier, then effective price."""
    if target.tier > current.tier:
        return ChangeKind.UPGRADE
    if target.tier < current.tier:
        return ChangeKind.DOWNGRADE
    if target.effective_price > current.effective_price:
        return ChangeKind.UPGRADE
    if target.effective_price < current.effective_price:
        return ChangeKind.DOWNGRADE
    return ChangeKind.LATERAL
