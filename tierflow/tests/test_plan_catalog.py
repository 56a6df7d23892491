import pytest
from decimal import Decimal

from tierflow.core.errors import NotFoundError, ValidationError
from tierflow.features.plans import service as plan_service
from tierflow.models.plan import ChangeKind, PlanKind


def test_seeded_catalog_is_ordered_by_tier():
    plans = plan_service.list_active_plans()
    assert [p.plan_id for p in plans] == ["free-trial", "basic", "premium", "vip-yearly"]


def test_seed_is_idempotent():
    plan_service.seed_plans()
    plan_service.seed_plans()
    assert len(plan_service.list_active_plans()) == 4


def test_plan_kind_is_fixed_at_creation():
    assert plan_service.get_plan("free-trial").plan_kind == PlanKind.TRIAL
    assert plan_service.get_plan("basic").plan_kind == PlanKind.PAID

    free = plan_service.create_plan("community", "Community", price=Decimal("0"), tier=0)
    assert free.plan_kind == PlanKind.FREE
    assert plan_service.get_plan("community").plan_kind == PlanKind.FREE


def test_fully_discounted_plan_is_free():
    plan = plan_service.create_plan(
        "promo", "Promo", price=Decimal("10.00"), discount_percent=Decimal("100"), tier=1
    )
    assert plan.plan_kind == PlanKind.FREE
    assert plan.effective_price == Decimal("0.00")


def test_effective_price_applies_discount():
    vip = plan_service.get_plan("vip-yearly")
    assert vip.effective_price == Decimal("269.99")
    assert vip.duration_months == 12


def test_duplicate_plan_rejected():
    with pytest.raises(ValidationError) as exc:
        plan_service.create_plan("basic", "Basic again", price=Decimal("1.00"), tier=1)
    assert exc.value.code == "plan_exists"


def test_invalid_duration_rejected():
    with pytest.raises(ValidationError) as exc:
        plan_service.create_plan("quarterly", "Quarterly", price=Decimal("20.00"), tier=1, duration_months=3)
    assert exc.value.code == "invalid_plan"


def test_unknown_plan():
    with pytest.raises(NotFoundError):
        plan_service.get_plan("does-not-exist")


def test_deactivated_plan_hidden_but_resolvable():
    plan_service.deactivate_plan("premium")
    assert "premium" not in [p.plan_id for p in plan_service.list_active_plans()]
    with pytest.raises(NotFoundError):
        plan_service.get_plan("premium")
    assert plan_service.get_plan_any("premium").is_active is False


def test_compare_tier():
    basic = plan_service.get_plan("basic")
    premium = plan_service.get_plan("premium")
    assert plan_service.compare_tier(basic, premium) == ChangeKind.UPGRADE
    assert plan_service.compare_tier(premium, basic) == ChangeKind.DOWNGRADE
    assert plan_service.compare_tier(basic, basic) == ChangeKind.LATERAL
