"""
Lifecycle engine tests (pure decisions, no database).
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tierflow.core.errors import ValidationError
from tierflow.features.subscriptions import lifecycle
from tierflow.models.plan import Plan, PlanKind
from tierflow.models.subscription import SubscriptionRecord, SubscriptionStatus


def make_plan(plan_id, tier, price="10.00", kind=PlanKind.PAID, trial_days=0, duration_months=1, discount="0"):
    return Plan(
        plan_id=plan_id,
        name=plan_id.title(),
        price=Decimal(price),
        discount_percent=Decimal(discount),
        duration_months=duration_months,
        is_trial=kind == PlanKind.TRIAL,
        trial_days=trial_days,
        tier=tier,
        plan_kind=kind,
    )


TRIAL_PLAN = make_plan("trial", 0, price="0", kind=PlanKind.TRIAL, trial_days=7)
FREE_PLAN = make_plan("free", 0, price="0", kind=PlanKind.FREE)
PLAN_A = make_plan("plan-a", 1, price="10.00")
PLAN_B = make_plan("plan-b", 2, price="30.00")
YEARLY = make_plan("yearly", 3, price="300.00", duration_months=12)

START = datetime(2025, 5, 1, tzinfo=timezone.utc)
END = datetime(2025, 6, 1, tzinfo=timezone.utc)


def make_record(status=SubscriptionStatus.ACTIVE, plan_id="plan-a", **overrides):
    fields = dict(
        id="sub-1",
        user_id="user-1",
        plan_id=plan_id,
        status=status,
        start_date=START,
        end_date=END,
        processor_subscription_id="sub_proc_1",
    )
    fields.update(overrides)
    return SubscriptionRecord(**fields)


class TestAddMonths:
    def test_clamps_to_month_length(self):
        assert lifecycle.add_months(datetime(2025, 1, 31, tzinfo=timezone.utc), 1) == datetime(2025, 2, 28, tzinfo=timezone.utc)

    def test_crosses_year(self):
        assert lifecycle.add_months(datetime(2025, 11, 15, tzinfo=timezone.utc), 3) == datetime(2026, 2, 15, tzinfo=timezone.utc)

    def test_yearly(self):
        assert lifecycle.add_months(datetime(2024, 2, 29, tzinfo=timezone.utc), 12) == datetime(2025, 2, 28, tzinfo=timezone.utc)


class TestSubscribe:
    def test_trial_plan_creates_trial_record(self):
        decision = lifecycle.subscribe("user-1", TRIAL_PLAN, None, False, START)
        assert decision.outcome == lifecycle.SUBSCRIBE_TRIAL
        assert decision.consumes_trial is True
        assert decision.record.status == SubscriptionStatus.TRIAL
        assert decision.record.end_date == START + timedelta(days=7)

    def test_free_plan_creates_active_record(self):
        decision = lifecycle.subscribe("user-1", FREE_PLAN, None, False, START)
        assert decision.outcome == lifecycle.SUBSCRIBE_FREE
        assert decision.record.status == SubscriptionStatus.ACTIVE
        assert decision.record.end_date == END
        assert decision.consumes_trial is False

    def test_paid_plan_needs_checkout(self):
        decision = lifecycle.subscribe("user-1", PLAN_A, None, False, START)
        assert decision.outcome == lifecycle.SUBSCRIBE_CHECKOUT
        assert decision.record is None

    def test_trial_single_use(self):
        with pytest.raises(ValidationError) as exc:
            lifecycle.subscribe("user-1", TRIAL_PLAN, None, True, START)
        assert exc.value.code == "trial_already_used"

    def test_rejected_while_current_record_exists(self):
        with pytest.raises(ValidationError) as exc:
            lifecycle.subscribe("user-1", PLAN_A, make_record(), False, START)
        assert exc.value.code == "invalid_transition"

    @pytest.mark.parametrize("status", [SubscriptionStatus.EXPIRED, SubscriptionStatus.REFUNDED])
    def test_allowed_after_terminal(self, status):
        decision = lifecycle.subscribe("user-1", FREE_PLAN, make_record(status=status), False, START)
        assert decision.record.status == SubscriptionStatus.ACTIVE


class TestScheduleChange:
    def test_sets_schedule_at_end_date(self):
        updated = lifecycle.schedule_change(make_record(), PLAN_B, False)
        assert updated.next_plan_id == "plan-b"
        assert updated.scheduled_change_at == END
        assert updated.status == SubscriptionStatus.ACTIVE
        assert updated.plan_id == "plan-a"

    def test_idempotent(self):
        once = lifecycle.schedule_change(make_record(), PLAN_B, False)
        twice = lifecycle.schedule_change(once, PLAN_B, False)
        assert once == twice

    def test_last_write_wins(self):
        first = lifecycle.schedule_change(make_record(), PLAN_B, False)
        second = lifecycle.schedule_change(first, YEARLY, False)
        assert second.next_plan_id == "yearly"
        assert second.scheduled_change_at == END

    def test_already_on_plan(self):
        with pytest.raises(ValidationError) as exc:
            lifecycle.schedule_change(make_record(), PLAN_A, False)
        assert exc.value.code == "already_on_plan"

    def test_reselecting_current_plan_clears_pending_change(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        cleared = lifecycle.schedule_change(scheduled, PLAN_A, False)
        assert cleared.next_plan_id is None
        assert cleared.scheduled_change_at is None

    def test_trial_target_rejected_after_trial_used(self):
        with pytest.raises(ValidationError) as exc:
            lifecycle.schedule_change(make_record(), TRIAL_PLAN, True)
        assert exc.value.code == "trial_already_used"

    def test_trial_target_allowed_when_unused(self):
        updated = lifecycle.schedule_change(make_record(), TRIAL_PLAN, False)
        assert updated.next_plan_id == "trial"

    @pytest.mark.parametrize("status", [
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.REFUNDED,
    ])
    def test_rejected_outside_trial_and_active(self, status):
        with pytest.raises(ValidationError) as exc:
            lifecycle.schedule_change(make_record(status=status), PLAN_B, False)
        assert exc.value.code == "invalid_transition"

    def test_local_trial_cannot_schedule_paid_plan(self):
        trial = make_record(status=SubscriptionStatus.TRIAL, plan_id="trial", processor_subscription_id=None)
        with pytest.raises(ValidationError) as exc:
            lifecycle.schedule_change(trial, PLAN_B, True)
        assert exc.value.code == "trial_conversion_required"

    def test_local_free_plan_cannot_schedule_paid_plan(self):
        free = make_record(plan_id="free", processor_subscription_id=None)
        with pytest.raises(ValidationError) as exc:
            lifecycle.schedule_change(free, PLAN_A, False)
        assert exc.value.code == "trial_conversion_required"

    def test_local_trial_may_schedule_free_plan(self):
        trial = make_record(status=SubscriptionStatus.TRIAL, plan_id="trial", processor_subscription_id=None)
        assert lifecycle.schedule_change(trial, FREE_PLAN, True).next_plan_id == "free"

    def test_cancel_schedule_round_trip(self):
        original = make_record()
        scheduled = lifecycle.schedule_change(original, PLAN_B, False)
        restored = lifecycle.cancel_scheduled_change(scheduled)
        assert restored == original

    def test_cancel_without_schedule(self):
        with pytest.raises(ValidationError) as exc:
            lifecycle.cancel_scheduled_change(make_record())
        assert exc.value.code == "no_scheduled_change"


class TestCancel:
    def test_soft_cancel_keeps_end_date_and_clears_schedule(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        canceled = lifecycle.cancel(scheduled, START + timedelta(days=3))
        assert canceled.status == SubscriptionStatus.CANCELED
        assert canceled.end_date == END
        assert canceled.next_plan_id is None
        assert canceled.scheduled_change_at is None
        assert canceled.canceled_at == START + timedelta(days=3)

    def test_access_preserved_until_end_date(self):
        canceled = lifecycle.cancel(make_record(), START)
        assert lifecycle.has_active_access(canceled, END - timedelta(seconds=1))
        assert lifecycle.has_active_access(canceled, END)
        assert not lifecycle.has_active_access(canceled, END + timedelta(seconds=1))

    def test_cannot_cancel_twice(self):
        canceled = lifecycle.cancel(make_record(), START)
        with pytest.raises(ValidationError):
            lifecycle.cancel(canceled, START)


class TestReconcile:
    def test_noop_before_end_date(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        result, outcome = lifecycle.reconcile_at_period_end(scheduled, PLAN_B, END - timedelta(minutes=1))
        assert outcome == lifecycle.NOOP
        assert result == scheduled

    def test_plan_a_to_plan_b_example(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        assert scheduled.scheduled_change_at == datetime(2025, 6, 1, tzinfo=timezone.utc)

        result, outcome = lifecycle.reconcile_at_period_end(scheduled, PLAN_B, datetime(2025, 6, 1, tzinfo=timezone.utc))
        assert outcome == lifecycle.APPLIED_CHANGE
        assert result.plan_id == "plan-b"
        assert result.next_plan_id is None
        assert result.scheduled_change_at is None
        assert result.start_date == datetime(2025, 6, 1, tzinfo=timezone.utc)
        assert result.end_date == datetime(2025, 7, 1, tzinfo=timezone.utc)
        assert result.status == SubscriptionStatus.PAST_DUE

    def test_idempotent(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        once, _ = lifecycle.reconcile_at_period_end(scheduled, PLAN_B, END)
        twice, outcome = lifecycle.reconcile_at_period_end(once, None, END)
        assert outcome == lifecycle.NOOP
        assert twice == once

    def test_scheduled_free_plan_becomes_active(self):
        scheduled = lifecycle.schedule_change(make_record(), FREE_PLAN, False)
        result, _ = lifecycle.reconcile_at_period_end(scheduled, FREE_PLAN, END)
        assert result.status == SubscriptionStatus.ACTIVE

    def test_scheduled_trial_plan_uses_trial_days(self):
        scheduled = lifecycle.schedule_change(make_record(), TRIAL_PLAN, False)
        result, _ = lifecycle.reconcile_at_period_end(scheduled, TRIAL_PLAN, END)
        assert result.status == SubscriptionStatus.TRIAL
        assert result.end_date == END + timedelta(days=7)

    def test_canceled_expires(self):
        canceled = lifecycle.cancel(make_record(), START)
        result, outcome = lifecycle.reconcile_at_period_end(canceled, None, END)
        assert outcome == lifecycle.EXPIRED_OUTCOME
        assert result.status == SubscriptionStatus.EXPIRED

    def test_local_trial_expires(self):
        trial = make_record(status=SubscriptionStatus.TRIAL, plan_id="trial", processor_subscription_id=None)
        result, outcome = lifecycle.reconcile_at_period_end(trial, None, END)
        assert outcome == lifecycle.EXPIRED_OUTCOME
        assert result.status == SubscriptionStatus.EXPIRED

    def test_active_without_schedule_left_to_renewal_webhook(self):
        record = make_record()
        result, outcome = lifecycle.reconcile_at_period_end(record, None, END + timedelta(days=1))
        assert outcome == lifecycle.NOOP
        assert result == record

    def test_unresolvable_next_plan(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        with pytest.raises(ValidationError):
            lifecycle.reconcile_at_period_end(scheduled, None, END)


class TestWebhookTransitions:
    def test_payment_failed_moves_active_to_past_due(self):
        assert lifecycle.payment_failed(make_record()).status == SubscriptionStatus.PAST_DUE

    def test_payment_failed_rejected_for_trial(self):
        with pytest.raises(ValidationError):
            lifecycle.payment_failed(make_record(status=SubscriptionStatus.TRIAL))

    def test_payment_succeeded_recovers_past_due(self):
        record = make_record(status=SubscriptionStatus.PAST_DUE)
        result, outcome = lifecycle.payment_succeeded(record, PLAN_A, START)
        assert outcome == "activated"
        assert result.status == SubscriptionStatus.ACTIVE
        assert result.end_date == END

    def test_payment_succeeded_on_active_renews_period(self):
        result, outcome = lifecycle.payment_succeeded(make_record(), PLAN_A, END)
        assert outcome == "renewed"
        assert result.plan_id == "plan-a"
        assert result.start_date == END
        assert result.end_date == datetime(2025, 7, 1, tzinfo=timezone.utc)

    def test_renewal_applies_due_scheduled_change(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        paid_through = END + timedelta(days=30)
        result, outcome = lifecycle.payment_succeeded(scheduled, PLAN_A, END, paid_through, next_plan=PLAN_B)
        assert outcome == "renewed"
        assert result.plan_id == "plan-b"
        assert result.status == SubscriptionStatus.ACTIVE
        assert result.start_date == END
        assert result.end_date == paid_through
        assert result.next_plan_id is None
        assert result.scheduled_change_at is None

    def test_renewal_then_reconcile_keeps_scheduled_plan(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        renewed, _ = lifecycle.payment_succeeded(scheduled, PLAN_A, END, END + timedelta(days=30), next_plan=PLAN_B)
        result, outcome = lifecycle.reconcile_at_period_end(renewed, None, END + timedelta(hours=1))
        assert outcome == lifecycle.NOOP
        assert result.plan_id == "plan-b"
        assert result.status == SubscriptionStatus.ACTIVE

    def test_reconcile_then_renewal_activates_scheduled_plan(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        applied, _ = lifecycle.reconcile_at_period_end(scheduled, PLAN_B, END)
        assert applied.status == SubscriptionStatus.PAST_DUE

        result, outcome = lifecycle.payment_succeeded(applied, PLAN_B, END, END + timedelta(days=30))
        assert outcome == "activated"
        assert result.plan_id == "plan-b"
        assert result.status == SubscriptionStatus.ACTIVE
        assert result.end_date == datetime(2025, 7, 1, tzinfo=timezone.utc)

    def test_renewal_onto_scheduled_free_plan(self):
        scheduled = lifecycle.schedule_change(make_record(), FREE_PLAN, False)
        result, _ = lifecycle.payment_succeeded(scheduled, PLAN_A, END, END + timedelta(days=30), next_plan=FREE_PLAN)
        assert result.plan_id == "free"
        assert result.status == SubscriptionStatus.ACTIVE
        assert result.end_date == datetime(2025, 7, 1, tzinfo=timezone.utc)

    def test_renewal_with_unresolvable_scheduled_plan(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        with pytest.raises(ValidationError) as exc:
            lifecycle.payment_succeeded(scheduled, PLAN_A, END, END + timedelta(days=30))
        assert exc.value.code == "plan_not_found"

    def test_recovery_past_boundary_applies_scheduled_change(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        past_due = lifecycle.payment_failed(scheduled)
        result, outcome = lifecycle.payment_succeeded(past_due, PLAN_A, END, END + timedelta(days=30), next_plan=PLAN_B)
        assert outcome == "activated"
        assert result.plan_id == "plan-b"
        assert result.status == SubscriptionStatus.ACTIVE

    def test_recovery_within_period_keeps_schedule(self):
        scheduled = lifecycle.schedule_change(make_record(), PLAN_B, False)
        past_due = lifecycle.payment_failed(scheduled)
        result, _ = lifecycle.payment_succeeded(past_due, PLAN_A, START + timedelta(days=3), END, next_plan=PLAN_B)
        assert result.plan_id == "plan-a"
        assert result.next_plan_id == "plan-b"
        assert result.scheduled_change_at == END

    def test_redelivered_renewal_is_noop(self):
        renewed, _ = lifecycle.payment_succeeded(make_record(), PLAN_A, END, END + timedelta(days=30))
        again, outcome = lifecycle.payment_succeeded(renewed, PLAN_A, END, END + timedelta(days=30))
        assert outcome == lifecycle.NOOP
        assert again == renewed

    def test_subscription_canceled_is_soft(self):
        result = lifecycle.subscription_canceled(make_record(), START)
        assert result.status == SubscriptionStatus.CANCELED
        assert result.end_date == END


class TestCheckoutActivation:
    def test_new_record(self):
        record, is_new = lifecycle.activate_checkout(
            "user-1", PLAN_A, None, None, START,
            processor_subscription_id="sub_x", processor_customer_id="cus_x",
        )
        assert is_new
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.end_date == END

    def test_trial_converts_in_place(self):
        trial = make_record(status=SubscriptionStatus.TRIAL, plan_id="trial", processor_subscription_id=None)
        record, is_new = lifecycle.activate_checkout(
            "user-1", PLAN_B, trial, TRIAL_PLAN, START,
            processor_subscription_id="sub_x", processor_customer_id="cus_x",
        )
        assert not is_new
        assert record.id == trial.id
        assert record.plan_id == "plan-b"
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.processor_subscription_id == "sub_x"

    def test_paid_record_cannot_be_replaced(self):
        with pytest.raises(ValidationError):
            lifecycle.activate_checkout(
                "user-1", PLAN_B, make_record(), PLAN_A, START,
                processor_subscription_id="sub_y", processor_customer_id="cus_x",
            )


class TestAdminDecisions:
    def test_revoke_immediate_ends_access_now(self):
        now = START + timedelta(days=10)
        result = lifecycle.revoke(make_record(), now, immediate=True)
        assert result.status == SubscriptionStatus.CANCELED
        assert result.end_date == now
        assert result.ends_immediately is True

    def test_revoke_soft_keeps_end_date(self):
        result = lifecycle.revoke(make_record(), START, immediate=False)
        assert result.end_date == END
        assert result.ends_immediately is False

    def test_revoke_rejected_for_expired(self):
        with pytest.raises(ValidationError):
            lifecycle.revoke(make_record(status=SubscriptionStatus.EXPIRED), START, immediate=True)

    def test_refund_only_from_active_or_past_due(self):
        assert lifecycle.refund(make_record()).status == SubscriptionStatus.REFUNDED
        with pytest.raises(ValidationError):
            lifecycle.refund(make_record(status=SubscriptionStatus.TRIAL))

    def test_immediate_change_keeps_end_date(self):
        result = lifecycle.apply_immediate_change(make_record(), PLAN_B, False)
        assert result.plan_id == "plan-b"
        assert result.end_date == END

    def test_immediate_change_activates_trial_after_charge(self):
        trial = make_record(status=SubscriptionStatus.TRIAL)
        assert lifecycle.apply_immediate_change(trial, PLAN_B, True, activate=True).status == SubscriptionStatus.ACTIVE
        assert lifecycle.apply_immediate_change(trial, PLAN_B, True).status == SubscriptionStatus.TRIAL


class TestProration:
    def test_half_period_upgrade(self):
        record = make_record(start_date=datetime(2025, 6, 1, tzinfo=timezone.utc), end_date=datetime(2025, 7, 1, tzinfo=timezone.utc))
        now = datetime(2025, 6, 16, tzinfo=timezone.utc)
        assert lifecycle.prorate_upgrade(record, PLAN_A, PLAN_B, now) == Decimal("10.00")

    def test_never_negative(self):
        assert lifecycle.prorate_upgrade(make_record(), PLAN_B, PLAN_A, START) == Decimal("0.00")

    def test_after_period_end_is_zero(self):
        assert lifecycle.prorate_upgrade(make_record(), PLAN_A, PLAN_B, END + timedelta(days=1)) == Decimal("0.00")

    def test_downgrade_credit_policy_none(self):
        assert lifecycle.downgrade_credit(make_record(), PLAN_B, PLAN_A, START, "none") == Decimal("0.00")

    def test_downgrade_credit_prorated(self):
        record = make_record(start_date=datetime(2025, 6, 1, tzinfo=timezone.utc), end_date=datetime(2025, 7, 1, tzinfo=timezone.utc))
        now = datetime(2025, 6, 16, tzinfo=timezone.utc)
        assert lifecycle.downgrade_credit(record, PLAN_B, PLAN_A, now, "prorated_credit") == Decimal("10.00")

    def test_classify_change_falls_back_to_price(self):
        cheap = make_plan("cheap", 1, price="5.00")
        assert lifecycle.classify_change(cheap, PLAN_A).value == "UPGRADE"
        assert lifecycle.classify_change(PLAN_A, cheap).value == "DOWNGRADE"
        assert lifecycle.classify_change(PLAN_A, make_plan("twin", 1, price="10.00")).value == "LATERAL"
