"""
Subscription lifecycle engine.

Pure decision logic over SubscriptionRecord + Plan:
- validates requested transitions against the state machine
- decides immediate vs scheduled changes
- applies scheduled changes at period boundaries
- trial eligibility, proration and downgrade credit

No I/O here. Every function takes the current record (and plans) and returns
the next record, or raises ValidationError with a stable code. Callers persist
the result through the repository.
"""
import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Tuple
from uuid import uuid4

from tierflow.core.errors import ValidationError
from tierflow.features.plans.service import compare_tier
from tierflow.models.plan import ChangeKind, Plan, PlanKind, to_money
from tierflow.models.subscription import SubscriptionRecord, SubscriptionStatus

TRIAL = SubscriptionStatus.TRIAL
ACTIVE = SubscriptionStatus.ACTIVE
PAST_DUE = SubscriptionStatus.PAST_DUE
CANCELED = SubscriptionStatus.CANCELED
EXPIRED = SubscriptionStatus.EXPIRED
REFUNDED = SubscriptionStatus.REFUNDED

SCHEDULABLE = (TRIAL, ACTIVE)
CANCELABLE = (TRIAL, ACTIVE, PAST_DUE)
REVOCABLE = (TRIAL, ACTIVE, PAST_DUE, CANCELED)
REFUNDABLE = (ACTIVE, PAST_DUE)

# Reconcile outcomes
NOOP = "noop"
APPLIED_CHANGE = "applied_change"
EXPIRED_OUTCOME = "expired"

# Subscribe outcomes
SUBSCRIBE_TRIAL = "trial"
SUBSCRIBE_FREE = "free"
SUBSCRIBE_CHECKOUT = "checkout"


@dataclass(frozen=True)
class SubscribeDecision:
    """What subscribe() decided: a record to insert now, or a checkout to start."""
    outcome: str
    record: Optional[SubscriptionRecord] = None
    consumes_trial: bool = False


def _invalid(operation: str, record: SubscriptionRecord) -> ValidationError:
    return ValidationError(
        f"Cannot {operation} a subscription in status {record.status.value}",
        code="invalid_transition",
    )


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_end(plan: Plan, start: datetime) -> datetime:
    """End of one billing period on plan starting at start."""
    if plan.plan_kind == PlanKind.TRIAL and plan.trial_days > 0:
        return start + timedelta(days=plan.trial_days)
    return add_months(start, plan.duration_months)


def check_trial_eligibility(plan: Plan, has_used_trial: bool, current_plan_id: Optional[str] = None) -> None:
    """
    A trial plan is selectable once per user, or when it is already the current plan.

    Raises:
        ValidationError: code trial_already_used
    """
    if plan.plan_kind != PlanKind.TRIAL:
        return
    if has_used_trial and plan.plan_id != current_plan_id:
        raise ValidationError(
            f"Trial plan {plan.plan_id} is no longer available: the free trial was already used",
            code="trial_already_used",
        )


def has_active_access(record: Optional[SubscriptionRecord], now: datetime) -> bool:
    return record is not None and record.has_active_access(now)


def classify_change(current_plan: Plan, target_plan: Plan) -> ChangeKind:
    return compare_tier(current_plan, target_plan)


def subscribe(
    user_id: str,
    plan: Plan,
    current: Optional[SubscriptionRecord],
    has_used_trial: bool,
    now: datetime,
) -> SubscribeDecision:
    """
    Start a subscription from NONE, EXPIRED or REFUNDED.

    Trial plans produce a TRIAL record and consume the trial. Free plans
    produce an ACTIVE record. Paid plans need a checkout, so no record yet.
    """
    if current is not None and current.is_current:
        raise _invalid("subscribe while holding", current)

    check_trial_eligibility(plan, has_used_trial)

    if plan.plan_kind == PlanKind.PAID:
        return SubscribeDecision(outcome=SUBSCRIBE_CHECKOUT)

    status = TRIAL if plan.plan_kind == PlanKind.TRIAL else ACTIVE
    record = SubscriptionRecord(
        id=str(uuid4()),
        user_id=user_id,
        plan_id=plan.plan_id,
        status=status,
        start_date=now,
        end_date=period_end(plan, now),
    )
    if status == TRIAL:
        return SubscribeDecision(outcome=SUBSCRIBE_TRIAL, record=record, consumes_trial=True)
    return SubscribeDecision(outcome=SUBSCRIBE_FREE, record=record)


def schedule_change(record: SubscriptionRecord, new_plan: Plan, has_used_trial: bool) -> SubscriptionRecord:
    """
    Defer a plan change to the end of the current period.

    Last write wins. Reselecting the current plan while a change is pending
    clears the pending change. Never charges and never changes status.
    """
    if record.status not in SCHEDULABLE:
        raise _invalid("schedule a change on", record)

    if new_plan.plan_id == record.plan_id:
        if record.has_pending_change:
            return cancel_scheduled_change(record)
        raise ValidationError(
            f"Already on plan {record.plan_id}",
            code="already_on_plan",
        )

    check_trial_eligibility(new_plan, has_used_trial, current_plan_id=record.plan_id)

    if new_plan.plan_kind == PlanKind.PAID and not record.processor_subscription_id:
        # Nothing would ever charge for the paid period
        raise ValidationError(
            f"Plan {new_plan.plan_id} needs a payment method: convert via /v1/subscriptions/conversion",
            code="trial_conversion_required",
        )

    return record.model_copy(update={
        "next_plan_id": new_plan.plan_id,
        "scheduled_change_at": record.end_date,
    })


def cancel_scheduled_change(record: SubscriptionRecord) -> SubscriptionRecord:
    if record.status not in SCHEDULABLE:
        raise _invalid("cancel a scheduled change on", record)
    if not record.has_pending_change:
        raise ValidationError("No scheduled change to cancel", code="no_scheduled_change")
    return record.model_copy(update={"next_plan_id": None, "scheduled_change_at": None})


def cancel(record: SubscriptionRecord, now: datetime) -> SubscriptionRecord:
    """Soft cancel: access continues through end_date, pending change dropped."""
    if record.status not in CANCELABLE:
        raise _invalid("cancel", record)
    return record.model_copy(update={
        "status": CANCELED,
        "next_plan_id": None,
        "scheduled_change_at": None,
        "canceled_at": now,
    })


def change_due(record: SubscriptionRecord, boundary: datetime) -> bool:
    """A scheduled change takes effect at the first boundary on or after scheduled_change_at."""
    return record.has_pending_change and record.scheduled_change_at <= boundary


def _switch_to_next_plan(
    record: SubscriptionRecord,
    next_plan: Optional[Plan],
    start: datetime,
    paid: bool = False,
    paid_through: Optional[datetime] = None,
) -> SubscriptionRecord:
    """
    Move record onto its scheduled plan for a new cycle starting at start.

    A paid target stays PAST_DUE until the processor confirms a charge;
    paid=True means that confirmation is the reason we are switching.
    """
    if next_plan is None or next_plan.plan_id != record.next_plan_id:
        raise ValidationError(
            f"Scheduled plan {record.next_plan_id} could not be resolved",
            code="plan_not_found",
        )
    end_date = period_end(next_plan, start)
    if next_plan.plan_kind == PlanKind.TRIAL:
        status = TRIAL
    elif next_plan.plan_kind == PlanKind.FREE or paid:
        status = ACTIVE
        if next_plan.plan_kind == PlanKind.PAID and paid_through is not None and paid_through > start:
            end_date = paid_through
    else:
        status = PAST_DUE
    return record.model_copy(update={
        "plan_id": next_plan.plan_id,
        "next_plan_id": None,
        "scheduled_change_at": None,
        "status": status,
        "start_date": start,
        "end_date": end_date,
    })


def reconcile_at_period_end(
    record: SubscriptionRecord,
    next_plan: Optional[Plan],
    now: datetime,
) -> Tuple[SubscriptionRecord, str]:
    """
    Apply whatever is due at the end of the current period.

    Args:
        record: Current record
        next_plan: Plan for record.next_plan_id (None when nothing is scheduled)
        now: Reconciliation time

    Returns:
        (next record, outcome) where outcome is noop, applied_change or expired.
        Running it again on the result is a noop.
    """
    if record.is_terminal or now < record.end_date:
        return record, NOOP

    if record.has_pending_change and record.status in SCHEDULABLE:
        return _switch_to_next_plan(record, next_plan, now), APPLIED_CHANGE

    if record.status == CANCELED:
        return record.model_copy(update={"status": EXPIRED}), EXPIRED_OUTCOME

    if record.status == TRIAL and not record.processor_subscription_id:
        # Local trial with no processor behind it: nothing will renew it
        return record.model_copy(update={"status": EXPIRED}), EXPIRED_OUTCOME

    return record, NOOP


def revoke(record: SubscriptionRecord, now: datetime, immediate: bool) -> SubscriptionRecord:
    """Admin revoke. immediate ends access now; otherwise behaves like a soft cancel."""
    if record.status not in REVOCABLE:
        raise _invalid("revoke", record)
    update = {
        "status": CANCELED,
        "next_plan_id": None,
        "scheduled_change_at": None,
        "canceled_at": record.canceled_at or now,
    }
    if immediate:
        update["end_date"] = now
        update["ends_immediately"] = True
    return record.model_copy(update=update)


def refund(record: SubscriptionRecord) -> SubscriptionRecord:
    if record.status not in REFUNDABLE:
        raise _invalid("refund", record)
    return record.model_copy(update={
        "status": REFUNDED,
        "next_plan_id": None,
        "scheduled_change_at": None,
    })


def ensure_refundable(record: SubscriptionRecord) -> None:
    if record.status not in REFUNDABLE:
        raise _invalid("refund", record)


def payment_failed(record: SubscriptionRecord) -> SubscriptionRecord:
    if record.status == PAST_DUE:
        return record
    if record.status != ACTIVE:
        raise _invalid("mark payment failed on", record)
    return record.model_copy(update={"status": PAST_DUE})


def payment_succeeded(
    record: SubscriptionRecord,
    plan: Plan,
    now: datetime,
    paid_through: Optional[datetime] = None,
    next_plan: Optional[Plan] = None,
) -> Tuple[SubscriptionRecord, str]:
    """
    PAST_DUE or TRIAL becomes ACTIVE. ACTIVE means the period renewed.

    A payment that carries the record past a due scheduled change starts
    the new cycle on the scheduled plan, so the change lands on the boundary
    whether the webhook or the reconcile job gets there first.

    Args:
        record: Current record
        plan: The record's current plan
        paid_through: Period end reported by the processor, if any
        next_plan: Plan for record.next_plan_id, if a change is scheduled

    Returns:
        (next record, outcome) with outcome activated, renewed or noop
    """
    if record.status in (PAST_DUE, TRIAL):
        if paid_through is not None and paid_through > record.end_date and change_due(record, record.end_date):
            return _switch_to_next_plan(record, next_plan, record.end_date, paid=True, paid_through=paid_through), "activated"
        update = {"status": ACTIVE}
        if paid_through is not None and paid_through > record.end_date:
            update["end_date"] = paid_through
        return record.model_copy(update=update), "activated"

    if record.status == ACTIVE:
        new_end = paid_through or period_end(plan, record.end_date)
        if new_end <= record.end_date:
            # Already covered (redelivery of an applied renewal)
            return record, NOOP
        if change_due(record, record.end_date):
            # Renewal landed before reconcile: the new cycle is on the scheduled plan
            return _switch_to_next_plan(record, next_plan, record.end_date, paid=True, paid_through=paid_through), "renewed"
        return record.model_copy(update={"start_date": record.end_date, "end_date": new_end}), "renewed"

    raise _invalid("apply a successful payment to", record)


def subscription_canceled(record: SubscriptionRecord, now: datetime) -> SubscriptionRecord:
    if record.status == CANCELED:
        return record
    return cancel(record, now)


def activate_checkout(
    user_id: str,
    plan: Plan,
    current: Optional[SubscriptionRecord],
    current_plan: Optional[Plan],
    now: datetime,
    *,
    processor_subscription_id: Optional[str],
    processor_customer_id: Optional[str],
    paid_through: Optional[datetime] = None,
) -> Tuple[SubscriptionRecord, bool]:
    """
    Turn a completed checkout into an ACTIVE record.

    A current trial or free record converts in place; otherwise a new record
    is created (the user must not hold any other current record).

    Returns:
        (record, is_new)
    """
    end_date = paid_through if paid_through and paid_through > now else period_end(plan, now)
    update = {
        "plan_id": plan.plan_id,
        "status": ACTIVE,
        "start_date": now,
        "end_date": end_date,
        "next_plan_id": None,
        "scheduled_change_at": None,
        "processor_subscription_id": processor_subscription_id,
        "processor_customer_id": processor_customer_id,
        "ends_immediately": False,
        "canceled_at": None,
    }

    if current is None or not current.is_current:
        return SubscriptionRecord(id=str(uuid4()), user_id=user_id, **update), True

    convertible = (
        current.status in SCHEDULABLE
        and current_plan is not None
        and current_plan.plan_kind != PlanKind.PAID
    )
    if not convertible:
        raise _invalid("complete a checkout while holding", current)
    return current.model_copy(update=update), False


def apply_immediate_change(
    record: SubscriptionRecord,
    new_plan: Plan,
    has_used_trial: bool,
    *,
    activate: bool = False,
) -> SubscriptionRecord:
    """
    Admin plan change effective now. end_date is kept; any pending change is dropped.

    activate promotes a TRIAL record to ACTIVE (after a successful charge).
    """
    if record.status not in SCHEDULABLE:
        raise _invalid("change the plan of", record)
    if new_plan.plan_id == record.plan_id:
        raise ValidationError(f"Already on plan {record.plan_id}", code="already_on_plan")
    check_trial_eligibility(new_plan, has_used_trial, current_plan_id=record.plan_id)

    update = {
        "plan_id": new_plan.plan_id,
        "next_plan_id": None,
        "scheduled_change_at": None,
    }
    if activate and record.status == TRIAL:
        update["status"] = ACTIVE
    return record.model_copy(update=update)


def _remaining_fraction(record: SubscriptionRecord, now: datetime) -> Decimal:
    total = (record.end_date - record.start_date).total_seconds()
    if total <= 0:
        return Decimal(0)
    remaining = max((record.end_date - now).total_seconds(), 0)
    return min(Decimal(str(remaining)) / Decimal(str(total)), Decimal(1))


def prorate_upgrade(record: SubscriptionRecord, old_plan: Plan, new_plan: Plan, now: datetime) -> Decimal:
    """remaining/total * (new - old), never negative, rounded to cents."""
    difference = new_plan.effective_price - old_plan.effective_price
    amount = _remaining_fraction(record, now) * difference
    return to_money(max(amount, Decimal(0)))


def downgrade_credit(
    record: SubscriptionRecord,
    old_plan: Plan,
    new_plan: Plan,
    now: datetime,
    policy: str = "none",
) -> Decimal:
    """Credit owed for an immediate downgrade under the configured policy."""
    if policy == "none":
        return Decimal("0.00")
    if policy != "prorated_credit":
        raise ValidationError(f"Unknown downgrade credit policy: {policy}", code="invalid_policy")
    difference = old_plan.effective_price - new_plan.effective_price
    amount = _remaining_fraction(record, now) * difference
    return to_money(max(amount, Decimal(0)))
