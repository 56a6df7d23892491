"""
Read-decide-write loop shared by every path that mutates a subscription.

Self-service, webhooks, admin overrides and reconciliation all load the
record, hand it to the lifecycle engine and save the result guarded by the
record's version. A stale version is re-read and retried once.
"""
from typing import Callable, Optional, Tuple, Union

from tierflow.core.errors import ConflictError
from tierflow.core.logging import log_event
from tierflow.core.metrics import subscription_transitions_total
from tierflow.features.plans.service import get_plan_any
from tierflow.features.subscriptions import repository
from tierflow.models.plan import PlanKind
from tierflow.models.subscription import SubscriptionRecord

MAX_ATTEMPTS = 2


def record_transition(
    operation: str,
    before: Optional[SubscriptionRecord],
    after: SubscriptionRecord,
    *,
    actor: Optional[str] = None,
) -> None:
    """Count and log one persisted transition."""
    from_status = before.status.value if before else "NONE"
    subscription_transitions_total.inc({
        "operation": operation,
        "from_status": from_status,
        "to_status": after.status.value,
    })
    extra = {
        "from_status": from_status,
        "to_status": after.status.value,
        "plan_id": after.plan_id,
        "version": after.version,
    }
    if before is not None and before.plan_id != after.plan_id:
        extra["from_plan_id"] = before.plan_id
    if after.next_plan_id:
        extra["next_plan_id"] = after.next_plan_id
    if actor:
        extra["actor"] = actor
    log_event(
        "info",
        f"subscription.{operation}",
        user_id=after.user_id,
        subscription_id=after.id,
        extra=extra,
    )


def enters_trial_plan(before: SubscriptionRecord, after: SubscriptionRecord) -> bool:
    """True when a transition moved the record onto a trial plan."""
    if before.plan_id == after.plan_id:
        return False
    plan = get_plan_any(after.plan_id)
    return plan is not None and plan.plan_kind == PlanKind.TRIAL


def mutate_with_retry(
    operation: str,
    load: Callable[[], SubscriptionRecord],
    mutate: Callable[[SubscriptionRecord], SubscriptionRecord],
    *,
    consumes_trial: Union[bool, Callable[[SubscriptionRecord, SubscriptionRecord], bool]] = False,
    actor: Optional[str] = None,
) -> Tuple[SubscriptionRecord, SubscriptionRecord]:
    """
    Load, mutate and save a record, retrying once on a stale version.

    mutate must be pure; it runs again against the fresh record on retry and
    may raise ValidationError to reject the transition. consumes_trial may be a
    predicate over (before, after), evaluated per attempt.

    Returns:
        (record as read, record as saved). When mutate returns the record
        unchanged nothing is written and both are the same object.

    Raises:
        ConflictError: If the second attempt also loses the race
    """
    for attempt in range(1, MAX_ATTEMPTS + 1):
        before = load()
        after = mutate(before)
        if after == before:
            return before, before
        try:
            marks_trial = consumes_trial(before, after) if callable(consumes_trial) else consumes_trial
            saved = repository.save_subscription(after, consumes_trial=marks_trial)
        except ConflictError:
            if attempt >= MAX_ATTEMPTS:
                log_event(
                    "warning",
                    f"subscription.{operation}.conflict",
                    user_id=before.user_id,
                    subscription_id=before.id,
                    error_code="stale_version",
                )
                raise
            continue
        record_transition(operation, before, saved, actor=actor)
        return before, saved
    raise ConflictError(f"Could not apply {operation}", code="stale_version")
