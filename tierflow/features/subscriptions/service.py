"""
Self-service subscription operations.

Handles:
- subscribe (trial and free plans start now, paid plans go through checkout)
- schedule / cancel a plan change at period end
- soft cancel
- current subscription overview
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tierflow.core.errors import ConflictError, NotFoundError
from tierflow.core.logging import log_event
from tierflow.features.billing import checkout
from tierflow.features.plans.service import get_plan, get_plan_any
from tierflow.features.subscriptions import lifecycle, repository
from tierflow.features.subscriptions.transitions import mutate_with_retry, record_transition
from tierflow.models.subscription import SubscriptionRecord


@dataclass
class SubscribeResult:
    outcome: str  # trial | free | checkout
    subscription: Optional[SubscriptionRecord] = None
    checkout_url: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_current(user_id: str) -> SubscriptionRecord:
    record = repository.get_current_subscription(user_id)
    if record is None:
        raise NotFoundError(f"No current subscription for user {user_id}", code="subscription_not_found")
    return record


def subscribe(user_id: str, plan_id: str, idempotency_key: Optional[str] = None, now: Optional[datetime] = None) -> SubscribeResult:
    """
    Start a subscription on plan_id.

    Raises:
        NotFoundError: Unknown or inactive plan
        ValidationError: User holds a current record, or trial already used
        ExternalServiceError: Processor failure while creating the checkout
    """
    at = now or _now()
    plan = get_plan(plan_id)
    repository.ensure_user(user_id)

    for attempt in (1, 2):
        decision = lifecycle.subscribe(
            user_id,
            plan,
            repository.get_current_subscription(user_id),
            repository.has_used_trial(user_id),
            at,
        )
        if decision.outcome == lifecycle.SUBSCRIBE_CHECKOUT:
            url = checkout.create_checkout_session(user_id, plan.plan_id, idempotency_key)
            return SubscribeResult(outcome=decision.outcome, checkout_url=url)
        try:
            saved = repository.insert_subscription(decision.record, consumes_trial=decision.consumes_trial)
        except ConflictError:
            # Another request created a record first; the re-read rejects cleanly
            if attempt == 2:
                raise
            continue
        record_transition("subscribe", None, saved)
        return SubscribeResult(outcome=decision.outcome, subscription=saved)


def schedule_change(user_id: str, plan_id: str) -> SubscriptionRecord:
    """
    Defer a plan change to the end of the current period.

    Reselecting the current plan while a change is pending clears it.
    """
    plan = get_plan(plan_id)
    _, saved = mutate_with_retry(
        "schedule_change",
        lambda: _require_current(user_id),
        lambda record: lifecycle.schedule_change(record, plan, repository.has_used_trial(user_id)),
    )
    return saved


def cancel_scheduled_change(user_id: str) -> SubscriptionRecord:
    _, saved = mutate_with_retry(
        "cancel_scheduled_change",
        lambda: _require_current(user_id),
        lifecycle.cancel_scheduled_change,
    )
    return saved


def cancel(user_id: str, now: Optional[datetime] = None) -> SubscriptionRecord:
    """Soft cancel; access continues until end_date."""
    at = now or _now()
    _, saved = mutate_with_retry(
        "cancel",
        lambda: _require_current(user_id),
        lambda record: lifecycle.cancel(record, at),
    )
    return saved


def start_conversion(user_id: str, plan_id: str, idempotency_key: Optional[str] = None) -> str:
    """Checkout URL converting the user's trial or free record to plan_id."""
    url = checkout.create_conversion_session(user_id, plan_id, idempotency_key)
    log_event("info", "subscription.conversion_started", user_id=user_id, extra={"plan_id": plan_id})
    return url


def fetch_current_subscription(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    The user's subscription as shown to them.

    Falls back to the latest terminal record so an expired user still sees
    what they had.
    """
    at = now or _now()
    record = repository.get_current_subscription(user_id) or repository.get_latest_subscription(user_id)
    if record is None:
        return {
            "subscription": None,
            "plan": None,
            "next_plan": None,
            "has_active_access": False,
            "has_used_trial": repository.has_used_trial(user_id),
        }
    return {
        "subscription": record,
        "plan": get_plan_any(record.plan_id),
        "next_plan": get_plan_any(record.next_plan_id) if record.next_plan_id else None,
        "has_active_access": lifecycle.has_active_access(record, at),
        "has_used_trial": repository.has_used_trial(user_id),
    }
