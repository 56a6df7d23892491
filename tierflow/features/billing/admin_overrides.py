"""
Admin override engine.

Operator actions that bypass self-service scheduling but respect the same
state machine:
- upgrade_now: charge the prorated difference, then switch plan
- downgrade_now: switch plan, credit per DOWNGRADE_CREDIT_POLICY
- revoke: cancel, optionally ending access immediately
- refund: processor refund capped at what was paid this cycle

Every call is idempotent per (subscription, operation, idempotency key) and
audited. Processor failures leave the record untouched.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from tierflow.core import idempotency
from tierflow.core.admin_auth import AdminActor
from tierflow.core.config import settings
from tierflow.core.errors import ConflictError, ValidationError
from tierflow.core.logging import log_event
from tierflow.features.billing.admin_service import record_admin_audit
from tierflow.features.billing.checkout import require_provider, call_processor
from tierflow.features.plans.service import get_plan, get_plan_any
from tierflow.features.subscriptions import lifecycle, repository
from tierflow.features.subscriptions.transitions import mutate_with_retry
from tierflow.models.plan import ChangeKind, PlanKind, to_money


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _idempotent(
    subscription_id: str,
    operation: str,
    idempotency_key: str,
    run: Callable[[str], Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Run an override at most once per key.

    A completed key replays its stored result. A key whose first call is still
    running is a conflict. A failed call releases the key so the operator can
    retry deliberately.
    """
    if not idempotency_key or not idempotency_key.strip():
        raise ValidationError("Idempotency key is required for admin overrides", code="idempotency_key_required")

    key = f"admin:{subscription_id}:{operation}:{idempotency_key.strip()}"
    if idempotency.check_and_set(key, operation=f"admin.{operation}"):
        stored = idempotency.get_result(key)
        if stored is None:
            raise ConflictError(
                f"Admin {operation} with this idempotency key is still in progress",
                code="idempotency_in_progress",
            )
        replay = dict(stored)
        replay["idempotent_replay"] = True
        return replay

    try:
        result = run(key)
    except Exception:
        idempotency.release(key)
        raise
    idempotency.store_result(key, result)
    return result


def upgrade_now(
    subscription_id: str,
    plan_id: str,
    *,
    actor: AdminActor,
    idempotency_key: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Switch to a higher plan immediately.

    The prorated difference for the rest of the period is charged first; the
    record only changes once the processor returns a receipt. A TRIAL record
    becomes ACTIVE with the successful charge.

    Raises:
        ValidationError: Not an upgrade, illegal state, or nothing to charge against
        ExternalServiceError: Processor failure or timeout (record unchanged)
    """
    def run(key: str) -> Dict[str, Any]:
        at = now or _now()
        record = repository.get_subscription(subscription_id)
        old_plan = get_plan_any(record.plan_id)
        new_plan = get_plan(plan_id)
        if old_plan is None or lifecycle.classify_change(old_plan, new_plan) != ChangeKind.UPGRADE:
            raise ValidationError(f"{plan_id} is not an upgrade from {record.plan_id}", code="not_an_upgrade")

        # Validate before any money moves
        lifecycle.apply_immediate_change(record, new_plan, repository.has_used_trial(record.user_id), activate=True)

        amount = lifecycle.prorate_upgrade(record, old_plan, new_plan, at)
        receipt_id = None
        if amount > 0:
            if not record.processor_subscription_id:
                raise ValidationError(
                    "Subscription has no processor billing to charge; the user must check out",
                    code="checkout_required",
                )
            provider = require_provider()
            receipt_id = call_processor(
                "charge",
                provider.charge,
                record.processor_subscription_id,
                amount,
                f"Upgrade {record.plan_id} -> {new_plan.plan_id} (prorated)",
                key,
            )
            repository.record_payment(
                record.id,
                amount,
                currency=settings.CURRENCY,
                period_start=record.start_date,
                processor_payment_id=receipt_id,
                kind="proration",
            )

        def mutate(current):
            return lifecycle.apply_immediate_change(
                current,
                new_plan,
                repository.has_used_trial(current.user_id),
                activate=receipt_id is not None,
            )

        try:
            before, saved = mutate_with_retry(
                "admin_upgrade",
                lambda: repository.get_subscription(subscription_id),
                mutate,
                consumes_trial=new_plan.plan_kind == PlanKind.TRIAL,
                actor=actor.actor_id,
            )
        except Exception:
            if receipt_id is not None:
                # Charged but the plan did not change
                log_event(
                    "error",
                    "admin.upgrade.state_not_saved",
                    user_id=record.user_id,
                    subscription_id=record.id,
                    error_code="upgrade_state_mismatch",
                    extra={"receipt_id": receipt_id, "amount": amount, "plan_id": new_plan.plan_id},
                )
            raise
        result = {
            "subscription_id": saved.id,
            "operation": "upgrade",
            "from_plan_id": before.plan_id,
            "plan_id": saved.plan_id,
            "status": saved.status.value,
            "charged_amount": str(amount),
            "receipt_id": receipt_id,
        }
        record_admin_audit(
            actor,
            "billing.upgrade_now",
            target_user_id=saved.user_id,
            target_resource=saved.id,
            payload=result,
        )
        return result

    return _idempotent(subscription_id, "upgrade", idempotency_key, run)


def downgrade_now(
    subscription_id: str,
    plan_id: str,
    *,
    actor: AdminActor,
    idempotency_key: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Switch to a lower plan immediately. end_date is kept.

    Credit for the unused difference follows DOWNGRADE_CREDIT_POLICY and is
    only issued for processor-billed subscriptions.
    """
    def run(key: str) -> Dict[str, Any]:
        at = now or _now()
        record = repository.get_subscription(subscription_id)
        old_plan = get_plan_any(record.plan_id)
        new_plan = get_plan(plan_id)
        if old_plan is None or lifecycle.classify_change(old_plan, new_plan) != ChangeKind.DOWNGRADE:
            raise ValidationError(f"{plan_id} is not a downgrade from {record.plan_id}", code="not_a_downgrade")

        lifecycle.apply_immediate_change(record, new_plan, repository.has_used_trial(record.user_id))

        credit = lifecycle.downgrade_credit(record, old_plan, new_plan, at, settings.DOWNGRADE_CREDIT_POLICY)
        receipt_id = None
        if credit > 0 and record.processor_subscription_id:
            provider = require_provider()
            reason = f"Downgrade credit {record.plan_id} -> {new_plan.plan_id}"
            receipt_id = call_processor(
                "refund",
                provider.refund,
                record.processor_subscription_id,
                credit,
                reason,
                key,
            )
            repository.record_refund(
                record.id,
                credit,
                reason=reason,
                receipt_id=receipt_id,
                actor=actor.actor_id,
                period_start=record.start_date,
            )
        else:
            credit = Decimal("0.00")

        before, saved = mutate_with_retry(
            "admin_downgrade",
            lambda: repository.get_subscription(subscription_id),
            lambda r: lifecycle.apply_immediate_change(r, new_plan, repository.has_used_trial(r.user_id)),
            consumes_trial=new_plan.plan_kind == PlanKind.TRIAL,
            actor=actor.actor_id,
        )
        result = {
            "subscription_id": saved.id,
            "operation": "downgrade",
            "from_plan_id": before.plan_id,
            "plan_id": saved.plan_id,
            "status": saved.status.value,
            "credited_amount": str(credit),
            "credit_policy": settings.DOWNGRADE_CREDIT_POLICY,
            "receipt_id": receipt_id,
        }
        record_admin_audit(
            actor,
            "billing.downgrade_now",
            target_user_id=saved.user_id,
            target_resource=saved.id,
            payload=result,
        )
        return result

    return _idempotent(subscription_id, "downgrade", idempotency_key, run)


def revoke(
    subscription_id: str,
    *,
    actor: AdminActor,
    idempotency_key: str,
    immediate: Optional[bool] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Cancel on the operator's behalf.

    immediate (default REVOKE_IMMEDIATE_DEFAULT) ends access now and marks the
    record ends_immediately; otherwise access runs to end_date.
    """
    ends_now = settings.REVOKE_IMMEDIATE_DEFAULT if immediate is None else immediate

    def run(key: str) -> Dict[str, Any]:
        at = now or _now()
        _, saved = mutate_with_retry(
            "admin_revoke",
            lambda: repository.get_subscription(subscription_id),
            lambda r: lifecycle.revoke(r, at, ends_now),
            actor=actor.actor_id,
        )
        result = {
            "subscription_id": saved.id,
            "operation": "revoke",
            "plan_id": saved.plan_id,
            "status": saved.status.value,
            "immediate": ends_now,
            "end_date": saved.end_date.isoformat(),
            "reason": reason,
        }
        record_admin_audit(
            actor,
            "billing.revoke",
            target_user_id=saved.user_id,
            target_resource=saved.id,
            payload=result,
        )
        return result

    return _idempotent(subscription_id, "revoke", idempotency_key, run)


def refund(
    subscription_id: str,
    amount,
    reason: str,
    *,
    actor: AdminActor,
    idempotency_key: str,
) -> Dict[str, Any]:
    """
    Refund part or all of the current cycle's payments and mark REFUNDED.

    Never retried automatically: a processor failure or timeout surfaces as
    ExternalServiceError with the record unchanged and the key released.

    Raises:
        ValidationError: Missing reason, non-positive amount, amount above
            what is refundable, or illegal state
        ExternalServiceError: Processor failure or timeout
    """
    if not reason or not reason.strip():
        raise ValidationError("A refund reason is required", code="reason_required")
    try:
        value = to_money(Decimal(str(amount)))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid refund amount: {amount}", code="invalid_amount")
    if value <= 0:
        raise ValidationError("Refund amount must be greater than zero", code="invalid_amount")

    def run(key: str) -> Dict[str, Any]:
        record = repository.get_subscription(subscription_id)
        lifecycle.ensure_refundable(record)
        paid = repository.paid_in_period(record.id, record.start_date)
        already = repository.refunded_in_period(record.id, record.start_date)
        refundable = to_money(max(paid - already, Decimal(0)))
        if value > refundable:
            raise ValidationError(
                f"Refund {value} exceeds refundable amount {refundable} for the current cycle",
                code="refund_exceeds_paid",
            )
        if not record.processor_subscription_id:
            raise ValidationError("Subscription has no processor billing to refund", code="no_processor_subscription")

        provider = require_provider()
        receipt_id = call_processor(
            "refund",
            provider.refund,
            record.processor_subscription_id,
            value,
            reason.strip(),
            key,
        )
        repository.record_refund(
            record.id,
            value,
            reason=reason.strip(),
            receipt_id=receipt_id,
            actor=actor.actor_id,
            period_start=record.start_date,
        )
        try:
            _, saved = mutate_with_retry(
                "admin_refund",
                lambda: repository.get_subscription(subscription_id),
                lifecycle.refund,
                actor=actor.actor_id,
            )
        except Exception:
            # Money already moved; make the mismatch visible to operators
            log_event(
                "error",
                "admin.refund.state_not_saved",
                user_id=record.user_id,
                subscription_id=record.id,
                error_code="refund_state_mismatch",
                extra={"receipt_id": receipt_id, "amount": value},
            )
            raise
        result = {
            "subscription_id": saved.id,
            "operation": "refund",
            "status": saved.status.value,
            "amount": str(value),
            "reason": reason.strip(),
            "receipt_id": receipt_id,
        }
        record_admin_audit(
            actor,
            "billing.refund",
            target_user_id=saved.user_id,
            target_resource=saved.id,
            payload=result,
        )
        return result

    return _idempotent(subscription_id, "refund", idempotency_key, run)
