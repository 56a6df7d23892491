"""
Checkout coordinator.

Coordinates the payment processor with subscription state:
- checkout sessions for new paid subscriptions
- trial/free to paid conversion sessions
- webhook ingestion (verify, dedupe, apply, park)

Processor calls time out after PROCESSOR_TIMEOUT_SECONDS (enforced by the
provider's HTTP client); timeouts and processor errors surface as
ExternalServiceError. Webhooks that cannot be applied are parked with their
payload for replay, never dropped.
"""
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from uuid import uuid4
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from tierflow.core.config import settings
from tierflow.core.database import get_db_session, billing_events
from tierflow.core.errors import (
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from tierflow.core.logging import log_event
from tierflow.core.metrics import billing_webhooks_total, processor_calls_total
from tierflow.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingTimeoutError,
    BillingWebhookError,
    ProcessorEvent,
    CHECKOUT_COMPLETED,
    PAYMENT_SUCCEEDED,
    PAYMENT_FAILED,
    SUBSCRIPTION_CANCELED,
    IGNORED,
)
from tierflow.features.billing.stripe_provider import StripeProvider
from tierflow.features.plans.service import get_plan, get_plan_any
from tierflow.features.subscriptions import lifecycle, repository
from tierflow.features.subscriptions.transitions import enters_trial_plan, mutate_with_retry, record_transition
from tierflow.models.plan import Plan, PlanKind

# Event row statuses
RECEIVED = "received"
PROCESSED = "processed"
IGNORED_STATUS = "ignored"
PARKED = "parked"
FAILED = "failed"

SETTLED_STATUSES = {PROCESSED, IGNORED_STATUS, PARKED}


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise ExternalServiceError(
            "Billing disabled (STRIPE_SECRET_KEY not configured)",
            code="billing_disabled",
            status_code=503,
        )
    return provider


def call_processor(operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
    """
    Run a processor call, translating provider errors.

    The provider enforces PROCESSOR_TIMEOUT_SECONDS on its HTTP client.
    A timeout is neither success nor failure: the caller gets an
    ExternalServiceError and must not assume either outcome.

    Raises:
        ExternalServiceError: On timeout or processor error
    """
    timeout = settings.PROCESSOR_TIMEOUT_SECONDS
    try:
        result = fn(*args, **kwargs)
    except BillingTimeoutError:
        processor_calls_total.inc({"operation": operation, "outcome": "timeout"})
        log_event("error", f"processor.{operation}.timeout", error_code="processor_timeout", extra={"timeout_s": timeout})
        raise ExternalServiceError(
            f"Payment processor did not answer {operation} within {timeout}s",
            code="processor_timeout",
        )
    except BillingProviderError as e:
        processor_calls_total.inc({"operation": operation, "outcome": "error"})
        log_event("error", f"processor.{operation}.error", error_code="processor_error", extra={"error": e})
        raise ExternalServiceError(f"Payment processor rejected {operation}: {e}", code="processor_error")
    processor_calls_total.inc({"operation": operation, "outcome": "success"})
    return result


def get_price_id(plan: Plan) -> str:
    """
    Map a plan to its processor price.

    Raises:
        ValidationError: If no price is configured for the plan
    """
    if plan.processor_price_id:
        return plan.processor_price_id
    env_name = "STRIPE_PRICE_" + plan.plan_id.upper().replace("-", "_")
    price_id = os.getenv(env_name)
    if not price_id:
        raise ValidationError(f"No processor price configured for plan: {plan.plan_id}", code="plan_not_purchasable")
    return price_id


def _start_session(user_id: str, plan: Plan, idempotency_key: Optional[str], metadata: Dict[str, str]) -> str:
    provider = require_provider()
    price_id = get_price_id(plan)
    key = idempotency_key or f"checkout:{user_id}:{plan.plan_id}:{uuid4().hex}"
    url = call_processor(
        "create_session",
        provider.create_session,
        user_id=user_id,
        plan_id=plan.plan_id,
        price_id=price_id,
        idempotency_key=key,
        success_url=settings.CHECKOUT_SUCCESS_URL,
        cancel_url=settings.CHECKOUT_CANCEL_URL,
        customer_id=repository.get_processor_customer_id(user_id),
        metadata=metadata,
    )
    log_event(
        "info",
        "checkout.session_created",
        user_id=user_id,
        extra={"plan_id": plan.plan_id, "kind": metadata.get("kind")},
    )
    return url


def _require_paid(plan: Plan) -> None:
    if plan.plan_kind != PlanKind.PAID:
        raise ValidationError(
            f"Plan {plan.plan_id} does not need a checkout",
            code="plan_not_purchasable",
        )


def create_checkout_session(user_id: str, plan_id: str, idempotency_key: Optional[str] = None) -> str:
    """
    Start a checkout for a user with no current subscription.

    Never creates a record; the record appears when checkout completion
    arrives through the webhook.

    Raises:
        ValidationError: If the user already holds a current record
        ExternalServiceError: If the processor fails or times out
    """
    plan = get_plan(plan_id)
    _require_paid(plan)

    current = repository.get_current_subscription(user_id)
    if current is not None:
        current_plan = get_plan_any(current.plan_id)
        if current.status in lifecycle.SCHEDULABLE and current_plan and current_plan.plan_kind != PlanKind.PAID:
            raise ValidationError(
                "Current trial or free subscription must be converted, not re-purchased",
                code="trial_conversion_required",
            )
        raise ValidationError(
            f"User already has a {current.status.value} subscription",
            code="invalid_transition",
        )

    repository.ensure_user(user_id)
    return _start_session(user_id, plan, idempotency_key, {"kind": "checkout"})


def create_conversion_session(user_id: str, plan_id: str, idempotency_key: Optional[str] = None) -> str:
    """
    Start a checkout that converts the user's trial or free record to a paid plan.

    Raises:
        ValidationError: If there is no trial/free record to convert
        ExternalServiceError: If the processor fails or times out
    """
    plan = get_plan(plan_id)
    _require_paid(plan)

    current = repository.get_current_subscription(user_id)
    current_plan = get_plan_any(current.plan_id) if current else None
    if (
        current is None
        or current.status not in lifecycle.SCHEDULABLE
        or current_plan is None
        or current_plan.plan_kind == PlanKind.PAID
    ):
        raise ValidationError("No trial or free subscription to convert", code="no_trial_to_convert")

    return _start_session(
        user_id,
        plan,
        idempotency_key,
        {"kind": "conversion", "subscription_id": current.id},
    )


# ----------------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------------

class ParkEvent(Exception):
    """Event is valid but cannot be applied; keep it for inspection."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _load_by_processor_id(event: ProcessorEvent):
    if not event.processor_subscription_id:
        raise ParkEvent(f"{event.event_type} carries no subscription id")
    record = repository.find_by_processor_subscription_id(event.processor_subscription_id)
    if record is None:
        raise ParkEvent(f"Unknown processor subscription {event.processor_subscription_id}")
    return record


def _apply_checkout_completed(event: ProcessorEvent, now: datetime) -> str:
    if not event.user_id or not event.plan_id:
        raise ParkEvent("checkout completion without user_id/plan_id metadata")
    plan = get_plan_any(event.plan_id)
    if plan is None:
        raise ParkEvent(f"Unknown plan {event.plan_id}")

    if event.processor_subscription_id:
        existing = repository.find_by_processor_subscription_id(event.processor_subscription_id)
        if existing is not None:
            # Same checkout delivered under another event id
            return PROCESSED

    repository.ensure_user(event.user_id)
    if event.processor_customer_id:
        repository.set_processor_customer_id(event.user_id, event.processor_customer_id)

    def convert(record):
        current_plan = get_plan_any(record.plan_id)
        converted, _ = lifecycle.activate_checkout(
            event.user_id,
            plan,
            record,
            current_plan,
            now,
            processor_subscription_id=event.processor_subscription_id,
            processor_customer_id=event.processor_customer_id,
            paid_through=event.period_end,
        )
        return converted

    current = repository.get_current_subscription(event.user_id)
    if current is None:
        record, _ = lifecycle.activate_checkout(
            event.user_id,
            plan,
            None,
            None,
            now,
            processor_subscription_id=event.processor_subscription_id,
            processor_customer_id=event.processor_customer_id,
            paid_through=event.period_end,
        )
        saved = repository.insert_subscription(record)
        record_transition("checkout_completed", None, saved)
    else:
        _, saved = mutate_with_retry(
            "checkout_completed",
            lambda: repository.get_subscription(current.id),
            convert,
        )

    if event.amount:
        repository.record_payment(
            saved.id,
            event.amount,
            currency=event.currency or settings.CURRENCY,
            period_start=saved.start_date,
            processor_payment_id=event.payment_id,
            kind="checkout",
        )
    return PROCESSED


def _apply_payment_succeeded(event: ProcessorEvent, now: datetime) -> str:
    record = _load_by_processor_id(event)
    plan = get_plan_any(record.plan_id)
    if plan is None:
        raise ParkEvent(f"Unknown plan {record.plan_id}")

    def mutate(current):
        next_plan = get_plan_any(current.next_plan_id) if current.next_plan_id else None
        updated, _ = lifecycle.payment_succeeded(current, plan, now, event.period_end, next_plan=next_plan)
        return updated

    _, saved = mutate_with_retry(
        "payment_succeeded",
        lambda: repository.get_subscription(record.id),
        mutate,
        consumes_trial=enters_trial_plan,
    )
    if event.amount:
        repository.record_payment(
            saved.id,
            event.amount,
            currency=event.currency or settings.CURRENCY,
            period_start=saved.start_date,
            processor_payment_id=event.payment_id,
            kind="renewal",
        )
    return PROCESSED


def _apply_payment_failed(event: ProcessorEvent, now: datetime) -> str:
    record = _load_by_processor_id(event)
    mutate_with_retry(
        "payment_failed",
        lambda: repository.get_subscription(record.id),
        lifecycle.payment_failed,
    )
    return PROCESSED


def _apply_subscription_canceled(event: ProcessorEvent, now: datetime) -> str:
    record = _load_by_processor_id(event)
    mutate_with_retry(
        "subscription_canceled",
        lambda: repository.get_subscription(record.id),
        lambda current: lifecycle.subscription_canceled(current, now),
    )
    return PROCESSED


_HANDLERS = {
    CHECKOUT_COMPLETED: _apply_checkout_completed,
    PAYMENT_SUCCEEDED: _apply_payment_succeeded,
    PAYMENT_FAILED: _apply_payment_failed,
    SUBSCRIPTION_CANCELED: _apply_subscription_canceled,
}


def apply_event(event: ProcessorEvent, now: Optional[datetime] = None) -> str:
    """
    Apply a normalized event to subscription state.

    Returns:
        processed or ignored

    Raises:
        ParkEvent: If the event cannot be applied (unknown subscription,
            illegal transition, missing data)
    """
    handler = _HANDLERS.get(event.kind)
    if event.kind == IGNORED or handler is None:
        return IGNORED_STATUS
    try:
        return handler(event, now or _now())
    except (ValidationError, NotFoundError) as e:
        raise ParkEvent(str(e))


def _mark(event_id: str, status: str, error: Optional[str] = None) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.event_id == event_id)
            .values(status=status, processed_at=_now(), error=error)
        )


def _run(event: ProcessorEvent) -> str:
    """Apply an event whose row exists, recording the outcome on the row."""
    try:
        outcome = apply_event(event)
    except ParkEvent as e:
        _mark(event.event_id, PARKED, str(e))
        billing_webhooks_total.inc({"kind": event.kind, "outcome": PARKED})
        log_event(
            "warning",
            "billing.webhook.parked",
            user_id=event.user_id,
            event_type=event.event_type,
            error_code="event_parked",
            extra={"event_id": event.event_id, "reason": e},
        )
        return PARKED
    except Exception as e:
        _mark(event.event_id, FAILED, str(e))
        billing_webhooks_total.inc({"kind": event.kind, "outcome": FAILED})
        log_event(
            "error",
            "billing.webhook.failed",
            user_id=event.user_id,
            event_type=event.event_type,
            error_code="event_failed",
            extra={"event_id": event.event_id, "error": e},
        )
        raise

    _mark(event.event_id, outcome)
    billing_webhooks_total.inc({"kind": event.kind, "outcome": outcome})
    log_event(
        "info",
        f"billing.webhook.{outcome}",
        user_id=event.user_id,
        event_type=event.event_type,
        extra={"event_id": event.event_id},
    )
    return outcome


def handle_webhook(headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
    """
    Verify, dedupe and apply a processor webhook (idempotent).

    1. Verify signature (provider)
    2. Skip events already processed, ignored or parked
    3. Apply the transition; park it if it cannot be applied
    4. Record the outcome on the event row

    Returns:
        {"event_id", "event_type", "status"} where status is processed,
        ignored, parked or duplicate

    Raises:
        ValidationError: If the signature or payload is invalid
        Exception: Unexpected failures propagate after marking the event
            failed, so the processor redelivers it
    """
    provider = require_provider()
    try:
        event = provider.handle_webhook(headers, body)
    except BillingWebhookError as e:
        billing_webhooks_total.inc({"kind": "unknown", "outcome": "rejected"})
        raise ValidationError(str(e), code="invalid_webhook")

    payload_hash = hashlib.sha256(body).hexdigest()
    payload = event.to_dict()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.status).where(billing_events.c.event_id == event.event_id)
        ).first()

    if existing and existing.status in SETTLED_STATUSES:
        billing_webhooks_total.inc({"kind": event.kind, "outcome": "duplicate"})
        return {"event_id": event.event_id, "event_type": event.event_type, "status": "duplicate"}

    if existing is None:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        received_at=_now(),
                        payload_hash=payload_hash,
                        payload_json=payload,
                        status=RECEIVED,
                    )
                )
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            billing_webhooks_total.inc({"kind": event.kind, "outcome": "duplicate"})
            return {"event_id": event.event_id, "event_type": event.event_type, "status": "duplicate"}

    status = _run(event)
    return {"event_id": event.event_id, "event_type": event.event_type, "status": status}


def replay_event(event_id: str) -> Dict[str, Any]:
    """
    Re-apply a stored event (parked or failed) from its saved payload.

    Raises:
        NotFoundError: If the event is unknown
        ValidationError: If the event was already processed or ignored
    """
    with get_db_session() as session:
        row = session.execute(
            select(billing_events).where(billing_events.c.event_id == event_id)
        ).first()
    if row is None:
        raise NotFoundError(f"Event not found: {event_id}", code="event_not_found")
    if row.status in (PROCESSED, IGNORED_STATUS):
        raise ValidationError(f"Event {event_id} already {row.status}", code="event_already_settled")
    if not row.payload_json:
        raise ValidationError(f"Event {event_id} has no stored payload", code="event_payload_missing")

    event = ProcessorEvent.from_dict(row.payload_json)
    status = _run(event)
    return {"event_id": event_id, "event_type": row.event_type, "previous_status": row.status, "status": status}
