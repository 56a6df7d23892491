"""
Period-boundary reconciliation.

Called by an external scheduler (worker CLI or admin endpoint), once per
billing cycle per subscription or as a batch. Applies scheduled plan changes
and expires canceled records and lapsed local trials. Idempotent: running it
twice for the same moment changes nothing the second time.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import insert

from tierflow.core.config import settings
from tierflow.core.database import get_db_session, billing_job_runs
from tierflow.core.errors import AppError
from tierflow.core.logging import log_event
from tierflow.core.metrics import reconcile_outcomes_total
from tierflow.features.plans.service import get_plan_any
from tierflow.features.subscriptions import lifecycle, repository
from tierflow.features.subscriptions.transitions import enters_trial_plan, mutate_with_retry

JOB_NAME = "subscriptions.reconcile"


def reconcile_subscription(subscription_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Reconcile one subscription at now.

    Returns:
        {"subscription_id", "outcome", "status", "plan_id"}

    Raises:
        NotFoundError: Unknown subscription
        ConflictError: Lost the write race twice
    """
    at = now or datetime.now(timezone.utc)
    outcome = {"value": lifecycle.NOOP}

    def mutate(record):
        next_plan = get_plan_any(record.next_plan_id) if record.next_plan_id else None
        updated, outcome["value"] = lifecycle.reconcile_at_period_end(record, next_plan, at)
        return updated

    _, saved = mutate_with_retry(
        "reconcile",
        lambda: repository.get_subscription(subscription_id),
        mutate,
        consumes_trial=enters_trial_plan,
    )
    reconcile_outcomes_total.inc({"outcome": outcome["value"]})
    return {
        "subscription_id": saved.id,
        "outcome": outcome["value"],
        "status": saved.status.value,
        "plan_id": saved.plan_id,
    }


def run_reconcile_job(now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Reconcile every due subscription and record the run in billing_job_runs.

    One subscription failing does not stop the batch; failures are counted and
    logged with the subscription id.
    """
    started_at = datetime.now(timezone.utc)
    at = now or started_at
    batch_limit = limit or settings.RECONCILE_BATCH_LIMIT

    stats = {"due": 0, "applied_change": 0, "expired": 0, "noop": 0, "errors": 0}
    due = repository.list_due_for_reconcile(at, limit=batch_limit)
    stats["due"] = len(due)

    for subscription_id in due:
        try:
            result = reconcile_subscription(subscription_id, at)
        except AppError as e:
            stats["errors"] += 1
            reconcile_outcomes_total.inc({"outcome": "error"})
            log_event(
                "error",
                "reconcile.subscription_failed",
                subscription_id=subscription_id,
                error_code=e.code,
                extra={"error": e.message},
            )
            continue
        stats[result["outcome"]] = stats.get(result["outcome"], 0) + 1

    status = "success" if stats["errors"] == 0 else "partial"
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status=status,
                stats_json=json.dumps(stats),
            )
        )

    log_event("info", "reconcile.job_finished", extra={"status": status, **stats})
    return {"status": status, "timestamp": at.isoformat(), **stats}
