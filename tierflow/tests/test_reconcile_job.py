import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4
from sqlalchemy import select

from tierflow.core.database import get_db_session, billing_job_runs
from tierflow.core.errors import ConflictError, NotFoundError
from tierflow.features.subscriptions import repository, service
from tierflow.features.subscriptions.reconcile_job import reconcile_subscription, run_reconcile_job
from tierflow.models.subscription import SubscriptionRecord, SubscriptionStatus

START = datetime(2025, 5, 1, tzinfo=timezone.utc)
END = datetime(2025, 6, 1, tzinfo=timezone.utc)


def insert(user_id, status=SubscriptionStatus.ACTIVE, plan_id="basic", **overrides):
    fields = dict(
        id=str(uuid4()),
        user_id=user_id,
        plan_id=plan_id,
        status=status,
        start_date=START,
        end_date=END,
        processor_subscription_id=f"sub_{user_id}",
    )
    fields.update(overrides)
    return repository.insert_subscription(SubscriptionRecord(**fields))


def test_scheduled_upgrade_applied_at_period_end():
    record = insert("user-1")
    service.schedule_change("user-1", "premium")

    result = reconcile_subscription(record.id, END)
    assert result["outcome"] == "applied_change"
    assert result["status"] == "PAST_DUE"

    saved = repository.get_subscription(record.id)
    assert saved.plan_id == "premium"
    assert saved.next_plan_id is None
    assert saved.start_date == END
    assert saved.end_date == datetime(2025, 7, 1, tzinfo=timezone.utc)


def test_reconcile_is_idempotent():
    record = insert("user-1")
    service.schedule_change("user-1", "premium")
    reconcile_subscription(record.id, END)
    version = repository.get_subscription(record.id).version

    result = reconcile_subscription(record.id, END)
    assert result["outcome"] == "noop"
    assert repository.get_subscription(record.id).version == version


def test_before_period_end_is_noop():
    record = insert("user-1")
    service.schedule_change("user-1", "premium")
    assert reconcile_subscription(record.id, END - timedelta(seconds=1))["outcome"] == "noop"
    assert repository.get_subscription(record.id).plan_id == "basic"


def test_scheduled_trial_marks_trial_used():
    record = insert("user-1")
    service.schedule_change("user-1", "free-trial")
    reconcile_subscription(record.id, END)
    assert repository.get_subscription(record.id).status == SubscriptionStatus.TRIAL
    assert repository.has_used_trial("user-1")


def test_unknown_subscription():
    with pytest.raises(NotFoundError):
        reconcile_subscription("missing", END)


def test_batch_run_counts_outcomes_and_records_job():
    insert("sched")
    service.schedule_change("sched", "premium")
    insert("canceled", status=SubscriptionStatus.CANCELED)
    insert("trial", status=SubscriptionStatus.TRIAL, plan_id="free-trial", processor_subscription_id=None)
    insert("renewing")

    result = run_reconcile_job(now=END)
    assert result["status"] == "success"
    assert result["due"] == 3
    assert result["applied_change"] == 1
    assert result["expired"] == 2
    assert result["errors"] == 0

    assert repository.get_current_subscription("canceled") is None
    assert repository.get_current_subscription("renewing").status == SubscriptionStatus.ACTIVE

    with get_db_session() as session:
        run = session.execute(select(billing_job_runs)).first()
    assert run.job_name == "subscriptions.reconcile"
    assert json.loads(run.stats_json)["due"] == 3

    # Nothing left to do the second time round
    assert run_reconcile_job(now=END)["due"] == 0


def test_batch_continues_past_failures():
    first = insert("one", status=SubscriptionStatus.CANCELED)
    insert("two", status=SubscriptionStatus.CANCELED)
    real_save = repository.save_subscription

    def flaky_save(record, **kwargs):
        if record.id == first.id:
            raise ConflictError("stale", code="stale_version")
        return real_save(record, **kwargs)

    with patch.object(repository, "save_subscription", side_effect=flaky_save):
        result = run_reconcile_job(now=END)

    assert result["status"] == "partial"
    assert result["errors"] == 1
    assert result["expired"] == 1
    assert repository.get_subscription(first.id).status == SubscriptionStatus.CANCELED
