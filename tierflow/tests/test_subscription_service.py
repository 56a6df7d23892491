import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4
from sqlalchemy import update

from tierflow.core.database import app_users, get_db_session
from tierflow.core.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from tierflow.features.plans.service import create_plan
from tierflow.features.subscriptions import repository, service
from tierflow.features.subscriptions.reconcile_job import reconcile_subscription
from tierflow.models.subscription import SubscriptionRecord, SubscriptionStatus

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def test_trial_subscribe_consumes_trial():
    result = service.subscribe("user-1", "free-trial", now=NOW)
    assert result.outcome == "trial"
    assert result.subscription.status == SubscriptionStatus.TRIAL
    assert result.subscription.end_date == NOW + timedelta(days=7)
    assert repository.has_used_trial("user-1")


def test_free_plan_subscribe_is_active():
    create_plan("community", "Community", price=0, tier=0)
    result = service.subscribe("user-1", "community", now=NOW)
    assert result.outcome == "free"
    assert result.subscription.status == SubscriptionStatus.ACTIVE
    assert not repository.has_used_trial("user-1")


def test_paid_subscribe_returns_checkout_without_record(processor):
    result = service.subscribe("user-1", "premium", idempotency_key="k-1")
    assert result.outcome == "checkout"
    assert result.checkout_url.startswith("https://checkout.test/")
    assert processor.sessions[0]["price_id"] == "price_premium"
    assert processor.sessions[0]["idempotency_key"] == "k-1"
    assert repository.get_current_subscription("user-1") is None


def test_paid_subscribe_without_billing_configured(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    with pytest.raises(ExternalServiceError) as exc:
        service.subscribe("user-1", "premium")
    assert exc.value.code == "billing_disabled"


def test_subscribe_while_holding_current_record_rejected():
    service.subscribe("user-1", "free-trial", now=NOW)
    create_plan("community", "Community", price=0, tier=0)
    with pytest.raises(ValidationError) as exc:
        service.subscribe("user-1", "community", now=NOW)
    assert exc.value.code == "invalid_transition"


def test_trial_cannot_be_repeated_after_expiry():
    trial = service.subscribe("user-1", "free-trial", now=NOW).subscription
    reconcile_subscription(trial.id, trial.end_date)
    assert repository.get_subscription(trial.id).status == SubscriptionStatus.EXPIRED

    with pytest.raises(ValidationError) as exc:
        service.subscribe("user-1", "free-trial", now=trial.end_date)
    assert exc.value.code == "trial_already_used"


def test_unknown_plan():
    with pytest.raises(NotFoundError):
        service.subscribe("user-1", "gold")


def test_schedule_and_cancel_change():
    trial = service.subscribe("user-1", "free-trial", now=NOW).subscription
    create_plan("community", "Community", price=0, tier=0)
    scheduled = service.schedule_change("user-1", "community")
    assert scheduled.next_plan_id == "community"
    assert scheduled.scheduled_change_at == trial.end_date
    assert scheduled.version == 2

    again = service.schedule_change("user-1", "community")
    assert again.version == 2

    cleared = service.cancel_scheduled_change("user-1")
    assert cleared.next_plan_id is None
    assert cleared.scheduled_change_at is None


def test_schedule_without_subscription():
    with pytest.raises(NotFoundError):
        service.schedule_change("nobody", "premium")


def test_trial_must_convert_to_reach_paid_plan():
    trial = service.subscribe("user-1", "free-trial", now=NOW).subscription
    with pytest.raises(ValidationError) as exc:
        service.schedule_change("user-1", "premium")
    assert exc.value.code == "trial_conversion_required"

    # Nothing was scheduled, so the trial just lapses
    reconcile_subscription(trial.id, trial.end_date)
    assert repository.get_subscription(trial.id).status == SubscriptionStatus.EXPIRED


def test_cancel_keeps_access_until_end_date():
    trial = service.subscribe("user-1", "free-trial", now=NOW).subscription
    create_plan("community", "Community", price=0, tier=0)
    service.schedule_change("user-1", "community")
    canceled = service.cancel("user-1", now=NOW + timedelta(days=1))
    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.next_plan_id is None

    view = service.fetch_current_subscription("user-1", now=trial.end_date - timedelta(hours=1))
    assert view["has_active_access"] is True
    view = service.fetch_current_subscription("user-1", now=trial.end_date + timedelta(hours=1))
    assert view["has_active_access"] is False


def test_fetch_current_falls_back_to_latest_terminal_record():
    trial = service.subscribe("user-1", "free-trial", now=NOW).subscription
    reconcile_subscription(trial.id, trial.end_date)
    view = service.fetch_current_subscription("user-1", now=trial.end_date)
    assert view["subscription"].status == SubscriptionStatus.EXPIRED
    assert view["plan"].plan_id == "free-trial"
    assert view["has_used_trial"] is True
    assert view["has_active_access"] is False


def test_fetch_current_for_new_user():
    view = service.fetch_current_subscription("new-user")
    assert view["subscription"] is None
    assert view["has_used_trial"] is False


def test_start_conversion_requires_trial(processor):
    with pytest.raises(ValidationError) as exc:
        service.start_conversion("user-1", "premium")
    assert exc.value.code == "no_trial_to_convert"

    trial = service.subscribe("user-1", "free-trial").subscription
    url = service.start_conversion("user-1", "premium", idempotency_key="conv-1")
    assert url
    assert processor.sessions[-1]["metadata"] == {"kind": "conversion", "subscription_id": trial.id}


def test_schedule_retry_rechecks_trial_eligibility():
    repository.insert_subscription(SubscriptionRecord(
        id=str(uuid4()),
        user_id="user-1",
        plan_id="basic",
        status=SubscriptionStatus.ACTIVE,
        start_date=NOW,
        end_date=NOW + timedelta(days=30),
        processor_subscription_id="sub_1",
    ))
    real_save = repository.save_subscription
    attempts = []

    def racing_save(record, **kwargs):
        attempts.append(record)
        if len(attempts) == 1:
            # Another request consumes the trial between read and write
            with get_db_session() as session:
                session.execute(update(app_users).where(app_users.c.user_id == "user-1").values(has_used_trial=True))
            raise ConflictError("stale", code="stale_version")
        return real_save(record, **kwargs)

    with patch.object(repository, "save_subscription", side_effect=racing_save):
        with pytest.raises(ValidationError) as exc:
            service.schedule_change("user-1", "free-trial")
    assert exc.value.code == "trial_already_used"
    assert len(attempts) == 1
    assert repository.get_current_subscription("user-1").next_plan_id is None
