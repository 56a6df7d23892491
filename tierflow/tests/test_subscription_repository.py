import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from tierflow.core.errors import ConflictError, NotFoundError
from tierflow.features.subscriptions import repository
from tierflow.models.subscription import SubscriptionRecord, SubscriptionStatus

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def new_record(user_id="user-1", status=SubscriptionStatus.ACTIVE, plan_id="basic", **overrides):
    fields = dict(
        id=str(uuid4()),
        user_id=user_id,
        plan_id=plan_id,
        status=status,
        start_date=NOW - timedelta(days=30),
        end_date=NOW,
    )
    fields.update(overrides)
    return SubscriptionRecord(**fields)


def test_insert_and_read_back_utc():
    saved = repository.insert_subscription(new_record())
    loaded = repository.get_subscription(saved.id)
    assert loaded.version == 1
    assert loaded.end_date == NOW
    assert loaded.end_date.tzinfo is not None
    assert repository.get_current_subscription("user-1").id == saved.id


def test_second_current_record_rejected():
    repository.insert_subscription(new_record())
    with pytest.raises(ConflictError) as exc:
        repository.insert_subscription(new_record(status=SubscriptionStatus.TRIAL))
    assert exc.value.code == "subscription_exists"


def test_terminal_record_does_not_block_new_one():
    repository.insert_subscription(new_record(status=SubscriptionStatus.EXPIRED))
    repository.insert_subscription(new_record())
    assert repository.get_current_subscription("user-1").status == SubscriptionStatus.ACTIVE


def test_save_bumps_version():
    saved = repository.insert_subscription(new_record())
    updated = repository.save_subscription(saved.model_copy(update={"status": SubscriptionStatus.PAST_DUE}))
    assert updated.version == 2
    assert repository.get_subscription(saved.id).status == SubscriptionStatus.PAST_DUE


def test_stale_version_rejected():
    saved = repository.insert_subscription(new_record())
    repository.save_subscription(saved.model_copy(update={"status": SubscriptionStatus.PAST_DUE}))
    with pytest.raises(ConflictError) as exc:
        repository.save_subscription(saved.model_copy(update={"status": SubscriptionStatus.CANCELED}))
    assert exc.value.code == "stale_version"
    assert repository.get_subscription(saved.id).status == SubscriptionStatus.PAST_DUE


def test_trial_marker_is_sticky():
    assert repository.has_used_trial("user-1") is False
    saved = repository.insert_subscription(
        new_record(status=SubscriptionStatus.TRIAL, plan_id="free-trial"), consumes_trial=True
    )
    repository.save_subscription(saved.model_copy(update={"status": SubscriptionStatus.EXPIRED}))
    assert repository.has_used_trial("user-1") is True


def test_new_user_has_not_used_trial():
    repository.ensure_user("user-2")
    assert repository.has_used_trial("user-2") is False

    repository.insert_subscription(new_record(user_id="user-3"))
    assert repository.has_used_trial("user-3") is False


def test_boolean_server_defaults_read_back_false():
    from sqlalchemy import insert, select
    from tierflow.core.database import app_users, get_db_session

    with get_db_session() as session:
        session.execute(insert(app_users).values(user_id="user-raw"))
    with get_db_session() as session:
        row = session.execute(
            select(app_users.c.has_used_trial).where(app_users.c.user_id == "user-raw")
        ).first()
    assert row.has_used_trial is False


def test_unknown_subscription():
    with pytest.raises(NotFoundError):
        repository.get_subscription("missing")


def test_latest_subscription_includes_terminal():
    expired = repository.insert_subscription(new_record(status=SubscriptionStatus.EXPIRED))
    assert repository.get_current_subscription("user-1") is None
    assert repository.get_latest_subscription("user-1").id == expired.id


def test_processor_customer_id_round_trip():
    repository.set_processor_customer_id("user-9", "cus_9")
    assert repository.get_processor_customer_id("user-9") == "cus_9"
    assert repository.get_processor_customer_id("nobody") is None


def test_list_filters_and_pagination():
    repository.ensure_user("alice", email="alice@example.com")
    repository.insert_subscription(new_record(user_id="alice", plan_id="premium"))
    repository.insert_subscription(new_record(user_id="bob"))
    repository.insert_subscription(new_record(user_id="carol", status=SubscriptionStatus.CANCELED))

    records, total = repository.list_subscriptions(search="ALICE@")
    assert total == 1 and records[0].user_id == "alice"

    records, total = repository.list_subscriptions(search="premium plan")
    assert [r.user_id for r in records] == ["alice"]

    _, total = repository.list_subscriptions(status=SubscriptionStatus.CANCELED)
    assert total == 1

    records, total = repository.list_subscriptions(sort_by="user_id", sort_order="asc", page=2, limit=2)
    assert total == 3
    assert [r.user_id for r in records] == ["carol"]


def test_due_for_reconcile():
    scheduled = repository.insert_subscription(
        new_record(user_id="sched", next_plan_id="premium", scheduled_change_at=NOW)
    )
    canceled = repository.insert_subscription(new_record(user_id="canceled", status=SubscriptionStatus.CANCELED))
    trial = repository.insert_subscription(new_record(user_id="trial", status=SubscriptionStatus.TRIAL, plan_id="free-trial"))
    # Renews through the processor: nothing for reconcile to do
    repository.insert_subscription(new_record(user_id="renewing", processor_subscription_id="sub_1"))
    # Not due yet
    repository.insert_subscription(
        new_record(user_id="later", status=SubscriptionStatus.CANCELED, end_date=NOW + timedelta(days=1))
    )

    due = repository.list_due_for_reconcile(NOW)
    assert set(due) == {scheduled.id, canceled.id, trial.id}
    assert len(repository.list_due_for_reconcile(NOW, limit=2)) == 2


def test_payment_dedupe_by_processor_id():
    saved = repository.insert_subscription(new_record())
    assert repository.record_payment(saved.id, Decimal("9.99"), currency="usd", period_start=saved.start_date, processor_payment_id="in_1")
    assert not repository.record_payment(saved.id, Decimal("9.99"), currency="usd", period_start=saved.start_date, processor_payment_id="in_1")
    assert repository.paid_in_period(saved.id, saved.start_date) == Decimal("9.99")
    assert len(repository.list_payments(saved.id)) == 1


def test_paid_in_period_ignores_earlier_cycles():
    saved = repository.insert_subscription(new_record())
    earlier = saved.start_date - timedelta(days=30)
    repository.record_payment(saved.id, Decimal("9.99"), currency="usd", period_start=earlier, processor_payment_id="in_old")
    repository.record_payment(saved.id, Decimal("5.00"), currency="usd", period_start=saved.start_date, processor_payment_id="in_new")
    repository.record_refund(saved.id, Decimal("2.00"), reason="goodwill", receipt_id="re_1", actor="admin:test", period_start=saved.start_date)
    assert repository.paid_in_period(saved.id, saved.start_date) == Decimal("5.00")
    assert repository.refunded_in_period(saved.id, saved.start_date) == Decimal("2.00")
