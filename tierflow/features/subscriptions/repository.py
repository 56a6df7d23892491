"""
Subscription repository.

Single query surface over persisted subscription state:
- one current record per user (partial unique index + insert check)
- optimistic concurrency on every update (version column)
- sticky trial marker on app_users
- payments and refunds per billing period
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple
from sqlalchemy import select, insert, update, func, and_, or_, asc, desc
from sqlalchemy.exc import IntegrityError

from tierflow.core.database import (
    get_db_session,
    app_users,
    subscriptions,
    payments,
    refunds,
    plans,
)
from tierflow.core.errors import ConflictError, NotFoundError
from tierflow.models.subscription import (
    CURRENT_STATUSES,
    SubscriptionRecord,
    SubscriptionStatus,
)

_CURRENT = [s.value for s in CURRENT_STATUSES]

SORTABLE_COLUMNS = {
    "created_at": subscriptions.c.created_at,
    "start_date": subscriptions.c.start_date,
    "end_date": subscriptions.c.end_date,
    "status": subscriptions.c.status,
    "plan_id": subscriptions.c.plan_id,
    "user_id": subscriptions.c.user_id,
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything in the domain is UTC-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row_to_record(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row.id,
        user_id=row.user_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        start_date=as_utc(row.start_date),
        end_date=as_utc(row.end_date),
        next_plan_id=row.next_plan_id,
        scheduled_change_at=as_utc(row.scheduled_change_at),
        processor_subscription_id=row.processor_subscription_id,
        processor_customer_id=row.processor_customer_id,
        ends_immediately=bool(row.ends_immediately),
        canceled_at=as_utc(row.canceled_at),
        version=row.version,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


# ----------------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------------

def _ensure_user(session, user_id: str, email: Optional[str] = None) -> None:
    existing = session.execute(
        select(app_users.c.user_id).where(app_users.c.user_id == user_id)
    ).first()
    if not existing:
        session.execute(insert(app_users).values(user_id=user_id, email=email, has_used_trial=False))


def ensure_user(user_id: str, email: Optional[str] = None) -> None:
    """Create the billing user row if missing (idempotent)."""
    with get_db_session() as session:
        _ensure_user(session, user_id, email)


def has_used_trial(user_id: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(app_users.c.has_used_trial).where(app_users.c.user_id == user_id)
        ).first()
        return bool(row and row.has_used_trial)


def get_processor_customer_id(user_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(app_users.c.processor_customer_id).where(app_users.c.user_id == user_id)
        ).first()
        return row.processor_customer_id if row else None


def set_processor_customer_id(user_id: str, customer_id: str) -> None:
    with get_db_session() as session:
        _ensure_user(session, user_id)
        session.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(processor_customer_id=customer_id)
        )


def _mark_trial_used(session, user_id: str) -> None:
    # Sticky: only ever flips false -> true
    session.execute(
        update(app_users)
        .where(app_users.c.user_id == user_id)
        .values(has_used_trial=True)
    )


# ----------------------------------------------------------------------------
# Subscription records
# ----------------------------------------------------------------------------

def find_subscription(subscription_id: str) -> Optional[SubscriptionRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id)
        ).first()
        return _row_to_record(row) if row else None


def get_subscription(subscription_id: str) -> SubscriptionRecord:
    """
    Raises:
        NotFoundError: If no record has this id
    """
    record = find_subscription(subscription_id)
    if record is None:
        raise NotFoundError(f"Subscription not found: {subscription_id}", code="subscription_not_found")
    return record


def get_current_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    """The user's current (non-terminal) record, if any."""
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .where(subscriptions.c.status.in_(_CURRENT))
            .order_by(subscriptions.c.created_at.desc())
            .limit(1)
        ).first()
        return _row_to_record(row) if row else None


def get_latest_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    """Most recent record in any status (terminal ones included)."""
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.created_at.desc(), subscriptions.c.start_date.desc())
            .limit(1)
        ).first()
        return _row_to_record(row) if row else None


def find_by_processor_subscription_id(processor_subscription_id: str) -> Optional[SubscriptionRecord]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(
                subscriptions.c.processor_subscription_id == processor_subscription_id
            )
        ).first()
        return _row_to_record(row) if row else None


def insert_subscription(record: SubscriptionRecord, *, consumes_trial: bool = False) -> SubscriptionRecord:
    """
    Persist a brand new record.

    Raises:
        ConflictError: If the user already holds a current record
    """
    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            _ensure_user(session, record.user_id)
            existing = session.execute(
                select(subscriptions.c.id)
                .where(subscriptions.c.user_id == record.user_id)
                .where(subscriptions.c.status.in_(_CURRENT))
            ).first()
            if existing:
                raise ConflictError(
                    f"User {record.user_id} already has a current subscription",
                    code="subscription_exists",
                )
            session.execute(
                insert(subscriptions).values(
                    id=record.id,
                    user_id=record.user_id,
                    plan_id=record.plan_id,
                    status=record.status.value,
                    start_date=record.start_date,
                    end_date=record.end_date,
                    next_plan_id=record.next_plan_id,
                    scheduled_change_at=record.scheduled_change_at,
                    processor_subscription_id=record.processor_subscription_id,
                    processor_customer_id=record.processor_customer_id,
                    ends_immediately=record.ends_immediately,
                    canceled_at=record.canceled_at,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            )
            if consumes_trial:
                _mark_trial_used(session, record.user_id)
    except IntegrityError:
        # Lost the race against a concurrent insert for the same user
        raise ConflictError(
            f"User {record.user_id} already has a current subscription",
            code="subscription_exists",
        )
    return record.model_copy(update={"version": 1, "created_at": now, "updated_at": now})


def save_subscription(record: SubscriptionRecord, *, consumes_trial: bool = False) -> SubscriptionRecord:
    """
    Write a mutated record, guarded by its version.

    record.version must be the version that was read. The stored version is
    incremented on success.

    Raises:
        ConflictError: If the stored version moved on since the read
    """
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.id == record.id)
            .where(subscriptions.c.version == record.version)
            .values(
                plan_id=record.plan_id,
                status=record.status.value,
                start_date=record.start_date,
                end_date=record.end_date,
                next_plan_id=record.next_plan_id,
                scheduled_change_at=record.scheduled_change_at,
                processor_subscription_id=record.processor_subscription_id,
                processor_customer_id=record.processor_customer_id,
                ends_immediately=record.ends_immediately,
                canceled_at=record.canceled_at,
                version=record.version + 1,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Subscription {record.id} was modified concurrently (expected version {record.version})",
                code="stale_version",
            )
        if consumes_trial:
            _mark_trial_used(session, record.user_id)
    return record.model_copy(update={"version": record.version + 1, "updated_at": now})


def list_subscriptions(
    *,
    search: Optional[str] = None,
    status: Optional[SubscriptionStatus] = None,
    plan_id: Optional[str] = None,
    start_date_from: Optional[datetime] = None,
    start_date_to: Optional[datetime] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[SubscriptionRecord], int]:
    """
    Filtered, sorted, paginated listing for admin screens.

    search matches user id, user email, or plan name (case-insensitive).

    Returns:
        (records on the page, total matching count)
    """
    conditions = []
    if search:
        pattern = f"%{search.lower()}%"
        conditions.append(or_(
            func.lower(subscriptions.c.user_id).like(pattern),
            func.lower(app_users.c.email).like(pattern),
            func.lower(plans.c.name).like(pattern),
        ))
    if status:
        conditions.append(subscriptions.c.status == SubscriptionStatus(status).value)
    if plan_id:
        conditions.append(subscriptions.c.plan_id == plan_id)
    if start_date_from:
        conditions.append(subscriptions.c.start_date >= start_date_from)
    if start_date_to:
        conditions.append(subscriptions.c.start_date <= start_date_to)

    joined = subscriptions.join(
        app_users, app_users.c.user_id == subscriptions.c.user_id
    ).join(plans, plans.c.plan_id == subscriptions.c.plan_id)
    where = and_(*conditions) if conditions else None

    column = SORTABLE_COLUMNS.get(sort_by, subscriptions.c.created_at)
    ordering = asc(column) if sort_order.lower() in ("asc", "ascend") else desc(column)
    page = max(page, 1)
    limit = max(1, min(limit, 500))

    with get_db_session() as session:
        count_query = select(func.count()).select_from(joined)
        query = select(subscriptions).select_from(joined)
        if where is not None:
            count_query = count_query.where(where)
            query = query.where(where)
        total = session.execute(count_query).scalar() or 0
        rows = session.execute(
            query.order_by(ordering, subscriptions.c.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return [_row_to_record(row) for row in rows], int(total)


def list_due_for_reconcile(now: datetime, limit: int = 500) -> List[str]:
    """Ids of records whose period ended and that have something to reconcile."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions.c.id)
            .where(subscriptions.c.end_date <= now)
            .where(or_(
                and_(
                    subscriptions.c.next_plan_id.isnot(None),
                    subscriptions.c.status.in_([SubscriptionStatus.TRIAL.value, SubscriptionStatus.ACTIVE.value]),
                ),
                subscriptions.c.status == SubscriptionStatus.CANCELED.value,
                and_(
                    subscriptions.c.status == SubscriptionStatus.TRIAL.value,
                    subscriptions.c.processor_subscription_id.is_(None),
                ),
            ))
            .order_by(subscriptions.c.end_date.asc())
            .limit(limit)
        ).all()
        return [row.id for row in rows]


# ----------------------------------------------------------------------------
# Payments and refunds
# ----------------------------------------------------------------------------

def record_payment(
    subscription_id: str,
    amount: Decimal,
    *,
    currency: str,
    period_start: datetime,
    processor_payment_id: Optional[str] = None,
    kind: str = "renewal",
    paid_at: Optional[datetime] = None,
) -> bool:
    """
    Store a processor-confirmed charge.

    Returns False when the processor payment id was already recorded.
    """
    try:
        with get_db_session() as session:
            session.execute(
                insert(payments).values(
                    subscription_id=subscription_id,
                    amount=amount,
                    currency=currency,
                    processor_payment_id=processor_payment_id,
                    kind=kind,
                    period_start=period_start,
                    paid_at=paid_at or datetime.now(timezone.utc),
                )
            )
        return True
    except IntegrityError:
        return False


def paid_in_period(subscription_id: str, period_start: datetime) -> Decimal:
    with get_db_session() as session:
        total = session.execute(
            select(func.coalesce(func.sum(payments.c.amount), 0))
            .where(payments.c.subscription_id == subscription_id)
            .where(payments.c.period_start >= period_start)
        ).scalar()
        return Decimal(total or 0)


def refunded_in_period(subscription_id: str, period_start: datetime) -> Decimal:
    with get_db_session() as session:
        total = session.execute(
            select(func.coalesce(func.sum(refunds.c.amount), 0))
            .where(refunds.c.subscription_id == subscription_id)
            .where(refunds.c.period_start >= period_start)
        ).scalar()
        return Decimal(total or 0)


def record_refund(
    subscription_id: str,
    amount: Decimal,
    *,
    reason: str,
    receipt_id: str,
    actor: str,
    period_start: datetime,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(refunds).values(
                subscription_id=subscription_id,
                amount=amount,
                reason=reason,
                receipt_id=receipt_id,
                actor=actor,
                period_start=period_start,
                created_at=datetime.now(timezone.utc),
            )
        )


def list_payments(subscription_id: str) -> List[dict]:
    with get_db_session() as session:
        rows = session.execute(
            select(payments)
            .where(payments.c.subscription_id == subscription_id)
            .order_by(payments.c.paid_at.desc())
        ).all()
        return [
            {
                "amount": Decimal(row.amount),
                "currency": row.currency,
                "processor_payment_id": row.processor_payment_id,
                "kind": row.kind,
                "period_start": as_utc(row.period_start),
                "paid_at": as_utc(row.paid_at),
            }
            for row in rows
        ]
