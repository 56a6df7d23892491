"""
Admin billing reporting service.

Handles:
- Audit logging (security-critical, never silent)
- Subscription listing with filters, sorting, pagination
- Subscription detail (record, plans, payments, refunds, audit trail)
- Dashboard statistics
- Webhook event listing
"""
import json
import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy import select, insert, func

from tierflow.core.admin_auth import AdminActor
from tierflow.core.database import (
    get_db_session,
    app_users,
    billing_admin_audit,
    billing_events,
    payments,
    refunds,
    subscriptions,
)
from tierflow.core.errors import AdminAuditWriteError
from tierflow.core.logging import log_event
from tierflow.features.plans.service import get_plan_any, list_active_plans
from tierflow.features.subscriptions import repository
from tierflow.models.plan import PlanKind, to_money
from tierflow.models.subscription import SubscriptionRecord, SubscriptionStatus

RECENT_SUBSCRIPTIONS_LIMIT = 5


def record_admin_audit(
    actor: AdminActor,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
) -> None:
    """
    Record an admin action in the audit log.

    Raises:
        AdminAuditWriteError: If the audit row cannot be written
    """
    entry = dict(payload or {})
    entry["actor_id"] = actor.actor_id
    entry["auth_mechanism"] = actor.auth_mechanism
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_admin_audit).values(
                    actor=actor.actor_display or actor.actor_id,
                    action=action,
                    target_user_id=target_user_id,
                    target_resource=target_resource,
                    payload_json=json.dumps(entry, default=str),
                    created_at=datetime.now(timezone.utc),
                )
            )
    except Exception as e:
        log_event("error", "admin.audit.write_failed", user_id=target_user_id, error_code="admin_audit_failed", extra={"action": action, "error": e})
        raise AdminAuditWriteError(f"Admin audit write failed: {e}")


def list_audit_entries(target_resource: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    limit = min(limit, 500)
    with get_db_session() as session:
        query = select(billing_admin_audit)
        if target_resource:
            query = query.where(billing_admin_audit.c.target_resource == target_resource)
        rows = session.execute(
            query.order_by(billing_admin_audit.c.created_at.desc(), billing_admin_audit.c.id.desc()).limit(limit)
        ).all()
        return [
            {
                "id": row.id,
                "actor": row.actor,
                "action": row.action,
                "target_user_id": row.target_user_id,
                "target_resource": row.target_resource,
                "payload": json.loads(row.payload_json) if row.payload_json else None,
                "created_at": repository.as_utc(row.created_at),
            }
            for row in rows
        ]


def _plan_summary(plan_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not plan_id:
        return None
    plan = get_plan_any(plan_id)
    if plan is None:
        return {"plan_id": plan_id}
    return {
        "plan_id": plan.plan_id,
        "name": plan.name,
        "tier": plan.tier,
        "plan_kind": plan.plan_kind.value,
        "effective_price": plan.effective_price,
        "duration_months": plan.duration_months,
    }


def serialize_subscription(record: SubscriptionRecord, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    data = record.model_dump()
    data["status"] = record.status.value
    data["plan"] = _plan_summary(record.plan_id)
    data["next_plan"] = _plan_summary(record.next_plan_id)
    data["has_active_access"] = record.has_active_access(now)
    return data


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
) -> Dict[str, Any]:
    """Admin listing: {"subscriptions": [...], "pagination": {page, limit, total, total_pages}}."""
    records, total = repository.list_subscriptions(
        search=search,
        status=status,
        plan_id=plan_id,
        start_date_from=start_date_from,
        start_date_to=start_date_to,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    now = datetime.now(timezone.utc)
    return {
        "subscriptions": [serialize_subscription(r, now) for r in records],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
        },
    }


def get_subscription_detail(subscription_id: str) -> Dict[str, Any]:
    """
    Raises:
        NotFoundError: If the subscription does not exist
    """
    record = repository.get_subscription(subscription_id)
    with get_db_session() as session:
        refund_rows = session.execute(
            select(refunds)
            .where(refunds.c.subscription_id == subscription_id)
            .order_by(refunds.c.created_at.desc())
        ).all()
        user = session.execute(
            select(app_users).where(app_users.c.user_id == record.user_id)
        ).first()

    detail = serialize_subscription(record)
    detail["user"] = {
        "user_id": record.user_id,
        "email": user.email if user else None,
        "has_used_trial": bool(user and user.has_used_trial),
    }
    detail["payments"] = repository.list_payments(subscription_id)
    detail["refunds"] = [
        {
            "amount": Decimal(r.amount),
            "reason": r.reason,
            "receipt_id": r.receipt_id,
            "actor": r.actor,
            "created_at": repository.as_utc(r.created_at),
        }
        for r in refund_rows
    ]
    paid = repository.paid_in_period(subscription_id, record.start_date)
    refunded = repository.refunded_in_period(subscription_id, record.start_date)
    detail["refundable_amount"] = to_money(max(paid - refunded, Decimal(0)))
    detail["audit"] = list_audit_entries(target_resource=subscription_id, limit=20)
    return detail


def get_dashboard_stats(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Headline numbers for the admin dashboard.

    mrr counts ACTIVE records on paid plans, yearly plans spread over 12 months.
    """
    now = now or datetime.now(timezone.utc)
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)

    with get_db_session() as session:
        users_total = session.execute(select(func.count()).select_from(app_users)).scalar() or 0
        users_new = session.execute(
            select(func.count()).select_from(app_users).where(app_users.c.created_at >= week_ago)
        ).scalar() or 0
        status_rows = session.execute(
            select(subscriptions.c.status, func.count()).group_by(subscriptions.c.status)
        ).all()
        active_by_plan = session.execute(
            select(subscriptions.c.plan_id, func.count())
            .where(subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .group_by(subscriptions.c.plan_id)
        ).all()
        scheduled = session.execute(
            select(func.count()).select_from(subscriptions).where(subscriptions.c.next_plan_id.isnot(None))
        ).scalar() or 0
        collected = session.execute(
            select(func.coalesce(func.sum(payments.c.amount), 0)).where(payments.c.paid_at >= month_ago)
        ).scalar()
        refunded = session.execute(
            select(func.coalesce(func.sum(refunds.c.amount), 0)).where(refunds.c.created_at >= month_ago)
        ).scalar()
        parked = session.execute(
            select(func.count()).select_from(billing_events).where(billing_events.c.status.in_(["parked", "failed"]))
        ).scalar() or 0
        recent = session.execute(
            select(subscriptions.c.id, subscriptions.c.user_id, subscriptions.c.plan_id, subscriptions.c.created_at)
            .order_by(subscriptions.c.created_at.desc())
            .limit(RECENT_SUBSCRIPTIONS_LIMIT)
        ).all()

    by_status = {status.value: 0 for status in SubscriptionStatus}
    for status, count in status_rows:
        by_status[status] = count

    mrr = Decimal(0)
    paying = 0
    for plan_id, count in active_by_plan:
        plan = get_plan_any(plan_id)
        if plan is None or plan.plan_kind != PlanKind.PAID:
            continue
        paying += count
        mrr += plan.effective_price / plan.duration_months * count
    mrr = to_money(mrr)

    plan_names = {p.plan_id: p.name for p in list_active_plans()}
    return {
        "users": {"total": users_total, "new_this_week": users_new},
        "subscriptions": {
            "by_status": by_status,
            "paying": paying,
            "scheduled_changes": scheduled,
        },
        "revenue": {
            "mrr": mrr,
            "arr": to_money(mrr * 12),
            "collected_30d": to_money(Decimal(collected or 0)),
            "refunded_30d": to_money(Decimal(refunded or 0)),
        },
        "billing_events": {"needs_attention": parked},
        "recent_subscriptions": [
            {
                "subscription_id": row.id,
                "user_id": row.user_id,
                "plan_name": plan_names.get(row.plan_id, row.plan_id),
                "purchased_at": repository.as_utc(row.created_at),
            }
            for row in recent
        ],
    }


def get_webhook_events(limit: int = 50, status: Optional[str] = None, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Get webhook events, newest first.

    Args:
        limit: Max results (max 500)
        status: received | processed | ignored | parked | failed
        event_type: Raw processor event type
    """
    limit = min(limit, 500)
    with get_db_session() as session:
        query = select(billing_events)
        if status:
            query = query.where(billing_events.c.status == status)
        if event_type:
            query = query.where(billing_events.c.event_type == event_type)
        rows = session.execute(
            query.order_by(billing_events.c.received_at.desc(), billing_events.c.id.desc()).limit(limit)
        ).all()
        return [
            {
                "event_id": e.event_id,
                "event_type": e.event_type,
                "status": e.status,
                "received_at": repository.as_utc(e.received_at),
                "processed_at": repository.as_utc(e.processed_at),
                "error": e.error,
            }
            for e in rows
        ]
