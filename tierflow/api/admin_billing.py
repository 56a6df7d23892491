"""
Admin-only subscription operations router.
Requires X-Admin-Key header for all endpoints.
Handles overrides (upgrade, downgrade, revoke, refund), reporting,
webhook event inspection/replay and reconciliation.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from fastapi import APIRouter, Header, Query, Depends
from pydantic import BaseModel, Field

from tierflow.core.admin_auth import require_admin, AdminActor
from tierflow.features.billing import admin_overrides, admin_service
from tierflow.features.billing.checkout import replay_event
from tierflow.features.subscriptions.reconcile_job import reconcile_subscription, run_reconcile_job
from tierflow.models.subscription import SubscriptionStatus

logger = logging.getLogger("tierflow.admin_billing")

router = APIRouter(prefix="/v1/admin", tags=["admin-billing"])


# ============================================================================
# Pydantic Models
# ============================================================================

class PlanChangeRequest(BaseModel):
    """Immediate plan change."""
    plan_id: str = Field(..., min_length=1)


class RevokeRequest(BaseModel):
    """Revoke a subscription. immediate=None uses REVOKE_IMMEDIATE_DEFAULT."""
    immediate: Optional[bool] = None
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount to refund, at most what was paid this cycle")
    reason: str = Field(..., description="Why the refund is issued (required)")


class ReconcileRequest(BaseModel):
    now: Optional[datetime] = Field(None, description="Reconcile as of this time (defaults to now)")
    limit: Optional[int] = Field(None, ge=1, le=5000)


class OverrideResponse(BaseModel):
    subscription_id: str
    operation: str
    status: str
    plan_id: Optional[str] = None
    from_plan_id: Optional[str] = None
    charged_amount: Optional[str] = None
    credited_amount: Optional[str] = None
    credit_policy: Optional[str] = None
    amount: Optional[str] = None
    reason: Optional[str] = None
    immediate: Optional[bool] = None
    end_date: Optional[str] = None
    receipt_id: Optional[str] = None
    idempotent_replay: bool = False


class ReplayResponse(BaseModel):
    event_id: str
    event_type: str
    previous_status: str
    status: str


class EventListResponse(BaseModel):
    events: List[Dict[str, Any]]
    count: int


# ============================================================================
# Overrides
# ============================================================================

@router.post("/subscriptions/{subscription_id}/upgrade", response_model=OverrideResponse)
def upgrade_subscription(
    subscription_id: str,
    req: PlanChangeRequest,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
    actor: AdminActor = Depends(require_admin),
):
    """Upgrade now; charges the prorated difference before switching."""
    logger.info(f"[admin] upgrade {subscription_id} -> {req.plan_id} by {actor.actor_id}")
    return admin_overrides.upgrade_now(
        subscription_id, req.plan_id, actor=actor, idempotency_key=idempotency_key
    )


@router.post("/subscriptions/{subscription_id}/downgrade", response_model=OverrideResponse)
def downgrade_subscription(
    subscription_id: str,
    req: PlanChangeRequest,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
    actor: AdminActor = Depends(require_admin),
):
    logger.info(f"[admin] downgrade {subscription_id} -> {req.plan_id} by {actor.actor_id}")
    return admin_overrides.downgrade_now(
        subscription_id, req.plan_id, actor=actor, idempotency_key=idempotency_key
    )


@router.post("/subscriptions/{subscription_id}/revoke", response_model=OverrideResponse)
def revoke_subscription(
    subscription_id: str,
    req: RevokeRequest,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
    actor: AdminActor = Depends(require_admin),
):
    logger.info(f"[admin] revoke {subscription_id} immediate={req.immediate} by {actor.actor_id}")
    return admin_overrides.revoke(
        subscription_id,
        actor=actor,
        idempotency_key=idempotency_key,
        immediate=req.immediate,
        reason=req.reason,
    )


@router.post("/subscriptions/{subscription_id}/refund", response_model=OverrideResponse)
def refund_subscription(
    subscription_id: str,
    req: RefundRequest,
    idempotency_key: str = Header(..., alias="Idempotency-Key"),
    actor: AdminActor = Depends(require_admin),
):
    """Never retried automatically. On processor failure the record is unchanged."""
    logger.info(f"[admin] refund {subscription_id} amount={req.amount} by {actor.actor_id}")
    return admin_overrides.refund(
        subscription_id, req.amount, req.reason, actor=actor, idempotency_key=idempotency_key
    )


@router.post("/subscriptions/{subscription_id}/reconcile")
def reconcile_one(
    subscription_id: str,
    req: Optional[ReconcileRequest] = None,
    actor: AdminActor = Depends(require_admin),
):
    result = reconcile_subscription(subscription_id, req.now if req else None)
    admin_service.record_admin_audit(
        actor,
        "billing.reconcile_subscription",
        target_resource=subscription_id,
        payload=result,
    )
    return result


@router.post("/reconcile")
def reconcile_all(
    req: Optional[ReconcileRequest] = None,
    actor: AdminActor = Depends(require_admin),
):
    """Run the period-end reconciliation batch now."""
    result = run_reconcile_job(now=req.now if req else None, limit=req.limit if req else None)
    admin_service.record_admin_audit(actor, "billing.reconcile", payload=result)
    return result


# ============================================================================
# Reporting
# ============================================================================

@router.get("/subscriptions")
def list_subscriptions(
    search: Optional[str] = Query(None),
    status: Optional[SubscriptionStatus] = Query(None),
    plan_id: Optional[str] = Query(None),
    start_date_from: Optional[datetime] = Query(None),
    start_date_to: Optional[datetime] = Query(None),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc", pattern="^(asc|desc|ascend|descend)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: AdminActor = Depends(require_admin),
):
    return admin_service.list_subscriptions(
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


@router.get("/subscriptions/{subscription_id}")
def subscription_detail(subscription_id: str, actor: AdminActor = Depends(require_admin)):
    return admin_service.get_subscription_detail(subscription_id)


@router.get("/dashboard")
def dashboard(actor: AdminActor = Depends(require_admin)):
    return admin_service.get_dashboard_stats()


@router.get("/billing/events", response_model=EventListResponse)
def list_billing_events(
    status: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    events = admin_service.get_webhook_events(limit=limit, status=status, event_type=event_type)
    return EventListResponse(events=events, count=len(events))


@router.post("/billing/events/{event_id}/replay", response_model=ReplayResponse)
def replay_billing_event(event_id: str, actor: AdminActor = Depends(require_admin)):
    """Re-apply a parked or failed event from its stored payload."""
    logger.info(f"[admin] webhook replay requested by {actor.actor_id}: {event_id}")
    result = replay_event(event_id)
    admin_service.record_admin_audit(
        actor,
        "billing.replay_event",
        target_resource=event_id,
        payload=result,
    )
    return result
