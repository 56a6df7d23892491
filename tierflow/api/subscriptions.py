"""
Self-service subscription API.

Caller identity comes from X-User-Id (see tierflow.core.auth).

- POST   /v1/subscriptions: subscribe (trial/free start now, paid returns a checkout URL)
- POST   /v1/subscriptions/schedule: schedule a plan change at period end
- DELETE /v1/subscriptions/schedule: drop the scheduled change
- POST   /v1/subscriptions/cancel: soft cancel
- GET    /v1/subscriptions/current: current subscription overview
- POST   /v1/subscriptions/conversion: trial/free to paid checkout
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field

from tierflow.api.plans import PlanResponse
from tierflow.core.auth import get_current_user_id
from tierflow.features.subscriptions import service
from tierflow.models.subscription import SubscriptionRecord

router = APIRouter(prefix="/v1/subscriptions", tags=["subscriptions"])


class SubscriptionResponse(BaseModel):
    id: str
    plan_id: str
    status: str
    start_date: datetime
    end_date: datetime
    next_plan_id: Optional[str] = None
    scheduled_change_at: Optional[datetime] = None
    ends_immediately: bool = False
    canceled_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionResponse":
        return cls(
            id=record.id,
            plan_id=record.plan_id,
            status=record.status.value,
            start_date=record.start_date,
            end_date=record.end_date,
            next_plan_id=record.next_plan_id,
            scheduled_change_at=record.scheduled_change_at,
            ends_immediately=record.ends_immediately,
            canceled_at=record.canceled_at,
        )


class SubscribeRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


class SubscribeResponse(BaseModel):
    outcome: str  # trial | free | checkout
    subscription: Optional[SubscriptionResponse] = None
    checkout_url: Optional[str] = None


class ScheduleChangeRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


class ConversionRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


class CheckoutResponse(BaseModel):
    url: str


class CurrentSubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionResponse] = None
    plan: Optional[PlanResponse] = None
    next_plan: Optional[PlanResponse] = None
    has_active_access: bool
    has_used_trial: bool


@router.post("", response_model=SubscribeResponse)
def subscribe(
    req: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    result = service.subscribe(user_id, req.plan_id, idempotency_key=idempotency_key)
    return SubscribeResponse(
        outcome=result.outcome,
        subscription=SubscriptionResponse.from_record(result.subscription) if result.subscription else None,
        checkout_url=result.checkout_url,
    )


@router.post("/schedule", response_model=SubscriptionResponse)
def schedule_change(req: ScheduleChangeRequest, user_id: str = Depends(get_current_user_id)):
    """Takes effect at end_date. Reselecting the current plan drops a pending change."""
    return SubscriptionResponse.from_record(service.schedule_change(user_id, req.plan_id))


@router.delete("/schedule", response_model=SubscriptionResponse)
def cancel_scheduled_change(user_id: str = Depends(get_current_user_id)):
    return SubscriptionResponse.from_record(service.cancel_scheduled_change(user_id))


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel(user_id: str = Depends(get_current_user_id)):
    return SubscriptionResponse.from_record(service.cancel(user_id))


@router.get("/current", response_model=CurrentSubscriptionResponse)
def current(user_id: str = Depends(get_current_user_id)):
    overview = service.fetch_current_subscription(user_id)
    record = overview["subscription"]
    return CurrentSubscriptionResponse(
        subscription=SubscriptionResponse.from_record(record) if record else None,
        plan=PlanResponse.from_plan(overview["plan"]) if overview["plan"] else None,
        next_plan=PlanResponse.from_plan(overview["next_plan"]) if overview["next_plan"] else None,
        has_active_access=overview["has_active_access"],
        has_used_trial=overview["has_used_trial"],
    )


@router.post("/conversion", response_model=CheckoutResponse)
def start_conversion(
    req: ConversionRequest,
    user_id: str = Depends(get_current_user_id),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return CheckoutResponse(url=service.start_conversion(user_id, req.plan_id, idempotency_key))
