"""
tierflow/models/subscription.py

Subscription record and status vocabulary.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


# A user holds at most one record in these states
CURRENT_STATUSES = frozenset({
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
})

TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.REFUNDED,
})


class SubscriptionRecord(BaseModel):
    """
    Persisted subscription state for one user.

    version increases by one on every successful write and is the optimistic
    concurrency token. next_plan_id and scheduled_change_at are set together,
    and scheduled_change_at always equals end_date when present.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    next_plan_id: Optional[str] = None
    scheduled_change_at: Optional[datetime] = None
    processor_subscription_id: Optional[str] = None
    processor_customer_id: Optional[str] = None
    ends_immediately: bool = False
    canceled_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_pending_change(self) -> bool:
        return self.next_plan_id is not None

    @property
    def is_current(self) -> bool:
        return self.status in CURRENT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_active_access(self, now: datetime) -> bool:
        """Access lasts through end_date for every current status, soft-canceled included."""
        return self.is_current and now <= self.end_date
