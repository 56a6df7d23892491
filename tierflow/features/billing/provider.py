"""
Payment processor protocol.

Defines the interface the subscription core needs from a processor (Stripe,
or a fake in tests). Business logic never touches the processor SDK directly.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal

# Normalized event kinds
CHECKOUT_COMPLETED = "checkout_completed"
PAYMENT_SUCCEEDED = "payment_succeeded"
PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_CANCELED = "subscription_canceled"
IGNORED = "ignored"

EVENT_KINDS = {
    "checkout.session.completed": CHECKOUT_COMPLETED,
    "invoice.paid": PAYMENT_SUCCEEDED,
    "invoice.payment_succeeded": PAYMENT_SUCCEEDED,
    "invoice.payment_failed": PAYMENT_FAILED,
    "customer.subscription.deleted": SUBSCRIPTION_CANCELED,
}


def event_kind(event_type: str) -> str:
    return EVENT_KINDS.get(event_type, IGNORED)


@dataclass
class ProcessorEvent:
    """A verified processor webhook, normalized."""
    event_id: str
    event_type: str
    kind: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    processor_customer_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    period_end: Optional[datetime] = None
    payment_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form, stored with the event for replay."""
        data = asdict(self)
        data["amount"] = str(self.amount) if self.amount is not None else None
        data["period_end"] = self.period_end.isoformat() if self.period_end else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessorEvent":
        amount = data.get("amount")
        period_end = data.get("period_end")
        return cls(
            event_id=data["event_id"],
            event_type=data["event_type"],
            kind=data.get("kind") or event_kind(data["event_type"]),
            user_id=data.get("user_id"),
            plan_id=data.get("plan_id"),
            processor_subscription_id=data.get("processor_subscription_id"),
            processor_customer_id=data.get("processor_customer_id"),
            amount=Decimal(amount) if amount is not None else None,
            currency=data.get("currency"),
            period_end=datetime.fromisoformat(period_end) if period_end else None,
            payment_id=data.get("payment_id"),
            metadata=dict(data.get("metadata") or {}),
        )


class BillingProvider(Protocol):
    """
    Protocol for payment processors.

    Every mutating call takes an idempotency key so retries are safe on the
    processor side.
    """

    def create_session(
        self,
        user_id: str,
        plan_id: str,
        price_id: str,
        idempotency_key: str,
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Create a hosted checkout session for a subscription.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def refund(self, processor_subscription_id: str, amount: Decimal, reason: str, idempotency_key: str) -> str:
        """
        Refund part of what was paid on a subscription.

        Returns:
            Processor receipt id

        Raises:
            BillingProviderError: If the refund is rejected
        """
        ...

    def charge(self, processor_subscription_id: str, amount: Decimal, description: str, idempotency_key: str) -> str:
        """
        Charge a one-off amount (proration) to the subscription's customer.

        Returns:
            Processor receipt id

        Raises:
            BillingProviderError: If the charge fails
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> ProcessorEvent:
        """
        Verify webhook signature and parse event.

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass


class BillingTimeoutError(BillingProviderError):
    """The processor did not answer in time; the call may or may not have taken effect."""
    pass
