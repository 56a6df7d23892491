"""
Stripe payment processor.

Implements BillingProvider using the Stripe API: hosted checkout sessions,
refunds and proration charges against the subscription's latest invoice,
webhook signature verification and event parsing.
"""
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, Optional
import stripe

from tierflow.core.config import settings
from tierflow.features.billing.provider import (
    BillingProviderError,
    BillingTimeoutError,
    BillingWebhookError,
    ProcessorEvent,
    event_kind,
)


def _to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def _from_cents(value: Optional[int]) -> Optional[Decimal]:
    if value is None:
        return None
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
            timeout: Per-request timeout in seconds (defaults to PROCESSOR_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET") or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Connect and read timeout for every API request; no automatic retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout or settings.PROCESSOR_TIMEOUT_SECONDS)
        stripe.max_network_retries = 0

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
        """Create Stripe checkout session in subscription mode."""
        session_metadata = {"user_id": user_id, "plan_id": plan_id}
        session_metadata.update(metadata or {})
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": session_metadata,
            "subscription_data": {"metadata": session_metadata},
        }
        if customer_id:
            params["customer"] = customer_id
        try:
            session = stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)
            return session.url
        except stripe.APIConnectionError as e:
            raise BillingTimeoutError(f"Stripe checkout session creation got no answer: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def refund(self, processor_subscription_id: str, amount: Decimal, reason: str, idempotency_key: str) -> str:
        """Refund against the subscription's latest paid invoice."""
        try:
            subscription = stripe.Subscription.retrieve(processor_subscription_id, expand=["latest_invoice"])
            invoice = subscription.get("latest_invoice")
            payment_intent = invoice.get("payment_intent") if invoice else None
            if not payment_intent:
                raise BillingProviderError(f"No paid invoice to refund for {processor_subscription_id}")
            refund = stripe.Refund.create(
                payment_intent=payment_intent,
                amount=_to_cents(amount),
                metadata={"reason": reason[:500], "subscription": processor_subscription_id},
                idempotency_key=idempotency_key,
            )
            return refund.id
        except stripe.APIConnectionError as e:
            raise BillingTimeoutError(f"Stripe refund got no answer: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe refund failed: {e}")

    def charge(self, processor_subscription_id: str, amount: Decimal, description: str, idempotency_key: str) -> str:
        """Invoice a one-off proration amount to the subscription's customer."""
        try:
            subscription = stripe.Subscription.retrieve(processor_subscription_id)
            customer_id = subscription.get("customer")
            stripe.InvoiceItem.create(
                customer=customer_id,
                amount=_to_cents(amount),
                currency=settings.CURRENCY,
                description=description,
                subscription=processor_subscription_id,
                idempotency_key=f"{idempotency_key}:item",
            )
            invoice = stripe.Invoice.create(
                customer=customer_id,
                subscription=processor_subscription_id,
                auto_advance=True,
                idempotency_key=f"{idempotency_key}:invoice",
            )
            paid = stripe.Invoice.pay(invoice.id, idempotency_key=f"{idempotency_key}:pay")
            if paid.get("status") != "paid":
                raise BillingProviderError(f"Proration invoice {invoice.id} not paid (status={paid.get('status')})")
            return paid.id
        except stripe.APIConnectionError as e:
            raise BillingTimeoutError(f"Stripe charge got no answer: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe charge failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> ProcessorEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> ProcessorEvent:
        """Parse Stripe event into a normalized ProcessorEvent."""
        event_type = event["type"]
        data = event.get("data", {}).get("object", {})
        metadata = dict(data.get("metadata") or {})
        parsed = ProcessorEvent(
            event_id=event["id"],
            event_type=event_type,
            kind=event_kind(event_type),
            metadata=metadata,
        )

        if event_type == "checkout.session.completed":
            parsed.user_id = metadata.get("user_id") or data.get("client_reference_id")
            parsed.plan_id = metadata.get("plan_id")
            parsed.processor_subscription_id = data.get("subscription")
            parsed.processor_customer_id = data.get("customer")
            parsed.amount = _from_cents(data.get("amount_total"))
            parsed.currency = data.get("currency")
            parsed.payment_id = data.get("invoice") or data.get("id")

        elif event_type.startswith("invoice."):
            parsed.processor_subscription_id = data.get("subscription")
            parsed.processor_customer_id = data.get("customer")
            parsed.amount = _from_cents(data.get("amount_paid"))
            parsed.currency = data.get("currency")
            parsed.payment_id = data.get("id")
            lines = data.get("lines", {}).get("data", [])
            if lines:
                parsed.period_end = _from_timestamp(lines[0].get("period", {}).get("end"))
                line_metadata = lines[0].get("metadata") or {}
                parsed.plan_id = line_metadata.get("plan_id")

        elif event_type.startswith("customer.subscription."):
            parsed.processor_subscription_id = data.get("id")
            parsed.processor_customer_id = data.get("customer")
            parsed.user_id = metadata.get("user_id")
            parsed.plan_id = metadata.get("plan_id")
            parsed.period_end = _from_timestamp(data.get("current_period_end"))

        return parsed
