"""
Payment processor webhook.

POST /v1/billing/webhook: verified by the provider, deduped by event id.
Events that cannot be applied are parked and still acknowledged (200);
unexpected failures return 500 so the processor redelivers.
"""
from fastapi import APIRouter, Request

from tierflow.features.billing.checkout import handle_webhook

router = APIRouter(prefix="/v1/billing", tags=["billing"])


@router.post("/webhook")
async def billing_webhook(request: Request):
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    return handle_webhook(headers, body)
