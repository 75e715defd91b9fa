"""
Stripe webhook endpoint.

Billing provider outages after signature verification return 503 so Stripe
redelivers. Events Stripe itself refuses to resolve (a deleted subscription)
are recorded as "rejected" and acknowledged; replays are acknowledged by the
service's event-id ledger.
"""
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.core.billing_dependency import get_webhook_service
from app.db.session import get_db
from app.services.billing_webhook_service import BillingWebhookService

router = APIRouter(prefix="/webhooks", tags=["Billing Webhook"])


@router.post("/billing")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
    service: BillingWebhookService = Depends(get_webhook_service),
):
    payload = await request.body()
    outcome = await run_in_threadpool(service.handle, db, payload, stripe_signature)
    return {"status": outcome.status, "event_id": outcome.event_id}
