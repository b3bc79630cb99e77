"""Billing provider webhook endpoint."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from database import get_db
from schemas.billing import WebhookAckResponse
from services.billing_gateway import BillingGateway, get_billing_gateway
from services.exceptions import InvalidWebhookError
from services.subscription_reconciler import SubscriptionReconciler

router = APIRouter()


async def raw_body(request: Request) -> bytes:
    """Unparsed request body; signature verification needs the exact bytes."""
    return await request.body()


@router.post("/webhook", response_model=WebhookAckResponse)
def billing_webhook(
    body: bytes = Depends(raw_body),
    stripe_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway),
):
    """
    Apply a verified Stripe event to local subscriptions.

    Duplicate deliveries are acknowledged without side effects.
    Raises: 400 if the signature is missing or invalid, 503 if the event
    cannot be applied yet (the provider will redeliver)
    """
    event = gateway.construct_event(body, stripe_signature)

    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise InvalidWebhookError("Event is missing an id or type")

    payload = (event.get("data") or {}).get("object") or {}
    ack = SubscriptionReconciler(db, gateway).ingest_billing_event(event_id, event_type, payload)
    return ack.to_dict()
