"""Webhook Routes - Stripe.

POST /api/stripe/webhook - signature-verified, idempotent by event id.
Handler failures return 500 so Stripe retries; the event is not marked processed.
"""
from fastapi import APIRouter, Header, HTTPException, Request, status
from typing import Optional
import logging

from services.stripe_webhook_service import stripe_webhook_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


@router.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
):
    payload = await request.body()
    success, message, details = await stripe_webhook_service.process_webhook(payload, stripe_signature)

    if not success:
        if message == "Webhook handler failed":
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=message,
            )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    return {"received": True, "message": message}
