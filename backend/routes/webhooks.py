"""Webhook Routes - Stripe payment events.

Stripe webhook endpoint with:
- Signature verification
- Idempotency (via stripe_events collection)
- Commission accrual on invoice.paid

POST /api/webhook/stripe - Main Stripe webhook endpoint
POST /api/webhooks/stripe - Alias for Stripe webhook (for backward compatibility)

Responses: 200 once an event is handled or deliberately skipped, 400 for an
unverifiable payload, 500 when a store failure means Stripe should redeliver.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, Header, status
from database import get_db
from services.stripe_webhook_service import RetryableWebhookError, StripeWebhookService
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, db, stripe_signature: str = None):
    """Core Stripe webhook handler."""
    payload = await request.body()

    try:
        success, message, details = await StripeWebhookService(db).process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )
    except RetryableWebhookError as e:
        logger.error(f"Stripe webhook will be retried: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Temporary failure, please retry"
        )

    if not success:
        logger.error(f"Webhook rejected: {message}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    return {"status": "received", "message": message, "details": details}


# Primary webhook endpoint
@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db=Depends(get_db),
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, db, stripe_signature)


# Alias endpoint for backward compatibility (Stripe may be configured with this URL)
@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db=Depends(get_db),
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, db, stripe_signature)
