"""Webhook Routes - Stripe webhooks.

Stripe webhook endpoint with:
- Signature verification (400 when missing/invalid)
- Idempotency via the stripe_events ledger
- 500 on pipeline failure so Stripe redelivers (redelivery of a claimed event is a no-op)

POST /api/webhook/stripe - Main Stripe webhook endpoint
POST /api/webhooks/stripe - Alias for Stripe webhook (for backward compatibility)
"""
from fastapi import APIRouter, Request, Header
from fastapi.responses import JSONResponse
from services.stripe_webhook_service import stripe_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    """Core Stripe webhook handler: the service's status code goes back to Stripe as is."""
    payload = await request.body()

    status_code, message, details = await stripe_webhook_service.process_webhook(
        payload=payload,
        signature=stripe_signature
    )

    if status_code >= 500:
        logger.error(f"Webhook processing failed ({status_code}): {message}")
        return JSONResponse(status_code=status_code, content={"status": "error", "message": message, "details": details})
    if status_code >= 400:
        return JSONResponse(status_code=status_code, content={"status": "rejected", "message": message})
    return JSONResponse(status_code=status_code, content={"status": "received", "message": message, "details": details})


# Primary webhook endpoint
@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature)


# Alias endpoint (Stripe may be configured with this URL)
@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)
