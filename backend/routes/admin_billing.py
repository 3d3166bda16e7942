"""Admin Billing Routes - entitlement operations.

Endpoints:
- POST /api/admin/billing/reconcile/run - Run a reconciliation sweep now
- GET /api/admin/billing/events/{event_id} - Ledger marker of one Stripe event
- GET /api/admin/billing/customer-links/{customer_id} - Customer link and its audit history
- PUT /api/admin/billing/customer-links/{customer_id} - Reassign a customer to another uid
- POST /api/admin/billing/events/prune - Prune old ledger markers

NON-NEGOTIABLE RULES:
1. Stripe is the billing authority. No admin action may set is_pro directly.
2. Customer links change only through the reassign endpoint.
3. Every admin billing action is audit-logged.
"""
import logging
from typing import Optional
import stripe
from fastapi import APIRouter, HTTPException, Request, status, Depends
from pydantic import BaseModel, Field
from middleware import admin_route_guard
from services import idempotency_ledger, identity_resolver
from services.reconciliation_service import reconcile_customer
from services.stripe_gateway import stripe_gateway
from utils.audit import get_audit_logs_for_resource
import job_runner

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"], dependencies=[Depends(admin_route_guard)])


# =============================================================================
# Request Models
# =============================================================================

class SweepRequest(BaseModel):
    batch_size: Optional[int] = Field(default=None, ge=1, le=500)
    concurrency: Optional[int] = Field(default=None, ge=1, le=20)


class RelinkRequest(BaseModel):
    uid: str = Field(min_length=1)
    reason: Optional[str] = None


class PruneRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=1)


# =============================================================================
# Reconciliation
# =============================================================================

@router.post("/reconcile/run")
async def run_reconciliation(request: Request, body: Optional[SweepRequest] = None):
    """Run the reconciliation sweep immediately (same job as the scheduler)."""
    admin = await admin_route_guard(request)
    body = body or SweepRequest()
    logger.info(f"Manual reconciliation sweep requested by {admin.get('uid')}")
    return await job_runner.run_entitlement_reconciliation(
        batch_size=body.batch_size,
        concurrency=body.concurrency,
    )


# =============================================================================
# Ledger
# =============================================================================

@router.get("/events/{event_id}")
async def get_stripe_event(event_id: str):
    """Ledger marker (status, outcome, audit copy) of one Stripe event."""
    marker = await idempotency_ledger.get(event_id)
    if not marker:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return marker


@router.post("/events/prune")
async def prune_stripe_events(request: Request, body: Optional[PruneRequest] = None):
    admin = await admin_route_guard(request)
    body = body or PruneRequest()
    logger.info(f"Stripe event prune requested by {admin.get('uid')}")
    return await job_runner.run_stripe_event_prune(retention_days=body.retention_days)


# =============================================================================
# Customer links
# =============================================================================

@router.get("/customer-links/{customer_id}")
async def get_customer_link(customer_id: str):
    link = await identity_resolver.get_customer_link(customer_id)
    if not link:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer link not found")
    history = await get_audit_logs_for_resource("customer_link", customer_id)
    return {"link": link.model_dump(mode="json"), "history": history}


@router.put("/customer-links/{customer_id}")
async def reassign_customer_link(request: Request, customer_id: str, body: RelinkRequest):
    """
    Point a Stripe customer at another uid.

    The new uid is reconciled right away when Stripe is configured; otherwise
    the next event or sweep for this customer picks it up.
    """
    admin = await admin_route_guard(request)
    uid = body.uid.strip()
    link = await identity_resolver.relink_customer(
        customer_id,
        uid,
        actor_id=admin.get("uid"),
        reason=body.reason,
    )

    entitlement = None
    if stripe_gateway.is_configured():
        try:
            record = await reconcile_customer(uid, customer_id, reason="relink")
            entitlement = record.model_dump(mode="json")
        except stripe.StripeError as e:
            logger.warning(f"Reconcile after relink of {customer_id} failed, sweep will retry: {e}")
    return {"success": True, "link": link.model_dump(mode="json"), "entitlement": entitlement}
