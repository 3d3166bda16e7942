"""Billing Routes - PRO entitlement for the signed-in user.

Endpoints:
- POST /api/billing/reconcile - Re-derive the entitlement from Stripe now
- POST /api/billing/verify-session - Verify a completed checkout and persist PRO
- GET /api/billing/entitlement - Stored entitlement of the caller
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field
from typing import Optional
import stripe
from services import entitlement_persister
from services.plan_registry import plan_registry
from services.reconciliation_service import (
    MissingCustomerError,
    SessionNotFoundError,
    SessionOwnershipError,
    UserNotFoundError,
    reconcile_user,
    verify_checkout_session,
)
from services.stripe_gateway import stripe_gateway
from middleware import is_admin, require_auth
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class ReconcileRequest(BaseModel):
    """Reconcile the caller, or another user (admins only)."""
    uid: Optional[str] = None


class VerifySessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


@router.post("/reconcile")
async def reconcile_entitlement(request: Request, body: Optional[ReconcileRequest] = None):
    """
    Reconcile the PRO entitlement from Stripe's current state.

    Same logic as the scheduled sweep, for one user.
    """
    user = await require_auth(request)
    caller_uid = user.get("uid")
    target_uid = (body.uid if body and body.uid else caller_uid)

    if target_uid != caller_uid and not await is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can reconcile another user"
        )

    if not stripe_gateway.is_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing not configured"
        )

    try:
        record = await reconcile_user(target_uid, actor_id=caller_uid)
    except UserNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except MissingCustomerError as e:
        raise HTTPException(status_code=status.HTTP_412_PRECONDITION_FAILED, detail=str(e))
    except stripe.StripeError as e:
        logger.error(f"Manual reconciliation failed for {target_uid}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Stripe request failed"
        )

    entitlement = record.model_dump(mode="json")
    entitlement["plan"] = plan_registry.alias_for(record.plan_id)
    return {"success": True, "entitlement": entitlement}


@router.post("/verify-session")
async def verify_session(request: Request, body: VerifySessionRequest):
    """
    Verify a Stripe Checkout session right after the redirect back from Stripe.

    Persists PRO when the session is paid and its subscription entitles; the
    webhook may not have arrived yet.
    """
    user = await require_auth(request)
    uid = user.get("uid")

    if not stripe_gateway.is_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing not configured"
        )

    try:
        result = await verify_checkout_session(uid, body.session_id.strip())
    except SessionOwnershipError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This checkout session is not linked to your account"
        )
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except stripe.StripeError as e:
        logger.error(f"Checkout session verification failed for {uid}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Stripe request failed"
        )

    record = result.pop("entitlement", None)
    if record is not None:
        entitlement = record.model_dump(mode="json")
        entitlement["plan"] = plan_registry.alias_for(record.plan_id)
        result["entitlement"] = entitlement
    return result


@router.get("/entitlement")
async def get_entitlement(request: Request):
    """Get the caller's stored PRO entitlement."""
    user = await require_auth(request)
    doc = await entitlement_persister.get_entitlement(user.get("uid"))

    pro = doc.get("pro") or {}
    return {
        "uid": user.get("uid"),
        "is_pro": bool(doc.get("is_pro")),
        "status": pro.get("status", "unknown"),
        "plan_id": pro.get("plan_id"),
        "plan": plan_registry.alias_for(pro.get("plan_id")),
        "current_period_end": pro.get("current_period_end"),
        "cancel_at_period_end": bool(pro.get("cancel_at_period_end")),
        "pro_since": doc.get("pro_since"),
        "last_processed_at": pro.get("last_processed_at"),
    }
