"""Entitlement reconciliation - re-derive PRO from Stripe, independent of webhooks.

Closes every gap the webhook path can leave behind (missed deliveries,
timeouts after the claim, FAILED events): for each customer, list its
subscriptions at Stripe, take the one with the latest period end and run the
same compute + persist as the webhook path. A customer with no subscription
at all is revoked.

Per-customer failures are isolated and reported; the next run retries them.
"""
from __future__ import annotations

import asyncio
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database import database
from models import RECONCILE_EVENT_TYPE, VERIFY_SESSION_EVENT_TYPE, AuditAction, EntitlementRecord, UserRole
from services import entitlement_calculator, entitlement_persister, identity_resolver
from services.plan_registry import PlanRegistry, plan_registry
from services.stripe_gateway import (
    StripeGateway,
    metadata_uid,
    reference_id,
    stripe_gateway,
    subscription_period_end,
    to_snapshot,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
DEFAULT_CONCURRENCY = 5


class ReconciliationError(Exception):
    """Reconciliation cannot run for the requested user or checkout session."""


class UserNotFoundError(ReconciliationError):
    pass


class MissingCustomerError(ReconciliationError):
    pass


class SessionNotFoundError(ReconciliationError):
    pass


class SessionOwnershipError(ReconciliationError):
    """Checkout session belongs to another user."""


def _env_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, default))
    except ValueError:
        return default
    return value if value > 0 else default


def _latest_subscription(subscriptions: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not subscriptions:
        return None
    return max(subscriptions, key=lambda sub: subscription_period_end(sub) or 0)


async def reconcile_customer(
    uid: str,
    customer_id: str,
    reason: str = "sweep",
    gateway: StripeGateway = stripe_gateway,
    registry: PlanRegistry = plan_registry,
) -> EntitlementRecord:
    """Recompute and persist one customer's entitlement. Stripe/storage errors propagate."""
    subscriptions = await gateway.list_subscriptions(customer_id)
    subscription = _latest_subscription(subscriptions)

    if subscription is None:
        computed = entitlement_calculator.revoked(customer_id)
    else:
        computed = entitlement_calculator.compute(to_snapshot(subscription, registry), RECONCILE_EVENT_TYPE, registry)

    now = datetime.now(timezone.utc)
    event_id = f"{RECONCILE_EVENT_TYPE}-{customer_id}-{int(now.timestamp() * 1000)}"
    record = computed.for_user(uid, event_id, RECONCILE_EVENT_TYPE)
    await entitlement_persister.persist(uid, record)

    db = database.get_db()
    await db.customer_links.update_one(
        {"customer_id": customer_id, "uid": uid},
        {"$set": {"last_reconciled_at": now}},
    )

    logger.info(
        "RECONCILE_CUSTOMER_OK uid=%s customer_id=%s reason=%s subscriptions=%s is_pro=%s status=%s",
        uid, customer_id, reason, len(subscriptions), record.is_pro, record.status,
    )
    return record


async def reconcile_user(
    uid: str,
    actor_id: Optional[str] = None,
    gateway: StripeGateway = stripe_gateway,
    registry: PlanRegistry = plan_registry,
) -> EntitlementRecord:
    """Manual trigger: same logic as the sweep, for one user."""
    db = database.get_db()
    user = await db.users.find_one({"uid": uid}, {"_id": 0, "uid": 1, "stripe_customer_id": 1})
    customer_id = ((user or {}).get("stripe_customer_id") or "").strip()
    if not customer_id:
        # Linked but never persisted (first event failed after the link was written)
        link = await db.customer_links.find_one(
            {"uid": uid}, {"_id": 0, "customer_id": 1}, sort=[("linked_at", -1)],
        )
        customer_id = (link or {}).get("customer_id") or ""
    if not user and not customer_id:
        raise UserNotFoundError(f"User {uid} not found")
    if not customer_id:
        raise MissingCustomerError(f"User {uid} has no Stripe customer")

    record = await reconcile_customer(uid, customer_id, reason="manual", gateway=gateway, registry=registry)
    await create_audit_log(
        action=AuditAction.MANUAL_RECONCILIATION,
        actor_role=UserRole.ROLE_ADMIN if actor_id and actor_id != uid else UserRole.ROLE_USER,
        actor_id=actor_id,
        uid=uid,
        resource_type="user",
        resource_id=uid,
        metadata={"customer_id": customer_id, "is_pro": record.is_pro, "status": record.status},
    )
    return record


async def run_reconciliation_sweep(
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
    gateway: StripeGateway = stripe_gateway,
    registry: PlanRegistry = plan_registry,
) -> Dict[str, Any]:
    """
    Reconcile a bounded batch of linked customers.

    Works from the customer -> uid links, which are written before anything
    is persisted for the user. Links never reconciled go first, then the
    longest ago, so successive runs rotate through every customer.
    """
    if not gateway.is_configured():
        logger.warning("Reconciliation sweep skipped: Stripe is not configured")
        return {"message": "Stripe not configured - sweep skipped", "count": 0, "succeeded": 0, "failed": []}

    batch_size = batch_size or _env_int("RECONCILE_BATCH_SIZE", DEFAULT_BATCH_SIZE)
    concurrency = concurrency or _env_int("RECONCILE_CONCURRENCY", DEFAULT_CONCURRENCY)

    db = database.get_db()
    cursor = db.customer_links.find(
        {"uid": {"$nin": [None, ""]}},
        {"_id": 0, "uid": 1, "customer_id": 1},
    ).sort("last_reconciled_at", 1).limit(batch_size)
    links = await cursor.to_list(length=batch_size)

    semaphore = asyncio.Semaphore(concurrency)
    failed: List[Dict[str, Any]] = []

    async def _one(link: Dict[str, Any]) -> bool:
        uid = link.get("uid")
        customer_id = link.get("customer_id")
        async with semaphore:
            try:
                await reconcile_customer(uid, customer_id, reason="sweep", gateway=gateway, registry=registry)
                return True
            except Exception as e:
                logger.error("RECONCILE_CUSTOMER_FAILED uid=%s customer_id=%s error=%s", uid, customer_id, e)
                failed.append({"uid": uid, "customer_id": customer_id, "error": str(e)[:500]})
                await create_audit_log(
                    action=AuditAction.RECONCILIATION_FAILED,
                    actor_role=UserRole.ROLE_SYSTEM,
                    uid=uid,
                    resource_type="user",
                    resource_id=uid,
                    metadata={"customer_id": customer_id, "error": str(e)[:500]},
                )
                return False

    results = await asyncio.gather(*(_one(link) for link in links))
    succeeded = sum(1 for ok in results if ok)

    summary = {
        "message": f"Reconciled {succeeded}/{len(links)} customers",
        "count": len(links),
        "succeeded": succeeded,
        "failed": failed,
    }
    logger.info("RECONCILE_SWEEP_COMPLETED count=%s succeeded=%s failed=%s", len(links), succeeded, len(failed))
    await create_audit_log(
        action=AuditAction.RECONCILIATION_SWEEP_COMPLETED,
        actor_role=UserRole.ROLE_SYSTEM,
        resource_type="reconciliation_sweep",
        metadata={"count": len(links), "succeeded": succeeded, "failed": len(failed)},
    )
    return summary


async def verify_checkout_session(
    uid: str,
    session_id: str,
    gateway: StripeGateway = stripe_gateway,
    registry: PlanRegistry = plan_registry,
) -> Dict[str, Any]:
    """
    Post-checkout verification for the signed-in user.

    The caller must own the session (client_reference_id, session metadata or
    customer metadata). An unpaid session or one without a subscription is
    reported, not persisted; a subscription that does not entitle is reported
    as not_entitled and left to the webhook and the sweep.
    """
    session = await gateway.retrieve_checkout_session(session_id)
    if not session:
        raise SessionNotFoundError(f"Checkout session {session_id} not found")

    customer_id = reference_id(session.get("customer"))
    customer = await gateway.retrieve_customer(customer_id) if customer_id else None
    owners = {
        (session.get("client_reference_id") or "").strip() or None,
        metadata_uid(session),
        metadata_uid(customer),
    }
    if uid not in owners:
        logger.warning("VERIFY_SESSION_FORBIDDEN uid=%s session=%s", uid, session_id)
        raise SessionOwnershipError(f"Checkout session {session_id} does not belong to {uid}")

    payment_status = session.get("payment_status")
    session_status = session.get("status")
    if payment_status != "paid" and session_status != "complete":
        logger.info(
            "VERIFY_SESSION uid=%s session=%s entitled=False reason=session_not_paid payment_status=%s status=%s",
            uid, session_id, payment_status, session_status,
        )
        return {
            "entitled": False,
            "reason": "session_not_paid",
            "payment_status": payment_status or "unknown",
            "status": session_status or "unknown",
        }

    subscription_id = reference_id(session.get("subscription"))
    subscription = await gateway.retrieve_subscription(subscription_id) if subscription_id else None
    if not subscription:
        logger.info("VERIFY_SESSION uid=%s session=%s entitled=False reason=subscription_missing", uid, session_id)
        return {"entitled": False, "reason": "subscription_missing"}

    snapshot = to_snapshot(subscription, registry)
    computed = entitlement_calculator.compute(snapshot, VERIFY_SESSION_EVENT_TYPE, registry)
    if not computed.is_pro:
        logger.info(
            "VERIFY_SESSION uid=%s session=%s entitled=False reason=not_entitled status=%s",
            uid, session_id, computed.status,
        )
        return {"entitled": False, "reason": "not_entitled", "status": computed.status}

    # Link first so the sweep reaches this customer even if the write below fails.
    if snapshot.customer_id:
        await identity_resolver.link_customer(snapshot.customer_id, uid, "verified_session")

    event_id = f"verify-{session_id}-{int(datetime.now(timezone.utc).timestamp() * 1000)}"
    record = computed.for_user(uid, event_id, VERIFY_SESSION_EVENT_TYPE)
    await entitlement_persister.persist(uid, record)

    logger.info("VERIFY_SESSION uid=%s session=%s entitled=True plan_id=%s", uid, session_id, record.plan_id)
    await create_audit_log(
        action=AuditAction.CHECKOUT_SESSION_VERIFIED,
        actor_role=UserRole.ROLE_USER,
        actor_id=uid,
        uid=uid,
        resource_type="checkout_session",
        resource_id=session_id,
        metadata={"customer_id": snapshot.customer_id, "subscription_id": snapshot.subscription_id, "plan_id": record.plan_id},
    )
    return {"entitled": True, "entitlement": record}
