"""Stripe Webhook Service - verified delivery -> exactly-once entitlement update.

Pipeline per delivery:
1. Verify signature (400 on failure, nothing else runs)
2. Claim the event in the idempotency ledger (duplicate -> 200, no-op)
3. Route to a fresh subscription snapshot + identity hints
4. Resolve the uid
5. Compute the entitlement (refund/dispute force inactive)
6. Persist to the users document and mirror into auth claims
7. Close the ledger marker with an audit copy of the result

Key Principles:
1. Idempotency: the atomic claim is the only concurrency control
2. Fresh state: subscriptions are always re-fetched, so order does not matter
3. Data-quality gaps (no subscription, no uid) are dropped, not retried
4. Transient failures after the claim mark the event FAILED and return 500;
   the marker stands and the reconciliation sweep closes the gap
"""
import asyncio
import os
import logging
from typing import Any, Dict, Optional, Tuple

import stripe

from models import AuditAction, BillingEvent, StripeEventStatus, UserRole
from services import entitlement_calculator, entitlement_persister, event_router, identity_resolver
from services import idempotency_ledger as ledger
from services.event_router import RouteOutcome
from services.plan_registry import PlanRegistry, plan_registry
from services.stripe_gateway import StripeGateway, stripe_gateway
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_TIMEOUT_SECONDS = 20.0
MARK_FAILED_TIMEOUT_SECONDS = 5.0


def _pipeline_timeout() -> float:
    try:
        return float(os.getenv("WEBHOOK_PIPELINE_TIMEOUT_SECONDS", DEFAULT_PIPELINE_TIMEOUT_SECONDS))
    except ValueError:
        return DEFAULT_PIPELINE_TIMEOUT_SECONDS


WebhookResult = Tuple[int, str, Optional[Dict[str, Any]]]


class StripeWebhookService:
    """Handles Stripe webhooks for the PRO entitlement."""

    def __init__(self, gateway: StripeGateway = stripe_gateway, registry: PlanRegistry = plan_registry):
        self.gateway = gateway
        self.registry = registry

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Main webhook entry point.

        Returns:
            (http_status, message, details)
        """
        if not self.gateway.webhook_configured():
            logger.error("Stripe webhook received but STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET not configured")
            return 503, "Billing not configured", None

        if not signature:
            logger.warning("Stripe webhook rejected: missing Stripe-Signature header")
            return 400, "Missing signature", None

        try:
            raw_event = self.gateway.construct_event(payload, signature)
            event = BillingEvent.from_stripe(raw_event)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s (check STRIPE_WEBHOOK_SECRET vs Stripe key mode)", e)
            return 400, "Invalid signature", {"error": str(e)}
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Webhook parse error: %s", e)
            return 400, "Invalid payload", {"error": str(e)}

        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s",
            event.id, event.type, event.livemode,
        )

        claimed = False

        async def _gated() -> WebhookResult:
            nonlocal claimed
            try:
                claim = await ledger.claim(event)
            except Exception as e:
                logger.error("WEBHOOK_CLAIM_FAILED event_id=%s error=%s", event.id, e)
                return 500, "Ledger unavailable", {"event_id": event.id}
            if not claim.acquired:
                return 200, "Already processed", {"event_id": event.id}
            claimed = True
            return await self._process_claimed(event)

        timeout = _pipeline_timeout()
        try:
            return await asyncio.wait_for(_gated(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(
                "WEBHOOK_PROCESSING_TIMEOUT event_id=%s event_type=%s timeout=%ss",
                event.id, event.type, timeout,
            )
            if claimed:
                try:
                    await asyncio.wait_for(
                        self._mark_failed(event, f"pipeline timeout after {timeout}s"),
                        timeout=MARK_FAILED_TIMEOUT_SECONDS,
                    )
                except asyncio.TimeoutError:
                    logger.error("WEBHOOK_MARK_FAILED_TIMEOUT event_id=%s", event.id)
            return 500, "Processing timed out", {"event_id": event.id}

    async def _process_claimed(self, event: BillingEvent) -> WebhookResult:
        try:
            return await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s",
                event.id, event.type, str(e),
            )
            await self._mark_failed(event, str(e))
            return 500, "Processing failed", {"event_id": event.id, "error": str(e)}

    async def _mark_failed(self, event: BillingEvent, error: str) -> None:
        try:
            await ledger.fail(event.id, error)
        except Exception as e:
            logger.error("Could not mark stripe event %s FAILED: %s", event.id, e)
        await create_audit_log(
            action=AuditAction.STRIPE_EVENT_FAILED,
            actor_role=UserRole.ROLE_SYSTEM,
            resource_type="stripe_event",
            resource_id=event.id,
            metadata={"event_type": event.type, "error": error[:500]},
        )

    async def _drop(self, event: BillingEvent, reason_code: str, details: Dict[str, Any]) -> WebhookResult:
        await ledger.complete(event.id, StripeEventStatus.DROPPED, reason_code.lower(), details)
        await create_audit_log(
            action=AuditAction.STRIPE_EVENT_DROPPED,
            actor_role=UserRole.ROLE_SYSTEM,
            uid=details.get("uid"),
            resource_type="stripe_event",
            resource_id=event.id,
            metadata={"event_type": event.type, **details},
            reason_code=reason_code,
        )
        return 200, "Dropped", {"event_id": event.id, "reason": reason_code}

    async def _handle_event(self, event: BillingEvent) -> WebhookResult:
        routed = await event_router.route(event, self.gateway)

        if routed.outcome == RouteOutcome.UNHANDLED:
            await ledger.complete(event.id, StripeEventStatus.IGNORED, "unhandled_event_type")
            return 200, "Ignored", {"event_id": event.id, "event_type": event.type}

        if routed.outcome == RouteOutcome.NO_SUBSCRIPTION:
            logger.warning(
                "WEBHOOK_NO_SUBSCRIPTION event_id=%s event_type=%s related=%s",
                event.id, event.type, routed.related,
            )
            return await self._drop(event, "NO_SUBSCRIPTION", dict(routed.related))

        snapshot = routed.snapshot
        resolution = await identity_resolver.resolve(snapshot, routed.hints, self.gateway)
        if resolution is None:
            logger.warning(
                "WEBHOOK_UID_UNRESOLVED event_id=%s event_type=%s subscription_id=%s customer_id=%s",
                event.id, event.type, snapshot.subscription_id, snapshot.customer_id,
            )
            return await self._drop(event, "UID_UNRESOLVED", {
                "subscription_id": snapshot.subscription_id,
                "customer_id": snapshot.customer_id,
            })

        uid = resolution.uid
        if entitlement_calculator.has_unrecognized_plan(snapshot, self.registry):
            logger.warning(
                "STRIPE_UNKNOWN_PRICE event_id=%s uid=%s subscription_id=%s price_ids=%s",
                event.id, uid, snapshot.subscription_id, snapshot.price_ids,
            )
            await create_audit_log(
                action=AuditAction.STRIPE_UNKNOWN_PRICE,
                actor_role=UserRole.ROLE_SYSTEM,
                uid=uid,
                resource_type="subscription",
                resource_id=snapshot.subscription_id,
                metadata={"event_id": event.id, "price_ids": snapshot.price_ids},
            )

        record = entitlement_calculator.compute(snapshot, event.type, self.registry).for_user(
            uid, event.id, event.type,
        )
        claims_synced = await entitlement_persister.persist(uid, record)

        details = {
            "uid": uid,
            "uid_source": resolution.source,
            "subscription_id": record.subscription_id,
            "customer_id": record.customer_id,
            "is_pro": record.is_pro,
            "plan_id": record.plan_id,
            "subscription_status": record.status,
            "claims_synced": claims_synced,
        }
        await ledger.complete(event.id, StripeEventStatus.PROCESSED, "processed", details)
        await create_audit_log(
            action=AuditAction.STRIPE_EVENT_PROCESSED,
            actor_role=UserRole.ROLE_SYSTEM,
            uid=uid,
            resource_type="stripe_event",
            resource_id=event.id,
            metadata={"event_type": event.type, **details},
        )
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s uid=%s is_pro=%s status=%s",
            event.id, event.type, uid, record.is_pro, record.status,
        )
        return 200, "Processed", {"event_id": event.id, **details}


# Singleton instance
stripe_webhook_service = StripeWebhookService()
