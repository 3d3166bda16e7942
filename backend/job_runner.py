"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" (and optionally "count") for the admin UI.
"""
import os
import logging

logger = logging.getLogger(__name__)


async def run_entitlement_reconciliation(batch_size=None, concurrency=None):
    try:
        from services.reconciliation_service import run_reconciliation_sweep
        summary = await run_reconciliation_sweep(batch_size=batch_size, concurrency=concurrency)
        logger.info(f"Entitlement reconciliation job completed: {summary['message']}")
        return summary
    except Exception as e:
        logger.error(f"Entitlement reconciliation job failed: {e}")
        raise


async def run_stripe_event_prune(retention_days=None):
    try:
        from services import idempotency_ledger
        from models import AuditAction, UserRole
        from utils.audit import create_audit_log

        days = retention_days or int(os.getenv("STRIPE_EVENT_RETENTION_DAYS", idempotency_ledger.DEFAULT_RETENTION_DAYS))
        count = await idempotency_ledger.prune(days)
        await create_audit_log(
            action=AuditAction.STRIPE_EVENTS_PRUNED,
            actor_role=UserRole.ROLE_SYSTEM,
            resource_type="stripe_events",
            metadata={"deleted": count, "retention_days": days},
        )
        logger.info(f"Stripe event prune job completed: {count} markers removed")
        return {"message": f"Stripe event markers pruned: {count}", "count": count}
    except Exception as e:
        logger.error(f"Stripe event prune job failed: {e}")
        raise
