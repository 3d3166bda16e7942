"""Stripe event idempotency ledger (stripe_events collection).

One marker per Stripe event id. The marker is created with insert_one against a
unique index on event_id, so exactly one concurrent delivery wins the claim;
every other delivery sees DuplicateKeyError and must skip all processing.
Markers are never removed by processing. They carry the outcome of the run as
an audit copy and are pruned only by age.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from database import database
from models import BillingEvent, StripeEventStatus

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 180


@dataclass(frozen=True)
class ClaimResult:
    acquired: bool
    event_id: str


async def claim(event: BillingEvent) -> ClaimResult:
    """Atomically create the marker. Storage errors other than a duplicate propagate."""
    db = database.get_db()
    marker = {
        "event_id": event.id,
        "type": event.type,
        "livemode": event.livemode,
        "event_created": event.occurred_at,
        "claimed_at": datetime.now(timezone.utc),
        "status": StripeEventStatus.PROCESSING.value,
        "outcome": None,
        "error": None,
    }
    try:
        await db.stripe_events.insert_one(marker)
    except DuplicateKeyError:
        logger.info("WEBHOOK_DUPLICATE event_id=%s event_type=%s - already claimed", event.id, event.type)
        return ClaimResult(acquired=False, event_id=event.id)
    return ClaimResult(acquired=True, event_id=event.id)


async def complete(
    event_id: str,
    status: StripeEventStatus,
    outcome: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Record how a claimed event ended, with an audit copy of the result."""
    db = database.get_db()
    update = {
        "status": status.value,
        "outcome": outcome,
        "processed_at": datetime.now(timezone.utc),
    }
    if details:
        update.update(details)
    await db.stripe_events.update_one({"event_id": event_id}, {"$set": update})


async def fail(event_id: str, error: str) -> None:
    """Mark a claimed event FAILED. The marker stands: redeliveries stay no-ops."""
    db = database.get_db()
    await db.stripe_events.update_one(
        {"event_id": event_id},
        {
            "$set": {
                "status": StripeEventStatus.FAILED.value,
                "outcome": "failed",
                "error": error[:1000],
                "processed_at": datetime.now(timezone.utc),
            }
        },
    )


async def get(event_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})


async def prune(retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
    """Delete markers older than the retention window. Returns the number removed."""
    if retention_days <= 0:
        raise ValueError("retention_days must be positive")
    db = database.get_db()
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    result = await db.stripe_events.delete_many({"claimed_at": {"$lt": cutoff}})
    logger.info("Pruned %s stripe_events markers older than %s days", result.deleted_count, retention_days)
    return result.deleted_count
