"""State Persister - EntitlementRecord -> users document + auth claims.

The users write is a merge: only the entitlement projection is touched.
Re-persisting the same record changes nothing but pro.last_processed_at
(pro_since keeps its first value through $min). The claims mirror runs
afterwards and is best-effort.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from database import database
from models import AuditAction, EntitlementRecord, UserRole
from services import auth_claims
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def build_user_update(record: EntitlementRecord) -> Dict[str, Any]:
    """Mongo update document for one entitlement record."""
    fields = {
        "is_pro": record.is_pro,
        "stripe_subscription_id": record.subscription_id,
        "pro": {
            "status": record.status,
            "plan_id": record.plan_id,
            "subscription_id": record.subscription_id,
            "current_period_end": record.current_period_end,
            "cancel_at_period_end": record.cancel_at_period_end,
            "last_event_id": record.last_processed_event_id,
            "last_event_type": record.last_processed_event_type,
            "last_processed_at": record.last_processed_at or datetime.now(timezone.utc),
        },
    }
    # A revocation-by-absence carries no subscription but must keep the customer id.
    if record.customer_id:
        fields["stripe_customer_id"] = record.customer_id

    update: Dict[str, Any] = {"$set": fields}
    if record.is_pro:
        update["$min"] = {"pro_since": fields["pro"]["last_processed_at"]}
    else:
        update["$unset"] = {"pro_since": ""}
    return update


async def persist(uid: str, record: EntitlementRecord) -> bool:
    """Write the entitlement, then mirror is_pro into the auth claims.

    Storage errors propagate. Returns whether the claims mirror succeeded.
    """
    db = database.get_db()
    await db.users.update_one({"uid": uid}, build_user_update(record), upsert=True)
    logger.info(
        "ENTITLEMENT_PERSISTED uid=%s is_pro=%s status=%s plan_id=%s event_id=%s",
        uid, record.is_pro, record.status, record.plan_id, record.last_processed_event_id,
    )

    try:
        await auth_claims.sync_pro_claim(uid, record.is_pro)
        return True
    except Exception as e:
        # Claims lag behind the document until the next sync; not an error for the caller.
        logger.warning("PRO_CLAIM_SYNC_FAILED uid=%s is_pro=%s error=%s", uid, record.is_pro, e)
        await create_audit_log(
            action=AuditAction.PRO_CLAIM_SYNC_FAILED,
            actor_role=UserRole.ROLE_SYSTEM,
            uid=uid,
            resource_type="user",
            resource_id=uid,
            metadata={"is_pro": record.is_pro, "error": str(e)[:500]},
        )
        return False


async def get_entitlement(uid: str) -> Dict[str, Any]:
    """Stored projection for a user ({} when the user is unknown)."""
    db = database.get_db()
    doc = await db.users.find_one(
        {"uid": uid},
        {"_id": 0, "uid": 1, "is_pro": 1, "pro": 1, "pro_since": 1, "stripe_customer_id": 1},
    )
    return doc or {}
