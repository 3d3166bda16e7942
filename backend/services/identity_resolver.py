"""Identity Resolver - billing event -> internal uid.

Candidates are tried in strict priority order; the first non-empty value wins:
1. uid carried by the triggering object (session metadata, session
   client_reference_id, invoice metadata, charge metadata)
2. uid metadata already on the subscription
3. stored customer link (no provider round-trip)
4. uid metadata on the Stripe customer (extra fetch, tried last)

A successful resolution links the customer to the uid (monotonic: an existing
link to another uid is never overwritten here) and back-fills the uid onto
the Stripe subscription/customer so later events resolve cheaper.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import AuditAction, CustomerLink, IdentityHints, SubscriptionSnapshot, UserRole
from services.stripe_gateway import StripeGateway, metadata_uid, stripe_gateway
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    uid: str
    source: str


@dataclass
class _Lookup:
    snapshot: SubscriptionSnapshot
    hints: IdentityHints
    gateway: StripeGateway
    customer: Optional[Dict[str, Any]] = None


Strategy = Callable[[_Lookup], Awaitable[Optional[str]]]


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


async def _session_metadata(lookup: _Lookup) -> Optional[str]:
    return lookup.hints.session_metadata_uid


async def _session_client_reference(lookup: _Lookup) -> Optional[str]:
    return lookup.hints.session_client_reference


async def _invoice_metadata(lookup: _Lookup) -> Optional[str]:
    return lookup.hints.invoice_metadata_uid


async def _charge_metadata(lookup: _Lookup) -> Optional[str]:
    return lookup.hints.charge_metadata_uid


async def _subscription_metadata(lookup: _Lookup) -> Optional[str]:
    return lookup.snapshot.metadata_uid


async def _customer_link(lookup: _Lookup) -> Optional[str]:
    if not lookup.snapshot.customer_id:
        return None
    link = await get_customer_link(lookup.snapshot.customer_id)
    return link.uid if link else None


async def _customer_metadata(lookup: _Lookup) -> Optional[str]:
    customer_id = lookup.snapshot.customer_id
    if not customer_id or not lookup.gateway.is_configured():
        return None
    try:
        lookup.customer = await lookup.gateway.retrieve_customer(customer_id)
    except stripe.StripeError as e:
        logger.warning("Could not read Stripe customer %s metadata: %s", customer_id, e)
        return None
    return metadata_uid(lookup.customer)


STRATEGIES: List[Tuple[str, Strategy]] = [
    ("session_metadata", _session_metadata),
    ("session_client_reference", _session_client_reference),
    ("invoice_metadata", _invoice_metadata),
    ("charge_metadata", _charge_metadata),
    ("subscription_metadata", _subscription_metadata),
    ("customer_link", _customer_link),
    ("customer_metadata", _customer_metadata),
]


async def resolve(
    snapshot: SubscriptionSnapshot,
    hints: Optional[IdentityHints] = None,
    gateway: StripeGateway = stripe_gateway,
) -> Optional[Resolution]:
    """Resolve the uid a subscription belongs to, or None (data-quality gap).

    Storage errors while linking propagate; provider errors never do.
    """
    lookup = _Lookup(snapshot=snapshot, hints=hints or IdentityHints(), gateway=gateway)

    resolution = None
    for source, strategy in STRATEGIES:
        uid = _clean(await strategy(lookup))
        if uid:
            resolution = Resolution(uid=uid, source=source)
            break

    if resolution is None:
        logger.warning(
            "Could not resolve uid for subscription=%s customer=%s",
            snapshot.subscription_id, snapshot.customer_id,
        )
        return None

    newly_linked = False
    if snapshot.customer_id:
        newly_linked = await link_customer(snapshot.customer_id, resolution.uid, resolution.source)

    await _backfill_metadata(lookup, resolution, newly_linked)
    return resolution


# =============================================================================
# Customer links
# =============================================================================

async def get_customer_link(customer_id: str) -> Optional[CustomerLink]:
    db = database.get_db()
    doc = await db.customer_links.find_one({"customer_id": customer_id}, {"_id": 0})
    return CustomerLink(**doc) if doc else None


async def link_customer(customer_id: str, uid: str, source: str) -> bool:
    """Create the customer -> uid link if absent. Returns True when it was created.

    An existing link to a different uid is left as is (only relink_customer
    may change it); the conflict is logged and audited.
    """
    db = database.get_db()
    now = datetime.now(timezone.utc)
    try:
        existing = await db.customer_links.find_one_and_update(
            {"customer_id": customer_id},
            {"$setOnInsert": {
                "customer_id": customer_id,
                "uid": uid,
                "source": source,
                "linked_at": now,
                "updated_at": now,
            }},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.BEFORE,
        )
    except DuplicateKeyError:
        # Lost a concurrent upsert race; the winner's link is the existing one.
        existing = await db.customer_links.find_one({"customer_id": customer_id}, {"_id": 0})

    if existing is None:
        logger.info("CUSTOMER_LINKED customer_id=%s uid=%s source=%s", customer_id, uid, source)
        await create_audit_log(
            action=AuditAction.CUSTOMER_LINK_CREATED,
            actor_role=UserRole.ROLE_SYSTEM,
            uid=uid,
            resource_type="customer_link",
            resource_id=customer_id,
            metadata={"source": source},
        )
        return True

    if existing.get("uid") != uid:
        logger.warning(
            "CUSTOMER_LINK_CONFLICT customer_id=%s linked_uid=%s resolved_uid=%s source=%s",
            customer_id, existing.get("uid"), uid, source,
        )
        await create_audit_log(
            action=AuditAction.CUSTOMER_LINK_CONFLICT,
            actor_role=UserRole.ROLE_SYSTEM,
            uid=uid,
            resource_type="customer_link",
            resource_id=customer_id,
            metadata={"linked_uid": existing.get("uid"), "resolved_uid": uid, "source": source},
            reason_code="LINK_UID_MISMATCH",
        )
    return False


async def relink_customer(customer_id: str, uid: str, actor_id: str, reason: Optional[str] = None) -> CustomerLink:
    """Administrative override: point a customer at another uid."""
    db = database.get_db()
    before = await db.customer_links.find_one({"customer_id": customer_id}, {"_id": 0})
    now = datetime.now(timezone.utc)

    await db.customer_links.update_one(
        {"customer_id": customer_id},
        {
            "$set": {"uid": uid, "source": "admin", "updated_at": now},
            "$setOnInsert": {"customer_id": customer_id, "linked_at": now},
        },
        upsert=True,
    )
    after = await db.customer_links.find_one({"customer_id": customer_id}, {"_id": 0})

    # The sweep walks users.stripe_customer_id, so ownership moves with the link.
    previous_uid = (before or {}).get("uid")
    if previous_uid and previous_uid != uid:
        await db.users.update_one(
            {"uid": previous_uid, "stripe_customer_id": customer_id},
            {"$unset": {"stripe_customer_id": ""}},
        )
    await db.users.update_one({"uid": uid}, {"$set": {"stripe_customer_id": customer_id}}, upsert=True)

    logger.info(
        "CUSTOMER_LINK_REASSIGNED customer_id=%s from=%s to=%s by=%s",
        customer_id, (before or {}).get("uid"), uid, actor_id,
    )
    await create_audit_log(
        action=AuditAction.CUSTOMER_LINK_REASSIGNED,
        actor_role=UserRole.ROLE_ADMIN,
        actor_id=actor_id,
        uid=uid,
        resource_type="customer_link",
        resource_id=customer_id,
        before_state=_audit_view(before),
        after_state=_audit_view(after),
        metadata={"reason": reason} if reason else None,
    )
    return CustomerLink(**after)


def _audit_view(link: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not link:
        return None
    return {"uid": link.get("uid"), "source": link.get("source")}


# =============================================================================
# Metadata back-fill (best effort)
# =============================================================================

async def _backfill_metadata(lookup: _Lookup, resolution: Resolution, newly_linked: bool) -> None:
    snapshot = lookup.snapshot
    gateway = lookup.gateway
    if not gateway.is_configured():
        return

    if snapshot.subscription_id and snapshot.metadata_uid != resolution.uid:
        try:
            await gateway.update_subscription_metadata(snapshot.subscription_id, {"uid": resolution.uid})
        except stripe.StripeError as e:
            logger.warning("Could not back-fill uid on subscription %s: %s", snapshot.subscription_id, e)

    # Customer metadata is written once per link, or when a fetch showed it missing.
    customer_missing_uid = lookup.customer is not None and metadata_uid(lookup.customer) != resolution.uid
    if snapshot.customer_id and resolution.source != "customer_metadata" and (newly_linked or customer_missing_uid):
        try:
            await gateway.update_customer_metadata(snapshot.customer_id, {"uid": resolution.uid})
        except stripe.StripeError as e:
            logger.warning("Could not back-fill uid on customer %s: %s", snapshot.customer_id, e)
