"""Entitlement Calculator - subscription snapshot -> PRO entitlement.

Pure and deterministic: no I/O, no clock, never raises. Everything that
persists, logs or audits the result lives in the callers.

Rules:
- Downgrade statuses (past_due, unpaid, canceled, incomplete_expired, paused) -> not PRO
- Missing status -> not PRO
- Any other status -> PRO only if the plan is on the allow-list
- Refund / dispute events -> not PRO whatever the subscription says
"""
from typing import Optional

from models import BillingEventType, EntitlementRecord, SubscriptionSnapshot
from services.plan_registry import PlanRegistry, plan_registry

PRO_DOWNGRADE_STATUSES = frozenset({
    "past_due",
    "unpaid",
    "canceled",
    "incomplete_expired",
    "paused",
})

FORCE_INACTIVE_EVENTS = frozenset({
    BillingEventType.CHARGE_REFUNDED.value,
    BillingEventType.CHARGE_DISPUTE_CREATED.value,
})


def normalize_status(status: Optional[str]) -> str:
    if not isinstance(status, str) or not status.strip():
        return "unknown"
    return status.strip().lower()


def is_downgrade_status(status: Optional[str]) -> bool:
    normalized = normalize_status(status)
    return normalized == "unknown" or normalized in PRO_DOWNGRADE_STATUSES


def is_force_inactive_event(event_type: Optional[str]) -> bool:
    if isinstance(event_type, BillingEventType):
        event_type = event_type.value
    return event_type in FORCE_INACTIVE_EVENTS


def compute(
    snapshot: SubscriptionSnapshot,
    event_type: Optional[str],
    registry: PlanRegistry = plan_registry,
) -> EntitlementRecord:
    """Derive the entitlement for one snapshot.

    ``status`` always reflects the fetched subscription; only ``is_pro`` is
    overridden for force-inactive events. ``plan_id`` is None unless the
    subscription's plan is allow-listed.
    """
    status = normalize_status(snapshot.status)
    plan_id = _allowed_plan_id(snapshot, registry)

    is_pro = not is_downgrade_status(status) and plan_id is not None
    if is_force_inactive_event(event_type):
        is_pro = False

    return EntitlementRecord(
        is_pro=is_pro,
        status=status,
        plan_id=plan_id,
        subscription_id=snapshot.subscription_id,
        customer_id=snapshot.customer_id,
        current_period_end=snapshot.current_period_end,
        cancel_at_period_end=bool(snapshot.cancel_at_period_end),
    )


def revoked(customer_id: Optional[str]) -> EntitlementRecord:
    """Entitlement for a customer that has no subscription at all."""
    return EntitlementRecord(
        is_pro=False,
        status="canceled",
        plan_id=None,
        subscription_id=None,
        customer_id=customer_id,
        current_period_end=None,
        cancel_at_period_end=False,
    )


def _allowed_plan_id(snapshot: SubscriptionSnapshot, registry: PlanRegistry) -> Optional[str]:
    # Aliases are for checkout input; a subscription must carry the real price ID.
    for price_id in (snapshot.plan_id, *snapshot.price_ids):
        if registry.is_allowed(price_id):
            return price_id
    return None


def has_unrecognized_plan(snapshot: SubscriptionSnapshot, registry: PlanRegistry = plan_registry) -> bool:
    """True when the subscription carries prices but none is allow-listed."""
    has_prices = bool(snapshot.plan_id or snapshot.price_ids)
    return has_prices and _allowed_plan_id(snapshot, registry) is None
