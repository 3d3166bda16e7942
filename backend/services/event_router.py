"""Event Router - verified Stripe event -> fresh subscription snapshot + identity hints.

Every handled event type resolves to the subscription it concerns, fetched
fresh from Stripe (inline payloads can be partial or stale, and deliveries
arrive out of order). The dispatch table covers every BillingEventType member;
the module refuses to import if one is missing.

Events Handled:
- customer.subscription.created / updated / deleted
- checkout.session.completed  (session -> subscription)
- invoice.paid / invoice.payment_succeeded / invoice.payment_failed  (invoice -> subscription)
- charge.refunded / charge.dispute.created  (charge -> invoice -> subscription, force inactive)
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from models import BillingEvent, BillingEventType, IdentityHints, SubscriptionSnapshot
from services.entitlement_calculator import is_force_inactive_event
from services.stripe_gateway import (
    StripeGateway,
    invoice_subscription_id,
    metadata_uid,
    reference_id,
    stripe_gateway,
    to_snapshot,
)

logger = logging.getLogger(__name__)


class RouteOutcome(str, Enum):
    RESOLVED = "resolved"
    NO_SUBSCRIPTION = "no_subscription"
    UNHANDLED = "unhandled"


@dataclass(frozen=True)
class RoutedEvent:
    outcome: RouteOutcome
    snapshot: Optional[SubscriptionSnapshot] = None
    hints: IdentityHints = field(default_factory=IdentityHints)
    force_inactive: bool = False
    related: Dict[str, Optional[str]] = field(default_factory=dict)


Handler = Callable[[BillingEvent, StripeGateway], Awaitable[RoutedEvent]]


async def _with_subscription(
    event: BillingEvent,
    gateway: StripeGateway,
    subscription_id: Optional[str],
    hints: IdentityHints,
    related: Dict[str, Optional[str]],
) -> RoutedEvent:
    force_inactive = is_force_inactive_event(event.type)
    subscription = await gateway.retrieve_subscription(subscription_id) if subscription_id else None
    if not subscription:
        return RoutedEvent(
            outcome=RouteOutcome.NO_SUBSCRIPTION,
            hints=hints,
            force_inactive=force_inactive,
            related={**related, "subscription_id": subscription_id},
        )
    return RoutedEvent(
        outcome=RouteOutcome.RESOLVED,
        snapshot=to_snapshot(subscription),
        hints=hints,
        force_inactive=force_inactive,
        related={**related, "subscription_id": subscription.get("id")},
    )


async def _route_subscription_change(event: BillingEvent, gateway: StripeGateway) -> RoutedEvent:
    inline = event.payload
    subscription_id = inline.get("id")
    if not reference_id(inline.get("customer")) or not metadata_uid(inline):
        logger.info("Subscription %s payload lacks customer/uid metadata - re-fetching", subscription_id)
    # Re-fetched regardless so an out-of-order delivery converges on current state.
    return await _with_subscription(event, gateway, subscription_id, IdentityHints(), {})


async def _route_checkout_completed(event: BillingEvent, gateway: StripeGateway) -> RoutedEvent:
    session_id = event.payload.get("id")
    session = (await gateway.retrieve_checkout_session(session_id) if session_id else None) or event.payload
    client_reference = session.get("client_reference_id")
    hints = IdentityHints(
        session_metadata_uid=metadata_uid(session),
        session_client_reference=client_reference.strip() if isinstance(client_reference, str) else None,
    )
    return await _with_subscription(
        event,
        gateway,
        reference_id(session.get("subscription")),
        hints,
        {"checkout_session_id": session_id},
    )


async def _route_invoice(event: BillingEvent, gateway: StripeGateway) -> RoutedEvent:
    invoice_id = event.payload.get("id")
    invoice = (await gateway.retrieve_invoice(invoice_id) if invoice_id else None) or event.payload
    hints = IdentityHints(invoice_metadata_uid=metadata_uid(invoice))
    return await _with_subscription(
        event,
        gateway,
        invoice_subscription_id(invoice),
        hints,
        {"invoice_id": invoice_id},
    )


async def _route_charge_chain(
    event: BillingEvent,
    gateway: StripeGateway,
    charge_id: Optional[str],
) -> RoutedEvent:
    charge = await gateway.retrieve_charge(charge_id) if charge_id else None
    if charge is None and event.payload.get("object") == "charge":
        charge = event.payload
    invoice_id = reference_id((charge or {}).get("invoice"))
    invoice = await gateway.retrieve_invoice(invoice_id) if invoice_id else None
    hints = IdentityHints(
        invoice_metadata_uid=metadata_uid(invoice),
        charge_metadata_uid=metadata_uid(charge),
    )
    return await _with_subscription(
        event,
        gateway,
        invoice_subscription_id(invoice),
        hints,
        {"charge_id": charge_id, "invoice_id": invoice_id},
    )


async def _route_charge_refunded(event: BillingEvent, gateway: StripeGateway) -> RoutedEvent:
    return await _route_charge_chain(event, gateway, event.payload.get("id"))


async def _route_dispute_created(event: BillingEvent, gateway: StripeGateway) -> RoutedEvent:
    # The payload of charge.dispute.created is the dispute; the charge hangs off it.
    return await _route_charge_chain(event, gateway, reference_id(event.payload.get("charge")))


_HANDLERS: Dict[BillingEventType, Handler] = {
    BillingEventType.SUBSCRIPTION_CREATED: _route_subscription_change,
    BillingEventType.SUBSCRIPTION_UPDATED: _route_subscription_change,
    BillingEventType.SUBSCRIPTION_DELETED: _route_subscription_change,
    BillingEventType.CHECKOUT_SESSION_COMPLETED: _route_checkout_completed,
    BillingEventType.INVOICE_PAID: _route_invoice,
    BillingEventType.INVOICE_PAYMENT_SUCCEEDED: _route_invoice,
    BillingEventType.INVOICE_PAYMENT_FAILED: _route_invoice,
    BillingEventType.CHARGE_REFUNDED: _route_charge_refunded,
    BillingEventType.CHARGE_DISPUTE_CREATED: _route_dispute_created,
}

_unrouted = set(BillingEventType) - set(_HANDLERS)
if _unrouted:
    raise RuntimeError(f"BillingEventType members without a route: {sorted(t.value for t in _unrouted)}")


async def route(event: BillingEvent, gateway: StripeGateway = stripe_gateway) -> RoutedEvent:
    """Resolve a claimed event. Stripe errors other than missing objects propagate."""
    event_type = event.event_type
    if event_type is None:
        logger.info("Stripe webhook event ignored: event_id=%s event_type=%s", event.id, event.type)
        return RoutedEvent(outcome=RouteOutcome.UNHANDLED)
    return await _HANDLERS[event_type](event, gateway)
