"""Stripe Gateway - the narrow slice of the Stripe API the entitlement core uses.

This service handles:
- Webhook signature verification
- Fresh retrieval of subscriptions, checkout sessions, invoices, charges, customers
- Listing a customer's subscriptions (reconciliation sweep)
- Back-filling uid metadata onto customers and subscriptions

Key Principles:
- The Stripe SDK is synchronous; every call runs in the default executor
- Objects are handed back as plain dicts
- A missing object (resource_missing) is returned as None, not raised: it is a
  data-quality gap that a redelivery cannot fix
- Every other Stripe error propagates (transient, the caller decides)
"""
import asyncio
import os
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import stripe

from models import SubscriptionSnapshot
from services.plan_registry import PlanRegistry, plan_registry

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

SUBSCRIPTION_LIST_LIMIT = 10


def _get_webhook_secret() -> str:
    """STRIPE_WEBHOOK_SECRET if set; else the live/test secret matching the key prefix."""
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (stripe.api_key or "").strip()
    if key.startswith("sk_live_") or key.startswith("rk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_") or key.startswith("rk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


# =============================================================================
# Object helpers
# =============================================================================

def as_dict(obj: Any) -> Optional[Dict[str, Any]]:
    """Plain dict view of a Stripe object (or a dict passed through)."""
    if obj is None:
        return None
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def reference_id(reference: Any) -> Optional[str]:
    """ID of an expandable field: either the ID string or the expanded object."""
    if not reference:
        return None
    if isinstance(reference, str):
        return reference
    if isinstance(reference, dict):
        return reference.get("id")
    return getattr(reference, "id", None)


def metadata_uid(obj: Optional[Dict[str, Any]]) -> Optional[str]:
    if not obj:
        return None
    uid = (obj.get("metadata") or {}).get("uid")
    if isinstance(uid, str) and uid.strip():
        return uid.strip()
    return None


def invoice_subscription_id(invoice: Optional[Dict[str, Any]]) -> Optional[str]:
    """Subscription of an invoice, for both the classic and the parent-based API shapes."""
    if not invoice:
        return None
    sub_id = reference_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return reference_id(details.get("subscription"))


def _epoch_to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def subscription_period_end(subscription: Dict[str, Any]) -> Optional[int]:
    """current_period_end as epoch seconds; newer API versions keep it on the items."""
    value = subscription.get("current_period_end")
    if isinstance(value, (int, float)):
        return int(value)
    item_ends = [
        item.get("current_period_end")
        for item in (subscription.get("items") or {}).get("data", []) or []
        if isinstance(item.get("current_period_end"), (int, float))
    ]
    return int(max(item_ends)) if item_ends else None


def subscription_price_ids(subscription: Dict[str, Any]) -> List[str]:
    price_ids = []
    for item in (subscription.get("items") or {}).get("data", []) or []:
        price = item.get("price")
        price_id = reference_id(price)
        if not price_id and isinstance(item.get("plan"), dict):
            price_id = item["plan"].get("id")
        if price_id:
            price_ids.append(price_id)
    return price_ids


def to_snapshot(subscription: Dict[str, Any], registry: PlanRegistry = plan_registry) -> SubscriptionSnapshot:
    price_ids = subscription_price_ids(subscription)
    return SubscriptionSnapshot(
        subscription_id=subscription.get("id"),
        customer_id=reference_id(subscription.get("customer")),
        status=subscription.get("status"),
        plan_id=registry.select_plan_id(price_ids),
        price_ids=price_ids,
        current_period_end=_epoch_to_datetime(subscription_period_end(subscription)),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        metadata_uid=metadata_uid(subscription),
    )


# =============================================================================
# Gateway
# =============================================================================

class StripeGateway:
    """Async facade over the Stripe SDK."""

    def is_configured(self) -> bool:
        return bool((stripe.api_key or "").strip())

    def webhook_configured(self) -> bool:
        return self.is_configured() and bool(_get_webhook_secret())

    async def _call(self, fn: Callable, *args, **kwargs):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))

    async def _retrieve(self, fn: Callable, object_id: str, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            return as_dict(await self._call(fn, object_id, **kwargs))
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.warning("Stripe object %s not found (resource_missing)", object_id)
                return None
            raise

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify the signature and parse. Raises stripe.SignatureVerificationError / ValueError."""
        event = stripe.Webhook.construct_event(payload, signature, _get_webhook_secret())
        return as_dict(event)

    async def retrieve_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        return await self._retrieve(stripe.Subscription.retrieve, subscription_id)

    async def retrieve_checkout_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self._retrieve(stripe.checkout.Session.retrieve, session_id)

    async def retrieve_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        return await self._retrieve(stripe.Invoice.retrieve, invoice_id)

    async def retrieve_charge(self, charge_id: str) -> Optional[Dict[str, Any]]:
        return await self._retrieve(stripe.Charge.retrieve, charge_id)

    async def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        customer = await self._retrieve(stripe.Customer.retrieve, customer_id)
        if customer and customer.get("deleted"):
            return None
        return customer

    async def list_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        result = await self._call(
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=SUBSCRIPTION_LIST_LIMIT,
        )
        return [as_dict(sub) for sub in (as_dict(result) or {}).get("data", []) or []]

    async def update_customer_metadata(self, customer_id: str, metadata: Dict[str, str]) -> None:
        await self._call(stripe.Customer.modify, customer_id, metadata=metadata)

    async def update_subscription_metadata(self, subscription_id: str, metadata: Dict[str, str]) -> None:
        await self._call(stripe.Subscription.modify, subscription_id, metadata=metadata)


# Singleton instance
stripe_gateway = StripeGateway()
