from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class BillingEventType(str, Enum):
    """Stripe event types the entitlement pipeline acts on. Anything else is a no-op."""
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    CHARGE_DISPUTE_CREATED = "charge.dispute.created"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["BillingEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None

class StripeEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    IGNORED = "IGNORED"      # Unhandled event type
    DROPPED = "DROPPED"      # Data-quality gap (no subscription / no uid)
    FAILED = "FAILED"        # Transient failure after claim; sweep repairs

class UserRole(str, Enum):
    ROLE_USER = "ROLE_USER"
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_SYSTEM = "ROLE_SYSTEM"

class AuditAction(str, Enum):
    STRIPE_EVENT_PROCESSED = "STRIPE_EVENT_PROCESSED"
    STRIPE_EVENT_DROPPED = "STRIPE_EVENT_DROPPED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"
    STRIPE_UNKNOWN_PRICE = "STRIPE_UNKNOWN_PRICE"
    CUSTOMER_LINK_CREATED = "CUSTOMER_LINK_CREATED"
    CUSTOMER_LINK_CONFLICT = "CUSTOMER_LINK_CONFLICT"
    CUSTOMER_LINK_REASSIGNED = "CUSTOMER_LINK_REASSIGNED"
    PRO_CLAIM_SYNC_FAILED = "PRO_CLAIM_SYNC_FAILED"
    RECONCILIATION_FAILED = "RECONCILIATION_FAILED"
    RECONCILIATION_SWEEP_COMPLETED = "RECONCILIATION_SWEEP_COMPLETED"
    MANUAL_RECONCILIATION = "MANUAL_RECONCILIATION"
    STRIPE_EVENTS_PRUNED = "STRIPE_EVENTS_PRUNED"
    CHECKOUT_SESSION_VERIFIED = "CHECKOUT_SESSION_VERIFIED"

# Pseudo event type stamped on entitlements written by the reconciliation sweep.
RECONCILE_EVENT_TYPE = "reconcile"
# Stamped by the post-checkout session verification.
VERIFY_SESSION_EVENT_TYPE = "verify.pro_session"

# ============================================================================
# BILLING MODELS
# ============================================================================

class BillingEvent(BaseModel):
    """Immutable provider fact. Only the ledger marker and an audit copy outlive it."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    type: str
    occurred_at: Optional[datetime] = None
    livemode: bool = False
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def event_type(self) -> Optional[BillingEventType]:
        return BillingEventType.parse(self.type)

    @classmethod
    def from_stripe(cls, event: Dict[str, Any]) -> "BillingEvent":
        created = event.get("created")
        occurred_at = (
            datetime.fromtimestamp(created, tz=timezone.utc)
            if isinstance(created, (int, float)) else None
        )
        return cls(
            id=event["id"],
            type=event.get("type") or "",
            occurred_at=occurred_at,
            livemode=bool(event.get("livemode")),
            payload=(event.get("data") or {}).get("object") or {},
        )

class SubscriptionSnapshot(BaseModel):
    """Freshly fetched, authoritative state of one subscription."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    plan_id: Optional[str] = None
    price_ids: List[str] = Field(default_factory=list)
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata_uid: Optional[str] = None

class IdentityHints(BaseModel):
    """uid candidates carried by the object that triggered the event."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    session_metadata_uid: Optional[str] = None
    session_client_reference: Optional[str] = None
    invoice_metadata_uid: Optional[str] = None
    charge_metadata_uid: Optional[str] = None

class EntitlementRecord(BaseModel):
    """Current-state projection of a user's PRO entitlement. Overwritten, never appended."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    uid: Optional[str] = None
    is_pro: bool = False
    status: str = "unknown"
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_processed_event_id: Optional[str] = None
    last_processed_event_type: Optional[str] = None
    last_processed_at: Optional[datetime] = None

    def for_user(self, uid: str, event_id: str, event_type: str) -> "EntitlementRecord":
        """Stamp the computed fact with its owner and the event that produced it."""
        return self.model_copy(update={
            "uid": uid,
            "last_processed_event_id": event_id,
            "last_processed_event_type": event_type,
            "last_processed_at": datetime.now(timezone.utc),
        })

class CustomerLink(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str
    uid: str
    source: Optional[str] = None
    linked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    uid: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
