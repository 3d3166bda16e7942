"""
Identity resolver: strict candidate priority, monotonic customer links, best-effort metadata back-fill.
"""
import pytest
import stripe

from models import AuditAction, IdentityHints, SubscriptionSnapshot
from services import identity_resolver

pytestmark = pytest.mark.asyncio


def _snapshot(metadata_uid=None, customer_id="cus_1"):
    return SubscriptionSnapshot(
        subscription_id="sub_1",
        customer_id=customer_id,
        status="active",
        metadata_uid=metadata_uid,
    )


async def test_session_client_reference_beats_subscription_metadata(memory_db, fake_gateway):
    hints = IdentityHints(session_client_reference="uid_session")

    resolution = await identity_resolver.resolve(_snapshot(metadata_uid="uid_sub"), hints, fake_gateway)

    assert resolution.uid == "uid_session"
    assert resolution.source == "session_client_reference"


async def test_session_metadata_beats_client_reference(memory_db, fake_gateway):
    hints = IdentityHints(session_metadata_uid="uid_meta", session_client_reference="uid_ref")

    resolution = await identity_resolver.resolve(_snapshot(), hints, fake_gateway)

    assert resolution.uid == "uid_meta"


async def test_blank_hints_are_skipped(memory_db, fake_gateway):
    hints = IdentityHints(invoice_metadata_uid="   ")

    resolution = await identity_resolver.resolve(_snapshot(metadata_uid="uid_sub"), hints, fake_gateway)

    assert resolution.source == "subscription_metadata"


async def test_stored_link_avoids_customer_fetch(memory_db, fake_gateway):
    await identity_resolver.link_customer("cus_1", "uid_linked", "session_metadata")
    fake_gateway.customers["cus_1"] = {"id": "cus_1", "metadata": {"uid": "uid_customer"}}

    resolution = await identity_resolver.resolve(_snapshot(), None, fake_gateway)

    assert resolution.uid == "uid_linked"
    assert resolution.source == "customer_link"


async def test_customer_metadata_is_last_resort(memory_db, fake_gateway):
    fake_gateway.customers["cus_1"] = {"id": "cus_1", "metadata": {"uid": "uid_customer"}}

    resolution = await identity_resolver.resolve(_snapshot(), None, fake_gateway)

    assert resolution.uid == "uid_customer"
    assert resolution.source == "customer_metadata"
    link = await identity_resolver.get_customer_link("cus_1")
    assert link.uid == "uid_customer"


async def test_customer_fetch_error_is_treated_as_no_value(memory_db, fake_gateway, monkeypatch):
    async def boom(customer_id):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(fake_gateway, "retrieve_customer", boom)

    assert await identity_resolver.resolve(_snapshot(), None, fake_gateway) is None


async def test_unresolvable_identity_returns_none_without_link(memory_db, fake_gateway):
    assert await identity_resolver.resolve(_snapshot(), IdentityHints(), fake_gateway) is None
    assert memory_db.customer_links.docs == []
    assert fake_gateway.metadata_updates == []


async def test_first_resolution_links_and_backfills(memory_db, fake_gateway):
    resolution = await identity_resolver.resolve(
        _snapshot(), IdentityHints(session_metadata_uid="uid_1"), fake_gateway,
    )

    assert resolution.uid == "uid_1"
    assert memory_db.customer_links.docs[0]["uid"] == "uid_1"
    assert ("subscription", "sub_1", {"uid": "uid_1"}) in fake_gateway.metadata_updates
    assert ("customer", "cus_1", {"uid": "uid_1"}) in fake_gateway.metadata_updates
    assert AuditAction.CUSTOMER_LINK_CREATED in memory_db.audit_actions()


async def test_known_customer_with_metadata_is_not_rewritten(memory_db, fake_gateway):
    await identity_resolver.link_customer("cus_1", "uid_1", "session_metadata")

    await identity_resolver.resolve(_snapshot(metadata_uid="uid_1"), None, fake_gateway)

    assert fake_gateway.metadata_updates == []


async def test_backfill_failure_does_not_fail_resolution(memory_db, fake_gateway, monkeypatch):
    async def boom(*args):
        raise stripe.RateLimitError("slow down")

    monkeypatch.setattr(fake_gateway, "update_subscription_metadata", boom)
    monkeypatch.setattr(fake_gateway, "update_customer_metadata", boom)

    resolution = await identity_resolver.resolve(
        _snapshot(), IdentityHints(charge_metadata_uid="uid_1"), fake_gateway,
    )

    assert resolution.uid == "uid_1"


async def test_link_is_monotonic(memory_db):
    assert await identity_resolver.link_customer("cus_1", "uid_first", "session_metadata") is True
    assert await identity_resolver.link_customer("cus_1", "uid_other", "invoice_metadata") is False

    link = await identity_resolver.get_customer_link("cus_1")
    assert link.uid == "uid_first"
    assert AuditAction.CUSTOMER_LINK_CONFLICT in memory_db.audit_actions()


async def test_relink_moves_customer_and_audits(memory_db):
    await identity_resolver.link_customer("cus_1", "uid_old", "session_metadata")
    await memory_db.users.insert_one({"uid": "uid_old", "stripe_customer_id": "cus_1"})

    link = await identity_resolver.relink_customer("cus_1", "uid_new", actor_id="admin_1", reason="support ticket")

    assert link.uid == "uid_new"
    assert link.source == "admin"
    assert "stripe_customer_id" not in memory_db.user("uid_old")
    assert memory_db.user("uid_new")["stripe_customer_id"] == "cus_1"
    audit = next(d for d in memory_db.audit_logs.docs if d["action"] == AuditAction.CUSTOMER_LINK_REASSIGNED)
    assert audit["before_state"] == {"uid": "uid_old", "source": "session_metadata"}
    assert audit["after_state"] == {"uid": "uid_new", "source": "admin"}
