"""
State persister: merge-write of the entitlement projection, idempotent re-persist,
claims mirror is best-effort.
"""
from datetime import datetime, timedelta, timezone

import pytest

from models import AuditAction, EntitlementRecord
from services import entitlement_persister

pytestmark = pytest.mark.asyncio


def _record(is_pro=True, **kw):
    base = dict(
        uid="uid_1",
        is_pro=is_pro,
        status="active" if is_pro else "past_due",
        plan_id="price_pro_monthly" if is_pro else None,
        subscription_id="sub_1",
        customer_id="cus_1",
        current_period_end=datetime(2030, 1, 1, tzinfo=timezone.utc),
        last_processed_event_id="evt_1",
        last_processed_event_type="customer.subscription.updated",
        last_processed_at=datetime.now(timezone.utc),
    )
    base.update(kw)
    return EntitlementRecord(**base)


async def test_persist_merges_without_touching_other_fields(memory_db, claims):
    await memory_db.users.insert_one({"uid": "uid_1", "display_name": "Ada", "is_admin": False})

    synced = await entitlement_persister.persist("uid_1", _record())

    assert synced is True
    user = memory_db.user("uid_1")
    assert user["display_name"] == "Ada"
    assert user["is_pro"] is True
    assert user["stripe_customer_id"] == "cus_1"
    assert user["pro"]["status"] == "active"
    assert user["pro"]["plan_id"] == "price_pro_monthly"
    assert user["pro"]["last_event_id"] == "evt_1"
    assert user["pro_since"] is not None
    claims.assert_awaited_once_with("uid_1", True)


async def test_persisting_twice_is_equivalent_to_once(memory_db, claims):
    record = _record()
    await entitlement_persister.persist("uid_1", record)
    first = dict(memory_db.user("uid_1"))

    later = record.model_copy(update={"last_processed_at": record.last_processed_at + timedelta(minutes=5)})
    await entitlement_persister.persist("uid_1", later)
    second = dict(memory_db.user("uid_1"))

    first["pro"] = {k: v for k, v in first["pro"].items() if k != "last_processed_at"}
    second["pro"] = {k: v for k, v in second["pro"].items() if k != "last_processed_at"}
    assert first == second


async def test_revocation_removes_pro_since(memory_db, claims):
    await entitlement_persister.persist("uid_1", _record())
    await entitlement_persister.persist("uid_1", _record(is_pro=False))

    user = memory_db.user("uid_1")
    assert user["is_pro"] is False
    assert "pro_since" not in user
    claims.assert_awaited_with("uid_1", False)


async def test_revocation_without_customer_keeps_customer_id(memory_db, claims):
    await entitlement_persister.persist("uid_1", _record())
    await entitlement_persister.persist("uid_1", _record(is_pro=False, customer_id=None, subscription_id=None))

    assert memory_db.user("uid_1")["stripe_customer_id"] == "cus_1"


async def test_claims_failure_keeps_document_write(memory_db, claims):
    claims.side_effect = RuntimeError("firebase unavailable")

    synced = await entitlement_persister.persist("uid_1", _record())

    assert synced is False
    assert memory_db.user("uid_1")["is_pro"] is True
    assert AuditAction.PRO_CLAIM_SYNC_FAILED in memory_db.audit_actions()


async def test_get_entitlement_unknown_user(memory_db):
    assert await entitlement_persister.get_entitlement("nobody") == {}
