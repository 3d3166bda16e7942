"""
Startup indexes: exactly-once barrier on the ledger, uniqueness of links and users.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

import database as database_module
from database import Database

pytestmark = pytest.mark.asyncio


def _fake_db():
    db = MagicMock()
    for name in ("stripe_events", "users", "customer_links", "audit_logs"):
        getattr(db, name).create_index = AsyncMock()
    return db


async def test_indexes_cover_ledger_links_and_sweep_order():
    db = Database()
    db.db = _fake_db()

    await db._create_indexes()

    db.db.stripe_events.create_index.assert_any_await("event_id", unique=True)
    db.db.users.create_index.assert_any_await("uid", unique=True)
    db.db.customer_links.create_index.assert_any_await("customer_id", unique=True)
    db.db.customer_links.create_index.assert_any_await("last_reconciled_at")


async def test_index_errors_do_not_stop_startup():
    db = Database()
    db.db = _fake_db()
    db.db.stripe_events.create_index.side_effect = RuntimeError("index options differ")

    await db._create_indexes()

    assert db.db.users.create_index.await_count == 0


async def test_module_exposes_only_the_shared_instance():
    public = {name for name in vars(database_module) if not name.startswith("_")}
    assert {"Database", "database"} <= public
    assert not any(name.startswith("get_db") for name in public)
