"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Modules import each other as top-level names (database, models, services.*).
BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import copy
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError


def _get_path(doc, key):
    value = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _matches(doc, query):
    for key, expected in (query or {}).items():
        actual = _get_path(doc, key)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, operand in expected.items():
                if op == "$lt" and not (actual is not None and actual < operand):
                    return False
                if op == "$nin" and actual in operand:
                    return False
        elif actual != expected:
            return False
    return True


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        present = [d for d in self._docs if _get_path(d, key) is not None]
        missing = [d for d in self._docs if _get_path(d, key) is None]
        present.sort(key=lambda d: _get_path(d, key), reverse=direction < 0)
        self._docs = missing + present if direction > 0 else present + missing
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return [copy.deepcopy(d) for d in self._docs[:length]]


class InMemoryCollection:
    """Just enough of the Motor collection API for the billing code paths."""

    def __init__(self, unique_key=None):
        self.docs = []
        self.unique_key = unique_key
        self.insert_one = AsyncMock(side_effect=self._insert_one)
        self.find_one = AsyncMock(side_effect=self._find_one)
        self.update_one = AsyncMock(side_effect=self._update_one)
        self.find_one_and_update = AsyncMock(side_effect=self._find_one_and_update)
        self.delete_many = AsyncMock(side_effect=self._delete_many)
        self.find = MagicMock(side_effect=lambda query=None, projection=None: _Cursor(
            [d for d in self.docs if _matches(d, query)]
        ))

    def _first(self, query):
        return next((d for d in self.docs if _matches(d, query)), None)

    async def _insert_one(self, doc, **kw):
        key = self.unique_key
        if key and any(d.get(key) == doc.get(key) for d in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key error {key}={doc.get(key)}")
        self.docs.append(copy.deepcopy(doc))
        return MagicMock(inserted_id=doc.get(key))

    async def _find_one(self, query, projection=None, **kw):
        doc = self._first(query)
        return copy.deepcopy(doc) if doc is not None else None

    def _apply(self, doc, update, inserting):
        for k, v in update.get("$set", {}).items():
            doc[k] = copy.deepcopy(v)
        if inserting:
            for k, v in update.get("$setOnInsert", {}).items():
                doc[k] = copy.deepcopy(v)
        for k, v in update.get("$min", {}).items():
            if doc.get(k) is None or v < doc[k]:
                doc[k] = v
        for k in update.get("$unset", {}):
            doc.pop(k, None)

    def _upsert_base(self, query):
        return {k: v for k, v in query.items() if not isinstance(v, dict)}

    async def _update_one(self, query, update, upsert=False, **kw):
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return MagicMock(matched_count=0, modified_count=0, upserted_id=None)
            doc = self._upsert_base(query)
            self._apply(doc, update, inserting=True)
            self.docs.append(doc)
            return MagicMock(matched_count=0, modified_count=0, upserted_id="new")
        self._apply(doc, update, inserting=False)
        return MagicMock(matched_count=1, modified_count=1, upserted_id=None)

    async def _find_one_and_update(self, query, update, upsert=False, projection=None, return_document=None, **kw):
        doc = self._first(query)
        before = copy.deepcopy(doc) if doc is not None else None
        await self._update_one(query, update, upsert=upsert)
        return before

    async def _delete_many(self, query, **kw):
        keep = [d for d in self.docs if not _matches(d, query)]
        deleted = len(self.docs) - len(keep)
        self.docs = keep
        return MagicMock(deleted_count=deleted)


class InMemoryDb:
    def __init__(self):
        self.stripe_events = InMemoryCollection(unique_key="event_id")
        self.users = InMemoryCollection(unique_key="uid")
        self.customer_links = InMemoryCollection(unique_key="customer_id")
        self.audit_logs = InMemoryCollection()

    def user(self, uid):
        return next((d for d in self.users.docs if d.get("uid") == uid), None)

    def marker(self, event_id):
        return next((d for d in self.stripe_events.docs if d.get("event_id") == event_id), None)

    def audit_actions(self):
        return [d.get("action") for d in self.audit_logs.docs]


@pytest.fixture
def memory_db(monkeypatch):
    """In-memory database wired into the global `database` used by every service."""
    from database import database

    db = InMemoryDb()
    monkeypatch.setattr(database, "get_db", lambda: db)
    return db


class FakeStripeGateway:
    """Stripe stand-in holding objects by id; signature "valid" is the only good one."""

    def __init__(self):
        self.subscriptions = {}
        self.sessions = {}
        self.invoices = {}
        self.charges = {}
        self.customers = {}
        self.metadata_updates = []
        self.configured = True
        self.fail_list_for = {}

    def is_configured(self):
        return self.configured

    def webhook_configured(self):
        return self.configured

    def construct_event(self, payload, signature):
        import json
        import stripe

        if signature != "valid":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)

    async def retrieve_subscription(self, subscription_id):
        return copy.deepcopy(self.subscriptions.get(subscription_id))

    async def retrieve_checkout_session(self, session_id):
        return copy.deepcopy(self.sessions.get(session_id))

    async def retrieve_invoice(self, invoice_id):
        return copy.deepcopy(self.invoices.get(invoice_id))

    async def retrieve_charge(self, charge_id):
        return copy.deepcopy(self.charges.get(charge_id))

    async def retrieve_customer(self, customer_id):
        return copy.deepcopy(self.customers.get(customer_id))

    async def list_subscriptions(self, customer_id):
        if customer_id in self.fail_list_for:
            raise self.fail_list_for[customer_id]
        return [
            copy.deepcopy(sub) for sub in self.subscriptions.values()
            if sub.get("customer") == customer_id
        ]

    async def update_customer_metadata(self, customer_id, metadata):
        self.metadata_updates.append(("customer", customer_id, metadata))

    async def update_subscription_metadata(self, subscription_id, metadata):
        self.metadata_updates.append(("subscription", subscription_id, metadata))


@pytest.fixture
def fake_gateway():
    return FakeStripeGateway()


@pytest.fixture
def claims(monkeypatch):
    """Patch the Firebase custom-claims mirror; returns the AsyncMock."""
    from services import auth_claims

    mock = AsyncMock(return_value=True)
    monkeypatch.setattr(auth_claims, "sync_pro_claim", mock)
    return mock


# Shared TestClient fixture so tests can use in-process requests without a running server.
# The lifespan is not entered, so no MongoDB connection or scheduler is started.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)
