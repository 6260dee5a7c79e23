"""
Pytest configuration and shared test helpers for backend tests.

Provides an in-memory stand-in for the Motor database: collections accept the
same calls the services make (insert_one, find_one, find().sort().limit()
.to_list(), update_one with $set/$inc/upsert, count_documents) and raise
pymongo's DuplicateKeyError on unique key collisions. Every call yields to
the event loop first so concurrent tasks interleave as they would against a
real server.
"""
import asyncio
import copy
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

# Skip MongoDB connection on app startup when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("JWT_SECRET", "test-secret")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from pymongo.errors import DuplicateKeyError
from pymongo.results import InsertOneResult, UpdateResult

from auth import build_claims, create_access_token
from models import UserRole
from models.commissions import CommissionLedgerEntry, LedgerStatus, ledger_entry_key
from models.conversions import ConversionTracking
from models.partners import Partner, PartnerCode

# Unique indexes created by database.create_indexes (besides _id)
UNIQUE_KEYS = {
    "partners": ("partner_id",),
    "partner_codes": ("code",),
    "conversion_tracking": ("conversion_id",),
    "stripe_events": ("event_id",),
    "payout_reports": ("report_month",),
}

_MISSING = object()


def _get_path(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(doc, path, value):
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def _matches_condition(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(arg):
                    return False
            elif op == "$ne":
                if value is not _MISSING and value == arg:
                    return False
            elif op == "$in":
                if value is _MISSING or value not in arg:
                    return False
            elif op in ("$gte", "$gt", "$lte", "$lt"):
                if value is _MISSING or value is None:
                    return False
                if op == "$gte" and not value >= arg:
                    return False
                if op == "$gt" and not value > arg:
                    return False
                if op == "$lte" and not value <= arg:
                    return False
                if op == "$lt" and not value < arg:
                    return False
            else:
                raise NotImplementedError(f"Query operator {op} not supported by the in-memory store")
        return True
    if condition is None:
        return value is _MISSING or value is None
    return value is not _MISSING and value == condition


def matches(doc, query):
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif not _matches_condition(_get_path(doc, key), condition):
            return False
    return True


def project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = [k for k, v in projection.items() if v and k != "_id"]
    keep_id = projection.get("_id", 1)
    if include:
        projected = {k: doc[k] for k in include if k in doc}
        if keep_id and "_id" in doc:
            projected["_id"] = doc["_id"]
        return projected
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def _normalize_sort(key_or_list, direction=None):
    if isinstance(key_or_list, str):
        return [(key_or_list, direction or 1)]
    return list(key_or_list)


def sort_docs(docs, sort_spec):
    docs = list(docs)
    # Stable sorts, least significant key first; missing/None sorts lowest like MongoDB
    for key, direction in reversed(sort_spec):
        def sort_key(d, key=key):
            value = _get_path(d, key)
            present = value is not _MISSING and value is not None
            return (present, value if present else 0)
        docs.sort(key=sort_key, reverse=direction == -1)
    return docs


class InMemoryCursor:
    def __init__(self, docs, projection):
        self._docs = docs
        self._projection = projection
        self._sort = []
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        self._sort = _normalize_sort(key_or_list, direction)
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = sort_docs(self._docs, self._sort) if self._sort else list(self._docs)
        if self._limit:
            docs = docs[:self._limit]
        if length:
            docs = docs[:length]
        return [project(d, self._projection) for d in docs]


class InMemoryCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []

    def seed(self, *docs):
        """Insert documents synchronously (test setup only)."""
        for doc in docs:
            self._insert(doc)

    def _insert(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        for existing in self.docs:
            if existing["_id"] == doc["_id"]:
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: _id_", code=11000)
            for key in UNIQUE_KEYS.get(self.name, ()):
                if key in doc and existing.get(key) == doc[key]:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {key}", code=11000)
        self.docs.append(doc)
        return doc["_id"]

    def _find(self, query):
        return [d for d in self.docs if matches(d, query)]

    async def insert_one(self, doc, **kwargs):
        await asyncio.sleep(0)
        return InsertOneResult(self._insert(doc), acknowledged=True)

    async def find_one(self, query=None, projection=None, sort=None, **kwargs):
        await asyncio.sleep(0)
        found = self._find(query)
        if sort:
            found = sort_docs(found, _normalize_sort(sort))
        return project(found[0], projection) if found else None

    def find(self, query=None, projection=None, **kwargs):
        return InMemoryCursor(self._find(query), projection)

    async def count_documents(self, query, **kwargs):
        await asyncio.sleep(0)
        return len(self._find(query))

    async def update_one(self, query, update, upsert=False, **kwargs):
        await asyncio.sleep(0)
        found = self._find(query)
        if not found:
            if not upsert:
                return UpdateResult({"n": 0, "nModified": 0}, acknowledged=True)
            doc = {
                k: v for k, v in query.items()
                if not k.startswith("$") and not isinstance(v, dict)
            }
            self._apply(doc, update, inserting=True)
            inserted_id = self._insert(doc)
            return UpdateResult({"n": 1, "nModified": 0, "upserted": inserted_id}, acknowledged=True)

        doc = found[0]
        before = copy.deepcopy(doc)
        self._apply(doc, update)
        return UpdateResult({"n": 1, "nModified": int(doc != before)}, acknowledged=True)

    @staticmethod
    def _apply(doc, update, inserting=False):
        for path, value in update.get("$set", {}).items():
            _set_path(doc, path, copy.deepcopy(value))
        for path, amount in update.get("$inc", {}).items():
            current = _get_path(doc, path)
            _set_path(doc, path, (0 if current is _MISSING else current) + amount)
        if inserting:
            for path, value in update.get("$setOnInsert", {}).items():
                _set_path(doc, path, copy.deepcopy(value))


class InMemoryDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    async def command(self, name, *args, **kwargs):
        return {"ok": 1.0}


def partner_doc(partner_id="partner_1", **overrides) -> dict:
    fields = {
        "partner_id": partner_id,
        "email": f"{partner_id}@example.com",
        "display_name": f"Partner {partner_id}",
    }
    fields.update(overrides)
    return Partner(**fields).model_dump()


def bearer(role: UserRole = UserRole.ROLE_PARTNER, partner_id: str = None, sub: str = "user_1") -> dict:
    token = create_access_token(build_claims(sub, role, partner_id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def add_partner(db):
    """Seed a partner document; returns it."""
    def _add(partner_id="partner_1", **overrides):
        doc = partner_doc(partner_id, **overrides)
        db.partners.seed(doc)
        return doc
    return _add


@pytest.fixture
def add_partner_code(db):
    """Seed a referral code; returns it as a model."""
    def _add(code, partner_id="partner_1", **overrides):
        partner_code = PartnerCode(code=code, partner_id=partner_id, **overrides)
        db.partner_codes.seed(partner_code.model_dump())
        return partner_code
    return _add


@pytest.fixture
def add_ledger_entry(db):
    """Seed a ledger entry; returns it as a model."""
    def _add(invoice_id, partner_id="partner_1", commission_amount=100, status=LedgerStatus.ACCRUED, **overrides):
        fields = {
            "ledger_entry_id": ledger_entry_key(invoice_id, partner_id),
            "partner_id": partner_id,
            "referral_id": f"conv_{invoice_id}",
            "stripe_invoice_id": invoice_id,
            "gross_amount": commission_amount * 10,
            "commission_rate": 0.10,
            "commission_amount": commission_amount,
            "currency": "USD",
            "period_start": datetime(2025, 1, 1, tzinfo=timezone.utc),
            "period_end": datetime(2025, 2, 1, tzinfo=timezone.utc),
            "status": status,
        }
        fields.update(overrides)
        entry = CommissionLedgerEntry(**fields)
        db.commission_ledger.seed(entry.to_document())
        return entry
    return _add


@pytest.fixture
def add_tracking(db):
    """Seed a conversion tracking record; returns it as a dict."""
    def _add(partner_id="partner_1", customer_uid=None, **overrides):
        fields = {
            "partner_id": partner_id,
            "referral_code": f"REF-{partner_id}",
            "customer_uid": customer_uid or f"cust_{uuid.uuid4().hex[:8]}",
        }
        fields.update(overrides)
        doc = ConversionTracking(**fields).model_dump()
        db.conversion_tracking.seed(doc)
        return doc
    return _add


@pytest.fixture
def auth_headers():
    return bearer


@pytest.fixture
def client(db):
    """TestClient for server:app with the database dependency bound to the in-memory store."""
    from fastapi.testclient import TestClient
    from database import get_db
    from server import app
    from utils.rate_limiter import rate_limiter

    rate_limiter.reset()
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        rate_limiter.reset()
