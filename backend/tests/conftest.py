"""
Shared fixtures for the backend tests.

No test talks to Supabase or Anthropic. The InMemoryStore below implements
the same DataStore/OrgStore interface as SupabaseStore and enforces the same
unique constraints under a lock, so idempotency and tenant isolation can be
tested without a database.
"""

import hashlib
import hmac
import json
import os
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

# Ensure env vars are set before importing anything that triggers app imports.
# SUPABASE_URL / keys are deliberately left unset so no client is created.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("CLOUDFLARE_EMAIL_SECRET", "test-cloudflare-secret")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("INBOUND_PROVIDER", "cloudflare")

from app.config import InboundSettings, RateLimitSettings
from app.models.receipt import ReceiptData
from app.services.merchant_map import MerchantMapService
from app.services.merchant_map_cache import MerchantMapCache
from app.services.provider_registry import ProviderRegistry
from app.services.rate_limiter import RateLimiter, window_start
from app.services.store import DataStore, OrgStore

CLOUDFLARE_SECRET = "test-cloudflare-secret"
LAMBDA_SECRET = "test-lambda-secret"
JWT_SECRET = "test-jwt-secret"
ORG_A = "org-aaaa"
ORG_B = "org-bbbb"
ALIAS_A = "receipts-a@inbound.receiptflow.app"
ALIAS_B = "receipts-b@inbound.receiptflow.app"


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryOrgStore(OrgStore):

    def __init__(self, db: "InMemoryStore", org_id: str):
        super().__init__(org_id)
        self.db = db

    def _rows(self, table: str) -> list[dict]:
        return [r for r in self.db.tables[table] if r["org_id"] == self.org_id]

    def _find(self, table: str, **match) -> Optional[dict]:
        for row in self._rows(table):
            if all(row.get(k) == v for k, v in match.items()):
                return row
        return None

    def _insert(self, table: str, row: dict) -> dict:
        stored = {
            "id": str(uuid.uuid4()),
            "created_at": _now_iso(),
            **row,
            "org_id": self.org_id,
        }
        self.db.tables[table].append(stored)
        return dict(stored)

    def _update(self, table: str, row_id: str, fields: dict) -> Optional[dict]:
        with self.db.lock:
            row = self._find(table, id=row_id)
            if row is None:
                return None
            row.update(fields)
            return dict(row)

    # -- idempotency ledger ------------------------------------------------

    def claim_message(self, entry: dict) -> tuple[dict, bool]:
        with self.db.lock:
            existing = self._find("provider_logs", message_id=entry["message_id"])
            if existing is not None:
                return dict(existing), False
            return self._insert("provider_logs", entry), True

    def complete_message(self, message_id: str, fields: dict) -> Optional[dict]:
        with self.db.lock:
            row = self._find("provider_logs", message_id=message_id)
            if row is None:
                return None
            row.update(fields)
            return dict(row)

    def release_message(self, message_id: str) -> None:
        with self.db.lock:
            row = self._find("provider_logs", message_id=message_id)
            if row is not None:
                self.db.tables["provider_logs"].remove(row)

    def get_provider_log(self, message_id: str) -> Optional[dict]:
        row = self._find("provider_logs", message_id=message_id)
        return dict(row) if row else None

    def list_provider_logs(self, limit: int = 50) -> list[dict]:
        return [dict(r) for r in self._rows("provider_logs")][:limit]

    # -- emails ------------------------------------------------------------

    def insert_email(self, row: dict) -> dict:
        with self.db.lock:
            return self._insert("emails", row)

    def update_email(self, email_id: str, fields: dict) -> Optional[dict]:
        return self._update("emails", email_id, fields)

    def get_email(self, email_id: str) -> Optional[dict]:
        row = self._find("emails", id=email_id)
        return dict(row) if row else None

    def get_email_by_message_id(self, message_id: str) -> Optional[dict]:
        row = self._find("emails", message_id=message_id)
        return dict(row) if row else None

    # -- transactions ------------------------------------------------------

    def insert_transaction(self, row: dict) -> dict:
        with self.db.lock:
            return self._insert("transactions", {"updated_at": _now_iso(), **row})

    def get_transaction(self, transaction_id: str) -> Optional[dict]:
        row = self._find("transactions", id=transaction_id)
        return dict(row) if row else None

    def get_transaction_by_email(self, email_id: str) -> Optional[dict]:
        row = self._find("transactions", email_id=email_id)
        return dict(row) if row else None

    def update_transaction(self, transaction_id: str, fields: dict) -> Optional[dict]:
        return self._update("transactions", transaction_id, fields)

    def list_transactions(self, limit: int = 50, offset: int = 0) -> list[dict]:
        rows = sorted(self._rows("transactions"), key=lambda r: r["date"], reverse=True)
        return [dict(r) for r in rows[offset:offset + limit]]

    # -- merchant map ------------------------------------------------------

    def upsert_merchant_mapping(self, row: dict) -> dict:
        with self.db.lock:
            existing = self._find("merchant_map", merchant_name=row["merchant_name"])
            if existing is not None:
                existing.update({k: v for k, v in row.items() if k != "created_at"})
                return dict(existing)
            return self._insert("merchant_map", row)

    def get_merchant_mapping(self, merchant_name: str) -> Optional[dict]:
        self.db.mapping_reads += 1
        row = self._find("merchant_map", merchant_name=merchant_name)
        return dict(row) if row else None

    def list_merchant_mappings(self) -> list[dict]:
        rows = sorted(self._rows("merchant_map"), key=lambda r: r["updated_at"], reverse=True)
        return [dict(r) for r in rows]

    def delete_merchant_mapping(self, merchant_name: str) -> bool:
        with self.db.lock:
            row = self._find("merchant_map", merchant_name=merchant_name)
            if row is None:
                return False
            self.db.tables["merchant_map"].remove(row)
            return True

    # -- rate limiting / membership ----------------------------------------

    def hit_rate_limit(self, endpoint: str, max_requests: int, window_minutes: int) -> bool:
        key = (self.org_id, endpoint, window_start(self.db.clock(), window_minutes))
        with self.db.lock:
            count = self.db.rate_counts.get(key, 0)
            if count >= max_requests:
                return False
            self.db.rate_counts[key] = count + 1
            return True

    def is_member(self, user_id: str) -> bool:
        return (self.org_id, user_id) in self.db.members


class InMemoryStore(DataStore):

    def __init__(self):
        self.lock = threading.Lock()
        self.tables: dict[str, list[dict]] = {
            "provider_logs": [],
            "emails": [],
            "transactions": [],
            "merchant_map": [],
        }
        self.aliases: dict[str, dict] = {}
        self.members: set[tuple[str, str]] = set()
        self.rate_counts: dict[tuple, int] = {}
        self.mapping_reads = 0
        self.clock = lambda: datetime.now(timezone.utc)

    def add_alias(self, alias_email: str, org_id: str, is_active: bool = True) -> None:
        self.aliases[alias_email.lower()] = {
            "alias_email": alias_email.lower(),
            "org_id": org_id,
            "is_active": is_active,
        }

    def add_member(self, org_id: str, user_id: str) -> None:
        self.members.add((org_id, user_id))

    def rows(self, table: str, org_id: Optional[str] = None) -> list[dict]:
        return [r for r in self.tables[table] if org_id is None or r["org_id"] == org_id]

    def resolve_alias(self, alias_email: str) -> Optional[dict]:
        row = self.aliases.get(alias_email.strip().lower())
        return dict(row) if row else None

    def for_org(self, org_id: str) -> OrgStore:
        return InMemoryOrgStore(self, org_id)


# ---------------------------------------------------------------------------
# Extractor double
# ---------------------------------------------------------------------------

def make_receipt(**overrides) -> ReceiptData:
    fields = {
        "date": "2025-03-14",
        "amount": Decimal("12.50"),
        "currency": "USD",
        "merchant": "Starbucks Corp.",
        "last4": "4242",
        "category": "Food & Dining",
        "subcategory": "Coffee",
        "notes": None,
        "confidence": 80,
        "explanation": "Coffee shop receipt.",
    }
    fields.update(overrides)
    return ReceiptData(**fields)


class FakeExtractor:
    """Returns a fixed ReceiptData, or raises `error` when set."""

    def __init__(self, receipt: Optional[ReceiptData] = None, error: Optional[Exception] = None):
        self.receipt = receipt or make_receipt()
        self.error = error
        self.calls = []

    def extract(self, email):
        self.calls.append(email)
        if self.error is not None:
            raise self.error
        return self.receipt


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def make_cloudflare_payload(
    to: str = ALIAS_A,
    sender: str = "Starbucks <receipts@starbucks.com>",
    subject: str = "Your receipt",
    text: Optional[str] = "Total $12.50 paid with Visa ending 4242",
    html: Optional[str] = None,
    message_id: Optional[str] = "<msg-001@starbucks.com>",
) -> dict:
    content = []
    if text is not None:
        content.append({"type": "text/plain", "value": text})
    if html is not None:
        content.append({"type": "text/html", "value": html})
    headers = {"Message-ID": message_id} if message_id else {}
    return {
        "personalizations": [{"to": [{"email": to}]}],
        "from": {"email": sender},
        "subject": subject,
        "content": content,
        "headers": headers,
    }


def sign_body(body: bytes, secret: str = CLOUDFLARE_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def signed_request(payload: dict, secret: str = CLOUDFLARE_SECRET) -> tuple[bytes, dict]:
    body = json.dumps(payload).encode()
    return body, {
        "Content-Type": "application/json",
        "X-Cloudflare-Signature": sign_body(body, secret),
    }


def auth_headers(user_id: str, org_id: Optional[str] = ORG_A) -> dict:
    """Bearer token signed with the test JWT secret, plus X-Org-Id."""
    import time

    import jwt as pyjwt

    token = pyjwt.encode(
        {"sub": user_id, "role": "authenticated", "exp": int(time.time()) + 3600},
        JWT_SECRET,
        algorithm="HS256",
    )
    headers = {"Authorization": f"Bearer {token}"}
    if org_id is not None:
        headers["X-Org-Id"] = org_id
    return headers


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    db = InMemoryStore()
    db.add_alias(ALIAS_A, ORG_A)
    db.add_alias(ALIAS_B, ORG_B)
    return db


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def merchant_map(store):
    return MerchantMapService(store, cache=MerchantMapCache())


@pytest.fixture
def inbound_settings():
    return InboundSettings(
        environment="test",
        default_provider="cloudflare",
        cloudflare_secret=CLOUDFLARE_SECRET,
        ses_verify_signature=False,
        lambda_shared_secret=LAMBDA_SECRET,
        timeout_ms=5000,
    )


@pytest.fixture
def registry(inbound_settings):
    reg = ProviderRegistry(inbound_settings)
    yield reg
    reg.clear()


@pytest.fixture
def rate_limiter():
    return RateLimiter(RateLimitSettings(per_org_per_window=100, window_minutes=60))


@pytest.fixture
def client(store, extractor, registry, rate_limiter, monkeypatch):
    """TestClient with the store, registry and extractor swapped for test doubles."""
    from fastapi.testclient import TestClient

    from app.dependencies import get_extractor, get_registry, get_store
    from app.main import app

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_extractor] = lambda: extractor
    monkeypatch.setattr(app.state, "rate_limiter", rate_limiter)
    monkeypatch.setattr(app.state, "merchant_cache", MerchantMapCache())

    yield TestClient(app)

    app.dependency_overrides.clear()
